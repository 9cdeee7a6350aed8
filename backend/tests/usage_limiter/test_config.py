"""Unit tests for LimitsConfig."""

import pytest
from usage_limiter.config import LimitsConfig
from usage_limiter.exceptions import InvalidArgumentError
from usage_limiter.models import ResetFrequency

ENV_VARS = [
    "DYNAMODB_LIMITS_TABLE_NAME",
    "DYNAMODB_LIMIT_USAGE_TABLE_NAME",
    "LIMITS_STORAGE_BACKEND",
    "LIMITS_DEFAULT_RESET_FREQUENCY",
    "LIMITS_STORAGE_TIMEOUT_SECONDS",
    "LIMITS_MAX_RETRIES",
    "LIMITS_RETRY_BACKOFF_SECONDS",
    "LIMITS_CACHE_TTL_SECONDS",
    "LIMITS_CACHE_MAXSIZE",
    "AWS_REGION",
    "AWS_DEFAULT_REGION",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every limiter variable from the environment"""
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    """Test configuration defaults"""
    config = LimitsConfig.from_env()

    assert config.limits_table_name == "Limits"
    assert config.usage_table_name == "LimitUsage"
    assert config.storage_backend == "memory"
    assert config.default_reset_frequency is ResetFrequency.NEVER
    assert config.storage_timeout_seconds == 5.0
    assert config.max_retries == 5
    assert config.aws_region is None


def test_from_env(clean_env):
    """Test loading every setting from the environment"""
    clean_env.setenv("DYNAMODB_LIMITS_TABLE_NAME", "limits-prod")
    clean_env.setenv("DYNAMODB_LIMIT_USAGE_TABLE_NAME", "usage-prod")
    clean_env.setenv("LIMITS_STORAGE_BACKEND", "DynamoDB")
    clean_env.setenv("LIMITS_DEFAULT_RESET_FREQUENCY", "every month")
    clean_env.setenv("LIMITS_STORAGE_TIMEOUT_SECONDS", "2.5")
    clean_env.setenv("LIMITS_MAX_RETRIES", "8")
    clean_env.setenv("LIMITS_RETRY_BACKOFF_SECONDS", "0.1")
    clean_env.setenv("LIMITS_CACHE_TTL_SECONDS", "0")
    clean_env.setenv("LIMITS_CACHE_MAXSIZE", "64")
    clean_env.setenv("AWS_DEFAULT_REGION", "eu-west-1")

    config = LimitsConfig.from_env()

    assert config.limits_table_name == "limits-prod"
    assert config.usage_table_name == "usage-prod"
    assert config.storage_backend == "dynamodb"
    assert config.default_reset_frequency is ResetFrequency.EVERY_MONTH
    assert config.storage_timeout_seconds == 2.5
    assert config.max_retries == 8
    assert config.retry_backoff_seconds == 0.1
    assert config.cache_ttl_seconds == 0
    assert config.cache_maxsize == 64
    assert config.aws_region == "eu-west-1"


def test_aws_region_takes_precedence(clean_env):
    """Test that AWS_REGION wins over AWS_DEFAULT_REGION"""
    clean_env.setenv("AWS_REGION", "us-east-1")
    clean_env.setenv("AWS_DEFAULT_REGION", "eu-west-1")

    assert LimitsConfig.from_env().aws_region == "us-east-1"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"storage_backend": "redis"},
        {"storage_timeout_seconds": 0},
        {"max_retries": -1},
    ],
)
def test_invalid_values(kwargs):
    """Test that invalid settings fail fast"""
    with pytest.raises(ValueError):
        LimitsConfig(**kwargs)


def test_invalid_default_frequency():
    """Test that an unknown default frequency is rejected"""
    with pytest.raises(InvalidArgumentError):
        LimitsConfig(default_reset_frequency="fortnightly")
