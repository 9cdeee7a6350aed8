"""
Configuration for the usage limiter.

Values can be passed directly or loaded from environment variables.
"""

from dataclasses import dataclass
from typing import Optional
import os

from .models import ResetFrequency


@dataclass
class LimitsConfig:
    """
    Storage locations, defaults and retry policy for the usage limiter.

    Can be loaded from environment variables or passed directly.
    """
    limits_table_name: str = "Limits"
    usage_table_name: str = "LimitUsage"
    storage_backend: str = "memory"  # "memory" or "dynamodb"
    default_reset_frequency: ResetFrequency = ResetFrequency.NEVER

    # Storage calls are bounded; conflicts retry with exponential backoff
    storage_timeout_seconds: float = 5.0
    max_retries: int = 5
    retry_backoff_seconds: float = 0.05

    # 0 disables the limit record cache
    cache_ttl_seconds: int = 300
    cache_maxsize: int = 1024

    aws_region: Optional[str] = None

    def __post_init__(self):
        frequency = ResetFrequency.parse(self.default_reset_frequency)
        self.default_reset_frequency = frequency or ResetFrequency.NEVER

        if self.storage_backend not in ("memory", "dynamodb"):
            raise ValueError(f"Unknown storage backend: {self.storage_backend}")
        if self.storage_timeout_seconds <= 0:
            raise ValueError("storage_timeout_seconds must be greater than 0")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")

    @classmethod
    def from_env(cls) -> "LimitsConfig":
        """Load configuration from environment variables."""
        return cls(
            limits_table_name=os.environ.get("DYNAMODB_LIMITS_TABLE_NAME", "Limits"),
            usage_table_name=os.environ.get("DYNAMODB_LIMIT_USAGE_TABLE_NAME", "LimitUsage"),
            storage_backend=os.environ.get("LIMITS_STORAGE_BACKEND", "memory").lower(),
            default_reset_frequency=os.environ.get("LIMITS_DEFAULT_RESET_FREQUENCY", "never"),
            storage_timeout_seconds=float(os.environ.get("LIMITS_STORAGE_TIMEOUT_SECONDS", "5.0")),
            max_retries=int(os.environ.get("LIMITS_MAX_RETRIES", "5")),
            retry_backoff_seconds=float(os.environ.get("LIMITS_RETRY_BACKOFF_SECONDS", "0.05")),
            cache_ttl_seconds=int(os.environ.get("LIMITS_CACHE_TTL_SECONDS", "300")),
            cache_maxsize=int(os.environ.get("LIMITS_CACHE_MAXSIZE", "1024")),
            aws_region=os.environ.get("AWS_REGION", os.environ.get("AWS_DEFAULT_REGION")),
        )
