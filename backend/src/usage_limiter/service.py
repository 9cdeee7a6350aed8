"""Shared usage limiter instances.

Provides lazily-initialised singletons wired from LimitsConfig.from_env(),
for applications that do not build their own repository and tracker.
"""

import logging
from typing import Optional

from .cache import LimitCache, NullLimitCache, TTLLimitCache
from .config import LimitsConfig
from .repository import LimitRepository
from .storage import LimitStorage, create_limit_storage
from .tracker import UsageTracker

logger = logging.getLogger(__name__)

# Singleton instances (lazy initialization)
_limits_config: Optional[LimitsConfig] = None
_limit_storage: Optional[LimitStorage] = None
_limit_cache: Optional[LimitCache] = None
_limit_repository: Optional[LimitRepository] = None
_usage_tracker: Optional[UsageTracker] = None


def get_limits_config() -> LimitsConfig:
    """Get or create singleton LimitsConfig"""
    global _limits_config
    if _limits_config is None:
        _limits_config = LimitsConfig.from_env()
        logger.info(f"LimitsConfig loaded (storage backend: {_limits_config.storage_backend})")
    return _limits_config


def get_limit_storage() -> LimitStorage:
    """Get or create singleton LimitStorage"""
    global _limit_storage
    if _limit_storage is None:
        _limit_storage = create_limit_storage(get_limits_config())
        logger.info(f"{type(_limit_storage).__name__} singleton initialized")
    return _limit_storage


def get_limit_cache() -> LimitCache:
    """Get or create singleton LimitCache"""
    global _limit_cache
    if _limit_cache is None:
        config = get_limits_config()
        if config.cache_ttl_seconds > 0:
            _limit_cache = TTLLimitCache(maxsize=config.cache_maxsize, ttl=config.cache_ttl_seconds)
        else:
            _limit_cache = NullLimitCache()
    return _limit_cache


def get_limit_repository() -> LimitRepository:
    """Get or create singleton LimitRepository"""
    global _limit_repository
    if _limit_repository is None:
        _limit_repository = LimitRepository(
            get_limit_storage(),
            config=get_limits_config(),
            cache=get_limit_cache(),
        )
        logger.info("LimitRepository singleton initialized")
    return _limit_repository


def get_usage_tracker() -> UsageTracker:
    """Get or create singleton UsageTracker"""
    global _usage_tracker
    if _usage_tracker is None:
        _usage_tracker = UsageTracker(get_limit_repository(), config=get_limits_config())
        logger.info("UsageTracker singleton initialized")
    return _usage_tracker


def reset_singletons() -> None:
    """Drop all singletons so the next call rebuilds them from the environment"""
    global _limits_config, _limit_storage, _limit_cache, _limit_repository, _usage_tracker
    _limits_config = None
    _limit_storage = None
    _limit_cache = None
    _limit_repository = None
    _usage_tracker = None
