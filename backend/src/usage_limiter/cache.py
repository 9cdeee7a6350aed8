"""Cache port for limit lookups.

The cache is an optimisation only: reads fall back to storage on a miss,
every write invalidates the affected keys, and compare-and-swap decisions
are always made against storage.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Optional

from cachetools import TTLCache

logger = logging.getLogger(__name__)

# Default cache TTL in seconds (5 minutes)
DEFAULT_CACHE_TTL = 300

# Default cache size (number of entries)
DEFAULT_CACHE_SIZE = 1024


def limit_id_cache_key(limit_id: str) -> str:
    return f"limit:id:{limit_id}"


def limit_name_cache_key(name: str, plan: Optional[str]) -> str:
    return f"limit:name:{name}:{plan if plan is not None else '~'}"


def usage_cache_key(subject_id: str, limit_id: str) -> str:
    return f"usage:{subject_id}:{limit_id}"


class LimitCache(ABC):
    """Abstract interface for the limit cache"""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        pass

    @abstractmethod
    def invalidate(self, key: str) -> None:
        pass

    @abstractmethod
    def clear(self) -> None:
        pass


class NullLimitCache(LimitCache):
    """Cache that stores nothing; every read is a miss"""

    def get(self, key: str) -> Optional[Any]:
        return None

    def set(self, key: str, value: Any) -> None:
        pass

    def invalidate(self, key: str) -> None:
        pass

    def clear(self) -> None:
        pass


class TTLLimitCache(LimitCache):
    """
    TTL-based in-process cache.

    Entries are evicted after the TTL expires or when the cache is full.
    """

    def __init__(
        self,
        maxsize: int = DEFAULT_CACHE_SIZE,
        ttl: int = DEFAULT_CACHE_TTL,
    ):
        """
        Initialize the cache.

        Args:
            maxsize: Maximum number of entries to cache
            ttl: Time-to-live in seconds for cache entries
        """
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)
        # TTLCache itself is not thread-safe
        self._lock = threading.Lock()

        logger.info(f"Initialized limit cache: maxsize={maxsize}, ttl={ttl}s")

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            value = self._cache.get(key)
        if value is None:
            logger.debug(f"Limit cache miss: {key}")
        else:
            logger.debug(f"Limit cache hit: {key}")
        return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._cache[key] = value

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)
