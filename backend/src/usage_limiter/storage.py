"""Storage port for limits and usage states.

This module provides a storage abstraction layer that supports:
- In-memory storage for development and tests
- DynamoDB storage for production (see dynamodb_storage.py)

Every write is a compare-and-swap on the record's version, so a
read-modify-write cycle either commits completely or fails with
StorageConflictError and can be retried from a fresh read.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from .config import LimitsConfig
from .exceptions import StorageConflictError
from .models import LimitRecord, UsageState, utcnow

logger = logging.getLogger(__name__)


def limit_key(limit_id: str) -> str:
    return f"LIMIT#{limit_id}"


def identity_key(name: str, plan: Optional[str]) -> str:
    # "~" stands for the default plan so it cannot collide with a plan name
    return f"LIMIT_NAME#{name}#PLAN#{plan if plan is not None else '~'}"


def usage_key(subject_id: str, limit_id: str) -> str:
    return f"SUBJECT#{subject_id}#LIMIT#{limit_id}"


class LimitStorage(ABC):
    """Abstract interface for limit and usage state persistence"""

    @abstractmethod
    async def save_limit(
        self,
        record: LimitRecord,
        expected_version: Optional[int] = None
    ) -> LimitRecord:
        """
        Persist a limit record.

        Args:
            record: Record to write, carrying its new version
            expected_version: None to insert (the id and the live name/plan
                pair must both be free); otherwise the stored version the
                write is conditional on

        Returns:
            The stored record

        Raises:
            StorageConflictError: If the condition does not hold
        """
        pass

    @abstractmethod
    async def load_limit_by_name_and_plan(
        self,
        name: str,
        plan: Optional[str]
    ) -> Optional[LimitRecord]:
        """Live (not soft-deleted) record with exactly this name and plan"""
        pass

    @abstractmethod
    async def load_limit_by_id(self, limit_id: str) -> Optional[LimitRecord]:
        """Record by id, including soft-deleted ones"""
        pass

    @abstractmethod
    async def list_limits(self) -> List[LimitRecord]:
        """All records, including soft-deleted ones"""
        pass

    @abstractmethod
    async def soft_delete_limit(self, limit_id: str) -> Optional[LimitRecord]:
        """
        Mark a record deleted and release its name/plan pair.

        Returns:
            The deleted record, or None if no live record has this id
        """
        pass

    @abstractmethod
    async def save_usage_state(
        self,
        state: UsageState,
        expected_version: Optional[int] = None
    ) -> UsageState:
        """
        Persist a usage state.

        Args:
            state: State to write, carrying its new version
            expected_version: None to insert; otherwise the stored version
                the write is conditional on

        Raises:
            StorageConflictError: If the condition does not hold
        """
        pass

    @abstractmethod
    async def load_usage_state(
        self,
        subject_id: str,
        limit_id: str
    ) -> Optional[UsageState]:
        pass

    @abstractmethod
    async def list_usage_states(self, subject_id: str) -> List[UsageState]:
        """All usage states of one subject"""
        pass


class InMemoryLimitStorage(LimitStorage):
    """In-memory storage (for single-instance/local development and tests)"""

    def __init__(self):
        self._limits: Dict[str, LimitRecord] = {}
        # identity key -> limit_id of the live record
        self._identities: Dict[str, str] = {}
        self._usage: Dict[Tuple[str, str], UsageState] = {}
        self._lock = threading.Lock()

    async def save_limit(
        self,
        record: LimitRecord,
        expected_version: Optional[int] = None
    ) -> LimitRecord:
        with self._lock:
            current = self._limits.get(record.limit_id)
            identity = identity_key(record.name, record.plan)

            if expected_version is None:
                if current is not None or identity in self._identities:
                    raise StorageConflictError(identity)
            else:
                if current is None or current.version != expected_version:
                    raise StorageConflictError(limit_key(record.limit_id), expected_version)
                owner = self._identities.get(identity)
                if owner is not None and owner != record.limit_id:
                    raise StorageConflictError(identity, expected_version)
                # The name or plan may have changed on update
                old_identity = identity_key(current.name, current.plan)
                if self._identities.get(old_identity) == record.limit_id:
                    del self._identities[old_identity]

            stored = record.model_copy(deep=True)
            self._limits[record.limit_id] = stored
            if not stored.is_deleted:
                self._identities[identity] = record.limit_id
            return stored.model_copy(deep=True)

    async def load_limit_by_name_and_plan(
        self,
        name: str,
        plan: Optional[str]
    ) -> Optional[LimitRecord]:
        with self._lock:
            limit_id = self._identities.get(identity_key(name, plan))
            if limit_id is None:
                return None
            return self._limits[limit_id].model_copy(deep=True)

    async def load_limit_by_id(self, limit_id: str) -> Optional[LimitRecord]:
        with self._lock:
            record = self._limits.get(limit_id)
            return record.model_copy(deep=True) if record else None

    async def list_limits(self) -> List[LimitRecord]:
        with self._lock:
            return [record.model_copy(deep=True) for record in self._limits.values()]

    async def soft_delete_limit(self, limit_id: str) -> Optional[LimitRecord]:
        with self._lock:
            record = self._limits.get(limit_id)
            if record is None or record.is_deleted:
                return None

            now = utcnow()
            deleted = record.model_copy(update={
                "deleted_at": now,
                "updated_at": now,
                "version": record.version + 1,
            })
            self._limits[limit_id] = deleted
            self._identities.pop(identity_key(record.name, record.plan), None)
            return deleted.model_copy(deep=True)

    async def save_usage_state(
        self,
        state: UsageState,
        expected_version: Optional[int] = None
    ) -> UsageState:
        key = (state.subject_id, state.limit_id)
        with self._lock:
            current = self._usage.get(key)
            if expected_version is None:
                if current is not None:
                    raise StorageConflictError(usage_key(*key))
            elif current is None or current.version != expected_version:
                raise StorageConflictError(usage_key(*key), expected_version)

            self._usage[key] = state.model_copy(deep=True)
            return state.model_copy(deep=True)

    async def load_usage_state(
        self,
        subject_id: str,
        limit_id: str
    ) -> Optional[UsageState]:
        with self._lock:
            state = self._usage.get((subject_id, limit_id))
            return state.model_copy(deep=True) if state else None

    async def list_usage_states(self, subject_id: str) -> List[UsageState]:
        with self._lock:
            return [
                state.model_copy(deep=True)
                for (owner, _), state in self._usage.items()
                if owner == subject_id
            ]


def create_limit_storage(config: Optional[LimitsConfig] = None) -> LimitStorage:
    """
    Create appropriate storage based on configuration.

    Returns:
        LimitStorage instance (DynamoDB if configured, otherwise in-memory)
    """
    config = config or LimitsConfig.from_env()

    if config.storage_backend == "dynamodb":
        from .dynamodb_storage import DynamoDBLimitStorage
        return DynamoDBLimitStorage(config)

    logger.info(
        "LIMITS_STORAGE_BACKEND is not 'dynamodb'. Using in-memory limit storage. "
        "This will not work in distributed deployments."
    )
    return InMemoryLimitStorage()
