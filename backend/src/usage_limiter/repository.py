"""Repository for limit records and usage states."""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

from .cache import (
    LimitCache,
    NullLimitCache,
    TTLLimitCache,
    limit_id_cache_key,
    limit_name_cache_key,
    usage_cache_key,
)
from .config import LimitsConfig
from .exceptions import (
    InvalidArgumentError,
    LimitAlreadyExistsError,
    LimitNotFoundError,
    StorageConflictError,
    StorageTimeoutError,
)
from .models import LimitRecord, ResetFrequency, UsageState, to_decimal, utcnow
from .storage import LimitStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")

ANY_PLAN = object()


def normalize_plan(plan: Optional[str]) -> Optional[str]:
    """Blank plans mean the default (unscoped) plan"""
    if plan is None or not str(plan).strip():
        return None
    return plan


class LimitRepository:
    """
    Creates, finds and updates limits with (name, plan) uniqueness.

    Limit lookups go through the cache port and fall back to storage on a
    miss. Usage states are always read from storage. Every storage call is
    bounded by the configured timeout.
    """

    def __init__(
        self,
        storage: LimitStorage,
        config: Optional[LimitsConfig] = None,
        cache: Optional[LimitCache] = None
    ):
        self.storage = storage
        self.config = config or LimitsConfig()

        if cache is None:
            if self.config.cache_ttl_seconds > 0:
                cache = TTLLimitCache(
                    maxsize=self.config.cache_maxsize,
                    ttl=self.config.cache_ttl_seconds,
                )
            else:
                cache = NullLimitCache()
        self.cache = cache

    async def _bounded(self, operation: str, key: str, call: Awaitable[T]) -> T:
        """Await a storage call, surfacing StorageTimeoutError past the timeout"""
        timeout = self.config.storage_timeout_seconds
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"Storage {operation} timed out after {timeout}s for {key}")
            raise StorageTimeoutError(operation, timeout, key)

    # ========== Validation ==========

    @staticmethod
    def validate_spec(data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate and normalize a limit creation spec.

        Accepts snake_case or camelCase keys. Returns a dict with name,
        plan, allowed_amount and reset_frequency (None when not given).

        Raises:
            InvalidArgumentError: If name or allowed amount is missing, the
                amount is not a non-negative number, or the reset frequency
                is not one of the known values
        """
        if not isinstance(data, dict):
            raise InvalidArgumentError("Limit spec should be a dict.")

        name = data.get("name")
        allowed_amount = data.get("allowed_amount", data.get("allowedAmount"))

        if name is None or allowed_amount is None:
            raise InvalidArgumentError('"name" and "allowed_amount" keys are required.')

        if not isinstance(name, str) or not name.strip():
            raise InvalidArgumentError('"name" should be a non-empty string.')

        plan = data.get("plan")
        if plan is not None and not isinstance(plan, str):
            raise InvalidArgumentError('"plan" should be a string or None.', details={"plan": plan})

        try:
            amount = to_decimal(allowed_amount)
        except InvalidArgumentError:
            amount = None
        if amount is None or amount < 0:
            raise InvalidArgumentError(
                '"allowed_amount" should be a float|int type and greater than or equal to 0.',
                details={"allowed_amount": allowed_amount},
            )

        frequency = ResetFrequency.parse(
            data.get("reset_frequency", data.get("resetFrequency"))
        )

        return {
            "name": name,
            "plan": normalize_plan(plan),
            "allowed_amount": amount,
            "reset_frequency": frequency,
        }

    # ========== Limits ==========

    async def create(self, data: Dict[str, Any]) -> LimitRecord:
        """Create a limit, failing with LimitAlreadyExistsError if it exists"""
        return await self._find_or_create(data, strict=True)

    async def find_or_create(self, data: Dict[str, Any]) -> LimitRecord:
        """Return the live limit with this name and plan, creating it if needed"""
        return await self._find_or_create(data, strict=False)

    async def _find_or_create(self, data: Dict[str, Any], strict: bool) -> LimitRecord:
        spec = self.validate_spec(data)
        name, plan = spec["name"], spec["plan"]

        existing = await self._bounded(
            "load_limit_by_name_and_plan",
            limit_name_cache_key(name, plan),
            self.storage.load_limit_by_name_and_plan(name, plan),
        )
        if existing and strict:
            raise LimitAlreadyExistsError(name, plan)
        if existing:
            return existing

        now = utcnow()
        record = LimitRecord(
            limit_id=str(uuid.uuid4()),
            name=name,
            plan=plan,
            allowed_amount=spec["allowed_amount"],
            reset_frequency=spec["reset_frequency"] or self.config.default_reset_frequency,
            created_at=now,
            updated_at=now,
            version=1,
        )

        try:
            await self._bounded(
                "save_limit",
                limit_name_cache_key(name, plan),
                self.storage.save_limit(record, expected_version=None),
            )
        except StorageConflictError:
            # A concurrent creator won the name/plan pair
            if strict:
                raise LimitAlreadyExistsError(name, plan)
            winner = await self._bounded(
                "load_limit_by_name_and_plan",
                limit_name_cache_key(name, plan),
                self.storage.load_limit_by_name_and_plan(name, plan),
            )
            if winner is None:
                raise
            return winner

        self.cache.invalidate(limit_name_cache_key(name, plan))
        logger.info(
            f"Created limit {name!r} (plan={plan!r}, allowed={record.allowed_amount}, "
            f"reset={record.reset_frequency.value})"
        )
        return record

    async def find_by_name(
        self,
        name: str,
        plan: Optional[str] = None,
        use_cache: bool = True
    ) -> LimitRecord:
        """
        Find the live limit with exactly this name and plan.

        No plan matches only limits on the default plan. With use_cache
        False the record is read from storage and the cache is refreshed.
        """
        plan = normalize_plan(plan)
        key = limit_name_cache_key(name, plan)

        if use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                return cached.model_copy()

        record = await self._bounded(
            "load_limit_by_name_and_plan",
            key,
            self.storage.load_limit_by_name_and_plan(name, plan),
        )
        if record is None or record.is_deleted:
            self.cache.invalidate(key)
            raise LimitNotFoundError(name=name, plan=plan)

        self.cache.set(key, record.model_copy())
        return record

    async def find_by_id(self, limit_id: str) -> LimitRecord:
        key = limit_id_cache_key(limit_id)

        cached = self.cache.get(key)
        if cached is not None:
            return cached.model_copy()

        record = await self._bounded("load_limit_by_id", key, self.storage.load_limit_by_id(limit_id))
        if record is None or record.is_deleted:
            raise LimitNotFoundError(limit_id=limit_id)

        self.cache.set(key, record.model_copy())
        return record

    async def refresh(self, record: LimitRecord) -> LimitRecord:
        """Re-read a limit from storage, bypassing the cache"""
        self._invalidate_limit(record)
        return await self.find_by_id(record.limit_id)

    async def list_limits(self, plan: Any = ANY_PLAN, include_deleted: bool = False) -> List[LimitRecord]:
        """
        List limits sorted by name and plan.

        Args:
            plan: Only limits on this plan (None for the default plan);
                all plans when omitted
            include_deleted: Include soft-deleted limits
        """
        records = await self._bounded("list_limits", "limits", self.storage.list_limits())

        if not include_deleted:
            records = [r for r in records if not r.is_deleted]
        if plan is not ANY_PLAN:
            plan = normalize_plan(plan)
            records = [r for r in records if r.plan == plan]

        return sorted(records, key=lambda r: (r.name, r.plan or ""))

    async def save(self, record: LimitRecord, expected_version: int) -> LimitRecord:
        """
        Write an updated limit if the stored version is still expected_version.

        Raises:
            StorageConflictError: If another writer updated the limit first
        """
        updated = record.model_copy(update={
            "version": expected_version + 1,
            "updated_at": utcnow(),
        })

        try:
            await self._bounded(
                "save_limit",
                limit_id_cache_key(record.limit_id),
                self.storage.save_limit(updated, expected_version=expected_version),
            )
        finally:
            self._invalidate_limit(record)

        return updated

    async def delete(self, name: str, plan: Optional[str] = None) -> LimitRecord:
        """Soft-delete a limit; its name and plan become free for a new limit"""
        record = await self.find_by_name(name, plan)

        try:
            deleted = await self._bounded(
                "soft_delete_limit",
                limit_id_cache_key(record.limit_id),
                self.storage.soft_delete_limit(record.limit_id),
            )
        finally:
            self._invalidate_limit(record)

        if deleted is None:
            raise LimitNotFoundError(name=record.name, plan=record.plan)

        logger.info(f"Soft-deleted limit {record.name!r} (plan={record.plan!r})")
        return deleted

    def _invalidate_limit(self, record: LimitRecord) -> None:
        self.cache.invalidate(limit_id_cache_key(record.limit_id))
        self.cache.invalidate(limit_name_cache_key(record.name, record.plan))

    # ========== Usage states ==========

    async def get_usage_state(self, subject_id: str, limit_id: str) -> Optional[UsageState]:
        """Load a usage state from storage (never from the cache)"""
        return await self._bounded(
            "load_usage_state",
            usage_cache_key(subject_id, limit_id),
            self.storage.load_usage_state(subject_id, limit_id),
        )

    async def save_usage_state(self, state: UsageState, expected_version: Optional[int]) -> UsageState:
        """
        Write a usage state if the stored version is still expected_version.

        expected_version None means the state must not exist yet.

        Raises:
            StorageConflictError: If another writer got there first
        """
        updated = state.model_copy(update={"version": (expected_version or 0) + 1})
        key = usage_cache_key(state.subject_id, state.limit_id)

        try:
            await self._bounded(
                "save_usage_state",
                key,
                self.storage.save_usage_state(updated, expected_version=expected_version),
            )
        finally:
            self.cache.invalidate(key)

        return updated

    async def list_usage_states(self, subject_id: str) -> List[UsageState]:
        return await self._bounded(
            "list_usage_states",
            f"usage:{subject_id}",
            self.storage.list_usage_states(subject_id),
        )
