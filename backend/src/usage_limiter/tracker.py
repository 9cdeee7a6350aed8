"""Usage tracking for subjects against named limits."""

import asyncio
import logging
import weakref
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from .config import LimitsConfig
from .engine import ConsumptionEngine
from .exceptions import LimitExhaustedError, LimitNotFoundError, StorageConflictError
from .models import Amount, LimitRecord, UsageReportItem, UsageState
from .repository import LimitRepository
from .scheduler import ResetScheduler

logger = logging.getLogger(__name__)

Transition = Callable[[UsageState, LimitRecord], UsageState]


class UsageTracker:
    """
    Consumes, restores and resets a subject's allowance against a limit.

    Each mutation is a read-modify-write of one usage state: load it (or
    start a fresh one), apply a reset if one is due, apply the transition
    and write it back conditional on the version that was read. Writes on
    the same (subject, limit) pair are serialized in-process with a lock;
    writers in other processes are caught by the version check and the
    cycle is retried with exponential backoff.

    Every write attempt re-reads the limit from storage, so a ceiling
    change or deletion made by another instance is never hidden by the
    limit cache. Read-only queries may serve the limit from the cache.
    """

    def __init__(
        self,
        repository: LimitRepository,
        scheduler: Optional[ResetScheduler] = None,
        engine: Optional[ConsumptionEngine] = None,
        config: Optional[LimitsConfig] = None
    ):
        self.repository = repository
        self.scheduler = scheduler or ResetScheduler()
        self.engine = engine or ConsumptionEngine()
        self.config = config or repository.config
        self._locks: "weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    # ========== Mutations ==========

    async def consume(
        self,
        subject_id: str,
        name: str,
        plan: Optional[str] = None,
        amount: Amount = 1
    ) -> Decimal:
        """
        Consume amount of the subject's allowance.

        Returns:
            The remaining amount after consumption

        Raises:
            LimitNotFoundError: If no live limit has this name and plan
            LimitExhaustedError: If the remaining amount is insufficient;
                nothing is written
        """
        try:
            state = await self._mutate(
                subject_id, name, plan,
                lambda state, record: self.engine.consume(state, record, amount),
            )
        except LimitExhaustedError as e:
            logger.warning(
                f"Limit exhausted for subject {subject_id}: {name!r} (plan={plan!r}) "
                f"requested {e.requested}, remaining {e.remaining}"
            )
            raise

        logger.debug(f"Subject {subject_id} consumed {amount} of {name!r}, remaining {state.remaining_amount}")
        return self.engine.remaining(state)

    async def restore(
        self,
        subject_id: str,
        name: str,
        plan: Optional[str] = None,
        amount: Amount = 1
    ) -> Decimal:
        """Give back amount of the subject's allowance, capped at the ceiling"""
        state = await self._mutate(
            subject_id, name, plan,
            lambda state, record: self.engine.restore(state, record, amount),
        )
        return self.engine.remaining(state)

    async def reset_now(self, subject_id: str, name: str, plan: Optional[str] = None) -> Decimal:
        """Restore the full allowance regardless of the reset schedule"""
        state = await self._mutate(subject_id, name, plan, self.engine.reset)
        logger.info(f"Reset {name!r} (plan={plan!r}) for subject {subject_id}")
        return self.engine.remaining(state)

    async def increment(self, name: str, plan: Optional[str] = None, amount: Amount = 1) -> LimitRecord:
        """Raise the limit's ceiling"""
        return await self._mutate_limit(
            name, plan, lambda record: self.engine.increment_allowance(record, amount)
        )

    async def decrement(self, name: str, plan: Optional[str] = None, amount: Amount = 1) -> LimitRecord:
        """Lower the limit's ceiling; it may not go below zero"""
        return await self._mutate_limit(
            name, plan, lambda record: self.engine.decrement_allowance(record, amount)
        )

    # ========== Queries ==========

    async def remaining(self, subject_id: str, name: str, plan: Optional[str] = None) -> Decimal:
        record = await self.repository.find_by_name(name, plan)
        state, _ = await self._current_state(subject_id, record)
        return self.engine.remaining(state)

    async def used(self, subject_id: str, name: str, plan: Optional[str] = None) -> Decimal:
        record = await self.repository.find_by_name(name, plan)
        state, _ = await self._current_state(subject_id, record)
        return self.engine.used(state, record)

    async def is_exhausted(self, subject_id: str, name: str, plan: Optional[str] = None) -> bool:
        record = await self.repository.find_by_name(name, plan)
        state, _ = await self._current_state(subject_id, record)
        return self.engine.is_exhausted(state)

    async def has_enough(
        self,
        subject_id: str,
        name: str,
        plan: Optional[str] = None,
        amount: Amount = 1
    ) -> bool:
        """Whether consume(amount) would currently succeed"""
        record = await self.repository.find_by_name(name, plan)
        state, _ = await self._current_state(subject_id, record)
        return self.engine.has_enough(state, amount)

    async def usage_report(self, subject_id: str) -> List[UsageReportItem]:
        """Usage of every live limit the subject has used, sorted by name and plan"""
        report = []
        for stored in await self.repository.list_usage_states(subject_id):
            try:
                record = await self.repository.find_by_id(stored.limit_id)
            except LimitNotFoundError:
                continue

            state, _ = await self._current_state(subject_id, record, stored=stored)
            report.append(UsageReportItem(
                name=record.name,
                plan=record.plan,
                allowed_amount=record.allowed_amount,
                used_amount=self.engine.used(state, record),
                remaining_amount=self.engine.remaining(state),
                reset_frequency=record.reset_frequency,
                last_reset_at=state.last_reset_at,
                next_reset_at=self.scheduler.next_reset_at(record.reset_frequency, state.last_reset_at),
            ))

        return sorted(report, key=lambda item: (item.name, item.plan or ""))

    # ========== Internals ==========

    def _lock_for(self, subject_id: str, limit_id: str) -> asyncio.Lock:
        key = (subject_id, limit_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _current_state(
        self,
        subject_id: str,
        record: LimitRecord,
        stored: Optional[UsageState] = None
    ) -> Tuple[UsageState, Optional[int]]:
        """
        The subject's state as of now, with any due reset applied.

        Returns:
            Tuple of (state, stored version or None if never persisted)
        """
        if stored is None:
            stored = await self.repository.get_usage_state(subject_id, record.limit_id)
        if stored is None:
            return self.engine.new_state(subject_id, record), None

        state = self.engine.clamp(stored, record)
        if self.scheduler.is_due(state.last_reset_at, record.reset_frequency, self.engine.clock()):
            logger.info(
                f"Applying scheduled {record.reset_frequency.value} reset of {record.name!r} "
                f"(plan={record.plan!r}) for subject {subject_id}"
            )
            state = self.engine.reset(state, record)

        return state, stored.version

    async def _backoff(self, attempt: int) -> None:
        await asyncio.sleep(self.config.retry_backoff_seconds * (2 ** attempt))

    async def _mutate(
        self,
        subject_id: str,
        name: str,
        plan: Optional[str],
        transition: Transition
    ) -> UsageState:
        cached = await self.repository.find_by_name(name, plan)
        lock = self._lock_for(subject_id, cached.limit_id)

        async with lock:
            attempt = 0
            while True:
                # The ceiling and deletion are judged against storage, never the cache
                record = await self.repository.find_by_name(name, plan, use_cache=False)
                state, version = await self._current_state(subject_id, record)
                updated = transition(state, record)
                try:
                    return await self.repository.save_usage_state(updated, expected_version=version)
                except StorageConflictError:
                    if attempt >= self.config.max_retries:
                        logger.warning(
                            f"Giving up on {name!r} (plan={plan!r}) for subject {subject_id} "
                            f"after {attempt + 1} conflicting writes"
                        )
                        raise
                    logger.warning(
                        f"Usage write conflict on {name!r} for subject {subject_id}, "
                        f"retrying (attempt {attempt + 1})"
                    )
                    await self._backoff(attempt)
                    attempt += 1

    async def _mutate_limit(
        self,
        name: str,
        plan: Optional[str],
        transition: Callable[[LimitRecord], LimitRecord]
    ) -> LimitRecord:
        record = await self.repository.find_by_name(name, plan, use_cache=False)

        attempt = 0
        while True:
            updated = transition(record)
            try:
                saved = await self.repository.save(updated, expected_version=record.version)
            except StorageConflictError:
                if attempt >= self.config.max_retries:
                    logger.warning(f"Giving up on {name!r} (plan={plan!r}) after {attempt + 1} conflicting writes")
                    raise
                await self._backoff(attempt)
                attempt += 1
                record = await self.repository.refresh(record)
                continue

            logger.info(
                f"Limit {name!r} (plan={plan!r}) allowance changed "
                f"{record.allowed_amount} -> {saved.allowed_amount}"
            )
            return saved
