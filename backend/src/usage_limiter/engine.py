"""State transitions for limits and usage states.

Every operation returns a new model and leaves its inputs untouched, so a
failed transition never leaves partially-updated state behind. No I/O.
"""

from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from .exceptions import InvalidArgumentError, LimitExhaustedError
from .models import Amount, LimitRecord, UsageState, to_decimal, utcnow

ZERO = Decimal("0")


def _positive(amount: Amount) -> Decimal:
    value = to_decimal(amount)
    if value <= 0:
        raise InvalidArgumentError(
            '"amount" should be greater than 0.',
            details={"amount": str(value)},
        )
    return value


class ConsumptionEngine:
    """Pure transitions over (LimitRecord, UsageState) pairs"""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or utcnow

    # ========== Allowance (ceiling) ==========

    def increment_allowance(self, record: LimitRecord, amount: Amount = 1) -> LimitRecord:
        """Raise the ceiling by a positive amount"""
        value = _positive(amount)
        return record.model_copy(update={
            "allowed_amount": record.allowed_amount + value,
            "updated_at": self.clock(),
        })

    def decrement_allowance(self, record: LimitRecord, amount: Amount = 1) -> LimitRecord:
        """Lower the ceiling; the result may not go below zero"""
        allowed = record.allowed_amount - to_decimal(amount)
        if allowed < 0:
            raise InvalidArgumentError(
                '"allowed_amount" should be greater than or equal to 0.',
                details={
                    "name": record.name,
                    "plan": record.plan,
                    "allowed_amount": str(record.allowed_amount),
                    "amount": str(amount),
                },
            )
        return record.model_copy(update={
            "allowed_amount": allowed,
            "updated_at": self.clock(),
        })

    # ========== Usage state ==========

    def new_state(self, subject_id: str, record: LimitRecord) -> UsageState:
        """Fresh usage state with the full allowance remaining"""
        now = self.clock()
        return UsageState(
            subject_id=subject_id,
            limit_id=record.limit_id,
            remaining_amount=record.allowed_amount,
            last_reset_at=now,
            updated_at=now,
        )

    def consume(self, state: UsageState, record: LimitRecord, amount: Amount = 1) -> UsageState:
        """Take amount from the remaining allowance or raise LimitExhaustedError"""
        value = _positive(amount)
        state = self.clamp(state, record)

        if state.remaining_amount < value:
            raise LimitExhaustedError(
                name=record.name,
                plan=record.plan,
                subject_id=state.subject_id,
                requested=value,
                remaining=state.remaining_amount,
            )

        return state.model_copy(update={
            "remaining_amount": state.remaining_amount - value,
            "updated_at": self.clock(),
        })

    def restore(self, state: UsageState, record: LimitRecord, amount: Amount = 1) -> UsageState:
        """Give amount back, never beyond the ceiling"""
        value = _positive(amount)
        remaining = min(record.allowed_amount, state.remaining_amount + value)
        return state.model_copy(update={
            "remaining_amount": remaining,
            "updated_at": self.clock(),
        })

    def reset(self, state: UsageState, record: LimitRecord) -> UsageState:
        now = self.clock()
        return state.model_copy(update={
            "remaining_amount": record.allowed_amount,
            "last_reset_at": now,
            "updated_at": now,
        })

    def clamp(self, state: UsageState, record: LimitRecord) -> UsageState:
        """Cap remaining to a ceiling that was lowered after the state was written"""
        if state.remaining_amount <= record.allowed_amount:
            return state
        return state.model_copy(update={"remaining_amount": record.allowed_amount})

    # ========== Queries ==========

    def remaining(self, state: UsageState) -> Decimal:
        return max(ZERO, state.remaining_amount)

    def used(self, state: UsageState, record: LimitRecord) -> Decimal:
        return max(ZERO, record.allowed_amount - state.remaining_amount)

    def is_exhausted(self, state: UsageState) -> bool:
        return state.remaining_amount <= 0

    def has_enough(self, state: UsageState, amount: Amount = 1) -> bool:
        return state.remaining_amount >= _positive(amount)
