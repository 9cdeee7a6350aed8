"""Unit and property-based tests for ConsumptionEngine."""

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from hypothesis import given, settings
from hypothesis import strategies as st
from usage_limiter.engine import ConsumptionEngine
from usage_limiter.exceptions import InvalidArgumentError, LimitExhaustedError
from usage_limiter.models import LimitRecord, ResetFrequency, UsageState

FIXED_NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)

amounts = st.decimals(min_value=0, max_value=10_000, places=2, allow_nan=False, allow_infinity=False)
positive_amounts = st.decimals(
    min_value=Decimal("0.01"), max_value=10_000, places=2, allow_nan=False, allow_infinity=False
)


def make_record(allowed=5, name="locations", plan="standard") -> LimitRecord:
    return LimitRecord(
        limit_id="limit-1",
        name=name,
        plan=plan,
        allowed_amount=allowed,
        reset_frequency=ResetFrequency.EVERY_MONTH,
        version=1,
    )


def make_state(remaining, subject_id="user-1") -> UsageState:
    return UsageState(
        subject_id=subject_id,
        limit_id="limit-1",
        remaining_amount=remaining,
        last_reset_at=datetime(2025, 6, 1, tzinfo=timezone.utc),
    )


@pytest.fixture
def engine():
    """Create an engine with a fixed clock"""
    return ConsumptionEngine(clock=lambda: FIXED_NOW)


@pytest.fixture
def record():
    """Create a sample limit with an allowance of 5"""
    return make_record()


# ========== Allowance ==========

def test_increment_allowance(engine, record):
    """Test that incrementing raises the ceiling without touching the input"""
    updated = engine.increment_allowance(record, 2.5)

    assert updated.allowed_amount == Decimal("7.5")
    assert updated.updated_at == FIXED_NOW
    assert record.allowed_amount == Decimal("5")


@pytest.mark.parametrize("amount", [0, -1, Decimal("-0.5")])
def test_increment_allowance_requires_positive_amount(engine, record, amount):
    """Test that non-positive increments are rejected"""
    with pytest.raises(InvalidArgumentError):
        engine.increment_allowance(record, amount)


def test_decrement_allowance(engine, record):
    """Test that decrementing lowers the ceiling"""
    updated = engine.decrement_allowance(record, 2)

    assert updated.allowed_amount == Decimal("3")


def test_decrement_allowance_to_zero(engine, record):
    """Test that the ceiling may reach exactly zero"""
    assert engine.decrement_allowance(record, 5).allowed_amount == 0


def test_decrement_allowance_below_zero_fails(engine, record):
    """Test that overdrawing the ceiling raises and leaves the record untouched"""
    with pytest.raises(InvalidArgumentError):
        engine.decrement_allowance(record, 6)

    assert record.allowed_amount == Decimal("5")


# ========== Usage state ==========

def test_new_state_starts_fresh(engine, record):
    """Test that a new state has the full allowance remaining"""
    state = engine.new_state("user-1", record)

    assert state.subject_id == "user-1"
    assert state.limit_id == record.limit_id
    assert state.remaining_amount == Decimal("5")
    assert state.last_reset_at == FIXED_NOW
    assert state.version == 0


def test_consume(engine, record):
    """Test that consuming lowers the remaining amount"""
    state = engine.consume(make_state(5), record, 3)

    assert state.remaining_amount == Decimal("2")
    assert engine.remaining(state) == Decimal("2")
    assert engine.used(state, record) == Decimal("3")


def test_consume_exactly_remaining_exhausts(engine, record):
    """Test that consuming everything leaves the state exhausted"""
    state = engine.consume(make_state(5), record, 5)

    assert engine.is_exhausted(state) is True
    assert engine.has_enough(state, 1) is False


def test_consume_insufficient_raises(engine, record):
    """Test that consuming more than remaining raises LimitExhaustedError"""
    state = make_state(2)

    with pytest.raises(LimitExhaustedError) as exc_info:
        engine.consume(state, record, 3)

    assert exc_info.value.name == "locations"
    assert exc_info.value.plan == "standard"
    assert exc_info.value.subject_id == "user-1"
    assert exc_info.value.requested == Decimal("3")
    assert exc_info.value.remaining == Decimal("2")
    assert state.remaining_amount == Decimal("2")


@pytest.mark.parametrize("amount", [0, -2])
def test_consume_requires_positive_amount(engine, record, amount):
    """Test that non-positive consumption is rejected"""
    with pytest.raises(InvalidArgumentError):
        engine.consume(make_state(5), record, amount)


def test_consume_respects_lowered_ceiling(engine):
    """Test that a state written before a decrement is capped to the new ceiling"""
    record = make_record(allowed=2)

    with pytest.raises(LimitExhaustedError):
        engine.consume(make_state(5), record, 3)

    assert engine.consume(make_state(5), record, 2).remaining_amount == 0


def test_restore_clamps_to_ceiling(engine, record):
    """Test that restoring never exceeds the allowance"""
    state = engine.restore(make_state(4), record, 3)

    assert state.remaining_amount == Decimal("5")


def test_reset(engine, record):
    """Test that reset restores the full allowance and stamps the time"""
    state = engine.reset(make_state(0), record)

    assert state.remaining_amount == Decimal("5")
    assert state.last_reset_at == FIXED_NOW


def test_lifecycle_scenario(engine, record):
    """Test consume 3, fail consume 3, restore 1, reset on a limit of 5"""
    state = engine.new_state("user-1", record)

    state = engine.consume(state, record, 3)
    assert engine.remaining(state) == 2

    with pytest.raises(LimitExhaustedError):
        engine.consume(state, record, 3)
    assert engine.remaining(state) == 2

    state = engine.restore(state, record, 1)
    assert engine.remaining(state) == 3

    state = engine.reset(state, record)
    assert engine.remaining(state) == 5


# ========== Properties ==========

@settings(max_examples=100)
@given(allowed=amounts, consumed_ratio=st.floats(min_value=0, max_value=1), extra=positive_amounts)
def test_consume_over_remaining_never_mutates(allowed, consumed_ratio, extra):
    """Property: amount > remaining always raises and leaves remaining unchanged"""
    engine = ConsumptionEngine(clock=lambda: FIXED_NOW)
    record = make_record(allowed=allowed)
    remaining = (allowed * Decimal(str(consumed_ratio))).quantize(Decimal("0.01"))
    remaining = min(remaining, allowed)
    state = make_state(remaining)

    with pytest.raises(LimitExhaustedError):
        engine.consume(state, record, remaining + extra)

    assert state.remaining_amount == remaining


@settings(max_examples=100)
@given(allowed=amounts, restores=st.lists(positive_amounts, min_size=1, max_size=20))
def test_restores_never_exceed_allowance(allowed, restores):
    """Property: any sequence of restores keeps remaining <= allowed"""
    engine = ConsumptionEngine(clock=lambda: FIXED_NOW)
    record = make_record(allowed=allowed)
    state = make_state(0)

    for amount in restores:
        state = engine.restore(state, record, amount)
        assert Decimal("0") <= state.remaining_amount <= record.allowed_amount


@settings(max_examples=100)
@given(allowed=amounts, extra=positive_amounts)
def test_decrement_beyond_allowance_always_fails(allowed, extra):
    """Property: decrementing by more than the allowance fails without mutation"""
    engine = ConsumptionEngine(clock=lambda: FIXED_NOW)
    record = make_record(allowed=allowed)

    with pytest.raises(InvalidArgumentError):
        engine.decrement_allowance(record, allowed + extra)

    assert record.allowed_amount == allowed


@settings(max_examples=100)
@given(allowed=positive_amounts, amounts_=st.lists(positive_amounts, min_size=1, max_size=20))
def test_consume_keeps_remaining_in_bounds(allowed, amounts_):
    """Property: successful and failed consumes keep 0 <= remaining <= allowed"""
    engine = ConsumptionEngine(clock=lambda: FIXED_NOW)
    record = make_record(allowed=allowed)
    state = engine.new_state("user-1", record)

    for amount in amounts_:
        try:
            state = engine.consume(state, record, amount)
        except LimitExhaustedError:
            pass
        assert Decimal("0") <= state.remaining_amount <= record.allowed_amount
