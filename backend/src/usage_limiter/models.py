"""Core domain models for the usage limiter."""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import InvalidArgumentError

Amount = Union[Decimal, int, float, str]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_decimal(value: Any) -> Decimal:
    """
    Convert a numeric value to Decimal.

    Floats go through str() so 0.1 stays 0.1. Booleans and non-numeric
    strings are rejected with InvalidArgumentError.
    """
    if isinstance(value, bool):
        raise InvalidArgumentError(f"Expected a number, got {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise InvalidArgumentError(f"Expected a number, got {value!r}")
    else:
        raise InvalidArgumentError(f"Expected a number, got {value!r}")

    if not result.is_finite():
        raise InvalidArgumentError(f"Expected a finite number, got {value!r}")
    return result


class ResetFrequency(str, Enum):
    """How often a limit's usage is restored to its full allowance"""
    EVERY_SECOND = "every second"
    EVERY_MINUTE = "every minute"
    EVERY_HOUR = "every hour"
    EVERY_DAY = "every day"
    EVERY_WEEK = "every week"
    EVERY_TWO_WEEKS = "every two weeks"
    EVERY_MONTH = "every month"
    EVERY_QUARTER = "every quarter"
    EVERY_SIX_MONTHS = "every six months"
    EVERY_YEAR = "every year"
    NEVER = "never"

    @classmethod
    def parse(cls, value: Union["ResetFrequency", str, None]) -> Optional["ResetFrequency"]:
        """
        Parse a frequency value.

        Returns None for missing or blank input so the caller can apply its
        configured default. Unknown values raise InvalidArgumentError.
        """
        if value is None:
            return None
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            if not value.strip():
                return None
            try:
                return cls(value.strip())
            except ValueError:
                pass

        allowed = ", ".join(f.value for f in cls)
        raise InvalidArgumentError(
            f'Invalid "reset_frequency" value {value!r}. '
            f"Value should be one of the following: {allowed}",
            details={"reset_frequency": value},
        )

    @property
    def recurring(self) -> bool:
        return self is not ResetFrequency.NEVER


class LimitRecord(BaseModel):
    """A named, optionally plan-scoped allowance"""
    model_config = ConfigDict(populate_by_name=True)

    limit_id: str = Field(..., alias="limitId")
    name: str
    plan: Optional[str] = None

    # Stored as Decimal for exact arithmetic and DynamoDB compatibility
    allowed_amount: Decimal = Field(..., alias="allowedAmount", ge=0)
    reset_frequency: ResetFrequency = Field(
        default=ResetFrequency.NEVER,
        alias="resetFrequency"
    )

    # Metadata
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    updated_at: datetime = Field(default_factory=utcnow, alias="updatedAt")
    deleted_at: Optional[datetime] = Field(None, alias="deletedAt")
    version: int = Field(default=0, ge=0)

    @field_validator('allowed_amount', mode='before')
    @classmethod
    def convert_to_decimal(cls, v):
        """Convert float/int to Decimal for DynamoDB compatibility"""
        if isinstance(v, (int, float, str)) and not isinstance(v, bool):
            return to_decimal(v)
        return v

    @field_validator('plan', mode='before')
    @classmethod
    def blank_plan_is_default(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator('created_at', 'updated_at', 'deleted_at')
    @classmethod
    def ensure_utc(cls, v):
        return to_utc(v) if v is not None else v

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def identity(self) -> Tuple[str, Optional[str]]:
        return self.name, self.plan


class UsageState(BaseModel):
    """A subject's remaining allowance against one limit"""
    model_config = ConfigDict(populate_by_name=True)

    subject_id: str = Field(..., alias="subjectId")
    limit_id: str = Field(..., alias="limitId")
    remaining_amount: Decimal = Field(..., alias="remainingAmount")
    last_reset_at: datetime = Field(default_factory=utcnow, alias="lastResetAt")
    updated_at: datetime = Field(default_factory=utcnow, alias="updatedAt")

    # 0 until the state has been persisted once
    version: int = Field(default=0, ge=0)

    @field_validator('remaining_amount', mode='before')
    @classmethod
    def convert_to_decimal(cls, v):
        """Convert float/int to Decimal for DynamoDB compatibility"""
        if isinstance(v, (int, float, str)) and not isinstance(v, bool):
            return to_decimal(v)
        return v

    @field_validator('last_reset_at', 'updated_at')
    @classmethod
    def ensure_utc(cls, v):
        return to_utc(v)


class UsageReportItem(BaseModel):
    """One row of a subject's usage report"""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    plan: Optional[str] = None
    allowed_amount: Decimal = Field(..., alias="allowedAmount")
    used_amount: Decimal = Field(..., alias="usedAmount")
    remaining_amount: Decimal = Field(..., alias="remainingAmount")
    reset_frequency: ResetFrequency = Field(..., alias="resetFrequency")
    last_reset_at: datetime = Field(..., alias="lastResetAt")
    next_reset_at: Optional[datetime] = Field(None, alias="nextResetAt")
