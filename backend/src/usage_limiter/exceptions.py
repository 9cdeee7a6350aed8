"""Exceptions raised by the usage limiter."""

from decimal import Decimal
from typing import Any, Dict, Optional, Union


class LimitError(Exception):
    """Base exception for usage limiter errors."""

    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class InvalidArgumentError(LimitError, ValueError):
    """Raised for a malformed limit spec, a negative ceiling or a non-positive amount."""
    pass


class LimitNotFoundError(LimitError):
    """Raised when no live limit matches the given name/plan or id."""

    def __init__(
        self,
        name: Optional[str] = None,
        plan: Optional[str] = None,
        limit_id: Optional[str] = None,
    ):
        self.name = name
        self.plan = plan
        self.limit_id = limit_id

        if limit_id is not None:
            message = f"Limit with id '{limit_id}' does not exist"
        elif plan:
            message = f"Limit '{name}' with plan '{plan}' does not exist"
        else:
            message = f"Limit '{name}' does not exist"

        super().__init__(
            message,
            details={"name": name, "plan": plan, "limit_id": limit_id},
        )


class LimitAlreadyExistsError(LimitError):
    """Raised by strict creation when a live limit with the same name and plan exists."""

    def __init__(self, name: str, plan: Optional[str] = None):
        self.name = name
        self.plan = plan

        if plan:
            message = f"Limit '{name}' with plan '{plan}' already exists"
        else:
            message = f"Limit '{name}' already exists"

        super().__init__(message, details={"name": name, "plan": plan})


class LimitExhaustedError(LimitError):
    """
    Raised when a consumption would overdraw the remaining allowance.

    This is an expected business outcome; callers should treat it as a
    normal branch rather than a fault.
    """

    def __init__(
        self,
        name: str,
        requested: Union[Decimal, int, float],
        remaining: Union[Decimal, int, float],
        plan: Optional[str] = None,
        subject_id: Optional[str] = None,
    ):
        self.name = name
        self.plan = plan
        self.subject_id = subject_id
        self.requested = requested
        self.remaining = remaining

        label = f"'{name}' ({plan})" if plan else f"'{name}'"
        message = f"Limit {label} exhausted: requested {requested}, remaining {remaining}"

        super().__init__(
            message,
            details={
                "name": name,
                "plan": plan,
                "subject_id": subject_id,
                "requested": str(requested),
                "remaining": str(remaining),
            },
        )


class StorageError(LimitError):
    """Base exception for storage port failures."""
    pass


class StorageTimeoutError(StorageError):
    """Raised when a storage call does not complete within the configured timeout."""

    retryable = True

    def __init__(self, operation: str, timeout_seconds: float, key: Optional[str] = None):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        self.key = key
        super().__init__(
            f"Storage operation '{operation}' timed out after {timeout_seconds}s",
            details={"operation": operation, "timeout_seconds": timeout_seconds, "key": key},
        )


class StorageConflictError(StorageError):
    """Raised when a compare-and-swap write loses against a concurrent writer."""

    retryable = True

    def __init__(self, key: str, expected_version: Optional[int] = None):
        self.key = key
        self.expected_version = expected_version

        if expected_version is None:
            message = f"Conflicting insert for {key}"
        else:
            message = f"Version conflict for {key} (expected version {expected_version})"

        super().__init__(
            message,
            details={"key": key, "expected_version": expected_version},
        )
