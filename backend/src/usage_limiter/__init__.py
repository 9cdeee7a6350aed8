"""Usage limits: plan-scoped allowances that can be consumed, restored and reset."""

from .models import (
    ResetFrequency,
    LimitRecord,
    UsageState,
    UsageReportItem,
)
from .exceptions import (
    LimitError,
    InvalidArgumentError,
    LimitNotFoundError,
    LimitAlreadyExistsError,
    LimitExhaustedError,
    StorageError,
    StorageTimeoutError,
    StorageConflictError,
)
from .config import LimitsConfig
from .scheduler import ResetScheduler
from .engine import ConsumptionEngine
from .storage import LimitStorage, InMemoryLimitStorage, create_limit_storage
from .cache import LimitCache, TTLLimitCache, NullLimitCache
from .repository import LimitRepository
from .tracker import UsageTracker

__all__ = [
    "ResetFrequency",
    "LimitRecord",
    "UsageState",
    "UsageReportItem",
    "LimitError",
    "InvalidArgumentError",
    "LimitNotFoundError",
    "LimitAlreadyExistsError",
    "LimitExhaustedError",
    "StorageError",
    "StorageTimeoutError",
    "StorageConflictError",
    "LimitsConfig",
    "ResetScheduler",
    "ConsumptionEngine",
    "LimitStorage",
    "InMemoryLimitStorage",
    "create_limit_storage",
    "LimitCache",
    "TTLLimitCache",
    "NullLimitCache",
    "LimitRepository",
    "UsageTracker",
]
