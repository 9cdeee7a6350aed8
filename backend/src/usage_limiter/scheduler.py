"""Calendar-aware reset schedule for limits."""

from datetime import datetime
from typing import Dict, Optional, Union
import logging

from dateutil.relativedelta import relativedelta

from .models import ResetFrequency, to_utc

logger = logging.getLogger(__name__)

# Month-based steps use relativedelta, which clamps to the end of the
# target month (Jan 31 + 1 month = Feb 28/29)
RESET_INTERVALS: Dict[ResetFrequency, relativedelta] = {
    ResetFrequency.EVERY_SECOND: relativedelta(seconds=1),
    ResetFrequency.EVERY_MINUTE: relativedelta(minutes=1),
    ResetFrequency.EVERY_HOUR: relativedelta(hours=1),
    ResetFrequency.EVERY_DAY: relativedelta(days=1),
    ResetFrequency.EVERY_WEEK: relativedelta(weeks=1),
    ResetFrequency.EVERY_TWO_WEEKS: relativedelta(weeks=2),
    ResetFrequency.EVERY_MONTH: relativedelta(months=1),
    ResetFrequency.EVERY_QUARTER: relativedelta(months=3),
    ResetFrequency.EVERY_SIX_MONTHS: relativedelta(months=6),
    ResetFrequency.EVERY_YEAR: relativedelta(years=1),
}


class ResetScheduler:
    """
    Computes reset boundaries for limit frequencies.

    Resets are evaluated lazily when usage is read or written; there is no
    background timer. All arithmetic is done in UTC: naive datetimes are
    treated as UTC and aware ones are converted before stepping.
    """

    def next_reset_at(
        self,
        frequency: Union[ResetFrequency, str, None],
        from_: datetime
    ) -> Optional[datetime]:
        """
        Next reset boundary strictly after from_.

        Returns None when the frequency is missing or "never".
        """
        frequency = ResetFrequency.parse(frequency)
        if frequency is None or not frequency.recurring:
            return None

        return to_utc(from_) + RESET_INTERVALS[frequency]

    def is_due(
        self,
        last_reset_at: Optional[datetime],
        frequency: Union[ResetFrequency, str, None],
        now: datetime
    ) -> bool:
        """Whether a reset recorded at last_reset_at is due at now"""
        if last_reset_at is None:
            return False

        next_reset = self.next_reset_at(frequency, last_reset_at)
        if next_reset is None:
            return False

        due = to_utc(now) >= next_reset
        if due:
            logger.debug(f"Reset due: last={last_reset_at.isoformat()}, next={next_reset.isoformat()}")
        return due
