"""Calendar-month billing periods keyed as YYYY-MM.

All period math is done in UTC so the key for a given instant never depends
on the host's local timezone.
"""

import re
from calendar import monthrange
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel, ConfigDict

from botflow_billing.exceptions import InvalidBillingPeriodError
from botflow_billing.models.billing import UTCDateTime, ensure_utc

_PERIOD_KEY_RE = re.compile(r"(\d{4})-(0[1-9]|1[0-2])")


class BillingPeriod(BaseModel):
    """A calendar month window [start, end] with its canonical key."""

    model_config = ConfigDict(frozen=True)

    start: UTCDateTime
    end: UTCDateTime  # Last microsecond of the month
    key: str

    @classmethod
    def for_month(cls, year: int, month: int) -> "BillingPeriod":
        try:
            start = datetime(year, month, 1, tzinfo=UTC)
        except ValueError as e:
            raise InvalidBillingPeriodError(f"{year:04d}-{month:02d}") from e
        last_day = monthrange(year, month)[1]
        end = datetime(year, month, last_day, 23, 59, 59, 999999, tzinfo=UTC)
        return cls(start=start, end=end, key=f"{year:04d}-{month:02d}")

    def contains(self, moment: datetime) -> bool:
        return self.start <= ensure_utc(moment) <= self.end

    def previous(self) -> "BillingPeriod":
        return period_for(self.start - timedelta(microseconds=1))

    def next(self) -> "BillingPeriod":
        return period_for(self.end + timedelta(microseconds=1))


def period_for(moment: datetime) -> BillingPeriod:
    """Get the billing period containing a moment (naive values are UTC)."""
    moment = ensure_utc(moment)
    return BillingPeriod.for_month(moment.year, moment.month)


def current_period(now: datetime | None = None) -> BillingPeriod:
    """Get the billing period for now."""
    return period_for(now or datetime.now(UTC))


def parse_period_key(key: str) -> BillingPeriod:
    """Parse a YYYY-MM key into a billing period.

    Raises:
        InvalidBillingPeriodError: If the key is malformed
    """
    match = _PERIOD_KEY_RE.fullmatch(key)
    if not match:
        raise InvalidBillingPeriodError(key)
    return BillingPeriod.for_month(int(match.group(1)), int(match.group(2)))


def previous_period(now: datetime | None = None) -> BillingPeriod:
    """Get the most recently closed billing period."""
    return current_period(now).previous()
