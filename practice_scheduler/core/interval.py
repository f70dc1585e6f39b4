"""Half-open time interval value type."""

from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from practice_scheduler.core.exceptions import InvalidIntervalException


def minutes_half_up(delta: timedelta) -> int:
    """Length of *delta* in minutes, halves rounded up (90 s is 2 minutes)."""
    return int((Decimal(delta.total_seconds()) / 60).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def to_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Interval(BaseModel):
    """A time range ``[start, end)``.

    Both bounds are stored in UTC so overlap arithmetic happens in absolute
    time regardless of the display timezone of the appointment.
    """

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def normalize_timezone(cls, v: datetime) -> datetime:
        """Convert bounds to UTC."""
        return to_utc(v)

    @model_validator(mode="after")
    def check_positive_duration(self) -> "Interval":
        """Reject empty and inverted ranges."""
        if self.end <= self.start:
            raise InvalidIntervalException("End time must be after start time")
        return self

    @classmethod
    def from_duration(cls, start: datetime, minutes: int) -> "Interval":
        """Build an interval of *minutes* starting at *start*."""
        return cls(start=start, end=start + timedelta(minutes=minutes))

    def overlaps(self, other: "Interval") -> bool:
        """Return True if the intervals share any instant.

        An interval ending exactly when the other begins does not overlap.
        """
        return self.start < other.end and other.start < self.end

    def duration_minutes(self) -> int:
        """Length of the interval in minutes, halves rounded up."""
        return minutes_half_up(self.end - self.start)

    def is_whole_minutes(self) -> bool:
        """True if the length has no leftover seconds."""
        return (self.end - self.start) % timedelta(minutes=1) == timedelta(0)

    def as_dict(self) -> dict[str, Any]:
        """Serialize for log fields."""
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}
