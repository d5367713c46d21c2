"""
Time handling.

All timestamps inside LevelRisk are naive datetimes in UTC. Aware values are
converted at the boundary. The clock is injectable so evaluation instants are
reproducible in tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize a datetime to naive UTC (aware values are converted)."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into naive UTC. Raises ValueError."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return to_naive_utc(datetime.fromisoformat(text))


def format_ts(value: datetime) -> str:
    """Human-facing timestamp, minute precision."""
    return value.strftime("%Y-%m-%d %H:%M UTC")


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from start to end, rounded half up."""
    seconds = (end - start).total_seconds()
    return int(seconds // 60 + (1 if seconds % 60 >= 30 else 0))


class FixedClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime):
        self.now = to_naive_utc(now)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> None:
        self.now = to_naive_utc(now)
