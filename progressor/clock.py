"""Clock sources.

Everything in the engine asks a clock for the current time instead of
calling ``datetime.now`` directly so tests can drive time by hand.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    """Anything that can supply the current time."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = ensure_utc(start) if start else datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = ensure_utc(value)

    def advance(self, *, days: float = 0, hours: float = 0, minutes: float = 0, seconds: float = 0) -> datetime:
        """Move the clock forward (or backward for negative amounts)."""
        self._now = self._now + timedelta(days=days, hours=hours, minutes=minutes, seconds=seconds)
        return self._now


def ensure_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into aware UTC."""
    if value is None:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(value))


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Render an aware datetime the way it is stored on disk."""
    if value is None:
        return None
    return ensure_utc(value).isoformat().replace("+00:00", "Z")
