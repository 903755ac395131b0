from __future__ import annotations
from datetime import date, datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Clock:
    """Injectable time source."""

    def now(self) -> datetime:
        return utcnow()

    def today(self) -> date:
        return self.now().date()


class FixedClock(Clock):
    """Clock frozen at a given instant; `advance` moves it forward."""

    def __init__(self, current: datetime | date) -> None:
        self.set(current)

    def set(self, current: datetime | date) -> None:
        if not isinstance(current, datetime):
            current = datetime(current.year, current.month, current.day, 6, 0, tzinfo=timezone.utc)
        elif current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        self._now = current

    def advance(self, **delta) -> None:
        self._now = self._now + timedelta(**delta)

    def now(self) -> datetime:
        return self._now
