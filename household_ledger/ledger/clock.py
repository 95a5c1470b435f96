"""
Time source for everything that asks "is it due today?".

Scheduling and billing never read the wall clock directly; they are
handed a Clock, so tests and replays can pin the date.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Optional


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Current moment as a naive UTC datetime."""
        pass

    def today(self) -> date:
        return self.now().date()


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock(Clock):
    """A clock that only moves when told to."""

    def __init__(self, moment: Optional[datetime | date] = None):
        self._moment = self._coerce(moment or datetime(2024, 1, 1, 12, 0))

    @staticmethod
    def _coerce(moment: datetime | date) -> datetime:
        if isinstance(moment, datetime):
            return moment.replace(tzinfo=None)
        return datetime(moment.year, moment.month, moment.day, 12, 0)

    def now(self) -> datetime:
        return self._moment

    def set(self, moment: datetime | date) -> None:
        self._moment = self._coerce(moment)

    def advance(self, days: int = 0, **kwargs) -> None:
        self._moment += timedelta(days=days, **kwargs)
