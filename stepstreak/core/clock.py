"""Injectable clock and calendar.

All "what day is it" decisions go through a Clock so that algorithms never
read the wall clock directly, and so that the open/finalized boundary at local
midnight is computed in exactly one place.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from stepstreak.data.schemas import DayState


class Clock(ABC):
    """Calendar abstraction bound to the device's local timezone."""

    def __init__(self, tz: ZoneInfo) -> None:
        self.tz = tz

    @abstractmethod
    def now(self) -> datetime:
        """Current local time (timezone-aware)."""

    def today(self) -> date:
        return self.now().date()

    def start_of_day(self, day: date) -> datetime:
        """Local midnight at the start of day."""
        return datetime.combine(day, time.min, tzinfo=self.tz)

    def day_bounds(self, day: date) -> tuple[datetime, datetime]:
        """Half-open [start, end) of a local calendar day."""
        return self.start_of_day(day), self.start_of_day(day + timedelta(days=1))

    def local_date(self, moment: datetime) -> date:
        """Local calendar day of a moment; naive moments are taken as local."""
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=self.tz)
        return moment.astimezone(self.tz).date()

    def day_state(self, day: date) -> DayState:
        """Today (or later) is open; every earlier day is finalized."""
        return DayState.OPEN if day >= self.today() else DayState.FINALIZED

    def days_ago(self, day: date) -> int:
        return (self.today() - day).days

    def period_of(self, day: date) -> str:
        """Recurring shield grant period (calendar month) containing day."""
        return f"{day.year:04d}-{day.month:02d}"

    def current_period(self) -> str:
        return self.period_of(self.today())

    def next_period_start(self) -> date:
        today = self.today()
        if today.month == 12:
            return date(today.year + 1, 1, 1)
        return date(today.year, today.month + 1, 1)


class SystemClock(Clock):
    """Wall clock in a named timezone."""

    def __init__(self, timezone: str = "UTC") -> None:
        super().__init__(ZoneInfo(timezone))

    def now(self) -> datetime:
        return datetime.now(UTC).astimezone(self.tz)


class FixedClock(Clock):
    """Manually driven clock for tests and replays."""

    def __init__(self, moment: datetime, timezone: str = "UTC") -> None:
        super().__init__(ZoneInfo(timezone))
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=self.tz)
        self._now = moment.astimezone(self.tz)

    def now(self) -> datetime:
        return self._now

    def set(self, moment: datetime) -> None:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=self.tz)
        self._now = moment.astimezone(self.tz)

    def advance(self, delta: timedelta) -> None:
        self._now = self._now + delta
