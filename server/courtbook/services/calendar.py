"""Calendar oracle: business hours and working days."""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterable, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import ValidationError
from ..models.holiday import Holiday
from ..schemas.calendar import BusinessHours

SUNDAY = 6

# A year of consecutive closures means the calendar is misconfigured
MAX_LOOKAHEAD_DAYS = 366


class HolidayProvider(Protocol):
    """Read interface over whatever stores the holiday calendar."""

    def is_holiday(self, day: date) -> bool:
        ...

    def is_recurring(self, day: date) -> bool:
        ...


@dataclass(frozen=True)
class HolidayCalendar:
    """
    Immutable holiday snapshot.

    ``dates`` holds one-off closures; ``recurring`` holds (month, day) pairs
    that close the facility in every year.
    """

    dates: frozenset = field(default_factory=frozenset)
    recurring: frozenset = field(default_factory=frozenset)

    def is_holiday(self, day: date) -> bool:
        return day in self.dates or (day.month, day.day) in self.recurring

    def is_recurring(self, day: date) -> bool:
        return (day.month, day.day) in self.recurring

    @classmethod
    def from_holidays(cls, holidays: Iterable[Holiday]) -> "HolidayCalendar":
        dates = set()
        recurring = set()
        for holiday in holidays:
            if holiday.is_recurring:
                recurring.add((holiday.holiday_date.month, holiday.holiday_date.day))
            else:
                dates.add(holiday.holiday_date)
        return cls(dates=frozenset(dates), recurring=frozenset(recurring))

    @classmethod
    async def load(cls, db: AsyncSession) -> "HolidayCalendar":
        """Snapshot the holiday table once per request or sweep."""
        result = await db.execute(select(Holiday))
        return cls.from_holidays(result.scalars())


class CalendarOracle:
    """
    Answers business-hours questions for one snapshot of hours and holidays.

    Sundays are never working days.
    """

    def __init__(self, hours: BusinessHours, holidays: HolidayProvider | None = None):
        self.hours = hours
        self.holidays = holidays if holidays is not None else HolidayCalendar()

    def is_within_business_hours(self, instant: datetime) -> bool:
        return self.hours.start_hour <= instant.hour < self.hours.end_hour

    def is_working_day(self, day: date) -> bool:
        if isinstance(day, datetime):
            day = day.date()
        if day.weekday() == SUNDAY:
            return False
        return not self.holidays.is_holiday(day)

    def next_working_day(self, day: date) -> date:
        """
        First working day on or after ``day``.

        Raises:
            ValidationError: If no working day exists within a year
        """
        if isinstance(day, datetime):
            day = day.date()
        candidate = day
        for _ in range(MAX_LOOKAHEAD_DAYS + 1):
            if self.is_working_day(candidate):
                return candidate
            candidate += timedelta(days=1)
        raise ValidationError(
            detail=f"No working day within {MAX_LOOKAHEAD_DAYS} days of {day.isoformat()}"
        )
