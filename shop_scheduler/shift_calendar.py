# Resolve operator working windows for the scheduling engine.
# Version: 1.0.0
# Folds time off, holidays, schedule entries, shift patterns and custom hours into one window per day.

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from .constants import EngineConfig
from .models import Operator, ScheduleEntry
from .store import ScheduleStore


@dataclass(frozen=True)
class WorkingWindow:
    """Working window of one operator on one calendar day.

    An overnight window starts on `day` and ends on the following day.

    Attributes:
        operator_id: Operator the window belongs to.
        day: Calendar day the window starts on.
        start: Window start, None when not working.
        end: Window end, None when not working.
        is_working_day: False when the operator does not work that day.
        is_overnight: True when the window crosses midnight.
        source: Which rule produced the window (time_off, holiday,
            date_override, weekday_schedule, shift_pattern, custom_hours,
            default).
    """
    operator_id: str
    day: date
    start: datetime | None
    end: datetime | None
    is_working_day: bool
    is_overnight: bool
    source: str

    @property
    def duration_minutes(self) -> int:
        if not self.is_working_day or self.start is None or self.end is None:
            return 0
        return int((self.end - self.start).total_seconds() // 60)

    @property
    def duration_hours(self) -> float:
        return self.duration_minutes / 60

    def contains(self, start: datetime, end: datetime) -> bool:
        """Check if [start, end) lies entirely inside this window."""
        if not self.is_working_day or self.start is None or self.end is None:
            return False
        return self.start <= start and end <= self.end

    @classmethod
    def non_working(cls, operator_id: str, day: date, source: str) -> "WorkingWindow":
        return cls(operator_id, day, None, None, False, False, source)

    @classmethod
    def from_times(
        cls,
        operator_id: str,
        day: date,
        start: time,
        end: time,
        source: str
    ) -> "WorkingWindow":
        """Build a working window, rolling the end into the next day when overnight."""
        is_overnight = end <= start
        window_start = datetime.combine(day, start)
        end_day = day + timedelta(days=1) if is_overnight else day
        window_end = datetime.combine(end_day, end)
        return cls(operator_id, day, window_start, window_end, True, is_overnight, source)


class CalendarResolver:
    """Compute operator working windows from calendar data.

    Resolution order, first match wins:
        1. approved time off covering the day (non-working)
        2. plant holiday (non-working)
        3. explicit schedule entry for the day: a date override, else the
           latest effective weekday entry
        4. assigned shift pattern
        5. operator custom hours
        6. default weekday window from configuration

    The resolver only reads the store.
    """

    def __init__(self, store: ScheduleStore, config: EngineConfig) -> None:
        self.store = store
        self.config = config

    def window_for(self, operator_id: str, day: date) -> WorkingWindow:
        """Get the working window of an operator on a day.

        Args:
            operator_id: Operator identifier.
            day: Calendar day.

        Returns:
            WorkingWindow for that day.

        Raises:
            RecordNotFoundError: If the operator does not exist.
            ConfigurationError: If the operator's shift pattern is unknown.
        """
        operator = self.store.get_operator(operator_id)

        for time_off in self.store.time_off_for(operator_id):
            if time_off.approved and time_off.covers(day):
                return WorkingWindow.non_working(operator_id, day, "time_off")

        if self.config.is_holiday(day):
            return WorkingWindow.non_working(operator_id, day, "holiday")

        entry, source = self._schedule_entry_for(operator_id, day)
        if entry is not None:
            if not entry.is_working_day:
                return WorkingWindow.non_working(operator_id, day, source)
            return WorkingWindow.from_times(operator_id, day, entry.start, entry.end, source)

        return self._pattern_window(operator, day)

    def _schedule_entry_for(self, operator_id: str, day: date) -> tuple[ScheduleEntry | None, str]:
        entries = self.store.schedule_entries_for(operator_id)

        overrides = [e for e in entries if e.on_date == day]
        if overrides:
            return overrides[-1], "date_override"

        weekly = [
            e for e in entries
            if e.weekday == day.weekday()
            and (e.effective_date is None or e.effective_date <= day)
        ]
        if weekly:
            # Stable sort keeps the most recently added entry last among equals
            weekly.sort(key=lambda e: e.effective_date or date.min)
            return weekly[-1], "weekday_schedule"

        return None, ""

    def _pattern_window(self, operator: Operator, day: date) -> WorkingWindow:
        if operator.shift_pattern:
            pattern = self.config.get_shift_pattern(operator.shift_pattern)
            if day.weekday() not in pattern.working_weekdays:
                return WorkingWindow.non_working(operator.operator_id, day, "shift_pattern")
            return WorkingWindow.from_times(
                operator.operator_id, day, pattern.start, pattern.end, "shift_pattern"
            )

        if day.weekday() not in self.config.default_working_weekdays:
            source = "custom_hours" if operator.has_custom_hours else "default"
            return WorkingWindow.non_working(operator.operator_id, day, source)

        if operator.has_custom_hours:
            return WorkingWindow.from_times(
                operator.operator_id, day, operator.custom_start, operator.custom_end, "custom_hours"
            )

        return WorkingWindow.from_times(
            operator.operator_id,
            day,
            self.config.default_shift_start,
            self.config.default_shift_end,
            "default",
        )

    def windows_between(self, operator_id: str, first_day: date, last_day: date) -> list[WorkingWindow]:
        """Get working windows for every day in an inclusive range."""
        windows = []
        day = first_day
        while day <= last_day:
            window = self.window_for(operator_id, day)
            if window.is_working_day:
                windows.append(window)
            day += timedelta(days=1)
        return windows

    def is_available(self, operator_id: str, start: datetime, end: datetime) -> bool:
        """Check if [start, end) lies inside one of the operator's windows.

        The previous day is checked as well so overnight windows count.
        """
        day = start.date() - timedelta(days=1)
        while day <= start.date():
            if self.window_for(operator_id, day).contains(start, end):
                return True
            day += timedelta(days=1)
        return False
