"""Tests for operator working window resolution."""

from datetime import date, datetime, time

import pytest

from shop_scheduler.constants import EngineConfig
from shop_scheduler.errors import ConfigurationError
from shop_scheduler.models import ScheduleEntry, TimeOff
from shop_scheduler.shift_calendar import CalendarResolver


MONDAY = date(2025, 8, 18)
TUESDAY = date(2025, 8, 19)
SATURDAY = date(2025, 8, 23)


def test_default_weekday_window(store, config) -> None:
    window = CalendarResolver(store, config).window_for("O1", MONDAY)

    assert window.is_working_day
    assert window.source == "default"
    assert window.start == datetime(2025, 8, 18, 8, 0)
    assert window.end == datetime(2025, 8, 18, 17, 0)
    assert window.duration_minutes == 540


def test_saturday_is_not_working_by_default(store, config) -> None:
    window = CalendarResolver(store, config).window_for("O1", SATURDAY)

    assert not window.is_working_day
    assert window.source == "default"
    assert window.duration_minutes == 0


def test_night_pattern_crosses_midnight(store, config) -> None:
    store.get_operator("O1").shift_pattern = "Night"

    window = CalendarResolver(store, config).window_for("O1", MONDAY)

    assert window.is_overnight
    assert window.source == "shift_pattern"
    assert window.start == datetime(2025, 8, 18, 18, 0)
    assert window.end == datetime(2025, 8, 19, 6, 0)
    assert window.duration_hours == 12


def test_overnight_tail_counts_as_available(store, config) -> None:
    store.get_operator("O1").shift_pattern = "Night"
    calendar = CalendarResolver(store, config)

    assert calendar.is_available("O1", datetime(2025, 8, 19, 2, 0), datetime(2025, 8, 19, 4, 0))
    assert not calendar.is_available("O1", datetime(2025, 8, 19, 8, 0), datetime(2025, 8, 19, 9, 0))


def test_date_override_beats_weekday_entry(store, config) -> None:
    store.add_schedule_entry(ScheduleEntry("O1", time(7, 0), time(15, 0), weekday=1))
    store.add_schedule_entry(ScheduleEntry("O1", time(10, 0), time(14, 0), on_date=TUESDAY))

    window = CalendarResolver(store, config).window_for("O1", TUESDAY)

    assert window.source == "date_override"
    assert window.start == datetime(2025, 8, 19, 10, 0)
    assert window.end == datetime(2025, 8, 19, 14, 0)


def test_date_override_can_mark_day_off(store, config) -> None:
    store.add_schedule_entry(
        ScheduleEntry("O1", time(8, 0), time(17, 0), on_date=TUESDAY, is_working_day=False)
    )

    window = CalendarResolver(store, config).window_for("O1", TUESDAY)

    assert not window.is_working_day
    assert window.source == "date_override"


def test_latest_effective_weekday_entry_wins(store, config) -> None:
    store.add_schedule_entry(
        ScheduleEntry("O1", time(7, 0), time(15, 0), weekday=0, effective_date=date(2025, 8, 1))
    )
    store.add_schedule_entry(
        ScheduleEntry("O1", time(9, 0), time(18, 0), weekday=0, effective_date=date(2025, 8, 11))
    )
    calendar = CalendarResolver(store, config)

    current = calendar.window_for("O1", MONDAY)
    earlier = calendar.window_for("O1", date(2025, 8, 4))

    assert current.start == datetime(2025, 8, 18, 9, 0)
    assert current.source == "weekday_schedule"
    assert earlier.start == datetime(2025, 8, 4, 7, 0)


def test_weekday_entry_makes_saturday_working(store, config) -> None:
    store.add_schedule_entry(ScheduleEntry("O1", time(6, 0), time(12, 0), weekday=5))

    window = CalendarResolver(store, config).window_for("O1", SATURDAY)

    assert window.is_working_day
    assert window.duration_hours == 6


def test_approved_time_off_beats_everything(store, config) -> None:
    store.add_schedule_entry(ScheduleEntry("O1", time(10, 0), time(14, 0), on_date=TUESDAY))
    store.add_time_off(TimeOff("TOFF-1", "O1", MONDAY, TUESDAY))

    window = CalendarResolver(store, config).window_for("O1", TUESDAY)

    assert not window.is_working_day
    assert window.source == "time_off"


def test_unapproved_time_off_is_ignored(store, config) -> None:
    store.add_time_off(TimeOff("TOFF-1", "O1", MONDAY, TUESDAY, approved=False))

    window = CalendarResolver(store, config).window_for("O1", MONDAY)

    assert window.is_working_day
    assert window.source == "default"


def test_holiday_is_not_working(store) -> None:
    config = EngineConfig(holidays={date(2025, 8, 20)})

    window = CalendarResolver(store, config).window_for("O2", date(2025, 8, 20))

    assert not window.is_working_day
    assert window.source == "holiday"


def test_shift_pattern_beats_custom_hours(store, config) -> None:
    operator = store.get_operator("O1")
    operator.shift_pattern = "Swing"
    operator.custom_start = time(6, 0)
    operator.custom_end = time(10, 0)

    window = CalendarResolver(store, config).window_for("O1", MONDAY)

    assert window.source == "shift_pattern"
    assert window.start == datetime(2025, 8, 18, 14, 0)


def test_custom_hours_replace_default(store, config) -> None:
    operator = store.get_operator("O2")
    operator.custom_start = time(6, 0)
    operator.custom_end = time(14, 30)
    calendar = CalendarResolver(store, config)

    window = calendar.window_for("O2", MONDAY)

    assert window.source == "custom_hours"
    assert window.end == datetime(2025, 8, 18, 14, 30)
    assert not calendar.window_for("O2", SATURDAY).is_working_day


def test_unknown_shift_pattern_raises(store, config) -> None:
    store.get_operator("O1").shift_pattern = "Graveyard"

    with pytest.raises(ConfigurationError):
        CalendarResolver(store, config).window_for("O1", MONDAY)


def test_windows_between_skips_days_off(store, config) -> None:
    windows = CalendarResolver(store, config).windows_between("O1", MONDAY, date(2025, 8, 24))

    assert [w.day for w in windows] == [date(2025, 8, d) for d in range(18, 23)]
