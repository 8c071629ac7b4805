"""Tests for re-planning around operator time off."""

from datetime import date, datetime

from shop_scheduler.models import TimeOff


TUESDAY_10 = datetime(2025, 8, 19, 10, 0)
TUESDAY_NOON = datetime(2025, 8, 19, 12, 0)


def _alert_types(store) -> list[str]:
    return [a.alert_type for a in store.alerts]


def test_in_progress_work_moves_to_return_date(engine, store, add_job, book) -> None:
    add_job("J1", [("Mill", 2, "M1")])
    book("BKG-J1", "J1-10", "M1", "O1", TUESDAY_10, TUESDAY_NOON)
    engine.start_operation("J1-10")

    result = engine.add_time_off(TimeOff("TOFF-1", "O1", date(2025, 8, 18), date(2025, 8, 20)))

    assert result.shifted == ["BKG-J1"]
    booking = store.get_booking("BKG-J1")
    assert booking.start == datetime(2025, 8, 21, 10, 0)
    assert booking.end == datetime(2025, 8, 21, 12, 0)
    assert booking.operator_id == "O1"
    assert booking.status == "in_progress"
    assert "in_progress_shifted" in _alert_types(store)
    assert result.record.trigger_type == "time_off"
    assert result.record.time_off_id == "TOFF-1"


def test_shifted_work_evicts_what_is_in_the_way(engine, store, add_job, book) -> None:
    add_job("J1", [("Mill", 2, "M1")], priority=500)
    add_job("K1", [("Mill", 4, "M1")], priority=100)
    book("BKG-J1", "J1-10", "M1", "O1", TUESDAY_10, TUESDAY_NOON)
    book("BKG-K1", "K1-10", "M1", "O2", datetime(2025, 8, 20, 9), datetime(2025, 8, 20, 13))
    engine.start_operation("J1-10")

    result = engine.add_time_off(TimeOff("TOFF-1", "O1", date(2025, 8, 19), date(2025, 8, 19)))

    assert store.get_booking("BKG-J1").start == datetime(2025, 8, 20, 10, 0)
    assert "BKG-K1" not in store.bookings
    assert store.get_operation("K1-10").routing_status == "needs_rescheduling"
    assert [d.job_id for d in result.record.displaced] == ["K1"]


def test_qualified_substitute_takes_over(engine, store, add_job, book) -> None:
    add_job("J1", [("Mill", 2, "M1")])
    book("BKG-J1", "J1-10", "M1", "O1", TUESDAY_10, TUESDAY_NOON)

    result = engine.add_time_off(TimeOff("TOFF-1", "O1", date(2025, 8, 19), date(2025, 8, 19)))

    assert result.substituted == {"BKG-J1": "O2"}
    booking = store.get_booking("BKG-J1")
    assert booking.operator_id == "O2"
    assert (booking.start, booking.end) == (TUESDAY_10, TUESDAY_NOON)
    assert engine.validate().is_valid


def test_no_substitute_unschedules_with_alert(engine, store, add_job, book) -> None:
    add_job("J1", [("Mill", 2, "M2")])
    book("BKG-J1", "J1-10", "M2", "O1", TUESDAY_10, TUESDAY_NOON)

    result = engine.add_time_off(TimeOff("TOFF-1", "O1", date(2025, 8, 19), date(2025, 8, 19)))

    assert result.unscheduled == ["J1-10"]
    assert "BKG-J1" not in store.bookings
    assert store.get_operation("J1-10").routing_status == "needs_rescheduling"
    alert = next(a for a in store.alerts if a.alert_type == "no_substitute_found")
    assert alert.severity == "medium"
    assert alert.details["time_off_id"] == "TOFF-1"


def test_locked_booking_is_flagged_not_moved(engine, store, add_job, book) -> None:
    add_job("J1", [("Mill", 2, "M2")])
    book("BKG-J1", "J1-10", "M2", "O1", TUESDAY_10, TUESDAY_NOON, locked=True)

    result = engine.add_time_off(TimeOff("TOFF-1", "O1", date(2025, 8, 19), date(2025, 8, 19)))

    assert result.flagged == ["BKG-J1"]
    assert store.get_booking("BKG-J1").start == TUESDAY_10
    alert = store.alerts[-1]
    assert alert.alert_type == "locked_job_operator_unavailable"
    assert alert.severity == "critical"


def test_unapproved_time_off_changes_nothing(engine, store, add_job, book) -> None:
    add_job("J1", [("Mill", 2, "M1")])
    book("BKG-J1", "J1-10", "M1", "O1", TUESDAY_10, TUESDAY_NOON)

    result = engine.add_time_off(
        TimeOff("TOFF-1", "O1", date(2025, 8, 19), date(2025, 8, 19), approved=False)
    )

    assert result.record is None
    assert result.undo_entry_id is None
    assert store.get_booking("BKG-J1").operator_id == "O1"
    assert "TOFF-1" in store.time_off


def test_time_off_outside_bookings_records_nothing(engine, store, add_job, book) -> None:
    add_job("J1", [("Mill", 2, "M1")])
    book("BKG-J1", "J1-10", "M1", "O1", TUESDAY_10, TUESDAY_NOON)

    result = engine.add_time_off(TimeOff("TOFF-1", "O1", date(2025, 8, 25), date(2025, 8, 26)))

    assert result.record is None
    assert store.displacement_history == []


def test_time_off_undo_restores_bookings(engine, store, add_job, book) -> None:
    add_job("J1", [("Mill", 2, "M1")])
    book("BKG-J1", "J1-10", "M1", "O1", TUESDAY_10, TUESDAY_NOON)
    result = engine.add_time_off(TimeOff("TOFF-1", "O1", date(2025, 8, 19), date(2025, 8, 19)))

    engine.undo(result.undo_entry_id)

    assert store.get_booking("BKG-J1").operator_id == "O1"
    # The absence itself stays recorded
    assert "TOFF-1" in store.time_off
