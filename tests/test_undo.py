"""Tests for the undo ledger."""

from datetime import datetime

import pytest

from shop_scheduler.errors import RecordNotFoundError, UndoConflictError, UndoExpiredError


NINE = datetime(2025, 8, 18, 9, 0)
ONE_PM = datetime(2025, 8, 18, 13, 0)


@pytest.fixture
def displaced(engine, add_job, book):
    """Job A (900) displaced job B (100) from M1/O1 09:00-13:00."""
    add_job("B", [("Mill", 4, "M1")], priority=100)
    book("BKG-B", "B-10", "M1", "O1", NINE, ONE_PM)
    add_job("A", [("Mill", 4, "M1")], priority=900)
    return engine.schedule_job("A", not_before=NINE, deadline=ONE_PM)


def test_undo_displacement_restores_both_jobs(engine, store, displaced) -> None:
    entry = engine.undo(displaced.undo_entry_id)

    assert entry.reversed_at == datetime(2025, 8, 18, 7, 0)
    assert store.get_booking("BKG-B").start == NINE
    assert store.get_operation("B-10").routing_status == "scheduled"
    assert store.get_job("B").status == "scheduled"
    assert store.bookings_for_job("A") == []
    assert store.get_operation("A-10").routing_status == "pending"
    assert store.get_job("A").status == "pending"
    assert engine.validate().is_valid


def test_undo_twice_is_rejected(engine, displaced) -> None:
    engine.undo(displaced.undo_entry_id)

    with pytest.raises(UndoExpiredError):
        engine.undo(displaced.undo_entry_id)


def test_undo_conflicts_after_later_change(engine, store, displaced) -> None:
    booking_id = store.bookings_for_job("A")[0].booking_id
    engine.set_booking_lock(booking_id, True)

    with pytest.raises(UndoConflictError) as excinfo:
        engine.undo(displaced.undo_entry_id)

    assert excinfo.value.changed_jobs == ["A"]
    assert "BKG-B" not in store.bookings
    assert store.get_booking(booking_id).locked


def test_undo_expires_after_retention(engine, clock, displaced) -> None:
    clock.advance(hours=25)

    assert engine.available_undo() == []
    with pytest.raises(UndoExpiredError):
        engine.undo(displaced.undo_entry_id)


def test_available_lists_newest_first(engine, add_job, displaced) -> None:
    add_job("C", [("Mill", 1, "M2")])
    latest = engine.schedule_job("C")

    ids = [e.entry_id for e in engine.available_undo()]

    assert ids == [latest.undo_entry_id, displaced.undo_entry_id]


def test_purge_removes_expired_entries(engine, store, clock, displaced) -> None:
    clock.advance(days=2)

    assert engine.purge_expired_undo() == 1
    assert store.undo_entries == {}
    with pytest.raises(RecordNotFoundError):
        engine.undo(displaced.undo_entry_id)


def test_manual_schedule_is_undoable(engine, store, add_job) -> None:
    add_job("J1", [("Mill", 2, "M1")])
    result = engine.schedule_job("J1")

    entry = engine.undo(result.undo_entry_id)

    assert entry.operation_type == "auto_schedule"
    assert store.bookings == {}
    assert store.get_job("J1").status == "pending"


def test_purge_keeps_reversed_entries(engine, store, clock, displaced) -> None:
    engine.undo(displaced.undo_entry_id)
    clock.advance(days=2)

    assert engine.purge_expired_undo() == 0
    assert store.undo_entries[displaced.undo_entry_id].reversed_at is not None
