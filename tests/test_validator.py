"""Tests for whole-schedule validation."""

from datetime import datetime

import pytest

from shop_scheduler.dependencies import DependencyResolver
from shop_scheduler.errors import InvariantViolationError
from shop_scheduler.models import Booking
from shop_scheduler.validator import assert_job_invariants, validate_schedule


def _at(hour: int, day: int = 18) -> datetime:
    return datetime(2025, 8, day, hour, 0)


def test_clean_schedule_is_valid(engine, add_job) -> None:
    add_job("J", [("Mill", 2, "M1"), ("Mill", 2, "M2")])
    engine.schedule_job("J")

    result = validate_schedule(engine.store, engine.config)

    assert result.is_valid
    assert result.errors == []
    assert result.warnings == []


def test_out_of_order_operations(store, config, add_job, book) -> None:
    add_job("J", [("Mill", 2, "M1"), ("Mill", 2, "M2")])
    book("BKG-2", "J-20", "M2", "O1", _at(8), _at(10))
    book("BKG-1", "J-10", "M1", "O1", _at(10), _at(12))

    result = validate_schedule(store, config)

    assert not result.is_valid
    assert [e.job_id for e in result.errors_of("sequence")] == ["J"]


def test_wrong_machine(store, config, add_job, book) -> None:
    add_job("J", [("Mill", 2, "M1")])
    book("BKG-1", "J-10", "M2", "O1", _at(8), _at(10))

    result = validate_schedule(store, config)

    issue = result.errors_of("machine_requirement")[0]
    assert issue.booking_ids == ["BKG-1"]


def test_override_skips_machine_and_shift_checks(store, config, add_job, book) -> None:
    add_job("J", [("Mill", 2, "M1")])
    book("BKG-1", "J-10", "M2", "O1", _at(8, day=23), _at(10, day=23), method="override")

    result = validate_schedule(store, config)

    assert result.is_valid
    assert result.warnings == []


def test_weekend_work_is_a_warning(store, config, add_job, book) -> None:
    add_job("J", [("Mill", 2, "M1")])
    book("BKG-1", "J-10", "M1", "O1", _at(8, day=23), _at(10, day=23))

    result = validate_schedule(store, config)

    assert result.is_valid
    assert [w.kind for w in result.warnings] == ["outside_shift"]


def test_component_finishing_after_parent_starts(store, config, add_job, book) -> None:
    add_job("P1", [("Assemble", 2, "M1")], job_type="assembly_parent")
    add_job("C1", [("Mill", 2, "M2")], job_type="assembly_component", parent_job_id="P1")
    book("BKG-P", "P1-10", "M1", "O1", _at(8), _at(10))
    book("BKG-C", "C1-10", "M2", "O1", _at(10), _at(12))

    result = validate_schedule(store, config)

    assert [e.job_id for e in result.errors_of("assembly")] == ["P1"]


def test_scheduled_parent_with_unscheduled_component(store, config, add_job, book) -> None:
    add_job("P1", [("Assemble", 2, "M1")], job_type="assembly_parent")
    add_job("C1", [("Mill", 2, "M2")], job_type="assembly_component", parent_job_id="P1")
    book("BKG-P", "P1-10", "M1", "O1", _at(8), _at(10))

    result = validate_schedule(store, config)

    assert not result.is_valid
    assert [e.job_id for e in result.errors_of("assembly")] == ["P1"]


def test_overlap_inserted_behind_the_store(store, config, add_job, book) -> None:
    add_job("J1", [("Mill", 2, "M1")])
    add_job("J2", [("Mill", 2, "M1")])
    book("BKG-1", "J1-10", "M1", "O1", _at(8), _at(10))
    store.bookings["BKG-2"] = Booking("BKG-2", "J2", "J2-10", "M1", "O2", _at(9), _at(11))

    result = validate_schedule(store, config)

    overlap = result.errors_of("machine_overlap")[0]
    assert overlap.booking_ids == ["BKG-1", "BKG-2"]
    assert result.errors_of("operator_overlap") == []


def test_bookings_awaiting_replacement_do_not_overlap(store, config, add_job, book) -> None:
    add_job("J1", [("Mill", 2, "M1")])
    add_job("J2", [("Mill", 2, "M1")])
    book("BKG-1", "J1-10", "M1", "O1", _at(8), _at(10))
    store.bookings["BKG-2"] = Booking(
        "BKG-2", "J2", "J2-10", "M1", "O2", _at(9), _at(11), status="needs_rescheduling"
    )

    assert validate_schedule(store, config).errors_of("machine_overlap") == []


def test_assert_job_invariants_raises(store, config, add_job, book) -> None:
    add_job("J", [("Mill", 2, "M1"), ("Mill", 2, "M2")])
    book("BKG-2", "J-20", "M2", "O1", _at(8), _at(10))
    book("BKG-1", "J-10", "M1", "O1", _at(10), _at(12))

    with pytest.raises(InvariantViolationError) as excinfo:
        assert_job_invariants(store, DependencyResolver(store, config), ["J", "missing"])

    assert excinfo.value.invariant == "sequence"
