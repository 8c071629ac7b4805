"""Tests for free-slot search and chunking."""

from datetime import datetime

import pytest

from shop_scheduler.allocator import SlotChunk, TimeSlotAllocator, ceil_minute, subtract_intervals
from shop_scheduler.constants import EngineConfig
from shop_scheduler.matcher import find_candidates
from shop_scheduler.models import Machine, Operation, Qualification
from shop_scheduler.shift_calendar import CalendarResolver


MONDAY_7AM = datetime(2025, 8, 18, 7, 0)


def _allocator(store, config) -> TimeSlotAllocator:
    return TimeSlotAllocator(store, CalendarResolver(store, config), config)


def _candidate(store, machine_id: str, operator_id: str):
    operation = Operation("X-10", "X", 10, estimated_hours=1, machine_id=machine_id)
    for candidate in find_candidates(store, operation):
        if candidate.operator.operator_id == operator_id:
            return candidate
    raise AssertionError(f"no candidate {machine_id}/{operator_id}")


def test_ceil_minute() -> None:
    assert ceil_minute(datetime(2025, 8, 18, 7, 0, 30)) == datetime(2025, 8, 18, 7, 1)
    assert ceil_minute(datetime(2025, 8, 18, 7, 0)) == datetime(2025, 8, 18, 7, 0)


def test_subtract_intervals() -> None:
    day = datetime(2025, 8, 18)
    window = (day.replace(hour=8), day.replace(hour=17))
    busy = [
        (day.replace(hour=12), day.replace(hour=13)),
        (day.replace(hour=9), day.replace(hour=10)),
    ]

    assert subtract_intervals(window, busy) == [
        (day.replace(hour=8), day.replace(hour=9)),
        (day.replace(hour=10), day.replace(hour=12)),
        (day.replace(hour=13), day.replace(hour=17)),
    ]


def test_contiguous_placement_in_first_window(store, config) -> None:
    placement = _allocator(store, config).place_on_candidate(
        _candidate(store, "M1", "O1"), 120, MONDAY_7AM
    )

    assert placement.chunks == [SlotChunk(datetime(2025, 8, 18, 8), datetime(2025, 8, 18, 10))]
    assert not placement.is_chunked


def test_long_operation_chunks_across_days(store, config) -> None:
    placement = _allocator(store, config).place_on_candidate(
        _candidate(store, "M1", "O1"), 12 * 60, MONDAY_7AM
    )

    assert placement.chunks == [
        SlotChunk(datetime(2025, 8, 18, 8), datetime(2025, 8, 18, 17)),
        SlotChunk(datetime(2025, 8, 19, 8), datetime(2025, 8, 19, 11)),
    ]
    assert placement.wall_minutes == 720


def test_slow_machine_stretches_wall_time(store, config) -> None:
    store.add_machine(Machine("OLD", "Old mill", efficiency_modifier=0.5))
    store.add_qualification(Qualification("O1", "OLD"))

    placement = _allocator(store, config).place_on_candidate(
        _candidate(store, "OLD", "O1"), 120, MONDAY_7AM
    )

    assert placement.start == datetime(2025, 8, 18, 8)
    assert placement.end == datetime(2025, 8, 18, 12)


def test_fast_machine_shortens_wall_time(store, config) -> None:
    placement = _allocator(store, config).place_on_candidate(
        _candidate(store, "M2", "O1"), 300, MONDAY_7AM
    )

    assert placement.wall_minutes == 240
    assert placement.end == datetime(2025, 8, 18, 12)


def test_overnight_operator_uses_tail_of_window(store, config) -> None:
    store.get_operator("O1").shift_pattern = "Night"

    placement = _allocator(store, config).place_on_candidate(
        _candidate(store, "M1", "O1"), 120, datetime(2025, 8, 19, 2, 0)
    )

    assert placement.start == datetime(2025, 8, 19, 2, 0)
    assert placement.end == datetime(2025, 8, 19, 4, 0)


def test_existing_bookings_are_skipped(store, config, add_job, book) -> None:
    add_job("B", [("Mill", 2, "M1")])
    book("BKG-B", "B-10", "M1", "O2", datetime(2025, 8, 18, 8), datetime(2025, 8, 18, 10))

    placement = _allocator(store, config).place_on_candidate(
        _candidate(store, "M1", "O1"), 120, MONDAY_7AM
    )

    assert placement.start == datetime(2025, 8, 18, 10)


def test_excluded_bookings_are_treated_as_free(store, config, add_job, book) -> None:
    add_job("B", [("Mill", 2, "M1")])
    book("BKG-B", "B-10", "M1", "O2", datetime(2025, 8, 18, 8), datetime(2025, 8, 18, 10))

    placement = _allocator(store, config).place_on_candidate(
        _candidate(store, "M1", "O1"), 120, MONDAY_7AM, exclude=frozenset({"BKG-B"})
    )

    assert placement.start == datetime(2025, 8, 18, 8)


def test_latest_end_limits_search(store, config) -> None:
    placement = _allocator(store, config).place_on_candidate(
        _candidate(store, "M1", "O1"), 300, MONDAY_7AM, latest_end=datetime(2025, 8, 18, 12)
    )

    assert placement is None


def test_short_fragments_are_not_used(store, config, add_job, book) -> None:
    add_job("B", [("Mill", 8.8, "M1")])
    book("BKG-B", "B-10", "M1", "O2", datetime(2025, 8, 18, 8, 10), datetime(2025, 8, 18, 17))

    placement = _allocator(store, config).place_on_candidate(
        _candidate(store, "M1", "O1"), 120, MONDAY_7AM
    )

    # The 10-minute gap on Monday morning is too short for a chunk
    assert placement.chunks == [SlotChunk(datetime(2025, 8, 19, 8), datetime(2025, 8, 19, 10))]


def test_chunk_limit_exhausted(store) -> None:
    config = EngineConfig(max_chunks=1)

    placement = _allocator(store, config).place_on_candidate(
        _candidate(store, "M1", "O1"), 12 * 60, MONDAY_7AM
    )

    assert placement is None


@pytest.mark.parametrize("horizon,found", [(1, False), (2, True)])
def test_search_horizon(store, horizon, found) -> None:
    config = EngineConfig(search_horizon_days=horizon)

    placement = _allocator(store, config).place_on_candidate(
        _candidate(store, "M1", "O1"), 12 * 60, MONDAY_7AM
    )

    assert (placement is not None) == found


def test_find_placement_falls_back_to_next_candidate(store, config, add_job, book) -> None:
    add_job("B", [("Mill", 9, "M1")])
    book("BKG-B", "B-10", "M1", "O2", datetime(2025, 8, 18, 8), datetime(2025, 8, 18, 17))
    operation = Operation("X-10", "X", 10, estimated_hours=2, machine_group_id="MILL")

    placement = _allocator(store, config).find_placement(
        find_candidates(store, operation), 120, MONDAY_7AM, latest_end=datetime(2025, 8, 18, 17)
    )

    assert placement.candidate.machine.machine_id == "M2"
    assert placement.start == datetime(2025, 8, 18, 8)


def test_last_chunk_of_a_day_takes_only_the_remainder(store, config, add_job, book) -> None:
    add_job("B", [("Mill", 1.5, "M1")])
    add_job("C", [("Mill", 2, "M1")])
    book("BKG-B", "B-10", "M1", "O2", datetime(2025, 8, 18, 10, 30), datetime(2025, 8, 18, 12))
    book("BKG-C", "C-10", "M1", "O2", datetime(2025, 8, 18, 15), datetime(2025, 8, 18, 17))

    placement = _allocator(store, config).place_on_candidate(
        _candidate(store, "M1", "O1"), 200, MONDAY_7AM
    )

    assert placement.chunks == [
        SlotChunk(datetime(2025, 8, 18, 8), datetime(2025, 8, 18, 10, 30)),
        SlotChunk(datetime(2025, 8, 18, 12), datetime(2025, 8, 18, 12, 50)),
    ]
    assert sum(chunk.minutes for chunk in placement.chunks) == placement.wall_minutes == 200
