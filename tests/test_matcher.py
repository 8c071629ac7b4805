"""Tests for machine/operator candidate matching."""

from datetime import datetime

from shop_scheduler.matcher import eligible_machines, find_candidates
from shop_scheduler.models import Machine, Operation, Operator, Qualification


def _pairs(candidates) -> list[tuple[str, str]]:
    return [(c.machine.machine_id, c.operator.operator_id) for c in candidates]


def test_inactive_specific_machine_has_no_substitute(store) -> None:
    store.get_machine("M1").status = "inactive"
    operation = Operation("J1-10", "J1", 10, estimated_hours=2, machine_id="M1")

    assert eligible_machines(store, operation) == []
    assert find_candidates(store, operation) == []


def test_group_yields_active_members(store) -> None:
    store.get_machine("M2").status = "inactive"
    operation = Operation("J1-10", "J1", 10, estimated_hours=2, machine_group_id="MILL")

    assert [m.machine_id for m in eligible_machines(store, operation)] == ["M1"]


def test_candidates_ranked_by_preference(store) -> None:
    operation = Operation("J1-10", "J1", 10, estimated_hours=2, machine_group_id="MILL")

    candidates = find_candidates(store, operation)

    assert _pairs(candidates) == [("M1", "O1"), ("M2", "O1"), ("M1", "O2")]


def test_inactive_operator_excluded(store) -> None:
    store.get_operator("O2").status = "inactive"
    operation = Operation("J1-10", "J1", 10, estimated_hours=2, machine_id="M1")

    assert _pairs(find_candidates(store, operation)) == [("M1", "O1")]


def test_workload_breaks_ties(store, add_job, book) -> None:
    store.add_qualification(Qualification("O2", "M2", proficiency_level=3, preference_rank=2))
    add_job("B", [("Saw", 2, "SAW1")])
    book("BKG-B", "B-10", "SAW1", "O2", datetime(2025, 8, 18, 8), datetime(2025, 8, 18, 10))
    operation = Operation("J1-10", "J1", 10, estimated_hours=2, machine_id="M2")

    candidates = find_candidates(
        store, operation, datetime(2025, 8, 18, 0), datetime(2025, 8, 19, 0)
    )

    assert _pairs(candidates) == [("M2", "O1"), ("M2", "O2")]
    assert candidates[1].workload_minutes == 120


def test_full_ties_keep_insertion_order(store) -> None:
    store.add_machine(Machine("MB", "Mill B", groups=frozenset({"HMC"})))
    store.add_machine(Machine("MA", "Mill A", groups=frozenset({"HMC"})))
    store.add_operator(Operator("OZ", "Zoe"))
    store.add_operator(Operator("OA", "Abe"))
    for machine_id in ("MB", "MA"):
        store.add_qualification(Qualification("OZ", machine_id))
        store.add_qualification(Qualification("OA", machine_id))
    operation = Operation("J1-10", "J1", 10, estimated_hours=2, machine_group_id="HMC")

    assert _pairs(find_candidates(store, operation)) == [
        ("MB", "OZ"), ("MB", "OA"), ("MA", "OZ"), ("MA", "OA"),
    ]
