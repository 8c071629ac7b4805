"""Shared fixtures: a small shop with a fixed clock.

The clock starts on Monday 2025-08-18 at 07:00. Every operator works the
default Monday-Friday 08:00-17:00 window unless a test says otherwise.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

import pytest

from shop_scheduler.constants import EngineConfig
from shop_scheduler.engine import SchedulingEngine
from shop_scheduler.models import Booking, Job, Machine, Operation, Operator, Qualification
from shop_scheduler.store import ScheduleStore


MONDAY = datetime(2025, 8, 18, 7, 0)


class FakeClock:
    """Callable clock that tests can move forward."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(MONDAY)


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def store() -> ScheduleStore:
    """Two mills in group MILL, one saw; O1 runs the mills, O2 the saw and M1."""
    store = ScheduleStore()
    store.add_machine(Machine("M1", "Mill 1", groups=frozenset({"MILL"})))
    store.add_machine(Machine("M2", "Mill 2", efficiency_modifier=1.25, groups=frozenset({"MILL"})))
    store.add_machine(Machine("SAW1", "Band saw"))
    store.add_operator(Operator("O1", "Ana"))
    store.add_operator(Operator("O2", "Ben"))
    store.add_qualification(Qualification("O1", "M1", proficiency_level=4, preference_rank=1))
    store.add_qualification(Qualification("O1", "M2", proficiency_level=3, preference_rank=2))
    store.add_qualification(Qualification("O2", "SAW1", proficiency_level=3, preference_rank=1))
    store.add_qualification(Qualification("O2", "M1", proficiency_level=2, preference_rank=3))
    return store


@pytest.fixture
def engine(store: ScheduleStore, config: EngineConfig, clock: FakeClock) -> SchedulingEngine:
    return SchedulingEngine(store, config, clock)


@pytest.fixture
def add_job(store: ScheduleStore) -> Callable[..., Job]:
    """Factory adding a job with a simple routing.

    Each step is (name, hours, machine_id) or (name, hours, machine_id, category).
    A machine id starting with "@" is a machine group.
    """

    def _add(
        job_id: str,
        steps: list[tuple],
        priority: int = 100,
        customer: str = "Acme",
        **job_fields,
    ) -> Job:
        job = Job(job_id=job_id, customer=customer, priority_score=priority, **job_fields)
        store.add_job(job)
        for sequence, step in enumerate(steps, start=1):
            name, hours, machine = step[:3]
            category = step[3] if len(step) > 3 else "machining"
            operation = Operation(
                operation_id=f"{job_id}-{sequence * 10}",
                job_id=job_id,
                sequence_order=sequence * 10,
                name=name,
                estimated_hours=0.0 if category == "outsourced" else hours,
                machine_id=machine if machine and not machine.startswith("@") else None,
                machine_group_id=machine[1:] if machine and machine.startswith("@") else None,
                category=category,
                vendor="Platers Inc" if category == "outsourced" else None,
                vendor_lead_days=int(hours) if category == "outsourced" else 0,
            )
            store.add_operation(operation)
        return job

    return _add


@pytest.fixture
def book(store: ScheduleStore) -> Callable[..., Booking]:
    """Factory adding an existing booking and marking its operation scheduled."""

    def _book(
        booking_id: str,
        operation_id: str,
        machine_id: str,
        operator_id: str,
        start: datetime,
        end: datetime,
        **fields,
    ) -> Booking:
        operation = store.get_operation(operation_id)
        booking = Booking(
            booking_id=booking_id,
            job_id=operation.job_id,
            operation_id=operation_id,
            machine_id=machine_id,
            operator_id=operator_id,
            start=start,
            end=end,
            **fields,
        )
        store.add_booking(booking)
        operation.routing_status = "scheduled"
        job = store.get_job(operation.job_id)
        if job.status == "pending":
            job.status = "scheduled"
        return booking

    return _book
