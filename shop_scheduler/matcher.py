# Match operations to machines and qualified operators.
# Version: 1.0.0
# Produces ranked (machine, operator) candidate pairs for the allocator.

from dataclasses import dataclass
from datetime import datetime

from .models import Machine, Operation, Operator, Qualification
from .store import ScheduleStore


@dataclass(frozen=True)
class Candidate:
    """A (machine, operator) pair able to run an operation.

    Attributes:
        machine: Eligible machine.
        operator: Qualified operator.
        qualification: The operator's qualification on the machine.
        workload_minutes: Operator minutes already booked in the target window.
    """
    machine: Machine
    operator: Operator
    qualification: Qualification
    workload_minutes: int = 0

    @property
    def rank_key(self) -> tuple:
        return (
            self.qualification.preference_rank,
            -self.qualification.proficiency_level,
            self.workload_minutes,
            -self.machine.efficiency_modifier,
        )


def eligible_machines(store: ScheduleStore, operation: Operation) -> list[Machine]:
    """Get the machines an operation may run on.

    A specific machine is a hard constraint: no group substitute is offered
    when it is inactive. A group requirement yields every active machine in
    the group.
    """
    if operation.machine_id is not None:
        machine = store.machines.get(operation.machine_id)
        if machine is None or not machine.is_active:
            return []
        return [machine]

    if operation.machine_group_id is not None:
        machines = store.machines_in_group(operation.machine_group_id)
        return [m for m in machines if m.is_active]

    return []


def operator_workload(
    store: ScheduleStore,
    operator_id: str,
    window_start: datetime | None,
    window_end: datetime | None
) -> int:
    """Get minutes an operator is booked inside a window."""
    total = 0
    for booking in store.bookings_for_operator(operator_id, window_start, window_end):
        start = max(booking.start, window_start) if window_start else booking.start
        end = min(booking.end, window_end) if window_end else booking.end
        total += int((end - start).total_seconds() // 60)
    return total


def find_candidates(
    store: ScheduleStore,
    operation: Operation,
    window_start: datetime | None = None,
    window_end: datetime | None = None
) -> list[Candidate]:
    """Rank (machine, operator) pairs for an operation.

    Ranking: preference rank ascending, proficiency descending, workload in
    the target window ascending, machine efficiency descending. Ties keep
    store insertion order of machines and qualifications.

    Args:
        store: Schedule store.
        operation: Operation to match.
        window_start: Start of the window used to measure workload.
        window_end: End of the window used to measure workload.

    Returns:
        Ranked candidates, empty when nothing qualifies.
    """
    candidates = []
    for machine in eligible_machines(store, operation):
        for qualification in store.qualifications_for_machine(machine.machine_id):
            operator = store.operators.get(qualification.operator_id)
            if operator is None or not operator.is_active:
                continue
            candidates.append(Candidate(
                machine=machine,
                operator=operator,
                qualification=qualification,
                workload_minutes=operator_workload(
                    store, operator.operator_id, window_start, window_end
                ),
            ))

    # sorted() is stable, so equal keys keep insertion order
    return sorted(candidates, key=lambda c: c.rank_key)
