# In-memory transactional store for the scheduling engine.
# Version: 1.0.0
# Holds collaborator records, bookings and sinks behind a lock-guarded unit of work.

import copy
import itertools
import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Iterator

from .errors import InvariantViolationError, RecordNotFoundError, ValidationError
from .models import (
    Alert,
    Booking,
    CustomerTier,
    Dependency,
    DisplacementRecord,
    InspectionQueueEntry,
    Job,
    Machine,
    Operation,
    Operator,
    Qualification,
    ScheduleEntry,
    TimeOff,
    UndoEntry,
)


logger = logging.getLogger(__name__)

# Collections captured by a transaction and restored on rollback
_STATE_FIELDS: tuple[str, ...] = (
    "customer_tiers",
    "jobs",
    "operations",
    "machines",
    "operators",
    "qualifications",
    "schedule_entries",
    "time_off",
    "dependencies",
    "bookings",
    "inspection_queue",
    "alerts",
    "displacement_history",
    "undo_entries",
)


class ScheduleStore:
    """Transactional record store shared by all engine components.

    Records are kept in dictionaries keyed by id. Every scheduling pass runs
    inside transaction(), which snapshots the mutable state and restores it
    if the block raises, so a pass commits all of its changes or none.

    Booking writes enforce the no-double-booking invariant per machine and
    per operator.
    """

    def __init__(self) -> None:
        self.customer_tiers: dict[str, CustomerTier] = {}
        self.jobs: dict[str, Job] = {}
        self.operations: dict[str, Operation] = {}
        self.machines: dict[str, Machine] = {}
        self.operators: dict[str, Operator] = {}
        self.qualifications: list[Qualification] = []
        self.schedule_entries: list[ScheduleEntry] = []
        self.time_off: dict[str, TimeOff] = {}
        self.dependencies: list[Dependency] = []
        self.bookings: dict[str, Booking] = {}
        self.inspection_queue: list[InspectionQueueEntry] = []
        self.alerts: list[Alert] = []
        self.displacement_history: list[DisplacementRecord] = []
        self.undo_entries: dict[str, UndoEntry] = {}

        self._lock = threading.RLock()
        self._depth = 0
        self._counters: dict[str, Iterator[int]] = {}

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["ScheduleStore"]:
        """Run a block atomically with respect to the store.

        Nested transactions join the outermost one. If the outermost block
        raises, every collection is restored to its state on entry.
        """
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            snapshot = copy.deepcopy({name: getattr(self, name) for name in _STATE_FIELDS})
            self._depth = 1
            try:
                yield self
            except BaseException as e:
                for name, value in snapshot.items():
                    setattr(self, name, value)
                logger.warning("Transaction rolled back: %s", e)
                raise
            finally:
                self._depth = 0

    @contextmanager
    def scratch(self) -> Iterator["ScheduleStore"]:
        """Run a block whose changes are always discarded.

        Transactions opened inside the block join it. Id counters keep
        advancing so ids handed out in the block are never reused.
        """
        with self._lock:
            snapshot = copy.deepcopy({name: getattr(self, name) for name in _STATE_FIELDS})
            depth = self._depth
            self._depth = depth + 1
            try:
                yield self
            finally:
                for name, value in snapshot.items():
                    setattr(self, name, value)
                self._depth = depth

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def next_id(self, prefix: str) -> str:
        """Generate the next identifier for a record type."""
        counter = self._counters.setdefault(prefix, itertools.count(1))
        return f"{prefix}-{next(counter):05d}"

    # ------------------------------------------------------------------
    # Collaborator records
    # ------------------------------------------------------------------

    def set_customer_tier(self, tier: CustomerTier) -> None:
        self.customer_tiers[tier.customer_name.lower()] = tier

    def get_customer_tier(self, customer: str) -> CustomerTier | None:
        return self.customer_tiers.get(customer.lower())

    def add_job(self, job: Job) -> None:
        if job.job_id in self.jobs:
            raise ValidationError(field="job_id", value=job.job_id, reason="Duplicate job id")
        self.jobs[job.job_id] = job

    def get_job(self, job_id: str) -> Job:
        try:
            return self.jobs[job_id]
        except KeyError:
            raise RecordNotFoundError("job", job_id) from None

    def add_operation(self, operation: Operation) -> None:
        """Add an operation, enforcing unique sequence order per job."""
        if operation.operation_id in self.operations:
            raise ValidationError(
                field="operation_id", value=operation.operation_id, reason="Duplicate operation id"
            )
        if operation.job_id not in self.jobs:
            raise RecordNotFoundError("job", operation.job_id)
        for existing in self.operations_for_job(operation.job_id):
            if existing.sequence_order == operation.sequence_order:
                raise ValidationError(
                    field="sequence_order",
                    value=operation.sequence_order,
                    reason=f"Job {operation.job_id} already has an operation at this sequence"
                )
        self.operations[operation.operation_id] = operation

    def get_operation(self, operation_id: str) -> Operation:
        try:
            return self.operations[operation_id]
        except KeyError:
            raise RecordNotFoundError("operation", operation_id) from None

    def operations_for_job(self, job_id: str) -> list[Operation]:
        """Get a job's operations in sequence order."""
        ops = [op for op in self.operations.values() if op.job_id == job_id]
        return sorted(ops, key=lambda op: op.sequence_order)

    def add_machine(self, machine: Machine) -> None:
        self.machines[machine.machine_id] = machine

    def get_machine(self, machine_id: str) -> Machine:
        try:
            return self.machines[machine_id]
        except KeyError:
            raise RecordNotFoundError("machine", machine_id) from None

    def machines_in_group(self, group_id: str) -> list[Machine]:
        return [m for m in self.machines.values() if group_id in m.groups]

    def add_operator(self, operator: Operator) -> None:
        self.operators[operator.operator_id] = operator

    def get_operator(self, operator_id: str) -> Operator:
        try:
            return self.operators[operator_id]
        except KeyError:
            raise RecordNotFoundError("operator", operator_id) from None

    def add_qualification(self, qualification: Qualification) -> None:
        self.get_operator(qualification.operator_id)
        self.get_machine(qualification.machine_id)
        self.qualifications = [
            q for q in self.qualifications
            if (q.operator_id, q.machine_id) != (qualification.operator_id, qualification.machine_id)
        ]
        self.qualifications.append(qualification)

    def qualifications_for_machine(self, machine_id: str) -> list[Qualification]:
        return [q for q in self.qualifications if q.machine_id == machine_id]

    def get_qualification(self, operator_id: str, machine_id: str) -> Qualification | None:
        for q in self.qualifications:
            if q.operator_id == operator_id and q.machine_id == machine_id:
                return q
        return None

    def add_schedule_entry(self, entry: ScheduleEntry) -> None:
        self.get_operator(entry.operator_id)
        self.schedule_entries.append(entry)

    def schedule_entries_for(self, operator_id: str) -> list[ScheduleEntry]:
        return [e for e in self.schedule_entries if e.operator_id == operator_id]

    def add_time_off(self, time_off: TimeOff) -> None:
        self.get_operator(time_off.operator_id)
        self.time_off[time_off.time_off_id] = time_off

    def time_off_for(self, operator_id: str) -> list[TimeOff]:
        return [t for t in self.time_off.values() if t.operator_id == operator_id]

    def add_dependency(self, dependency: Dependency) -> None:
        self.get_job(dependency.prerequisite_job_id)
        self.get_job(dependency.dependent_job_id)
        if dependency.prerequisite_job_id == dependency.dependent_job_id:
            raise ValidationError(
                field="dependency",
                value=dependency.dependent_job_id,
                reason="A job cannot depend on itself"
            )
        self.dependencies.append(dependency)

    def prerequisites_of(self, job_id: str) -> list[str]:
        """Get prerequisite job ids, including assembly components of a parent."""
        prerequisites = [
            d.prerequisite_job_id for d in self.dependencies if d.dependent_job_id == job_id
        ]
        for job in self.jobs.values():
            if job.parent_job_id == job_id and job.job_id not in prerequisites:
                prerequisites.append(job.job_id)
        return prerequisites

    def dependents_of(self, job_id: str) -> list[str]:
        """Get jobs that wait on this job, including its assembly parent."""
        dependents = [
            d.dependent_job_id for d in self.dependencies if d.prerequisite_job_id == job_id
        ]
        job = self.jobs.get(job_id)
        if job is not None and job.parent_job_id and job.parent_job_id not in dependents:
            dependents.append(job.parent_job_id)
        return dependents

    def components_of(self, job_id: str) -> list[Job]:
        return [j for j in self.jobs.values() if j.parent_job_id == job_id]

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------

    def get_booking(self, booking_id: str) -> Booking:
        try:
            return self.bookings[booking_id]
        except KeyError:
            raise RecordNotFoundError("booking", booking_id) from None

    def bookings_for_job(self, job_id: str) -> list[Booking]:
        return sorted(
            (b for b in self.bookings.values() if b.job_id == job_id),
            key=lambda b: (b.start, b.booking_id),
        )

    def bookings_for_operation(self, operation_id: str) -> list[Booking]:
        return sorted(
            (b for b in self.bookings.values() if b.operation_id == operation_id),
            key=lambda b: (b.start, b.chunk_sequence),
        )

    def bookings_for_machine(
        self,
        machine_id: str,
        start: datetime | None = None,
        end: datetime | None = None
    ) -> list[Booking]:
        """Get resource-occupying bookings on a machine, optionally in a window."""
        return self._occupying(lambda b: b.machine_id == machine_id, start, end)

    def bookings_for_operator(
        self,
        operator_id: str,
        start: datetime | None = None,
        end: datetime | None = None
    ) -> list[Booking]:
        """Get resource-occupying bookings of an operator, optionally in a window."""
        return self._occupying(lambda b: b.operator_id == operator_id, start, end)

    def _occupying(self, predicate, start: datetime | None, end: datetime | None) -> list[Booking]:
        result = []
        for b in self.bookings.values():
            if not b.occupies_resources or not predicate(b):
                continue
            if start is not None and b.end <= start:
                continue
            if end is not None and b.start >= end:
                continue
            result.append(b)
        return sorted(result, key=lambda b: (b.start, b.booking_id))

    def add_booking(self, booking: Booking) -> None:
        """Insert a booking.

        Raises:
            InvariantViolationError: If the booking overlaps another booking
                on the same machine or for the same operator.
        """
        if booking.booking_id in self.bookings:
            raise InvariantViolationError("unique_booking_id", f"Duplicate booking id {booking.booking_id}")
        self.get_operation(booking.operation_id)
        self.get_machine(booking.machine_id)
        self.get_operator(booking.operator_id)
        self._check_overlap(booking)
        self.bookings[booking.booking_id] = booking

    def update_booking(self, booking_id: str, **changes: Any) -> Booking:
        """Replace fields of a booking and bump its version.

        Raises:
            RecordNotFoundError: If the booking does not exist.
            InvariantViolationError: If the change creates an overlap.
        """
        current = self.get_booking(booking_id)
        updated = replace(current, version=current.version + 1, **changes)
        self._check_overlap(updated)
        self.bookings[booking_id] = updated
        return updated

    def delete_booking(self, booking_id: str) -> Booking:
        booking = self.get_booking(booking_id)
        del self.bookings[booking_id]
        return booking

    def _check_overlap(self, booking: Booking) -> None:
        if not booking.occupies_resources:
            return
        for other in self.bookings.values():
            if other.booking_id == booking.booking_id or not other.occupies_resources:
                continue
            if not other.overlaps(booking.start, booking.end):
                continue
            if other.machine_id == booking.machine_id:
                raise InvariantViolationError(
                    "no_double_booking",
                    f"Machine {booking.machine_id} already booked by {other.booking_id} "
                    f"from {other.start} to {other.end}"
                )
            if other.operator_id == booking.operator_id:
                raise InvariantViolationError(
                    "no_double_booking",
                    f"Operator {booking.operator_id} already booked by {other.booking_id} "
                    f"from {other.start} to {other.end}"
                )

    # ------------------------------------------------------------------
    # Sinks
    # ------------------------------------------------------------------

    def enqueue_inspection(self, entry: InspectionQueueEntry) -> None:
        self.inspection_queue.append(entry)

    def update_inspection_status(self, entry_id: str, status: str) -> InspectionQueueEntry:
        for entry in self.inspection_queue:
            if entry.entry_id == entry_id:
                replaced = replace(entry, status=status)
                if replaced.status not in ("awaiting", "in_progress", "completed", "hold"):
                    raise ValidationError(field="status", value=status, reason="Unknown inspection status")
                self.inspection_queue[self.inspection_queue.index(entry)] = replaced
                return replaced
        raise RecordNotFoundError("inspection entry", entry_id)

    def add_alert(self, alert: Alert) -> None:
        self.alerts.append(alert)

    def append_displacement(self, record: DisplacementRecord) -> None:
        self.displacement_history.append(record)
