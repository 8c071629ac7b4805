# Schedule validation for the scheduling engine.
# Version: 1.0.0
# Detects double-booking, sequence, assembly, machine-requirement and shift-window conflicts.

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from .constants import EngineConfig
from .dependencies import DependencyResolver
from .errors import InvariantViolationError
from .matcher import eligible_machines
from .models import Booking, Operation
from .shift_calendar import CalendarResolver
from .store import ScheduleStore


logger = logging.getLogger(__name__)


@dataclass
class ScheduleIssue:
    """One conflict found in the booking set.

    Attributes:
        kind: machine_overlap, operator_overlap, sequence, assembly,
            machine_requirement or outside_shift.
        message: Human-readable description.
        job_id: Job the issue belongs to.
        booking_ids: Bookings involved.
    """
    kind: str
    message: str
    job_id: str | None = None
    booking_ids: list[str] = field(default_factory=list)


@dataclass
class ValidationResult:
    """Result of validating the whole schedule.

    Attributes:
        is_valid: True if no errors were found.
        errors: Hard-constraint violations.
        warnings: Soft issues (e.g. work outside the operator's window).
    """
    is_valid: bool = True
    errors: list[ScheduleIssue] = field(default_factory=list)
    warnings: list[ScheduleIssue] = field(default_factory=list)

    def add_error(self, issue: ScheduleIssue) -> None:
        self.errors.append(issue)
        self.is_valid = False

    def add_warning(self, issue: ScheduleIssue) -> None:
        self.warnings.append(issue)

    def errors_of(self, kind: str) -> list[ScheduleIssue]:
        return [e for e in self.errors if e.kind == kind]


def operation_start(store: ScheduleStore, operation: Operation) -> datetime | None:
    """Get when an operation starts, from its bookings or planned start."""
    bookings = [b for b in store.bookings_for_operation(operation.operation_id) if b.occupies_resources]
    if bookings:
        return min(b.start for b in bookings)
    return operation.planned_start


def _check_overlaps(store: ScheduleStore, result: ValidationResult) -> None:
    active = sorted(
        (b for b in store.bookings.values() if b.occupies_resources),
        key=lambda b: (b.start, b.booking_id),
    )
    for resource, kind in (("machine_id", "machine_overlap"), ("operator_id", "operator_overlap")):
        by_resource: dict[str, list[Booking]] = {}
        for booking in active:
            by_resource.setdefault(getattr(booking, resource), []).append(booking)
        for resource_id, bookings in by_resource.items():
            latest: Booking | None = None
            for booking in bookings:
                if latest is not None and booking.start < latest.end:
                    result.add_error(ScheduleIssue(
                        kind=kind,
                        message=(
                            f"{resource_id} double-booked: {latest.booking_id} "
                            f"({latest.start}-{latest.end}) and {booking.booking_id} "
                            f"({booking.start}-{booking.end})"
                        ),
                        job_id=booking.job_id,
                        booking_ids=[latest.booking_id, booking.booking_id],
                    ))
                if latest is None or booking.end > latest.end:
                    latest = booking


def _check_sequence(
    store: ScheduleStore,
    dependencies: DependencyResolver,
    job_id: str,
    result: ValidationResult
) -> None:
    previous: Operation | None = None
    for op in store.operations_for_job(job_id):
        if op.routing_status != "scheduled":
            previous = op if op.routing_status == "completed" else None
            continue
        start = operation_start(store, op)
        if previous is not None and previous.routing_status == "scheduled" and start is not None:
            previous_end = dependencies.operation_end(previous)
            if previous_end is not None:
                ready = previous_end + dependencies.transfer_lag(previous)
                if start < ready:
                    result.add_error(ScheduleIssue(
                        kind="sequence",
                        message=(
                            f"Operation {op.operation_id} starts {start} before "
                            f"{previous.operation_id} is ready at {ready}"
                        ),
                        job_id=job_id,
                    ))
        previous = op


def _check_assembly(
    store: ScheduleStore,
    dependencies: DependencyResolver,
    job_id: str,
    result: ValidationResult
) -> None:
    starts = [
        s for s in (
            operation_start(store, op) for op in store.operations_for_job(job_id)
            if op.routing_status == "scheduled"
        )
        if s is not None
    ]
    if not starts:
        return
    job_start = min(starts)
    for prerequisite_id in store.prerequisites_of(job_id):
        if prerequisite_id not in store.jobs:
            continue
        is_scheduled, finish = dependencies.job_finish(prerequisite_id)
        if not is_scheduled:
            result.add_error(ScheduleIssue(
                kind="assembly",
                message=f"Job {job_id} is scheduled but prerequisite {prerequisite_id} is not",
                job_id=job_id,
            ))
        elif finish is not None and job_start < finish:
            result.add_error(ScheduleIssue(
                kind="assembly",
                message=(
                    f"Job {job_id} starts {job_start} before prerequisite "
                    f"{prerequisite_id} finishes at {finish}"
                ),
                job_id=job_id,
            ))


def _check_bookings(
    store: ScheduleStore,
    calendar: CalendarResolver,
    result: ValidationResult
) -> None:
    for booking in sorted(store.bookings.values(), key=lambda b: b.booking_id):
        if not booking.occupies_resources or booking.status == "completed":
            continue
        operation = store.get_operation(booking.operation_id)
        if booking.method != "override":
            allowed = {m.machine_id for m in eligible_machines(store, operation)}
            if booking.machine_id not in allowed:
                result.add_error(ScheduleIssue(
                    kind="machine_requirement",
                    message=(
                        f"Booking {booking.booking_id} is on {booking.machine_id}, which does not "
                        f"satisfy the requirement of {operation.operation_id}"
                    ),
                    job_id=booking.job_id,
                    booking_ids=[booking.booking_id],
                ))
            if not calendar.is_available(booking.operator_id, booking.start, booking.end):
                result.add_warning(ScheduleIssue(
                    kind="outside_shift",
                    message=(
                        f"Booking {booking.booking_id} ({booking.start}-{booking.end}) is outside "
                        f"operator {booking.operator_id}'s working window"
                    ),
                    job_id=booking.job_id,
                    booking_ids=[booking.booking_id],
                ))


def validate_schedule(store: ScheduleStore, config: EngineConfig) -> ValidationResult:
    """Check the whole booking set against the schedule invariants.

    Args:
        store: Schedule store.
        config: Engine configuration (transfer lags, calendar defaults).

    Returns:
        ValidationResult with errors and warnings.
    """
    result = ValidationResult()
    dependencies = DependencyResolver(store, config)
    calendar = CalendarResolver(store, config)

    _check_overlaps(store, result)
    for job_id in sorted(store.jobs):
        _check_sequence(store, dependencies, job_id, result)
        _check_assembly(store, dependencies, job_id, result)
    _check_bookings(store, calendar, result)

    if not result.is_valid:
        logger.warning("Schedule validation found %d error(s)", len(result.errors))
    return result


def assert_job_invariants(
    store: ScheduleStore,
    dependencies: DependencyResolver,
    job_ids: Iterable[str]
) -> None:
    """Raise if any of the given jobs breaks sequence or assembly ordering.

    Raises:
        InvariantViolationError: On the first violation found.
    """
    result = ValidationResult()
    for job_id in sorted(set(job_ids)):
        if job_id not in store.jobs:
            continue
        _check_sequence(store, dependencies, job_id, result)
        _check_assembly(store, dependencies, job_id, result)
    if result.errors:
        first = result.errors[0]
        raise InvariantViolationError(first.kind, first.message)
