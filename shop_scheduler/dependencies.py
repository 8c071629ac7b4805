# Resolve earliest legal start times from routing and assembly dependencies.
# Version: 1.0.0
# Handles predecessor ends, transfer lags, assembly prerequisites and outsourcing deadlines.

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .constants import EngineConfig
from .models import Operation
from .store import ScheduleStore


@dataclass
class StartBound:
    """Earliest legal start for a job or operation.

    Attributes:
        earliest: Earliest start, None when blocked.
        blocking_jobs: Prerequisite jobs that are not scheduled yet.
        blocking_operation: Same-job predecessor that is not scheduled yet.
        at_risk: Warnings that do not block placement.
    """
    earliest: datetime | None
    blocking_jobs: list[str] = field(default_factory=list)
    blocking_operation: str | None = None
    at_risk: list[str] = field(default_factory=list)

    @property
    def is_blocked(self) -> bool:
        return self.earliest is None


class DependencyResolver:
    """Compute earliest starts from the current booking state.

    Operation ends come from bookings when the operation is booked, else
    from the planned end the engine stores on non-booked operations.
    """

    def __init__(self, store: ScheduleStore, config: EngineConfig) -> None:
        self.store = store
        self.config = config

    def operation_end(self, operation: Operation) -> datetime | None:
        """Get when an operation finishes, None if it has no timing."""
        bookings = [
            b for b in self.store.bookings_for_operation(operation.operation_id)
            if b.occupies_resources
        ]
        if bookings:
            return max(b.end for b in bookings)
        return operation.planned_end

    def transfer_lag(self, operation: Operation) -> timedelta:
        """Get the wait required after an operation ends."""
        return timedelta(hours=self.config.transfer_lag_hours(operation.name))

    def predecessor(self, operation: Operation) -> Operation | None:
        """Get the operation immediately before this one in its job's routing."""
        earlier = [
            op for op in self.store.operations_for_job(operation.job_id)
            if op.sequence_order < operation.sequence_order
        ]
        return earlier[-1] if earlier else None

    def job_finish(self, job_id: str) -> tuple[bool, datetime | None]:
        """Get whether a job is fully scheduled and when it finishes.

        Returns:
            (is_scheduled, finish). finish is None for settled jobs without
            timing (e.g. completed without bookings).
        """
        job = self.store.get_job(job_id)
        if job.is_closed:
            ends = [b.end for b in self.store.bookings_for_job(job_id)]
            return True, max(ends, default=None)

        operations = self.store.operations_for_job(job_id)
        if not operations:
            return job.status != "pending", None

        ends = []
        for op in operations:
            end = self.operation_end(op)
            if op.routing_status == "completed":
                if end is not None:
                    ends.append(end)
                continue
            if op.routing_status != "scheduled" or end is None:
                return False, None
            ends.append(end)
        return True, max(ends, default=None)

    def job_start_bound(self, job_id: str, not_before: datetime) -> StartBound:
        """Get the earliest start of a job from its prerequisite jobs.

        An assembly parent starts no earlier than the latest finish of all
        its prerequisites, and is blocked while any is unscheduled.
        """
        earliest = not_before
        blocking = []
        for prerequisite_id in self.store.prerequisites_of(job_id):
            if prerequisite_id not in self.store.jobs:
                blocking.append(prerequisite_id)
                continue
            is_scheduled, finish = self.job_finish(prerequisite_id)
            if not is_scheduled:
                blocking.append(prerequisite_id)
            elif finish is not None and finish > earliest:
                earliest = finish

        if blocking:
            return StartBound(earliest=None, blocking_jobs=sorted(blocking))
        return StartBound(earliest=earliest)

    def operation_start_bound(
        self,
        operation: Operation,
        not_before: datetime,
        planned_ends: dict[str, datetime] | None = None
    ) -> StartBound:
        """Get the earliest start of an operation from its predecessor.

        Args:
            operation: Operation to bound.
            not_before: Lower bound from the job (now, prerequisites, request).
            planned_ends: Ends of operations placed earlier in the same pass.

        Returns:
            StartBound; blocked when the predecessor has no timing yet.
        """
        planned_ends = planned_ends or {}
        previous = self.predecessor(operation)
        earliest = not_before

        if previous is not None:
            previous_end = planned_ends.get(previous.operation_id) or self.operation_end(previous)
            if previous_end is None:
                if previous.routing_status != "completed":
                    return StartBound(earliest=None, blocking_operation=previous.operation_id)
            else:
                earliest = max(earliest, previous_end + self.transfer_lag(previous))

        bound = StartBound(earliest=earliest)
        if operation.is_outsourced:
            risk = self.outsourcing_risk(operation, earliest)
            if risk:
                bound.at_risk.append(risk)
        return bound

    def send_out_deadline(self, operation: Operation) -> datetime | None:
        """Get the latest send-out instant for an outsourced operation.

        The deadline is the end of the promised day minus the vendor lead time.
        """
        job = self.store.get_job(operation.job_id)
        if job.promise_deadline is None:
            return None
        return job.promise_deadline - timedelta(days=operation.vendor_lead_days)

    def outsourcing_risk(self, operation: Operation, ready_at: datetime) -> str | None:
        """Describe the risk when work is ready after the send-out deadline."""
        deadline = self.send_out_deadline(operation)
        if deadline is None or ready_at <= deadline:
            return None
        return (
            f"Operation {operation.operation_id} is ready for {operation.vendor or 'vendor'} "
            f"at {ready_at:%Y-%m-%d %H:%M}, after send-out deadline {deadline:%Y-%m-%d %H:%M}"
        )
