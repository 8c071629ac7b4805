# Displace lower-priority bookings to make room for higher-priority work.
# Version: 1.0.0
# Decides evictability, plans the cheapest eviction set and applies cascading evictions.

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Literal

from .allocator import Placement, TimeSlotAllocator
from .constants import EngineConfig
from .errors import DisplacementInfeasibleError
from .matcher import Candidate
from .models import Booking, DisplacedOperation, Job, Operation
from .store import ScheduleStore


logger = logging.getLogger(__name__)

# Booking states that are never evicted
PROTECTED_BOOKING_STATUSES: frozenset[str] = frozenset({"in_progress", "completed"})

ActionKind = Literal["delete_booking", "mark_needs_rescheduling", "reopen_job"]


@dataclass(frozen=True)
class PendingAction:
    """One mutation produced by an eviction scan, applied after the scan.

    Attributes:
        kind: delete_booking, mark_needs_rescheduling or reopen_job.
        target_id: Booking, operation or job id the action applies to.
    """
    kind: ActionKind
    target_id: str


@dataclass
class DisplacementPlan:
    """Evictions that make room for an operation on one candidate.

    Attributes:
        candidate: Candidate pair the operation will be placed on.
        placement: Placement found with the evictions applied.
        evict: Bookings to evict, lowest priority first.
    """
    candidate: Candidate
    placement: Placement
    evict: list[Booking] = field(default_factory=list)


def priority_gap(requesting_priority: int, occupying_priority: int) -> float:
    """Relative priority gap (requesting - occupying) / occupying.

    An occupying priority of zero yields an infinite gap for any positive
    requesting priority.
    """
    if occupying_priority <= 0:
        return float("inf") if requesting_priority > 0 else 0.0
    return (requesting_priority - occupying_priority) / occupying_priority


class DisplacementEngine:
    """Evict lower-priority bookings and cascade rescheduling obligations."""

    def __init__(
        self,
        store: ScheduleStore,
        allocator: TimeSlotAllocator,
        config: EngineConfig
    ) -> None:
        self.store = store
        self.allocator = allocator
        self.config = config

    def protection_reason(
        self,
        booking: Booking,
        requesting_priority: int,
        today: date
    ) -> str | None:
        """Explain why a booking cannot be evicted.

        Args:
            booking: Booking considered for eviction.
            requesting_priority: Priority of the job that needs the capacity.
            today: Reference date for the firm zone.

        Returns:
            Reason code, or None when the booking is evictable.
        """
        job = self.store.get_job(booking.job_id)
        if job.schedule_locked:
            return "job_locked"
        if booking.locked:
            return "booking_locked"
        if booking.status in PROTECTED_BOOKING_STATUSES:
            return booking.status
        if self._in_firm_zone(job, today):
            return "firm_zone"
        if priority_gap(requesting_priority, job.priority_score) <= self.config.displacement_threshold:
            return "priority_gap"
        for downstream in self._cascade_bookings(booking):
            if (
                downstream.locked
                or downstream.status in PROTECTED_BOOKING_STATUSES
                or self.store.get_job(downstream.job_id).schedule_locked
            ):
                return "locked_downstream"
        return None

    def is_evictable(self, booking: Booking, requesting_priority: int, today: date) -> bool:
        return self.protection_reason(booking, requesting_priority, today) is None

    def _in_firm_zone(self, job: Job, today: date) -> bool:
        if self.config.firm_zone_days is None or job.promised_date is None:
            return False
        return (job.promised_date - today).days <= self.config.firm_zone_days

    def _cascade_operations(self, operation: Operation) -> list[Operation]:
        """Get an operation and every later, not completed operation of its job."""
        return [
            op for op in self.store.operations_for_job(operation.job_id)
            if op.sequence_order >= operation.sequence_order and op.routing_status != "completed"
        ]

    def dependent_jobs(self, job_id: str) -> list[str]:
        """Get every job that waits on this one, directly or through other jobs."""
        seen = {job_id}
        order: list[str] = []
        queue = [job_id]
        while queue:
            for dependent_id in self.store.dependents_of(queue.pop(0)):
                if dependent_id in seen or dependent_id not in self.store.jobs:
                    continue
                seen.add(dependent_id)
                order.append(dependent_id)
                queue.append(dependent_id)
        return order

    def affected_jobs(self, bookings: list[Booking]) -> list[str]:
        """Get the jobs an eviction of these bookings can change."""
        job_ids: list[str] = []
        for booking in bookings:
            for job_id in [booking.job_id, *self.dependent_jobs(booking.job_id)]:
                if job_id not in job_ids:
                    job_ids.append(job_id)
        return job_ids

    def _downstream_operations(self, operation: Operation) -> list[Operation]:
        """Get the cascade of an operation plus the scheduled work of dependent jobs."""
        operations = self._cascade_operations(operation)
        for job_id in self.dependent_jobs(operation.job_id):
            operations.extend(
                op for op in self.store.operations_for_job(job_id)
                if op.routing_status == "scheduled"
            )
        return operations

    def _cascade_bookings(self, booking: Booking) -> list[Booking]:
        operation = self.store.get_operation(booking.operation_id)
        bookings = []
        for op in self._downstream_operations(operation):
            bookings.extend(self.store.bookings_for_operation(op.operation_id))
        return bookings

    def conflicting_bookings(
        self,
        candidate: Candidate,
        start: datetime,
        end: datetime,
        requesting_job_id: str
    ) -> list[Booking]:
        """Get other jobs' bookings on the candidate's machine or operator in a window."""
        seen: dict[str, Booking] = {}
        for booking in self.store.bookings_for_machine(candidate.machine.machine_id, start, end):
            seen[booking.booking_id] = booking
        for booking in self.store.bookings_for_operator(candidate.operator.operator_id, start, end):
            seen[booking.booking_id] = booking
        return [b for b in seen.values() if b.job_id != requesting_job_id]

    def plan(
        self,
        job: Job,
        operation: Operation,
        candidates: list[Candidate],
        earliest: datetime,
        latest_end: datetime | None,
        today: date
    ) -> DisplacementPlan:
        """Find the evictions that let an operation be placed.

        For each candidate in rank order, evictable conflicts are removed
        virtually, lowest priority first, until the allocator finds room.
        Only the removed bookings that actually overlap the placement are
        evicted.

        Raises:
            DisplacementInfeasibleError: If no candidate can be freed. The
                error lists the bookings that could not be evicted.
        """
        blocking: set[str] = set()
        horizon_end = earliest + timedelta(days=self.config.search_horizon_days)
        window_end = min(horizon_end, latest_end) if latest_end else horizon_end

        for candidate in candidates:
            evictable = []
            for booking in self.conflicting_bookings(candidate, earliest, window_end, job.job_id):
                reason = self.protection_reason(booking, job.priority_score, today)
                # A prerequisite of the requesting job cannot make room for it
                if reason is None and job.job_id in self.dependent_jobs(booking.job_id):
                    reason = "prerequisite"
                if reason is None:
                    evictable.append(booking)
                else:
                    blocking.add(booking.booking_id)

            evictable.sort(key=lambda b: (
                self.store.get_job(b.job_id).priority_score, b.start, b.booking_id
            ))

            excluded: set[str] = set()
            for booking in evictable:
                excluded.update(b.booking_id for b in self._cascade_bookings(booking))
                placement = self.allocator.place_on_candidate(
                    candidate,
                    operation.nominal_minutes,
                    earliest,
                    latest_end,
                    frozenset(excluded),
                )
                if placement is None:
                    continue

                evict = [
                    b for b in evictable
                    if b.booking_id in excluded and placement.overlaps(b.start, b.end)
                ]
                # Cascaded bookings under the placement must go with the booking that owns them
                removed = {x.booking_id for b in evict for x in self._cascade_bookings(b)}
                for b in evictable:
                    if b.booking_id not in excluded or b.booking_id in removed:
                        continue
                    cascade = self._cascade_bookings(b)
                    if any(
                        x.booking_id not in removed and placement.overlaps(x.start, x.end)
                        for x in cascade
                    ):
                        evict.append(b)
                        removed.update(x.booking_id for x in cascade)
                logger.info(
                    "Displacement plan for %s: evict %d booking(s) on %s/%s",
                    operation.operation_id,
                    len(evict),
                    candidate.machine.machine_id,
                    candidate.operator.operator_id,
                )
                return DisplacementPlan(candidate=candidate, placement=placement, evict=evict)

        raise DisplacementInfeasibleError(
            job_id=job.job_id,
            operation_id=operation.operation_id,
            blocking_bookings=sorted(blocking),
            reason=(
                "no evictable conflicts free enough capacity" if candidates
                else "no qualified machine/operator pair"
            ),
        )

    def cascade_actions(self, booking: Booking) -> list[PendingAction]:
        """List the mutations needed to evict a booking.

        The booking's operation and every later operation of the job lose
        their bookings and are marked needs_rescheduling. Jobs that wait on
        the job (assembly parents and explicit dependents, transitively) lose
        their scheduled work the same way. Every affected job is reopened.
        """
        return self.operation_actions(self.store.get_operation(booking.operation_id))

    def operation_actions(self, operation: Operation) -> list[PendingAction]:
        """List the mutations that unschedule an operation, its successors and its dependents."""
        actions = []
        reopened = [operation.job_id]
        for op in self._downstream_operations(operation):
            for b in self.store.bookings_for_operation(op.operation_id):
                if b.status not in PROTECTED_BOOKING_STATUSES and not b.locked:
                    actions.append(PendingAction("delete_booking", b.booking_id))
            actions.append(PendingAction("mark_needs_rescheduling", op.operation_id))
            if op.job_id not in reopened:
                reopened.append(op.job_id)
        actions.extend(PendingAction("reopen_job", job_id) for job_id in reopened)
        return actions

    def apply_actions(self, actions: list[PendingAction]) -> None:
        """Apply materialized actions once, in order."""
        done: set[PendingAction] = set()
        for action in actions:
            if action in done:
                continue
            done.add(action)
            if action.kind == "delete_booking":
                if action.target_id in self.store.bookings:
                    self.store.delete_booking(action.target_id)
            elif action.kind == "mark_needs_rescheduling":
                op = self.store.get_operation(action.target_id)
                op.routing_status = "needs_rescheduling"
                op.planned_start = None
                op.planned_end = None
            elif action.kind == "reopen_job":
                job = self.store.get_job(action.target_id)
                if job.status == "scheduled":
                    job.status = "pending"

    def evict(self, bookings: list[Booking], reason: str) -> list[DisplacedOperation]:
        """Evict bookings with cascade and describe what was displaced.

        Every affected operation appears once in the result, with the span
        of its bookings as the original timing.

        Args:
            bookings: Bookings to evict.
            reason: Reason recorded on directly evicted operations.

        Returns:
            DisplacedOperation per affected operation.
        """
        actions: list[PendingAction] = []
        displaced: dict[str, DisplacedOperation] = {}

        for booking in bookings:
            for action in self.cascade_actions(booking):
                actions.append(action)
                if action.kind != "delete_booking":
                    continue
                victim = self.store.get_booking(action.target_id)
                cause = reason if victim.operation_id == booking.operation_id else (
                    f"cascade from {booking.operation_id}"
                )
                self._record_displaced(displaced, victim, cause)

        self.apply_actions(actions)
        for entry in displaced.values():
            logger.info(
                "Displaced %s of job %s (%s)", entry.operation_id, entry.job_id, entry.reason
            )
        return list(displaced.values())

    def evict_early_successors(
        self,
        operation: Operation,
        end: datetime
    ) -> list[DisplacedOperation]:
        """Unschedule later operations of a job that start before `end` plus lag.

        Used when an operation is moved later than its successors assumed.
        """
        ready = end + timedelta(hours=self.config.transfer_lag_hours(operation.name))
        for op in self.store.operations_for_job(operation.job_id):
            if op.sequence_order <= operation.sequence_order or op.routing_status != "scheduled":
                continue
            starts = [
                b.start for b in self.store.bookings_for_operation(op.operation_id)
                if b.status not in PROTECTED_BOOKING_STATUSES
            ]
            if op.planned_start is not None:
                starts.append(op.planned_start)
            if starts and min(starts) < ready:
                return self.evict_operation(op, reason=f"predecessor {operation.operation_id} moved")
        return []

    def evict_operation(self, operation: Operation, reason: str) -> list[DisplacedOperation]:
        """Unschedule an operation and its successors, describing the displaced bookings."""
        actions = self.operation_actions(operation)
        displaced: dict[str, DisplacedOperation] = {}
        for action in actions:
            if action.kind == "delete_booking":
                victim = self.store.get_booking(action.target_id)
                cause = reason if victim.operation_id == operation.operation_id else (
                    f"cascade from {operation.operation_id}"
                )
                self._record_displaced(displaced, victim, cause)
        self.apply_actions(actions)
        return list(displaced.values())

    def _record_displaced(
        self,
        displaced: dict[str, DisplacedOperation],
        booking: Booking,
        reason: str
    ) -> None:
        existing = displaced.get(booking.operation_id)
        if existing is not None:
            existing.original_start = min(existing.original_start, booking.start)
            existing.original_end = max(existing.original_end, booking.end)
            return
        job = self.store.get_job(booking.job_id)
        displaced[booking.operation_id] = DisplacedOperation(
            job_id=booking.job_id,
            operation_id=booking.operation_id,
            booking_id=booking.booking_id,
            customer=job.customer,
            priority_score=job.priority_score,
            machine_id=booking.machine_id,
            operator_id=booking.operator_id,
            original_start=booking.start,
            original_end=booking.end,
            reason=reason,
        )
