# Scheduling engine coordinator.
# Version: 1.0.0
# Runs priority-ordered scheduling passes with displacement, time off, undo and schedule queries.

import logging
import time as perf
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Literal

from .alerts import (
    ALERT_HIGH_PRIORITY_DISPLACED,
    ALERT_LOCKED_JOB_BLOCKED,
    ALERT_OUTSOURCING_AT_RISK,
    ALERT_PROMISE_DATE_VIOLATION,
    raise_alert,
)
from .allocator import Placement, SlotChunk, TimeSlotAllocator, ceil_minute
from .constants import EngineConfig
from .dependencies import DependencyResolver
from .displacement import PROTECTED_BOOKING_STATUSES, DisplacementEngine
from .errors import (
    BlockedError,
    DisplacementInfeasibleError,
    InvariantViolationError,
    NoCapacityError,
    SchedulingError,
    ValidationError,
)
from .matcher import Candidate, eligible_machines, find_candidates
from .models import (
    Booking,
    DisplacedOperation,
    DisplacementImpact,
    DisplacementRecord,
    InspectionQueueEntry,
    Job,
    Operation,
    Qualification,
    TimeOff,
    UndoEntry,
)
from .priority import (
    PriorityBreakdown,
    recalculate_all_priorities,
    recalculate_job_priority,
    update_customer_tier,
)
from .shift_calendar import CalendarResolver
from .store import ScheduleStore
from .time_off import TimeOffHandler, TimeOffResult
from .undo import UndoLedger
from .validator import ValidationResult, assert_job_invariants, validate_schedule


logger = logging.getLogger(__name__)

OutcomeKind = Literal["booked", "inspection_queue", "outsourced", "pass_through"]

# Routing states the engine places
PLACEABLE_ROUTING_STATUSES: frozenset[str] = frozenset({"pending", "needs_rescheduling"})

# Job fields that feed the priority score
PRIORITY_FIELDS: frozenset[str] = frozenset({
    "customer", "promised_date", "order_date", "due_date", "is_expedite",
    "job_type", "parent_job_id", "assembly_sequence",
})

# Failures a bulk pass records instead of propagating
NON_FATAL_ERRORS = (NoCapacityError, BlockedError, DisplacementInfeasibleError)


@dataclass
class OperationOutcome:
    """How one operation was placed in a pass.

    Attributes:
        operation_id: Placed operation.
        kind: booked, inspection_queue, outsourced or pass_through.
        start: Start of the placement.
        end: End of the placement.
        machine_id: Booked machine for booked operations.
        operator_id: Booked operator for booked operations.
        chunks: Number of bookings created.
    """
    operation_id: str
    kind: OutcomeKind
    start: datetime
    end: datetime
    machine_id: str | None = None
    operator_id: str | None = None
    chunks: int = 0


@dataclass
class JobScheduleResult:
    """Result of one single-job scheduling pass.

    Attributes:
        job_id: Scheduled job.
        success: True if every placeable operation was placed.
        operations: Outcome per placed operation.
        reason_code: Failure reason code (no_capacity, blocked, ...).
        message: Human-readable summary or failure message.
        failed_operation_id: Operation that could not be placed.
        blocking: Blocking job or booking ids for failures.
        at_risk: Non-blocking warnings (outsourcing deadlines).
        displacement_record_id: Displacement record written by the pass.
        undo_entry_id: Undo entry written by the pass.
    """
    job_id: str
    success: bool
    operations: list[OperationOutcome] = field(default_factory=list)
    reason_code: str | None = None
    message: str = ""
    failed_operation_id: str | None = None
    blocking: list[str] = field(default_factory=list)
    at_risk: list[str] = field(default_factory=list)
    displacement_record_id: str | None = None
    undo_entry_id: str | None = None

    @property
    def start(self) -> datetime | None:
        return min((o.start for o in self.operations), default=None)

    @property
    def end(self) -> datetime | None:
        return max((o.end for o in self.operations), default=None)

    @classmethod
    def from_error(cls, job_id: str, error: SchedulingError) -> "JobScheduleResult":
        """Build a failed result from a non-fatal scheduling error."""
        blocking: list[str] = []
        if isinstance(error, BlockedError):
            blocking = list(error.blocking_jobs)
        elif isinstance(error, DisplacementInfeasibleError):
            blocking = list(error.blocking_bookings)
        return cls(
            job_id=job_id,
            success=False,
            reason_code=error.reason_code,
            message=str(error),
            failed_operation_id=getattr(error, "operation_id", None),
            blocking=blocking,
        )


@dataclass
class BulkScheduleResult:
    """Result of scheduling every pending job.

    Attributes:
        results: One result per job, in priority order.
        retried: Results of the retry round for blocked or displaced jobs.
        undo_entry_id: Undo entry covering the whole run.
    """
    results: list[JobScheduleResult] = field(default_factory=list)
    retried: list[JobScheduleResult] = field(default_factory=list)
    undo_entry_id: str | None = None

    def final_results(self) -> dict[str, JobScheduleResult]:
        """Get the last result per job."""
        final = {r.job_id: r for r in self.results}
        final.update({r.job_id: r for r in self.retried})
        return final

    @property
    def scheduled_job_ids(self) -> list[str]:
        return [job_id for job_id, r in self.final_results().items() if r.success]

    @property
    def failed(self) -> list[JobScheduleResult]:
        return [r for r in self.final_results().values() if not r.success]


@dataclass
class ScheduleCheck:
    """Answer to "can this job be scheduled now".

    Attributes:
        job_id: Checked job.
        can_schedule: True if a pass could start now.
        blocking_jobs: Prerequisite jobs that block it.
        earliest_start: Earliest legal start, None when blocked.
        reason: Explanation when it cannot be scheduled.
    """
    job_id: str
    can_schedule: bool
    blocking_jobs: list[str] = field(default_factory=list)
    earliest_start: datetime | None = None
    reason: str = ""


@dataclass
class DisplacementPreview:
    """What scheduling a job would displace, computed without committing.

    Attributes:
        job_id: Previewed job.
        feasible: True if the pass would succeed.
        start: Earliest start the pass would give the job.
        end: Latest end the pass would give the job.
        displaced: Operations the pass would displace.
        impact: Aggregate impact of the displacement.
        blocking_bookings: Bookings that made displacement infeasible.
        reason: Explanation when the pass would fail.
    """
    job_id: str
    feasible: bool = True
    start: datetime | None = None
    end: datetime | None = None
    displaced: list[DisplacedOperation] = field(default_factory=list)
    impact: DisplacementImpact = field(default_factory=DisplacementImpact)
    blocking_bookings: list[str] = field(default_factory=list)
    reason: str = ""


@dataclass
class _PassContext:
    job: Job
    now: datetime
    undo_entry: UndoEntry
    deadline: datetime | None
    allow_displacement: bool
    started: float
    planned_ends: dict[str, datetime] = field(default_factory=dict)
    record: DisplacementRecord | None = None
    at_risk: list[str] = field(default_factory=list)
    touched_jobs: set[str] = field(default_factory=set)


class SchedulingEngine:
    """Greedy, priority-ordered scheduler with bounded displacement.

    Every public mutation runs inside one store transaction: it commits all
    of its changes or none.

    Attributes:
        store: Schedule store.
        config: Engine configuration.
        clock: Callable returning the current instant.
    """

    def __init__(
        self,
        store: ScheduleStore,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] | None = None
    ) -> None:
        self.store = store
        self.config = config or EngineConfig()
        self.clock = clock or datetime.now
        self.calendar = CalendarResolver(store, self.config)
        self.allocator = TimeSlotAllocator(store, self.calendar, self.config)
        self.dependencies = DependencyResolver(store, self.config)
        self.displacement = DisplacementEngine(store, self.allocator, self.config)
        self.ledger = UndoLedger(store, self.config)
        self.time_off_handler = TimeOffHandler(
            store, self.calendar, self.displacement, self.ledger, self.config
        )

    def now(self) -> datetime:
        return ceil_minute(self.clock())

    def today(self) -> date:
        return self.clock().date()

    # ------------------------------------------------------------------
    # Jobs and priority
    # ------------------------------------------------------------------

    def register_job(self, job: Job, operations: Iterable[Operation] = ()) -> PriorityBreakdown:
        """Add a job with its routing and compute its priority.

        Args:
            job: New job.
            operations: The job's operations.

        Returns:
            PriorityBreakdown of the new job.
        """
        with self.store.transaction():
            if job.created_at is None:
                job.created_at = self.clock()
            self.store.add_job(job)
            for operation in operations:
                self.store.add_operation(operation)
            breakdown = recalculate_job_priority(self.store, job.job_id, self.config, self.today())
        logger.info(
            "Registered job %s with priority %d (%s)", job.job_id, breakdown.total, breakdown.label
        )
        return breakdown

    def update_job(self, job_id: str, **changes) -> PriorityBreakdown:
        """Change priority-relevant job fields and rescore the job.

        Raises:
            ValidationError: If a field is unknown or not editable.
        """
        unknown = set(changes) - PRIORITY_FIELDS
        if unknown:
            raise ValidationError(
                field="changes",
                value=sorted(unknown),
                reason=f"Editable fields are {', '.join(sorted(PRIORITY_FIELDS))}"
            )
        with self.store.transaction():
            job = self.store.get_job(job_id)
            for name, value in changes.items():
                setattr(job, name, value)
            job.__post_init__()
            return recalculate_job_priority(self.store, job_id, self.config, self.today())

    def set_customer_tier(self, customer: str, tier: str, priority_weight: int | None = None) -> list[str]:
        """Change a customer's tier and rescore the customer's jobs."""
        with self.store.transaction():
            return update_customer_tier(
                self.store, customer, tier, self.config, self.today(), priority_weight
            )

    def recalculate_priorities(self) -> dict[str, PriorityBreakdown]:
        with self.store.transaction():
            return recalculate_all_priorities(self.store, self.config, self.today())

    # ------------------------------------------------------------------
    # Locks and shop floor status
    # ------------------------------------------------------------------

    def lock_job(self, job_id: str, reason: str = "") -> Job:
        with self.store.transaction():
            job = self.store.get_job(job_id)
            job.schedule_locked = True
            job.lock_reason = reason or None
        logger.info("Locked job %s: %s", job_id, reason or "no reason given")
        return job

    def unlock_job(self, job_id: str) -> Job:
        with self.store.transaction():
            job = self.store.get_job(job_id)
            job.schedule_locked = False
            job.lock_reason = None
        return job

    def set_booking_lock(self, booking_id: str, locked: bool) -> Booking:
        with self.store.transaction():
            return self.store.update_booking(booking_id, locked=locked)

    def start_operation(self, operation_id: str) -> list[Booking]:
        """Mark an operation's bookings in progress; started work is locked."""
        with self.store.transaction():
            operation = self.store.get_operation(operation_id)
            bookings = self.store.bookings_for_operation(operation_id)
            if not bookings:
                raise ValidationError(
                    field="operation_id",
                    value=operation_id,
                    reason="Operation has no bookings to start"
                )
            started = [
                self.store.update_booking(b.booking_id, status="in_progress", locked=True)
                for b in bookings if b.status == "scheduled"
            ]
            job = self.store.get_job(operation.job_id)
            if job.status in ("pending", "scheduled"):
                job.status = "in_progress"
        return started

    def complete_operation(self, operation_id: str) -> Operation:
        """Mark an operation completed; the job completes with its last operation."""
        with self.store.transaction():
            operation = self.store.get_operation(operation_id)
            for b in self.store.bookings_for_operation(operation_id):
                if b.status != "completed":
                    self.store.update_booking(b.booking_id, status="completed", locked=True)
            operation.routing_status = "completed"
            job = self.store.get_job(operation.job_id)
            if all(op.routing_status == "completed" for op in self.store.operations_for_job(job.job_id)):
                job.status = "completed"
        return operation

    def update_inspection_status(self, entry_id: str, status: str) -> InspectionQueueEntry:
        """Move an inspection queue entry to a new status.

        Completing the entry completes its inspection operation.
        """
        with self.store.transaction():
            entry = self.store.update_inspection_status(entry_id, status)
            if entry.status == "completed":
                self.complete_operation(entry.operation_id)
        logger.info("Inspection %s for %s is %s", entry_id, entry.operation_id, status)
        return entry

    # ------------------------------------------------------------------
    # Scheduling passes
    # ------------------------------------------------------------------

    def schedule_job(
        self,
        job_id: str,
        not_before: datetime | None = None,
        deadline: datetime | None = None,
        allow_displacement: bool = True,
        record_undo: bool = True
    ) -> JobScheduleResult:
        """Place every pending operation of a job, in sequence order.

        Args:
            job_id: Job to schedule.
            not_before: Earliest start requested by the caller.
            deadline: Instant every operation must finish by. Placement that
                misses it triggers displacement.
            allow_displacement: Evict lower-priority work when out of room.
            record_undo: Record an undo entry even without displacement.

        Returns:
            JobScheduleResult of the committed pass.

        Raises:
            NoCapacityError: If an operation cannot be placed.
            BlockedError: If prerequisites are unscheduled.
            DisplacementInfeasibleError: If displacement cannot free room.
            InvariantViolationError: If the pass would break an invariant.
        """
        return self._run_pass(job_id, not_before, deadline, allow_displacement, record_undo, False)

    def reschedule_job(
        self,
        job_id: str,
        not_before: datetime | None = None,
        deadline: datetime | None = None,
        allow_displacement: bool = True
    ) -> JobScheduleResult:
        """Release a job's movable bookings and place them again.

        Operations up to the last started, completed or locked one stay put.
        """
        return self._run_pass(job_id, not_before, deadline, allow_displacement, True, True)

    def _run_pass(
        self,
        job_id: str,
        not_before: datetime | None,
        deadline: datetime | None,
        allow_displacement: bool,
        record_undo: bool,
        release: bool
    ) -> JobScheduleResult:
        now = self.now()
        started = perf.perf_counter()
        try:
            with self.store.transaction():
                result = self._schedule_pass(
                    job_id, now, not_before, deadline, allow_displacement, record_undo, release, started
                )
        except DisplacementInfeasibleError as e:
            self._record_failed_displacement(e, now, started)
            raise
        except InvariantViolationError:
            logger.exception("Invariant violated while scheduling job %s; pass aborted", job_id)
            raise

        if result.operations:
            logger.info(
                "Scheduled job %s: %d operation(s) from %s to %s",
                job_id, len(result.operations), result.start, result.end,
            )
        return result

    def _schedule_pass(
        self,
        job_id: str,
        now: datetime,
        not_before: datetime | None,
        deadline: datetime | None,
        allow_displacement: bool,
        record_undo: bool,
        release: bool,
        started: float
    ) -> JobScheduleResult:
        job = self.store.get_job(job_id)
        if job.is_closed:
            raise ValidationError(
                field="status",
                value=job.status,
                reason=f"Job {job_id} is {job.status} and cannot be scheduled"
            )

        entry = self.ledger.begin(
            "manual_reschedule" if release else "auto_schedule",
            f"{'Reschedule' if release else 'Schedule'} job {job.job_number}",
            [job_id],
            now,
        )
        if release:
            self._release_job(job)

        operations = [
            op for op in self.store.operations_for_job(job_id)
            if op.routing_status in PLACEABLE_ROUTING_STATUSES
        ]
        result = JobScheduleResult(job_id=job_id, success=True)
        if not operations:
            result.message = "Nothing to schedule"
            return result

        floor = max(now, ceil_minute(not_before)) if not_before else now
        bound = self.dependencies.job_start_bound(job_id, floor)
        if bound.is_blocked:
            raise BlockedError(job_id, bound.blocking_jobs)

        ctx = _PassContext(
            job=job,
            now=now,
            undo_entry=entry,
            deadline=deadline,
            allow_displacement=allow_displacement,
            started=started,
        )
        for operation in operations:
            result.operations.append(self._place_operation(ctx, operation, bound.earliest))

        self._mark_job_scheduled(job)
        self._cascade_dependents(ctx)
        self._check_promise(job, result.end, now)

        if ctx.record is not None:
            self._finish_displacement(ctx)
            if not release:
                entry.operation_type = "displacement"
            result.displacement_record_id = ctx.record.record_id

        assert_job_invariants(self.store, self.dependencies, {job_id} | ctx.touched_jobs)

        if record_undo or ctx.record is not None:
            self.ledger.commit(entry)
            result.undo_entry_id = entry.entry_id

        result.at_risk = ctx.at_risk
        result.message = f"Scheduled {len(result.operations)} operation(s)"
        return result

    def _release_job(self, job: Job) -> None:
        operations = self.store.operations_for_job(job.job_id)
        fixed = [
            op.sequence_order for op in operations
            if op.routing_status == "completed"
            or any(
                b.locked or b.status in PROTECTED_BOOKING_STATUSES
                for b in self.store.bookings_for_operation(op.operation_id)
            )
        ]
        last_fixed = max(fixed, default=None)
        for op in operations:
            if last_fixed is not None and op.sequence_order <= last_fixed:
                continue
            for booking in self.store.bookings_for_operation(op.operation_id):
                self.store.delete_booking(booking.booking_id)
            op.routing_status = "pending"
            op.planned_start = None
            op.planned_end = None
        if job.status == "scheduled":
            job.status = "pending"

    def _place_operation(self, ctx: _PassContext, operation: Operation, floor: datetime) -> OperationOutcome:
        job = ctx.job
        bound = self.dependencies.operation_start_bound(operation, floor, ctx.planned_ends)
        if bound.is_blocked:
            raise BlockedError(
                job.job_id,
                [],
                operation.operation_id,
                reason=f"predecessor operation {bound.blocking_operation} is not scheduled",
            )
        earliest = bound.earliest
        for risk in bound.at_risk:
            ctx.at_risk.append(risk)
            raise_alert(
                self.store, "medium", ALERT_OUTSOURCING_AT_RISK, risk, job.job_id, ctx.now,
                operation_id=operation.operation_id,
            )

        if operation.is_outsourced:
            end = earliest + timedelta(days=operation.vendor_lead_days)
            self._plan_unbooked(ctx, operation, earliest, end)
            return OperationOutcome(operation.operation_id, "outsourced", earliest, end)

        if operation.is_queue_inspection:
            self._plan_unbooked(ctx, operation, earliest, earliest)
            self.store.enqueue_inspection(InspectionQueueEntry(
                entry_id=self.store.next_id("INSP"),
                job_id=job.job_id,
                operation_id=operation.operation_id,
                priority_score=job.priority_score,
                enqueued_at=ctx.now,
            ))
            return OperationOutcome(operation.operation_id, "inspection_queue", earliest, earliest)

        if not operation.needs_booking:
            self._plan_unbooked(ctx, operation, earliest, earliest)
            return OperationOutcome(operation.operation_id, "pass_through", earliest, earliest)

        placement = self._find_or_displace(ctx, operation, earliest)
        bookings = self._commit_placement(operation, placement, method="auto")
        ctx.planned_ends[operation.operation_id] = placement.end
        return OperationOutcome(
            operation_id=operation.operation_id,
            kind="booked",
            start=placement.start,
            end=placement.end,
            machine_id=placement.candidate.machine.machine_id,
            operator_id=placement.candidate.operator.operator_id,
            chunks=len(bookings),
        )

    def _plan_unbooked(self, ctx: _PassContext, operation: Operation, start: datetime, end: datetime) -> None:
        operation.planned_start = start
        operation.planned_end = end
        operation.routing_status = "scheduled"
        ctx.planned_ends[operation.operation_id] = end

    def _find_or_displace(self, ctx: _PassContext, operation: Operation, earliest: datetime) -> Placement:
        job = ctx.job
        horizon = self.config.search_horizon_days
        workload_end = ctx.deadline or earliest + timedelta(days=horizon)
        candidates = find_candidates(self.store, operation, earliest, workload_end)
        if not candidates:
            raise NoCapacityError(
                job.job_id, operation.operation_id, horizon,
                reason="no active machine with a qualified operator",
            )

        placement = self.allocator.find_placement(
            candidates, operation.nominal_minutes, earliest, ctx.deadline
        )
        if placement is not None:
            return placement

        if not ctx.allow_displacement:
            reason = "no free capacity before the deadline" if ctx.deadline else (
                "no free capacity within search horizon"
            )
            raise NoCapacityError(job.job_id, operation.operation_id, horizon, reason=reason)

        plan = self.displacement.plan(
            job, operation, candidates, earliest, ctx.deadline, ctx.now.date()
        )
        victims = self.displacement.affected_jobs(plan.evict)
        self.ledger.include(ctx.undo_entry, victims)
        ctx.touched_jobs.update(victims)

        displaced = self.displacement.evict(
            plan.evict,
            reason=f"displaced by job {job.job_number} (priority {job.priority_score})",
        )
        record = self._displacement_record(ctx, operation)
        record.displaced.extend(displaced)

        alerted = set()
        for entry in displaced:
            if entry.priority_score > self.config.high_priority_threshold and entry.job_id not in alerted:
                alerted.add(entry.job_id)
                raise_alert(
                    self.store, "high", ALERT_HIGH_PRIORITY_DISPLACED,
                    f"High-priority job {entry.job_id} (priority {entry.priority_score}) displaced "
                    f"by job {job.job_number}",
                    entry.job_id, ctx.now, trigger_job_id=job.job_id,
                )

        placement = self.allocator.place_on_candidate(
            plan.candidate, operation.nominal_minutes, earliest, ctx.deadline
        )
        if placement is None:
            raise InvariantViolationError(
                "displacement_frees_capacity",
                f"Evicting {len(plan.evict)} booking(s) did not free room for {operation.operation_id}",
            )
        return placement

    def _displacement_record(self, ctx: _PassContext, operation: Operation) -> DisplacementRecord:
        if ctx.record is None:
            ctx.record = DisplacementRecord(
                record_id=self.store.next_id("DSP"),
                trigger_type="priority",
                trigger_job_id=ctx.job.job_id,
                trigger_operation_id=operation.operation_id,
                time_off_id=None,
                success=True,
                created_at=ctx.now,
            )
        return ctx.record

    def _commit_placement(
        self,
        operation: Operation,
        placement: Placement,
        method: str,
        locked: bool = False,
        notes: str = ""
    ) -> list[Booking]:
        for stale in self.store.bookings_for_operation(operation.operation_id):
            if stale.status not in PROTECTED_BOOKING_STATUSES:
                self.store.delete_booking(stale.booking_id)

        bookings = []
        count = len(placement.chunks)
        for sequence, chunk in enumerate(placement.chunks, start=1):
            booking = Booking(
                booking_id=self.store.next_id("BKG"),
                job_id=operation.job_id,
                operation_id=operation.operation_id,
                machine_id=placement.candidate.machine.machine_id,
                operator_id=placement.candidate.operator.operator_id,
                start=chunk.start,
                end=chunk.end,
                method=method,
                locked=locked,
                chunk_sequence=sequence,
                chunk_count=count,
                notes=notes,
            )
            self.store.add_booking(booking)
            bookings.append(booking)

        operation.routing_status = "scheduled"
        operation.planned_start = None
        operation.planned_end = None
        return bookings

    def _mark_job_scheduled(self, job: Job) -> None:
        if job.status != "pending":
            return
        if all(
            op.routing_status in ("scheduled", "completed")
            for op in self.store.operations_for_job(job.job_id)
        ):
            job.status = "scheduled"

    def _cascade_dependents(self, ctx: _PassContext) -> None:
        """Unschedule dependent jobs that now start before this job finishes."""
        is_scheduled, finish = self.dependencies.job_finish(ctx.job.job_id)
        if not is_scheduled or finish is None:
            return
        for dependent_id in self.store.dependents_of(ctx.job.job_id):
            if dependent_id not in self.store.jobs:
                continue
            movable = [
                b for b in self.store.bookings_for_job(dependent_id)
                if b.status not in PROTECTED_BOOKING_STATUSES and not b.locked
            ]
            early = [b for b in movable if b.start < finish]
            if not early:
                continue
            self.ledger.include(
                ctx.undo_entry, [dependent_id, *self.displacement.dependent_jobs(dependent_id)]
            )
            ctx.touched_jobs.update([dependent_id, *self.displacement.dependent_jobs(dependent_id)])
            first = min(movable, key=lambda b: (b.start, b.booking_id))
            operation = self.store.get_operation(first.operation_id)
            record = self._displacement_record(ctx, operation)
            record.displaced.extend(self.displacement.evict_operation(
                operation, reason=f"prerequisite {ctx.job.job_id} now finishes {finish:%Y-%m-%d %H:%M}"
            ))

    def _finish_displacement(self, ctx: _PassContext) -> None:
        record = ctx.record
        if self.config.reschedule_displaced:
            displaced_jobs = sorted(
                {d.job_id for d in record.displaced},
                key=lambda j: (-self.store.get_job(j).priority_score, j),
            )
            for job_id in displaced_jobs:
                self._replace_displaced(ctx, job_id)

        for entry in record.displaced:
            bookings = [
                b for b in self.store.bookings_for_operation(entry.operation_id) if b.occupies_resources
            ]
            if bookings:
                entry.new_start = min(b.start for b in bookings)
                entry.new_end = max(b.end for b in bookings)

        record.refresh_impact()
        record.execution_ms = int((perf.perf_counter() - ctx.started) * 1000)
        self.store.append_displacement(record)
        logger.info(
            "Displacement %s for job %s: %d displaced, %d rescheduled",
            record.record_id, ctx.job.job_id, record.total_displaced, record.total_rescheduled,
        )

    def _replace_displaced(self, ctx: _PassContext, job_id: str) -> None:
        """Place a displaced job's operations again, without further displacement."""
        job = self.store.get_job(job_id)
        bound = self.dependencies.job_start_bound(job_id, ctx.now)
        if bound.is_blocked:
            return
        sub_ctx = _PassContext(
            job=job,
            now=ctx.now,
            undo_entry=ctx.undo_entry,
            deadline=None,
            allow_displacement=False,
            started=ctx.started,
        )
        for operation in self.store.operations_for_job(job_id):
            if operation.routing_status not in PLACEABLE_ROUTING_STATUSES:
                continue
            try:
                self._place_operation(sub_ctx, operation, bound.earliest)
            except (NoCapacityError, BlockedError) as e:
                logger.info("Displaced job %s stays unscheduled: %s", job_id, e)
                break
        self._mark_job_scheduled(job)
        ctx.at_risk.extend(sub_ctx.at_risk)

    def _record_failed_displacement(
        self,
        error: DisplacementInfeasibleError,
        now: datetime,
        started: float
    ) -> None:
        with self.store.transaction():
            record = DisplacementRecord(
                record_id=self.store.next_id("DSP"),
                trigger_type="priority",
                trigger_job_id=error.job_id,
                trigger_operation_id=error.operation_id,
                time_off_id=None,
                success=False,
                created_at=now,
                execution_ms=int((perf.perf_counter() - started) * 1000),
                reason=error.reason,
            )
            self.store.append_displacement(record)

            locked = [
                booking_id for booking_id in error.blocking_bookings
                if booking_id in self.store.bookings
                and (
                    self.store.bookings[booking_id].locked
                    or self.store.get_job(self.store.bookings[booking_id].job_id).schedule_locked
                )
            ]
            if locked:
                raise_alert(
                    self.store, "high", ALERT_LOCKED_JOB_BLOCKED,
                    f"Job {error.job_id} could not displace locked work ({', '.join(locked)})",
                    error.job_id, now, operation_id=error.operation_id,
                )

    def _check_promise(self, job: Job, finish: datetime | None, now: datetime) -> None:
        deadline = job.promise_deadline
        if finish is None or deadline is None or finish <= deadline:
            return
        severity = "high" if job.priority_score > self.config.high_priority_threshold else "medium"
        raise_alert(
            self.store, severity, ALERT_PROMISE_DATE_VIOLATION,
            f"Job {job.job_number} finishes {finish:%Y-%m-%d %H:%M}, after promise date {job.promised_date}",
            job.job_id, now, promised_date=job.promised_date.isoformat(),
        )

    def schedule_all_pending(
        self,
        not_before: datetime | None = None,
        allow_displacement: bool = True
    ) -> BulkScheduleResult:
        """Schedule every job with unplaced operations, highest priority first.

        Each job is its own committed pass. Failures are recorded, not raised.
        Jobs blocked by prerequisites, and jobs displaced during the run,
        get one retry without displacement at the end.

        Returns:
            BulkScheduleResult with one result per job.
        """
        now = self.now()
        with self.store.transaction():
            recalculate_all_priorities(self.store, self.config, self.today())
            ordered = self._jobs_to_schedule()
            bulk = self.ledger.begin(
                "bulk_schedule",
                f"Schedule {len(ordered)} pending job(s)",
                [j.job_id for j in self.store.jobs.values() if not j.is_closed],
                now,
            )

        result = BulkScheduleResult()
        for job in ordered:
            result.results.append(self._try_schedule(job.job_id, not_before, allow_displacement))

        # Jobs that were blocked, or lost their bookings to a later pass, get one more try
        failed = {r.job_id for r in result.results if not r.success}
        blocked = {r.job_id for r in result.results if r.reason_code == BlockedError.reason_code}
        retry = [j for j in self._jobs_to_schedule() if j.job_id in blocked or j.job_id not in failed]
        for job in retry:
            result.retried.append(self._try_schedule(job.job_id, not_before, False))

        if any(r.success and r.operations for r in result.final_results().values()):
            with self.store.transaction():
                self.ledger.commit(bulk)
            result.undo_entry_id = bulk.entry_id

        logger.info(
            "Bulk scheduling: %d scheduled, %d failed",
            len(result.scheduled_job_ids), len(result.failed),
        )
        return result

    def _jobs_to_schedule(self) -> list[Job]:
        jobs = [
            j for j in self.store.jobs.values()
            if not j.is_closed and any(
                op.routing_status in PLACEABLE_ROUTING_STATUSES
                for op in self.store.operations_for_job(j.job_id)
            )
        ]
        return sorted(jobs, key=lambda j: (-j.priority_score, j.promised_date or date.max, j.job_id))

    def _try_schedule(
        self,
        job_id: str,
        not_before: datetime | None,
        allow_displacement: bool
    ) -> JobScheduleResult:
        try:
            return self.schedule_job(
                job_id, not_before=not_before, allow_displacement=allow_displacement, record_undo=False
            )
        except NON_FATAL_ERRORS as e:
            logger.warning("Job %s not scheduled: %s", job_id, e)
            return JobScheduleResult.from_error(job_id, e)

    def place_manual_booking(
        self,
        operation_id: str,
        machine_id: str,
        operator_id: str,
        start: datetime,
        end: datetime | None = None,
        method: str = "manual",
        lock: bool = False
    ) -> list[Booking]:
        """Book an operation at a planner-chosen time.

        Manual bookings must satisfy the machine requirement, the operator's
        qualification and working window. Override bookings skip those
        checks. Both respect sequencing, assembly ordering and never
        double-book. Later operations that now start too early are
        unscheduled.

        Raises:
            ValidationError: If the booking breaks a manual-booking rule.
            BlockedError: If a predecessor or prerequisite is unscheduled.
        """
        if method not in ("manual", "override"):
            raise ValidationError(field="method", value=method, reason="Must be manual or override")
        now = self.now()

        with self.store.transaction():
            operation = self.store.get_operation(operation_id)
            job = self.store.get_job(operation.job_id)
            if not operation.needs_booking:
                raise ValidationError(
                    field="operation_id", value=operation_id, reason="Operation does not take a booking"
                )
            machine = self.store.get_machine(machine_id)
            operator = self.store.get_operator(operator_id)
            qualification = self.store.get_qualification(operator_id, machine_id)

            if method == "manual":
                if machine not in eligible_machines(self.store, operation):
                    raise ValidationError(
                        field="machine_id", value=machine_id,
                        reason=f"Machine does not satisfy the requirement of {operation_id}"
                    )
                if qualification is None:
                    raise ValidationError(
                        field="operator_id", value=operator_id,
                        reason=f"Operator is not qualified on {machine_id}"
                    )

            end = end or start + timedelta(minutes=machine.wall_minutes(operation.nominal_minutes))
            if method == "manual" and not self.calendar.is_available(operator_id, start, end):
                raise ValidationError(
                    field="start", value=start, reason="Outside the operator's working window"
                )

            job_bound = self.dependencies.job_start_bound(job.job_id, start)
            if job_bound.is_blocked:
                raise BlockedError(job.job_id, job_bound.blocking_jobs, operation_id)
            bound = self.dependencies.operation_start_bound(operation, start)
            if bound.is_blocked:
                raise BlockedError(
                    job.job_id, [], operation_id,
                    reason=f"predecessor operation {bound.blocking_operation} is not scheduled",
                )
            earliest = max(bound.earliest, job_bound.earliest)
            if earliest > start:
                raise ValidationError(
                    field="start", value=start, reason=f"Operation cannot start before {earliest}"
                )

            for other in (
                self.store.bookings_for_machine(machine_id, start, end)
                + self.store.bookings_for_operator(operator_id, start, end)
            ):
                if other.operation_id != operation_id:
                    raise ValidationError(
                        field="start", value=start, reason=f"Conflicts with booking {other.booking_id}"
                    )

            entry = self.ledger.begin(
                "manual_reschedule", f"Manual booking of {operation_id}",
                [job.job_id, *self.displacement.dependent_jobs(job.job_id)], now
            )
            placement = Placement(
                candidate=Candidate(
                    machine=machine,
                    operator=operator,
                    qualification=qualification or Qualification(operator_id, machine_id),
                ),
                chunks=[SlotChunk(start, end)],
                wall_minutes=int((end - start).total_seconds() // 60),
            )
            bookings = self._commit_placement(
                operation, placement, method=method, locked=lock, notes=f"{method} booking"
            )
            self.displacement.evict_early_successors(operation, end)
            self._mark_job_scheduled(job)
            assert_job_invariants(self.store, self.dependencies, [job.job_id])
            self.ledger.commit(entry)

        logger.info(
            "%s booking of %s on %s/%s at %s", method.capitalize(), operation_id, machine_id, operator_id, start
        )
        return bookings

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def can_schedule(self, job_id: str) -> ScheduleCheck:
        """Check whether a job can be scheduled now.

        Returns:
            ScheduleCheck with the blocking prerequisite jobs, if any.
        """
        job = self.store.get_job(job_id)
        if job.is_closed:
            return ScheduleCheck(job_id, False, reason=f"job is {job.status}")

        now = self.now()
        bound = self.dependencies.job_start_bound(job_id, now)
        if bound.is_blocked:
            return ScheduleCheck(
                job_id, False, blocking_jobs=bound.blocking_jobs,
                reason="prerequisite jobs are not scheduled",
            )

        earliest = bound.earliest
        pending = [
            op for op in self.store.operations_for_job(job_id)
            if op.routing_status in PLACEABLE_ROUTING_STATUSES
        ]
        if pending:
            op_bound = self.dependencies.operation_start_bound(pending[0], earliest)
            if op_bound.is_blocked:
                return ScheduleCheck(
                    job_id, False,
                    reason=f"operation {op_bound.blocking_operation} must be scheduled first",
                )
            earliest = op_bound.earliest
        return ScheduleCheck(job_id, True, earliest_start=earliest)

    def earliest_start(self, job_id: str) -> datetime | None:
        """Get the earliest legal start of a job, None when it cannot start."""
        return self.can_schedule(job_id).earliest_start

    def preview_displacement(
        self,
        job_id: str,
        deadline: datetime | None = None,
        not_before: datetime | None = None
    ) -> DisplacementPreview:
        """Run a scheduling pass for a job and report what it would displace.

        The pass runs in a scratch copy of the store, so nothing is booked,
        evicted or recorded.

        Raises:
            RecordNotFoundError: If the job does not exist.
            ValidationError: If the job is closed.
        """
        preview = DisplacementPreview(job_id=job_id)
        with self.store.scratch():
            try:
                result = self._schedule_pass(
                    job_id, self.now(), not_before, deadline, True, False, False, perf.perf_counter()
                )
            except DisplacementInfeasibleError as e:
                preview.feasible = False
                preview.blocking_bookings = list(e.blocking_bookings)
                preview.reason = e.reason
            except (NoCapacityError, BlockedError) as e:
                preview.feasible = False
                preview.reason = str(e)
            else:
                preview.start, preview.end = result.start, result.end
                if result.displacement_record_id is not None:
                    record = self.store.displacement_history[-1]
                    preview.displaced = record.displaced
                    preview.impact = record.impact
        return preview

    def validate(self) -> ValidationResult:
        return validate_schedule(self.store, self.config)

    # ------------------------------------------------------------------
    # Time off and undo
    # ------------------------------------------------------------------

    def add_time_off(self, time_off: TimeOff) -> TimeOffResult:
        """Insert operator time off and re-evaluate the affected bookings."""
        return self.time_off_handler.handle(time_off, self.now())

    def undo(self, entry_id: str) -> UndoEntry:
        return self.ledger.reverse(entry_id, self.clock())

    def available_undo(self) -> list[UndoEntry]:
        return self.ledger.available(self.clock())

    def purge_expired_undo(self) -> int:
        return self.ledger.purge_expired(self.clock())
