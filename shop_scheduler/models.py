# Domain records for the shop floor scheduling engine.
# Version: 1.0.0
# Jobs, operations, bookings, resources, calendars and the engine's audit records.

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from math import ceil
from typing import Any, Literal

from .constants import CUSTOMER_TIERS, CustomerTierName
from .errors import ValidationError


# Type aliases
JobStatus = Literal["pending", "scheduled", "in_progress", "completed", "cancelled"]
JobType = Literal["standard", "assembly_parent", "assembly_component"]
RoutingStatus = Literal["pending", "scheduled", "completed", "needs_rescheduling"]
OperationCategory = Literal["machining", "inspection", "outsourced"]
BookingStatus = Literal["scheduled", "in_progress", "completed", "needs_rescheduling"]
BookingMethod = Literal["auto", "manual", "override"]
ResourceStatus = Literal["active", "inactive"]
InspectionStatus = Literal["awaiting", "in_progress", "completed", "hold"]
AlertSeverity = Literal["low", "medium", "high", "critical"]
DisplacementTrigger = Literal["priority", "time_off"]

VALID_JOB_STATUSES: frozenset[str] = frozenset(
    {"pending", "scheduled", "in_progress", "completed", "cancelled"}
)
VALID_JOB_TYPES: frozenset[str] = frozenset({"standard", "assembly_parent", "assembly_component"})
VALID_ROUTING_STATUSES: frozenset[str] = frozenset(
    {"pending", "scheduled", "completed", "needs_rescheduling"}
)
VALID_CATEGORIES: frozenset[str] = frozenset({"machining", "inspection", "outsourced"})
VALID_BOOKING_STATUSES: frozenset[str] = frozenset(
    {"scheduled", "in_progress", "completed", "needs_rescheduling"}
)
VALID_BOOKING_METHODS: frozenset[str] = frozenset({"auto", "manual", "override"})
VALID_INSPECTION_STATUSES: frozenset[str] = frozenset({"awaiting", "in_progress", "completed", "hold"})

# Bookings in these states occupy their machine and operator
ACTIVE_BOOKING_STATUSES: frozenset[str] = frozenset({"scheduled", "in_progress", "completed"})

# Jobs in these states are not scheduled by the engine
CLOSED_JOB_STATUSES: frozenset[str] = frozenset({"completed", "cancelled"})


def _check_choice(name: str, value: str, choices: frozenset[str]) -> None:
    if value not in choices:
        raise ValidationError(
            field=name,
            value=value,
            reason=f"Must be one of {', '.join(sorted(choices))}"
        )


@dataclass
class CustomerTier:
    """Priority tier assigned to a customer.

    Attributes:
        customer_name: Customer name as it appears on jobs.
        tier: top, mid or standard.
        priority_weight: Points this tier contributes to the priority score.
    """
    customer_name: str
    tier: CustomerTierName = "standard"
    priority_weight: int = 0

    def __post_init__(self) -> None:
        _check_choice("tier", self.tier, frozenset(CUSTOMER_TIERS))


@dataclass
class Job:
    """A customer order to be manufactured through a routing of operations.

    Attributes:
        job_id: Unique job identifier.
        customer: Customer name (matched case-insensitively to tiers).
        promised_date: Date promised to the customer.
        job_number: Display number, defaults to job_id.
        order_date: Date the order was received.
        due_date: Internal due date.
        status: Lifecycle status.
        priority_score: Computed priority in [0, 1000].
        is_expedite: Expedite flag (set explicitly or by the expedite rule).
        schedule_locked: Immune to displacement when True.
        lock_reason: Why the job was locked.
        job_type: standard, assembly_parent or assembly_component.
        parent_job_id: Parent assembly for components.
        assembly_sequence: Position of a component within its assembly.
        created_at: Creation timestamp.
    """
    job_id: str
    customer: str
    promised_date: date | None = None
    job_number: str = ""
    order_date: date | None = None
    due_date: date | None = None
    status: JobStatus = "pending"
    priority_score: int = 0
    is_expedite: bool = False
    schedule_locked: bool = False
    lock_reason: str | None = None
    job_type: JobType = "standard"
    parent_job_id: str | None = None
    assembly_sequence: int | None = None
    created_at: datetime | None = None

    def __post_init__(self) -> None:
        """Validate job fields after initialization."""
        if not self.job_id:
            raise ValidationError(field="job_id", value=self.job_id, reason="Job id cannot be empty")
        if not self.job_number:
            self.job_number = self.job_id
        _check_choice("status", self.status, VALID_JOB_STATUSES)
        _check_choice("job_type", self.job_type, VALID_JOB_TYPES)
        if self.job_type == "assembly_component" and not self.parent_job_id:
            raise ValidationError(
                field="parent_job_id",
                value=self.parent_job_id,
                reason=f"Assembly component {self.job_id} needs a parent job"
            )
        if self.parent_job_id == self.job_id:
            raise ValidationError(
                field="parent_job_id",
                value=self.parent_job_id,
                reason="A job cannot be its own parent"
            )

    @property
    def is_assembly_parent(self) -> bool:
        """Check if this job is an assembly parent."""
        return self.job_type == "assembly_parent"

    @property
    def is_closed(self) -> bool:
        """Check if the job is completed or cancelled."""
        return self.status in CLOSED_JOB_STATUSES

    @property
    def promise_deadline(self) -> datetime | None:
        """Get the end of the promised day, or None when no promise date."""
        if self.promised_date is None:
            return None
        return datetime.combine(self.promised_date + timedelta(days=1), time.min)


@dataclass
class Operation:
    """One routing step of a job.

    Machining operations require exactly one of a specific machine or a
    machine group. Inspection operations with zero hours go to the inspection
    queue. Outsourced operations are sent to a vendor.

    Attributes:
        operation_id: Unique operation identifier.
        job_id: Owning job.
        sequence_order: Position in the routing (unique per job).
        name: Operation name (used for transfer lag rules).
        estimated_hours: Nominal duration in hours.
        machine_id: Required specific machine.
        machine_group_id: Required machine group.
        category: machining, inspection or outsourced.
        vendor: Vendor name for outsourced operations.
        vendor_lead_days: Vendor lead time in calendar days.
        routing_status: Scheduling state of the operation.
        planned_start: Planned start for operations without bookings.
        planned_end: Planned end for operations without bookings.
    """
    operation_id: str
    job_id: str
    sequence_order: int
    name: str = ""
    estimated_hours: float = 0.0
    machine_id: str | None = None
    machine_group_id: str | None = None
    category: OperationCategory = "machining"
    vendor: str | None = None
    vendor_lead_days: int = 0
    routing_status: RoutingStatus = "pending"
    planned_start: datetime | None = None
    planned_end: datetime | None = None

    def __post_init__(self) -> None:
        """Validate operation fields after initialization."""
        _check_choice("category", self.category, VALID_CATEGORIES)
        _check_choice("routing_status", self.routing_status, VALID_ROUTING_STATUSES)
        if self.estimated_hours < 0:
            raise ValidationError(
                field="estimated_hours",
                value=self.estimated_hours,
                reason="Duration cannot be negative"
            )
        if self.category == "machining":
            if (self.machine_id is None) == (self.machine_group_id is None):
                raise ValidationError(
                    field="machine_id",
                    value=(self.machine_id, self.machine_group_id),
                    reason=(
                        f"Operation {self.operation_id} needs exactly one of "
                        "a specific machine or a machine group"
                    )
                )
        if self.category == "outsourced" and self.vendor_lead_days < 0:
            raise ValidationError(
                field="vendor_lead_days",
                value=self.vendor_lead_days,
                reason="Lead time cannot be negative"
            )

    @property
    def nominal_minutes(self) -> int:
        """Get nominal duration in whole minutes."""
        return ceil(round(self.estimated_hours * 60, 6))

    @property
    def is_outsourced(self) -> bool:
        """Check if this operation is performed by a vendor."""
        return self.category == "outsourced"

    @property
    def is_queue_inspection(self) -> bool:
        """Check if this is a zero-duration inspection handled by the queue."""
        return self.category == "inspection" and self.nominal_minutes == 0

    @property
    def needs_booking(self) -> bool:
        """Check if this operation occupies a machine and an operator."""
        return not self.is_outsourced and self.nominal_minutes > 0 and not self.is_queue_inspection


@dataclass
class Machine:
    """A machine (work center) that operations run on.

    Attributes:
        machine_id: Unique machine identifier.
        name: Display name.
        status: active or inactive.
        efficiency_modifier: Throughput multiplier, 0 < m <= 2.
        groups: Machine groups this machine belongs to.
    """
    machine_id: str
    name: str = ""
    status: ResourceStatus = "active"
    efficiency_modifier: float = 1.0
    groups: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if not 0 < self.efficiency_modifier <= 2:
            raise ValidationError(
                field="efficiency_modifier",
                value=self.efficiency_modifier,
                reason="Must be greater than 0 and at most 2"
            )
        self.groups = frozenset(self.groups)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def wall_minutes(self, nominal_minutes: int) -> int:
        """Convert nominal minutes to wall-clock minutes on this machine."""
        return ceil(round(nominal_minutes / self.efficiency_modifier, 6))


@dataclass
class Operator:
    """A person who runs machines.

    Attributes:
        operator_id: Stable operator identifier used everywhere in the engine.
        name: Display name.
        display_code: External employee code, display only.
        status: active or inactive.
        shift_pattern: Name of the assigned shift pattern.
        custom_start: Operator-specific start time.
        custom_end: Operator-specific end time.
    """
    operator_id: str
    name: str = ""
    display_code: str | None = None
    status: ResourceStatus = "active"
    shift_pattern: str | None = None
    custom_start: time | None = None
    custom_end: time | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def has_custom_hours(self) -> bool:
        return self.custom_start is not None and self.custom_end is not None


@dataclass
class Qualification:
    """An operator's qualification to run a machine.

    Attributes:
        operator_id: Qualified operator.
        machine_id: Machine the operator can run.
        proficiency_level: Skill level, higher is better.
        preference_rank: Preference order, lower is more preferred.
    """
    operator_id: str
    machine_id: str
    proficiency_level: int = 3
    preference_rank: int = 1


@dataclass
class ScheduleEntry:
    """Explicit working hours for an operator on a weekday or specific date.

    Exactly one of weekday or on_date is set. Weekday entries apply from
    their effective date onwards; the latest effective entry wins.

    Attributes:
        operator_id: Operator the entry belongs to.
        start: Start time of day.
        end: End time of day (not after start means overnight).
        weekday: Weekday (Monday=0) for recurring entries.
        on_date: Specific date for one-off overrides.
        is_working_day: False marks the day as off.
        effective_date: First date a weekday entry applies.
    """
    operator_id: str
    start: time
    end: time
    weekday: int | None = None
    on_date: date | None = None
    is_working_day: bool = True
    effective_date: date | None = None

    def __post_init__(self) -> None:
        if (self.weekday is None) == (self.on_date is None):
            raise ValidationError(
                field="weekday",
                value=(self.weekday, self.on_date),
                reason="Schedule entry needs exactly one of weekday or on_date"
            )
        if self.weekday is not None and not 0 <= self.weekday <= 6:
            raise ValidationError(field="weekday", value=self.weekday, reason="Must be 0-6")


@dataclass
class TimeOff:
    """An operator's absence over an inclusive date range.

    Attributes:
        time_off_id: Unique identifier.
        operator_id: Absent operator.
        start_date: First day off.
        end_date: Last day off (inclusive).
        reason: Free-text reason.
        approved: Only approved time off affects the calendar.
    """
    time_off_id: str
    operator_id: str
    start_date: date
    end_date: date
    reason: str = ""
    approved: bool = True

    def __post_init__(self) -> None:
        if self.end_date < self.start_date:
            raise ValidationError(
                field="end_date",
                value=self.end_date,
                reason=f"Must not be before start_date {self.start_date}"
            )

    def covers(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date

    @property
    def return_date(self) -> date:
        """Get the first day after the absence."""
        return self.end_date + timedelta(days=1)


@dataclass
class Dependency:
    """A prerequisite relation between two jobs.

    Attributes:
        prerequisite_job_id: Job that must finish first.
        dependent_job_id: Job that waits.
        dependency_type: Kind of dependency (e.g. "assembly").
    """
    prerequisite_job_id: str
    dependent_job_id: str
    dependency_type: str = "assembly"


@dataclass
class Booking:
    """A placed (machine, operator, time window) assignment for an operation.

    Chunked operations produce one booking per chunk.

    Attributes:
        booking_id: Unique booking identifier.
        job_id: Owning job.
        operation_id: Booked operation.
        machine_id: Booked machine.
        operator_id: Booked operator.
        start: Start instant.
        end: End instant.
        status: scheduled, in_progress, completed or needs_rescheduling.
        locked: Immune to displacement when True.
        method: auto, manual or override.
        chunk_sequence: 1-based chunk number.
        chunk_count: Number of chunks of the operation.
        notes: Free-text notes.
        version: Bumped on every modification.
    """
    booking_id: str
    job_id: str
    operation_id: str
    machine_id: str
    operator_id: str
    start: datetime
    end: datetime
    status: BookingStatus = "scheduled"
    locked: bool = False
    method: BookingMethod = "auto"
    chunk_sequence: int = 1
    chunk_count: int = 1
    notes: str = ""
    version: int = 1

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValidationError(
                field="end",
                value=self.end,
                reason=f"Booking {self.booking_id} must end after it starts ({self.start})"
            )
        _check_choice("status", self.status, VALID_BOOKING_STATUSES)
        _check_choice("method", self.method, VALID_BOOKING_METHODS)

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    @property
    def occupies_resources(self) -> bool:
        """Check if this booking blocks its machine and operator."""
        return self.status in ACTIVE_BOOKING_STATUSES

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Check if this booking overlaps the half-open interval [start, end)."""
        return self.start < end and start < self.end


@dataclass
class InspectionQueueEntry:
    """A zero-duration inspection waiting for an inspector.

    Attributes:
        entry_id: Unique entry identifier.
        job_id: Owning job.
        operation_id: Inspection operation.
        priority_score: Job priority at enqueue time.
        enqueued_at: When the entry was added.
        status: awaiting, in_progress, completed or hold.
    """
    entry_id: str
    job_id: str
    operation_id: str
    priority_score: int
    enqueued_at: datetime
    status: InspectionStatus = "awaiting"


@dataclass
class Alert:
    """A notification raised for a disruption needing attention.

    Attributes:
        alert_id: Unique alert identifier.
        severity: low, medium, high or critical.
        alert_type: Machine-readable alert kind.
        message: Human-readable message.
        job_id: Referenced job, if any.
        created_at: When the alert was raised.
        details: Additional context.
    """
    alert_id: str
    severity: AlertSeverity
    alert_type: str
    message: str
    job_id: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class DisplacedOperation:
    """Before/after timing for one evicted booking.

    Attributes:
        job_id: Displaced job.
        operation_id: Displaced operation.
        booking_id: Evicted booking.
        customer: Customer of the displaced job.
        priority_score: Priority of the displaced job.
        machine_id: Machine the booking was on.
        operator_id: Operator the booking was assigned to.
        original_start: Start before eviction.
        original_end: End before eviction.
        new_start: Start after rescheduling, None while pending.
        new_end: End after rescheduling, None while pending.
        reason: Why the booking was evicted.
    """
    job_id: str
    operation_id: str
    booking_id: str
    customer: str
    priority_score: int
    machine_id: str
    operator_id: str
    original_start: datetime
    original_end: datetime
    new_start: datetime | None = None
    new_end: datetime | None = None
    reason: str = ""

    @property
    def hours(self) -> float:
        return (self.original_end - self.original_start).total_seconds() / 3600

    @property
    def delay_hours(self) -> float | None:
        if self.new_start is None:
            return None
        return (self.new_start - self.original_start).total_seconds() / 3600


@dataclass
class DisplacementImpact:
    """Aggregate impact of one displacement.

    Attributes:
        customers_affected: Number of distinct customers.
        machines_affected: Number of distinct machines.
        total_hours_displaced: Sum of displaced booking hours.
        average_delay_hours: Mean delay of rescheduled operations.
    """
    customers_affected: int = 0
    machines_affected: int = 0
    total_hours_displaced: float = 0.0
    average_delay_hours: float = 0.0


@dataclass
class DisplacementRecord:
    """Append-only audit record of one displacement trigger.

    Attributes:
        record_id: Unique record identifier.
        trigger_type: priority or time_off.
        trigger_job_id: Job whose placement caused the displacement.
        trigger_operation_id: Operation whose placement caused it.
        time_off_id: Time-off record for time-off triggers.
        success: True if the trigger was satisfied.
        created_at: When the displacement happened.
        execution_ms: Wall time spent in the displacement pass.
        displaced: Per-operation before/after timing.
        total_rescheduled: Displaced operations placed again in the same pass.
        impact: Aggregate impact.
        reason: Failure reason for unsuccessful triggers.
    """
    record_id: str
    trigger_type: DisplacementTrigger
    trigger_job_id: str | None
    trigger_operation_id: str | None
    time_off_id: str | None
    success: bool
    created_at: datetime
    execution_ms: int = 0
    displaced: list[DisplacedOperation] = field(default_factory=list)
    total_rescheduled: int = 0
    impact: DisplacementImpact = field(default_factory=DisplacementImpact)
    reason: str = ""

    @property
    def total_displaced(self) -> int:
        return len(self.displaced)

    def refresh_impact(self) -> None:
        """Recompute counts and impact from the displaced operations."""
        delays = [d.delay_hours for d in self.displaced if d.delay_hours is not None]
        self.total_rescheduled = len(delays)
        self.impact = DisplacementImpact(
            customers_affected=len({d.customer.lower() for d in self.displaced}),
            machines_affected=len({d.machine_id for d in self.displaced}),
            total_hours_displaced=round(sum(d.hours for d in self.displaced), 2),
            average_delay_hours=round(sum(delays) / len(delays), 2) if delays else 0.0,
        )


@dataclass
class JobSnapshot:
    """Captured scheduling state of one job for undo.

    Attributes:
        job_id: Captured job.
        job_status: Job status at capture time.
        bookings: Copies of the job's bookings.
        routing: operation_id -> (routing_status, planned_start, planned_end).
    """
    job_id: str
    job_status: JobStatus
    bookings: list[Booking]
    routing: dict[str, tuple[RoutingStatus, datetime | None, datetime | None]]


@dataclass
class UndoEntry:
    """Time-bounded record enabling reversal of one change.

    Attributes:
        entry_id: Unique entry identifier.
        operation_type: displacement, manual_reschedule, auto_schedule,
            bulk_schedule or time_off.
        description: Human-readable description.
        created_at: When the change was made.
        expires_at: After this instant the entry cannot be reversed.
        snapshots: Pre-change state per affected job.
        fingerprint: Post-change booking fingerprint per affected job.
        reversed_at: When the entry was reversed, None if not yet.
    """
    entry_id: str
    operation_type: str
    description: str
    created_at: datetime
    expires_at: datetime
    snapshots: dict[str, JobSnapshot] = field(default_factory=dict)
    fingerprint: dict[str, tuple] = field(default_factory=dict)
    reversed_at: datetime | None = None

    @property
    def job_ids(self) -> list[str]:
        return sorted(self.snapshots)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at
