# Custom exception hierarchy for the shop floor scheduling engine.
# Version: 1.0.0
# Provides structured error handling with job/operation context and reason codes.

from typing import Any


class SchedulingError(Exception):
    """Base exception for all scheduling engine errors.

    All custom exceptions inherit from this class to allow catching
    any scheduling-related error with a single except clause.

    Attributes:
        message: Human-readable error description.
        details: Additional context for debugging.
        reason_code: Stable machine-readable code for the failure kind.
    """

    reason_code: str = "scheduling_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize the scheduling error.

        Args:
            message: Human-readable error description.
            details: Optional dictionary of additional context.
        """
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return formatted error message with details."""
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} [{detail_str}]"
        return self.message


class ValidationError(SchedulingError):
    """Raised when input data fails validation.

    Used for invalid field values, out-of-range values and missing required
    fields in collaborator records or snapshot workbooks.

    Attributes:
        field: Name of the field that failed validation.
        value: The invalid value that was provided.
        reason: Explanation of why the value is invalid.
        row: Optional row number in the data source.
    """

    reason_code = "validation"

    def __init__(
        self,
        field: str,
        value: Any,
        reason: str,
        row: int | None = None
    ) -> None:
        """Initialize the validation error.

        Args:
            field: Name of the field that failed validation.
            value: The invalid value provided.
            reason: Explanation of why validation failed.
            row: Optional row number (1-indexed) for spreadsheet errors.
        """
        self.field = field
        self.value = value
        self.reason = reason
        self.row = row

        details = {"field": field, "value": repr(value)}
        if row is not None:
            details["row"] = row

        location = f" in row {row}" if row else ""
        message = f"Invalid {field}{location}: {reason}. Got: {repr(value)}"
        super().__init__(message, details)


class ConfigurationError(SchedulingError):
    """Raised when engine configuration is invalid or missing.

    Attributes:
        config_source: Name of the configuration source (file, key, etc.).
        issue: Description of the configuration problem.
    """

    reason_code = "configuration"

    def __init__(self, config_source: str, issue: str) -> None:
        """Initialize the configuration error.

        Args:
            config_source: Name of the configuration source.
            issue: Description of what's wrong with the configuration.
        """
        self.config_source = config_source
        self.issue = issue

        message = f"Configuration error in {config_source}: {issue}"
        super().__init__(message, {"source": config_source})


class FileLoadError(SchedulingError):
    """Raised when a required file cannot be loaded.

    Attributes:
        filepath: Path to the file that failed to load.
        cause: The underlying exception that caused the failure.
    """

    reason_code = "file_load"

    def __init__(self, filepath: str, cause: Exception) -> None:
        """Initialize the file load error.

        Args:
            filepath: Path to the file that failed to load.
            cause: The underlying exception.
        """
        self.filepath = filepath
        self.cause = cause

        filename = filepath.split("/")[-1].split("\\")[-1]
        cause_type = type(cause).__name__

        message = f"Failed to load {filename}: {cause_type} - {cause}"
        super().__init__(message, {"filepath": filepath, "cause_type": cause_type})


class RecordNotFoundError(SchedulingError):
    """Raised when a record lookup in the schedule store misses.

    Attributes:
        record_type: Kind of record (job, operation, booking, ...).
        record_id: Identifier that was not found.
    """

    reason_code = "not_found"

    def __init__(self, record_type: str, record_id: str) -> None:
        self.record_type = record_type
        self.record_id = record_id
        message = f"{record_type.capitalize()} '{record_id}' not found"
        super().__init__(message, {"record_type": record_type, "record_id": record_id})


class NoCapacityError(SchedulingError):
    """Raised when no feasible slot exists for an operation.

    Every candidate (machine, operator) pair was tried and the search horizon
    was exhausted without finding enough free working time. Nothing is
    mutated when this is raised.

    Attributes:
        job_id: Job whose operation could not be placed.
        operation_id: Operation that could not be placed.
        horizon_days: Number of days searched.
        reason: Explanation of why placement failed.
    """

    reason_code = "no_capacity"

    def __init__(
        self,
        job_id: str,
        operation_id: str,
        horizon_days: int,
        reason: str = "no free capacity within search horizon"
    ) -> None:
        """Initialize the no-capacity error.

        Args:
            job_id: Job identifier.
            operation_id: Operation identifier.
            horizon_days: Number of calendar days searched.
            reason: Explanation of why placement failed.
        """
        self.job_id = job_id
        self.operation_id = operation_id
        self.horizon_days = horizon_days
        self.reason = reason

        message = f"Cannot place operation {operation_id} of job {job_id}: {reason}"
        super().__init__(
            message,
            {
                "job_id": job_id,
                "operation_id": operation_id,
                "horizon_days": horizon_days,
                "reason_code": self.reason_code,
            }
        )


class BlockedError(SchedulingError):
    """Raised when a job or operation has unscheduled prerequisites.

    Attributes:
        job_id: Job that is blocked.
        blocking_jobs: Prerequisite job ids that are not yet scheduled.
        operation_id: Operation that is blocked, if a single one.
        reason: Explanation of the block.
    """

    reason_code = "blocked"

    def __init__(
        self,
        job_id: str,
        blocking_jobs: list[str],
        operation_id: str | None = None,
        reason: str = "prerequisites are not scheduled"
    ) -> None:
        """Initialize the blocked error.

        Args:
            job_id: Job identifier.
            blocking_jobs: Prerequisite job ids that are unscheduled or incomplete.
            operation_id: Optional blocked operation identifier.
            reason: Explanation of the block.
        """
        self.job_id = job_id
        self.blocking_jobs = blocking_jobs
        self.operation_id = operation_id
        self.reason = reason

        blocking = ", ".join(blocking_jobs) if blocking_jobs else "none"
        message = f"Job {job_id} is blocked: {reason} (blocking: {blocking})"
        super().__init__(
            message,
            {
                "job_id": job_id,
                "operation_id": operation_id,
                "blocking_count": len(blocking_jobs),
                "reason_code": self.reason_code,
            }
        )


class DisplacementInfeasibleError(SchedulingError):
    """Raised when displacement cannot free enough capacity.

    The requesting operation could not be placed even after considering every
    evictable booking. Nothing is mutated when this is raised.

    Attributes:
        job_id: Requesting job.
        operation_id: Requesting operation.
        blocking_bookings: Booking ids that prevented the displacement.
        reason: Explanation of why displacement failed.
    """

    reason_code = "displacement_infeasible"

    def __init__(
        self,
        job_id: str,
        operation_id: str,
        blocking_bookings: list[str],
        reason: str = "no evictable conflicts free enough capacity"
    ) -> None:
        """Initialize the displacement infeasible error.

        Args:
            job_id: Requesting job identifier.
            operation_id: Requesting operation identifier.
            blocking_bookings: Bookings that could not be evicted.
            reason: Explanation of the failure.
        """
        self.job_id = job_id
        self.operation_id = operation_id
        self.blocking_bookings = blocking_bookings
        self.reason = reason

        message = f"Cannot displace work for operation {operation_id} of job {job_id}: {reason}"
        super().__init__(
            message,
            {
                "job_id": job_id,
                "operation_id": operation_id,
                "blocking_count": len(blocking_bookings),
                "reason_code": self.reason_code,
            }
        )


class InvariantViolationError(SchedulingError):
    """Raised when a mutation would break a schedule invariant.

    This is a programming-level fault. The enclosing pass is aborted and its
    transaction rolled back.

    Attributes:
        invariant: Name of the invariant (e.g. "no_double_booking").
        violation: What specifically violated the invariant.
    """

    reason_code = "invariant_violation"

    def __init__(self, invariant: str, violation: str) -> None:
        """Initialize the invariant violation error.

        Args:
            invariant: Invariant name.
            violation: How the invariant was violated.
        """
        self.invariant = invariant
        self.violation = violation

        message = f"Invariant {invariant} violated: {violation}"
        super().__init__(message, {"invariant": invariant, "reason_code": self.reason_code})


class UndoConflictError(SchedulingError):
    """Raised when an undo entry's bookings were modified after capture.

    Attributes:
        entry_id: Undo entry that could not be reversed.
        changed_jobs: Jobs whose bookings differ from the recorded state.
    """

    reason_code = "undo_conflict"

    def __init__(self, entry_id: str, changed_jobs: list[str], reason: str = "") -> None:
        self.entry_id = entry_id
        self.changed_jobs = changed_jobs
        self.reason = reason or "bookings were modified after the change was recorded"

        message = f"Cannot undo {entry_id}: {self.reason}"
        super().__init__(
            message,
            {
                "entry_id": entry_id,
                "changed_jobs": ", ".join(changed_jobs),
                "reason_code": self.reason_code,
            }
        )


class UndoExpiredError(SchedulingError):
    """Raised when reversing an expired or already reversed undo entry."""

    reason_code = "undo_expired"

    def __init__(self, entry_id: str, reason: str = "undo entry has expired") -> None:
        self.entry_id = entry_id
        self.reason = reason
        super().__init__(
            f"Cannot undo {entry_id}: {reason}",
            {"entry_id": entry_id, "reason_code": self.reason_code},
        )
