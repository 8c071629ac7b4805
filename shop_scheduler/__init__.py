# Shop Floor Priority Scheduler - Core Package
# Version: 1.0.0

"""
Priority-driven scheduling engine for a job-shop manufacturing floor.

Places each job's routing onto machines and qualified operators in
priority order, displaces lower-priority work when capacity runs out,
re-plans around operator time off and keeps every change undoable.
"""

__version__ = "1.0.0"

from .errors import (
    SchedulingError,
    ValidationError,
    ConfigurationError,
    FileLoadError,
    RecordNotFoundError,
    NoCapacityError,
    BlockedError,
    DisplacementInfeasibleError,
    InvariantViolationError,
    UndoConflictError,
    UndoExpiredError,
)

from .constants import (
    EngineConfig,
    ShiftPattern,
    TransferLag,
    load_config_from_yaml,
    save_config_to_yaml,
    CUSTOMER_TIERS,
)

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

from .store import ScheduleStore

from .priority import (
    PriorityBreakdown,
    calculate_priority,
    priority_label,
    recalculate_all_priorities,
)

from .shift_calendar import (
    CalendarResolver,
    WorkingWindow,
)

from .matcher import (
    Candidate,
    find_candidates,
)

from .allocator import (
    Placement,
    TimeSlotAllocator,
)

from .dependencies import DependencyResolver

from .displacement import DisplacementEngine

from .time_off import (
    TimeOffHandler,
    TimeOffResult,
)

from .undo import UndoLedger

from .validator import (
    ValidationResult,
    validate_schedule,
)

from .engine import (
    SchedulingEngine,
    JobScheduleResult,
    BulkScheduleResult,
    ScheduleCheck,
    DisplacementPreview,
)

from .data_loader import (
    load_shop_snapshot,
    load_shop_frames,
)

from .output_generator import (
    export_bookings,
    bookings_to_frame,
    export_to_json,
    export_to_excel,
    export_displacement_history,
    summarize_shift_capacity,
)
