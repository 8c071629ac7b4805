# Load a shop snapshot workbook for the scheduling engine.
# Version: 1.0.0
# Parses machines, operators, calendars, jobs, routings and bookings from Excel into a ScheduleStore.

import logging
from datetime import date, datetime, time
from functools import partial
from pathlib import Path
from typing import Any, Callable

import pandas as pd

from .constants import WEEKDAY_NAMES, EngineConfig
from .errors import FileLoadError, ValidationError
from .models import (
    Booking,
    CustomerTier,
    Dependency,
    Job,
    Machine,
    Operation,
    Operator,
    Qualification,
    ScheduleEntry,
    TimeOff,
)
from .priority import parse_lead_days, recalculate_all_priorities
from .store import ScheduleStore


logger = logging.getLogger(__name__)

# Sheet name -> required columns
SHEET_COLUMNS: dict[str, set[str]] = {
    "CUSTOMER_TIERS": {"CUSTOMER", "TIER"},
    "MACHINES": {"MACHINE_ID"},
    "OPERATORS": {"OPERATOR_ID"},
    "QUALIFICATIONS": {"OPERATOR_ID", "MACHINE_ID"},
    "SCHEDULE_ENTRIES": {"OPERATOR_ID", "START", "END"},
    "TIME_OFF": {"TIME_OFF_ID", "OPERATOR_ID", "START_DATE", "END_DATE"},
    "JOBS": {"JOB_ID", "CUSTOMER"},
    "OPERATIONS": {"OPERATION_ID", "JOB_ID", "SEQUENCE"},
    "DEPENDENCIES": {"PREREQUISITE_JOB_ID", "DEPENDENT_JOB_ID"},
    "BOOKINGS": {
        "BOOKING_ID", "JOB_ID", "OPERATION_ID", "MACHINE_ID", "OPERATOR_ID", "START", "END"
    },
}

REQUIRED_SHEETS: frozenset[str] = frozenset({"MACHINES", "OPERATORS", "JOBS", "OPERATIONS"})

# Load order; later sheets reference earlier ones
SHEET_ORDER: tuple[str, ...] = (
    "CUSTOMER_TIERS", "MACHINES", "OPERATORS", "QUALIFICATIONS", "SCHEDULE_ENTRIES",
    "TIME_OFF", "JOBS", "OPERATIONS", "DEPENDENCIES", "BOOKINGS",
)


def load_shop_snapshot(
    filepath: str | Path,
    config: EngineConfig | None = None,
    today: date | None = None
) -> ScheduleStore:
    """Load a shop snapshot workbook into a new store.

    Args:
        filepath: Path to the snapshot .xlsx file.
        config: Engine configuration used to score the loaded jobs.
        today: Reference date for priority scoring. Defaults to today.

    Returns:
        ScheduleStore with every sheet loaded and priorities computed.

    Raises:
        FileLoadError: If the workbook cannot be read.
        ValidationError: If a sheet, column or row is invalid.
    """
    filepath = Path(filepath)

    try:
        frames = pd.read_excel(filepath, sheet_name=None, engine="openpyxl")
    except Exception as e:
        raise FileLoadError(str(filepath), e)

    store = load_shop_frames(frames, config, today)
    logger.info(
        "Loaded snapshot %s: %d jobs, %d operations, %d bookings",
        filepath.name, len(store.jobs), len(store.operations), len(store.bookings),
    )
    return store


def load_shop_frames(
    frames: dict[str, pd.DataFrame],
    config: EngineConfig | None = None,
    today: date | None = None
) -> ScheduleStore:
    """Build a store from one DataFrame per sheet.

    Args:
        frames: Sheet name -> DataFrame. Sheet names are case-insensitive.
        config: Engine configuration used to score the loaded jobs.
        today: Reference date for priority scoring. Defaults to today.

    Returns:
        Loaded ScheduleStore.

    Raises:
        ValidationError: If a required sheet is missing or data is invalid.
    """
    frames = {str(name).strip().upper(): df for name, df in frames.items()}
    missing = REQUIRED_SHEETS - set(frames)
    if missing:
        raise ValidationError(
            field="sheets",
            value=sorted(frames),
            reason=f"Missing required sheets: {', '.join(sorted(missing))}"
        )

    config = config or EngineConfig()
    parsers = dict(_ROW_PARSERS, CUSTOMER_TIERS=partial(_load_customer_tier, config=config))

    store = ScheduleStore()
    for sheet in SHEET_ORDER:
        df = frames.get(sheet)
        if df is None:
            continue
        df = _normalize_columns(df, sheet)
        parse_row = parsers[sheet]
        for idx, row in df.iterrows():
            row_num = int(idx) + 2  # Excel rows are 1-indexed, plus header
            parse_row(store, row, row_num)

    _sync_booked_routing(store)
    recalculate_all_priorities(store, config, today or date.today())
    return store


def _sync_booked_routing(store: ScheduleStore) -> None:
    """Mark pending operations that already have bookings as scheduled."""
    booked = {b.operation_id for b in store.bookings.values() if b.occupies_resources}
    for operation_id in booked:
        operation = store.get_operation(operation_id)
        if operation.routing_status == "pending":
            operation.routing_status = "scheduled"
    for job in store.jobs.values():
        operations = store.operations_for_job(job.job_id)
        if job.status == "pending" and operations and all(
            op.routing_status in ("scheduled", "completed") for op in operations
        ):
            job.status = "scheduled"


def _normalize_columns(df: pd.DataFrame, sheet: str) -> pd.DataFrame:
    df = df.rename(columns=lambda c: str(c).strip().upper())
    df = df.dropna(how="all")
    missing = SHEET_COLUMNS[sheet] - set(df.columns)
    if missing:
        raise ValidationError(
            field=f"{sheet} columns",
            value=list(df.columns),
            reason=f"Missing required columns: {', '.join(sorted(missing))}"
        )
    return df


def _load_customer_tier(
    store: ScheduleStore,
    row: pd.Series,
    row_number: int,
    config: EngineConfig | None = None
) -> None:
    tier = _parse_str(row["TIER"], "TIER", row_number).lower()
    weight = _optional(row, "PRIORITY_WEIGHT", _parse_int, row_number)
    if weight is None:
        weight = (config or EngineConfig()).get_tier_weight(tier)
    store.set_customer_tier(_build(CustomerTier, row_number,
        customer_name=_parse_str(row["CUSTOMER"], "CUSTOMER", row_number),
        tier=tier,
        priority_weight=weight,
    ))


def _load_machine(store: ScheduleStore, row: pd.Series, row_number: int) -> None:
    groups = _optional(row, "GROUPS", _parse_str, row_number) or ""
    machine_id = _parse_str(row["MACHINE_ID"], "MACHINE_ID", row_number)
    store.add_machine(_build(Machine, row_number,
        machine_id=machine_id,
        name=_optional(row, "NAME", _parse_str, row_number) or machine_id,
        status=(_optional(row, "STATUS", _parse_str, row_number) or "active").lower(),
        efficiency_modifier=_optional(row, "EFFICIENCY_MODIFIER", _parse_float, row_number) or 1.0,
        groups=frozenset(g.strip() for g in groups.split(",") if g.strip()),
    ))


def _load_operator(store: ScheduleStore, row: pd.Series, row_number: int) -> None:
    operator_id = _parse_str(row["OPERATOR_ID"], "OPERATOR_ID", row_number)
    store.add_operator(_build(Operator, row_number,
        operator_id=operator_id,
        name=_optional(row, "NAME", _parse_str, row_number) or operator_id,
        display_code=_optional(row, "DISPLAY_CODE", _parse_str, row_number),
        status=(_optional(row, "STATUS", _parse_str, row_number) or "active").lower(),
        shift_pattern=_optional(row, "SHIFT_PATTERN", _parse_str, row_number),
        custom_start=_optional(row, "CUSTOM_START", _parse_time, row_number),
        custom_end=_optional(row, "CUSTOM_END", _parse_time, row_number),
    ))


def _load_qualification(store: ScheduleStore, row: pd.Series, row_number: int) -> None:
    store.add_qualification(_build(Qualification, row_number,
        operator_id=_parse_str(row["OPERATOR_ID"], "OPERATOR_ID", row_number),
        machine_id=_parse_str(row["MACHINE_ID"], "MACHINE_ID", row_number),
        proficiency_level=_optional(row, "PROFICIENCY_LEVEL", _parse_int, row_number) or 3,
        preference_rank=_optional(row, "PREFERENCE_RANK", _parse_int, row_number) or 1,
    ))


def _load_schedule_entry(store: ScheduleStore, row: pd.Series, row_number: int) -> None:
    is_working = _optional(row, "IS_WORKING_DAY", _parse_bool, row_number)
    store.add_schedule_entry(_build(ScheduleEntry, row_number,
        operator_id=_parse_str(row["OPERATOR_ID"], "OPERATOR_ID", row_number),
        start=_parse_time(row["START"], "START", row_number),
        end=_parse_time(row["END"], "END", row_number),
        weekday=_optional(row, "WEEKDAY", _parse_weekday, row_number),
        on_date=_optional(row, "DATE", _parse_date, row_number),
        is_working_day=True if is_working is None else is_working,
        effective_date=_optional(row, "EFFECTIVE_DATE", _parse_date, row_number),
    ))


def _load_time_off(store: ScheduleStore, row: pd.Series, row_number: int) -> None:
    approved = _optional(row, "APPROVED", _parse_bool, row_number)
    store.add_time_off(_build(TimeOff, row_number,
        time_off_id=_parse_str(row["TIME_OFF_ID"], "TIME_OFF_ID", row_number),
        operator_id=_parse_str(row["OPERATOR_ID"], "OPERATOR_ID", row_number),
        start_date=_parse_date(row["START_DATE"], "START_DATE", row_number),
        end_date=_parse_date(row["END_DATE"], "END_DATE", row_number),
        reason=_optional(row, "REASON", _parse_str, row_number) or "",
        approved=True if approved is None else approved,
    ))


def _load_job(store: ScheduleStore, row: pd.Series, row_number: int) -> None:
    job_id = _parse_str(row["JOB_ID"], "JOB_ID", row_number)
    store.add_job(_build(Job, row_number,
        job_id=job_id,
        customer=_parse_str(row["CUSTOMER"], "CUSTOMER", row_number),
        promised_date=_optional(row, "PROMISED_DATE", _parse_date, row_number),
        job_number=_optional(row, "JOB_NUMBER", _parse_str, row_number) or job_id,
        order_date=_optional(row, "ORDER_DATE", _parse_date, row_number),
        due_date=_optional(row, "DUE_DATE", _parse_date, row_number),
        status=(_optional(row, "STATUS", _parse_str, row_number) or "pending").lower(),
        is_expedite=bool(_optional(row, "EXPEDITE", _parse_bool, row_number)),
        schedule_locked=bool(_optional(row, "SCHEDULE_LOCKED", _parse_bool, row_number)),
        lock_reason=_optional(row, "LOCK_REASON", _parse_str, row_number),
        job_type=(_optional(row, "JOB_TYPE", _parse_str, row_number) or "standard").lower(),
        parent_job_id=_optional(row, "PARENT_JOB_ID", _parse_str, row_number),
        assembly_sequence=_optional(row, "ASSEMBLY_SEQUENCE", _parse_int, row_number),
    ))


def _load_operation(store: ScheduleStore, row: pd.Series, row_number: int) -> None:
    category = (_optional(row, "CATEGORY", _parse_str, row_number) or "machining").lower()
    lead_time = row.get("VENDOR_LEAD_TIME")
    store.add_operation(_build(Operation, row_number,
        operation_id=_parse_str(row["OPERATION_ID"], "OPERATION_ID", row_number),
        job_id=_parse_str(row["JOB_ID"], "JOB_ID", row_number),
        sequence_order=_parse_int(row["SEQUENCE"], "SEQUENCE", row_number),
        name=_optional(row, "NAME", _parse_str, row_number) or "",
        estimated_hours=_optional(row, "ESTIMATED_HOURS", _parse_float, row_number) or 0.0,
        machine_id=_optional(row, "MACHINE_ID", _parse_str, row_number),
        machine_group_id=_optional(row, "MACHINE_GROUP_ID", _parse_str, row_number),
        category=category,
        vendor=_optional(row, "VENDOR", _parse_str, row_number),
        vendor_lead_days=(
            parse_lead_days(None if pd.isna(lead_time) else lead_time)
            if category == "outsourced" else 0
        ),
        routing_status=(_optional(row, "ROUTING_STATUS", _parse_str, row_number) or "pending").lower(),
    ))


def _load_dependency(store: ScheduleStore, row: pd.Series, row_number: int) -> None:
    store.add_dependency(_build(Dependency, row_number,
        prerequisite_job_id=_parse_str(row["PREREQUISITE_JOB_ID"], "PREREQUISITE_JOB_ID", row_number),
        dependent_job_id=_parse_str(row["DEPENDENT_JOB_ID"], "DEPENDENT_JOB_ID", row_number),
        dependency_type=_optional(row, "DEPENDENCY_TYPE", _parse_str, row_number) or "assembly",
    ))


def _load_booking(store: ScheduleStore, row: pd.Series, row_number: int) -> None:
    store.add_booking(_build(Booking, row_number,
        booking_id=_parse_str(row["BOOKING_ID"], "BOOKING_ID", row_number),
        job_id=_parse_str(row["JOB_ID"], "JOB_ID", row_number),
        operation_id=_parse_str(row["OPERATION_ID"], "OPERATION_ID", row_number),
        machine_id=_parse_str(row["MACHINE_ID"], "MACHINE_ID", row_number),
        operator_id=_parse_str(row["OPERATOR_ID"], "OPERATOR_ID", row_number),
        start=_parse_datetime(row["START"], "START", row_number),
        end=_parse_datetime(row["END"], "END", row_number),
        status=(_optional(row, "STATUS", _parse_str, row_number) or "scheduled").lower(),
        locked=bool(_optional(row, "LOCKED", _parse_bool, row_number)),
        method=(_optional(row, "METHOD", _parse_str, row_number) or "auto").lower(),
        notes=_optional(row, "NOTES", _parse_str, row_number) or "",
    ))


_ROW_PARSERS: dict[str, Callable[[ScheduleStore, pd.Series, int], None]] = {
    "CUSTOMER_TIERS": _load_customer_tier,
    "MACHINES": _load_machine,
    "OPERATORS": _load_operator,
    "QUALIFICATIONS": _load_qualification,
    "SCHEDULE_ENTRIES": _load_schedule_entry,
    "TIME_OFF": _load_time_off,
    "JOBS": _load_job,
    "OPERATIONS": _load_operation,
    "DEPENDENCIES": _load_dependency,
    "BOOKINGS": _load_booking,
}


def _build(record_type: type, row_number: int, **fields: Any) -> Any:
    """Construct a record, attaching the spreadsheet row to validation errors."""
    try:
        return record_type(**fields)
    except ValidationError as e:
        if e.row is None:
            raise ValidationError(field=e.field, value=e.value, reason=e.reason, row=row_number) from e
        raise


def _optional(row: pd.Series, column: str, parse: Callable, row_number: int) -> Any:
    """Parse an optional column; missing columns and blank cells give None."""
    value = row.get(column)
    if value is None or pd.isna(value):
        return None
    if isinstance(value, str) and not value.strip():
        return None
    return parse(value, column, row_number)


def _parse_str(value, field_name: str, row_number: int) -> str:
    """Parse a value into a non-empty string.

    Integral floats (as pandas reads numeric ids) lose their ".0".
    """
    if pd.isna(value):
        raise ValidationError(
            field=field_name,
            value=value,
            reason="Value cannot be empty",
            row=row_number
        )
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    if not text:
        raise ValidationError(
            field=field_name,
            value=value,
            reason="Value cannot be empty",
            row=row_number
        )
    return text


def _parse_date(value, field_name: str, row_number: int) -> date:
    """Parse a value into a date.

    Raises:
        ValidationError: If value cannot be parsed as a date.
    """
    if pd.isna(value):
        raise ValidationError(
            field=field_name,
            value=value,
            reason="Date cannot be empty",
            row=row_number
        )

    if isinstance(value, pd.Timestamp):
        return value.date()
    elif isinstance(value, datetime):
        return value.date()
    elif isinstance(value, date):
        return value
    else:
        try:
            return pd.to_datetime(value).date()
        except (ValueError, TypeError):
            raise ValidationError(
                field=field_name,
                value=value,
                reason="Cannot parse as date",
                row=row_number
            )


def _parse_datetime(value, field_name: str, row_number: int) -> datetime:
    """Parse a value into a naive datetime, truncated to the minute."""
    if pd.isna(value):
        raise ValidationError(
            field=field_name,
            value=value,
            reason="Date and time cannot be empty",
            row=row_number
        )
    try:
        parsed = pd.to_datetime(value).to_pydatetime()
    except (ValueError, TypeError):
        raise ValidationError(
            field=field_name,
            value=value,
            reason="Cannot parse as date and time",
            row=row_number
        )
    return parsed.replace(second=0, microsecond=0, tzinfo=None)


def _parse_time(value, field_name: str, row_number: int) -> time:
    """Parse a value into a time of day ("HH:MM", time or datetime cells)."""
    if isinstance(value, datetime):
        return value.time().replace(second=0, microsecond=0)
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    text = str(value).strip()
    for fmt in ("%H:%M", "%H:%M:%S"):
        try:
            return datetime.strptime(text, fmt).time().replace(second=0)
        except ValueError:
            continue
    raise ValidationError(
        field=field_name,
        value=value,
        reason="Must be a time of day (HH:MM)",
        row=row_number
    )


def _parse_weekday(value, field_name: str, row_number: int) -> int:
    """Parse a weekday name ("Monday", "mon") or number (0 = Monday)."""
    if pd.api.types.is_number(value) and not pd.api.types.is_bool(value):
        day = int(value)
        if 0 <= day <= 6:
            return day
    else:
        text = str(value).strip().lower()
        for index, name in enumerate(WEEKDAY_NAMES):
            if text in (name.lower(), name[:3].lower()):
                return index
    raise ValidationError(
        field=field_name,
        value=value,
        reason="Must be a weekday name or 0-6 (0 = Monday)",
        row=row_number
    )


def _parse_float(value, field_name: str, row_number: int) -> float:
    """Parse a value into a float.

    Raises:
        ValidationError: If value cannot be parsed as a float.
    """
    if pd.isna(value):
        raise ValidationError(
            field=field_name,
            value=value,
            reason="Value cannot be empty",
            row=row_number
        )

    try:
        return float(value)
    except (ValueError, TypeError):
        raise ValidationError(
            field=field_name,
            value=value,
            reason="Must be a number",
            row=row_number
        )


def _parse_int(value, field_name: str, row_number: int) -> int:
    """Parse a value into an integer.

    Raises:
        ValidationError: If value cannot be parsed as an integer.
    """
    if pd.isna(value):
        raise ValidationError(
            field=field_name,
            value=value,
            reason="Value cannot be empty",
            row=row_number
        )

    try:
        return int(float(value))
    except (ValueError, TypeError):
        raise ValidationError(
            field=field_name,
            value=value,
            reason="Must be an integer",
            row=row_number
        )


def _parse_bool(value, field_name: str, row_number: int) -> bool:
    """Parse a value into a boolean.

    Raises:
        ValidationError: If value cannot be parsed as a boolean.
    """
    if pd.isna(value):
        return False

    if isinstance(value, bool):
        return value

    if isinstance(value, (int, float)):
        return bool(value)

    str_val = str(value).strip().upper()
    if str_val in ("TRUE", "YES", "1", "Y"):
        return True
    elif str_val in ("FALSE", "NO", "0", "N", ""):
        return False
    else:
        raise ValidationError(
            field=field_name,
            value=value,
            reason="Must be TRUE/FALSE, YES/NO, or 1/0",
            row=row_number
        )
