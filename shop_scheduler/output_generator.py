# Output generation for the scheduling engine.
# Version: 1.0.0
# Exports bookings, displacement history and shift capacity as dicts, DataFrames, JSON and Excel.

import json
from collections import defaultdict
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any

import pandas as pd

from .constants import EngineConfig
from .models import Booking, DisplacementRecord
from .priority import priority_label
from .shift_calendar import CalendarResolver
from .store import ScheduleStore


BOOKING_COLUMNS: tuple[str, ...] = (
    "BOOKING_ID", "JOB_ID", "JOB_NUMBER", "CUSTOMER", "PRIORITY", "PRIORITY_LABEL",
    "OPERATION_ID", "SEQUENCE", "OPERATION", "MACHINE_ID", "OPERATOR_ID",
    "START", "END", "MINUTES", "CHUNK", "STATUS", "LOCKED", "METHOD",
)

DISPLACEMENT_COLUMNS: tuple[str, ...] = (
    "RECORD_ID", "TRIGGER_TYPE", "TRIGGER_JOB_ID", "TIME_OFF_ID", "CREATED_AT",
    "JOB_ID", "OPERATION_ID", "CUSTOMER", "PRIORITY", "MACHINE_ID", "OPERATOR_ID",
    "ORIGINAL_START", "ORIGINAL_END", "NEW_START", "NEW_END", "DELAY_HOURS", "REASON",
)


def _iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value is not None else None


def _booking_row(store: ScheduleStore, booking: Booking) -> dict[str, Any]:
    job = store.get_job(booking.job_id)
    operation = store.get_operation(booking.operation_id)
    return {
        "booking_id": booking.booking_id,
        "job_id": job.job_id,
        "job_number": job.job_number,
        "customer": job.customer,
        "priority": job.priority_score,
        "priority_label": priority_label(job.priority_score),
        "operation_id": operation.operation_id,
        "sequence": operation.sequence_order,
        "operation": operation.name,
        "machine_id": booking.machine_id,
        "operator_id": booking.operator_id,
        "start": booking.start,
        "end": booking.end,
        "minutes": booking.duration_minutes,
        "chunk": f"{booking.chunk_sequence}/{booking.chunk_count}",
        "status": booking.status,
        "locked": booking.locked,
        "method": booking.method,
    }


def export_bookings(
    store: ScheduleStore,
    start: datetime | None = None,
    end: datetime | None = None
) -> list[dict[str, Any]]:
    """List bookings in time order, optionally limited to a window.

    Args:
        store: Schedule store.
        start: Only bookings ending after this instant.
        end: Only bookings starting before this instant.

    Returns:
        One dict per booking, with job and operation details.
    """
    bookings = [
        b for b in store.bookings.values()
        if (start is None or b.end > start) and (end is None or b.start < end)
    ]
    bookings.sort(key=lambda b: (b.start, b.machine_id, b.booking_id))
    return [_booking_row(store, b) for b in bookings]


def bookings_to_frame(store: ScheduleStore) -> pd.DataFrame:
    """Get all bookings as a DataFrame with upper-case column names."""
    rows = export_bookings(store)
    df = pd.DataFrame(rows, columns=[c.lower() for c in BOOKING_COLUMNS])
    df.columns = list(BOOKING_COLUMNS)
    return df


def _displacement_rows(record: DisplacementRecord) -> list[dict[str, Any]]:
    return [
        {
            "record_id": record.record_id,
            "trigger_type": record.trigger_type,
            "trigger_job_id": record.trigger_job_id,
            "time_off_id": record.time_off_id,
            "created_at": record.created_at,
            "job_id": d.job_id,
            "operation_id": d.operation_id,
            "customer": d.customer,
            "priority": d.priority_score,
            "machine_id": d.machine_id,
            "operator_id": d.operator_id,
            "original_start": d.original_start,
            "original_end": d.original_end,
            "new_start": d.new_start,
            "new_end": d.new_end,
            "delay_hours": d.delay_hours,
            "reason": d.reason,
        }
        for d in record.displaced
    ]


def export_displacement_history(
    store: ScheduleStore,
    since: datetime | None = None
) -> list[dict[str, Any]]:
    """Summarise displacement records, newest first.

    Args:
        store: Schedule store.
        since: Only records created at or after this instant.

    Returns:
        One dict per record with impact and per-operation detail.
    """
    records = [r for r in store.displacement_history if since is None or r.created_at >= since]
    records.sort(key=lambda r: (r.created_at, r.record_id), reverse=True)
    return [
        {
            "record_id": r.record_id,
            "trigger_type": r.trigger_type,
            "trigger_job_id": r.trigger_job_id,
            "trigger_operation_id": r.trigger_operation_id,
            "time_off_id": r.time_off_id,
            "success": r.success,
            "reason": r.reason,
            "created_at": _iso(r.created_at),
            "execution_ms": r.execution_ms,
            "total_displaced": r.total_displaced,
            "total_rescheduled": r.total_rescheduled,
            "customers_affected": r.impact.customers_affected,
            "machines_affected": r.impact.machines_affected,
            "total_hours_displaced": r.impact.total_hours_displaced,
            "average_delay_hours": r.impact.average_delay_hours,
            "displaced": [
                {k: _iso(v) if isinstance(v, datetime) else v for k, v in row.items()}
                for row in _displacement_rows(r)
            ],
        }
        for r in records
    ]


def summarize_shift_capacity(
    store: ScheduleStore,
    config: EngineConfig,
    start_date: date,
    end_date: date
) -> list[dict[str, Any]]:
    """Compare usable shift capacity with booked hours per day and shift.

    Operators are split into first and second shift by the start hour of
    their working window. Usable capacity is window hours times the
    shift's efficiency factor.

    Args:
        store: Schedule store.
        config: Engine configuration (shift efficiencies, calendar defaults).
        start_date: First day to summarise.
        end_date: Last day to summarise (inclusive).

    Returns:
        One dict per (date, shift) with operators, capacity_hours,
        scheduled_hours and utilization_pct.
    """
    calendar = CalendarResolver(store, config)
    totals: dict[tuple[date, str], dict[str, Any]] = defaultdict(lambda: {
        "operators": 0, "window_hours": 0.0, "capacity_hours": 0.0, "scheduled_hours": 0.0,
    })

    active = sorted(
        (o for o in store.operators.values() if o.is_active), key=lambda o: o.operator_id
    )
    day = start_date
    while day <= end_date:
        for operator in active:
            window = calendar.window_for(operator.operator_id, day)
            if not window.is_working_day:
                continue
            shift = "second" if window.start.hour >= config.second_shift_start_hour else "first"
            bucket = totals[(day, shift)]
            bucket["operators"] += 1
            bucket["window_hours"] += window.duration_hours
            bucket["capacity_hours"] += window.duration_hours * config.shift_efficiency(window.start.time())
            booked = store.bookings_for_operator(operator.operator_id, window.start, window.end)
            bucket["scheduled_hours"] += sum(
                (min(b.end, window.end) - max(b.start, window.start)).total_seconds() / 3600
                for b in booked
            )
        day += timedelta(days=1)

    summary = []
    for (day, shift), bucket in sorted(totals.items()):
        capacity = bucket["capacity_hours"]
        summary.append({
            "date": day.isoformat(),
            "shift": shift,
            "operators": bucket["operators"],
            "window_hours": round(bucket["window_hours"], 2),
            "capacity_hours": round(capacity, 2),
            "scheduled_hours": round(bucket["scheduled_hours"], 2),
            "utilization_pct": round(bucket["scheduled_hours"] / capacity * 100, 1) if capacity else 0.0,
        })
    return summary


def export_to_json(store: ScheduleStore, pretty: bool = True) -> str:
    """Export bookings, displacement history and open alerts to JSON.

    Args:
        store: Schedule store.
        pretty: Whether to format with indentation.

    Returns:
        JSON string.
    """
    data = {
        "generated_at": datetime.now().isoformat(timespec="seconds"),
        "bookings": [
            {k: _iso(v) if isinstance(v, datetime) else v for k, v in row.items()}
            for row in export_bookings(store)
        ],
        "inspection_queue": [
            {
                "entry_id": e.entry_id,
                "job_id": e.job_id,
                "operation_id": e.operation_id,
                "priority": e.priority_score,
                "status": e.status,
                "enqueued_at": _iso(e.enqueued_at),
            }
            for e in store.inspection_queue
        ],
        "displacements": export_displacement_history(store),
        "alerts": [
            {
                "alert_id": a.alert_id,
                "severity": a.severity,
                "alert_type": a.alert_type,
                "job_id": a.job_id,
                "message": a.message,
                "created_at": _iso(a.created_at),
            }
            for a in store.alerts
        ],
    }

    indent = 2 if pretty else None
    return json.dumps(data, indent=indent, default=str)


def export_to_excel(store: ScheduleStore, output_path: str | Path) -> Path:
    """Write bookings and displacement history to a styled workbook.

    Args:
        store: Schedule store.
        output_path: Path to save the .xlsx file.

    Returns:
        Path to the generated workbook.
    """
    import openpyxl
    from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
    from openpyxl.utils import get_column_letter

    output_path = Path(output_path)
    wb = openpyxl.Workbook()

    header_fill = PatternFill(start_color="3498db", end_color="3498db", fill_type="solid")
    header_font = Font(bold=True, color="FFFFFF")
    locked_fill = PatternFill(start_color="f8d7da", end_color="f8d7da", fill_type="solid")
    thin_border = Border(
        left=Side(style='thin'),
        right=Side(style='thin'),
        top=Side(style='thin'),
        bottom=Side(style='thin')
    )

    displacement_rows = []
    for record in sorted(store.displacement_history, key=lambda r: (r.created_at, r.record_id)):
        displacement_rows.extend(_displacement_rows(record))

    sheets = (
        ("Bookings", BOOKING_COLUMNS, export_bookings(store)),
        ("Displacements", DISPLACEMENT_COLUMNS, displacement_rows),
    )
    for index, (title, headers, rows) in enumerate(sheets):
        ws = wb.active if index == 0 else wb.create_sheet()
        ws.title = title

        for col_idx, header in enumerate(headers, 1):
            cell = ws.cell(row=1, column=col_idx, value=header)
            cell.fill = header_fill
            cell.font = header_font
            cell.alignment = Alignment(horizontal='center')
            cell.border = thin_border

        for row_idx, row in enumerate(rows, 2):
            for col_idx, header in enumerate(headers, 1):
                cell = ws.cell(row=row_idx, column=col_idx, value=row[header.lower()])
                cell.border = thin_border
                if isinstance(cell.value, datetime):
                    cell.number_format = "yyyy-mm-dd hh:mm"
                if row.get("locked"):
                    cell.fill = locked_fill

        for col_idx, header in enumerate(headers, 1):
            ws.column_dimensions[get_column_letter(col_idx)].width = max(12, len(header) + 4)
        ws.freeze_panes = "A2"

    output_path.parent.mkdir(parents=True, exist_ok=True)
    wb.save(output_path)
    return output_path
