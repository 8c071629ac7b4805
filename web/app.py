"""
Shop Floor Priority Scheduler - FastAPI Web Backend
"""

import logging
import os
import tempfile
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel

from shop_scheduler import __version__
from shop_scheduler.constants import EngineConfig, config_to_dict, load_config_from_yaml
from shop_scheduler.data_loader import load_shop_snapshot
from shop_scheduler.engine import BulkScheduleResult, JobScheduleResult, SchedulingEngine
from shop_scheduler.errors import (
    FileLoadError,
    RecordNotFoundError,
    SchedulingError,
    ValidationError,
)
from shop_scheduler.models import TimeOff, UndoEntry
from shop_scheduler.output_generator import (
    export_bookings,
    export_displacement_history,
    summarize_shift_capacity,
)
from shop_scheduler.priority import priority_color, priority_label
from shop_scheduler.store import ScheduleStore


logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Shop Floor Priority Scheduler",
    description="Priority-driven job-shop scheduler with displacement, time off and undo",
    version=__version__
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global engine, built on startup or after a snapshot upload
engine: SchedulingEngine | None = None


def get_base_path():
    return Path(__file__).parent.parent


def get_config_path():
    return Path(os.environ.get("SHOP_SCHEDULER_CONFIG", get_base_path() / "config" / "engine.yaml"))


def get_engine() -> SchedulingEngine:
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialised")
    return engine


class ScheduleJobRequest(BaseModel):
    not_before: Optional[datetime] = None
    deadline: Optional[datetime] = None
    allow_displacement: bool = True


class ScheduleAllRequest(BaseModel):
    not_before: Optional[datetime] = None
    allow_displacement: bool = True


class ManualBookingRequest(BaseModel):
    operation_id: str
    machine_id: str
    operator_id: str
    start: datetime
    end: Optional[datetime] = None
    method: str = "manual"
    lock: bool = False


class LockRequest(BaseModel):
    reason: str = ""


class TierRequest(BaseModel):
    tier: str
    priority_weight: Optional[int] = None


class InspectionStatusRequest(BaseModel):
    status: str


class TimeOffRequest(BaseModel):
    operator_id: str
    start_date: date
    end_date: date
    reason: str = ""
    approved: bool = True
    time_off_id: Optional[str] = None


# Failure class -> HTTP status
ERROR_STATUS: dict[type, int] = {
    RecordNotFoundError: 404,
    ValidationError: 422,
    FileLoadError: 422,
}


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError):
    """Map engine errors to 404 (missing), 422 (bad input) or 409 (conflict)."""
    status = next(
        (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)), 409
    )
    return JSONResponse(
        status_code=status,
        content={
            "error": type(exc).__name__,
            "reason_code": exc.reason_code,
            "message": exc.message,
            "details": {k: str(v) for k, v in exc.details.items()},
        },
    )


@app.on_event("startup")
async def load_data():
    """Build the engine from the YAML config and an optional snapshot."""
    global engine

    if engine is not None:
        return

    config_path = get_config_path()
    if config_path.exists():
        config = load_config_from_yaml(config_path)
        logger.info("Loaded engine config from %s", config_path)
    else:
        config = EngineConfig()
        logger.warning("No config at %s, using defaults", config_path)

    snapshot = os.environ.get("SHOP_SCHEDULER_SNAPSHOT")
    store = load_shop_snapshot(snapshot, config) if snapshot else ScheduleStore()
    engine = SchedulingEngine(store, config)
    logger.info("Ready with %d jobs", len(store.jobs))


def job_result_to_dict(result: JobScheduleResult) -> dict:
    return {
        "job_id": result.job_id,
        "success": result.success,
        "reason_code": result.reason_code,
        "message": result.message,
        "failed_operation_id": result.failed_operation_id,
        "blocking": result.blocking,
        "at_risk": result.at_risk,
        "displacement_record_id": result.displacement_record_id,
        "undo_entry_id": result.undo_entry_id,
        "start": result.start,
        "end": result.end,
        "operations": [
            {
                "operation_id": o.operation_id,
                "kind": o.kind,
                "start": o.start,
                "end": o.end,
                "machine_id": o.machine_id,
                "operator_id": o.operator_id,
                "chunks": o.chunks,
            }
            for o in result.operations
        ],
    }


def bulk_result_to_dict(result: BulkScheduleResult) -> dict:
    final = result.final_results()
    return {
        "scheduled": result.scheduled_job_ids,
        "failed": [job_result_to_dict(r) for r in result.failed],
        "results": [job_result_to_dict(r) for r in final.values()],
        "undo_entry_id": result.undo_entry_id,
    }


def undo_entry_to_dict(entry: UndoEntry) -> dict:
    return {
        "entry_id": entry.entry_id,
        "operation_type": entry.operation_type,
        "description": entry.description,
        "job_ids": entry.job_ids,
        "created_at": entry.created_at,
        "expires_at": entry.expires_at,
        "reversed_at": entry.reversed_at,
    }


@app.get("/")
async def root():
    """Serve the main HTML page."""
    html_path = Path(__file__).parent / "static" / "index.html"
    if html_path.exists():
        return HTMLResponse(content=html_path.read_text(), status_code=200)
    return HTMLResponse(content="<h1>Shop Floor Priority Scheduler</h1>")


@app.get("/api/config")
async def get_config():
    """Get the engine configuration and store counts."""
    current = get_engine()
    return {
        "version": __version__,
        "config": config_to_dict(current.config),
        "jobs_count": len(current.store.jobs),
        "bookings_count": len(current.store.bookings),
    }


@app.post("/api/upload")
async def upload_snapshot(file: UploadFile = File(...)):
    """Replace the shop state with an uploaded snapshot workbook."""
    global engine

    if not file.filename.endswith(".xlsx"):
        raise HTTPException(status_code=400, detail="File must be Excel (.xlsx)")

    config = engine.config if engine is not None else EngineConfig()
    with tempfile.TemporaryDirectory() as tmp:
        upload_path = Path(tmp) / "snapshot.xlsx"
        upload_path.write_bytes(await file.read())
        store = load_shop_snapshot(upload_path, config)

    engine = SchedulingEngine(store, config)
    return {
        "success": True,
        "message": f"Uploaded {file.filename} with {len(store.jobs)} jobs",
        "jobs_count": len(store.jobs),
    }


@app.get("/api/jobs")
async def get_jobs():
    """List jobs by priority."""
    current = get_engine()
    jobs = sorted(current.store.jobs.values(), key=lambda j: (-j.priority_score, j.job_id))
    return {
        "jobs": [
            {
                "job_id": j.job_id,
                "job_number": j.job_number,
                "customer": j.customer,
                "promised_date": j.promised_date,
                "status": j.status,
                "priority": j.priority_score,
                "priority_label": priority_label(j.priority_score),
                "priority_color": priority_color(j.priority_score),
                "is_expedite": j.is_expedite,
                "schedule_locked": j.schedule_locked,
            }
            for j in jobs
        ]
    }


@app.post("/api/jobs/{job_id}/schedule")
async def schedule_job(job_id: str, request: ScheduleJobRequest | None = None):
    """Schedule one job's pending operations."""
    request = request or ScheduleJobRequest()
    result = get_engine().schedule_job(
        job_id,
        not_before=request.not_before,
        deadline=request.deadline,
        allow_displacement=request.allow_displacement,
    )
    return job_result_to_dict(result)


@app.post("/api/jobs/{job_id}/reschedule")
async def reschedule_job(job_id: str, request: ScheduleJobRequest | None = None):
    """Release a job's movable bookings and place them again."""
    request = request or ScheduleJobRequest()
    result = get_engine().reschedule_job(
        job_id,
        not_before=request.not_before,
        deadline=request.deadline,
        allow_displacement=request.allow_displacement,
    )
    return job_result_to_dict(result)


@app.post("/api/jobs/{job_id}/lock")
async def lock_job(job_id: str, request: LockRequest | None = None):
    job = get_engine().lock_job(job_id, (request or LockRequest()).reason)
    return {"job_id": job.job_id, "schedule_locked": job.schedule_locked}


@app.post("/api/jobs/{job_id}/unlock")
async def unlock_job(job_id: str):
    job = get_engine().unlock_job(job_id)
    return {"job_id": job.job_id, "schedule_locked": job.schedule_locked}


@app.put("/api/customers/{customer}/tier")
async def set_customer_tier(customer: str, request: TierRequest):
    """Change a customer's tier and rescore the customer's jobs."""
    rescored = get_engine().set_customer_tier(customer, request.tier, request.priority_weight)
    return {"customer": customer, "rescored_jobs": rescored}


@app.post("/api/schedule/all")
async def schedule_all(request: ScheduleAllRequest | None = None):
    """Schedule every pending job in priority order."""
    request = request or ScheduleAllRequest()
    result = get_engine().schedule_all_pending(
        not_before=request.not_before, allow_displacement=request.allow_displacement
    )
    return bulk_result_to_dict(result)


@app.get("/api/jobs/{job_id}/can-schedule")
async def can_schedule(job_id: str):
    check = get_engine().can_schedule(job_id)
    return {
        "job_id": check.job_id,
        "can_schedule": check.can_schedule,
        "blocking_jobs": check.blocking_jobs,
        "earliest_start": check.earliest_start,
        "reason": check.reason,
    }


@app.get("/api/jobs/{job_id}/earliest-start")
async def earliest_start(job_id: str):
    return {"job_id": job_id, "earliest_start": get_engine().earliest_start(job_id)}


@app.get("/api/jobs/{job_id}/displacement-preview")
async def displacement_preview(
    job_id: str, deadline: Optional[datetime] = None, not_before: Optional[datetime] = None
):
    """Show what scheduling a job would displace, without committing anything."""
    preview = get_engine().preview_displacement(job_id, deadline=deadline, not_before=not_before)
    return {
        "job_id": preview.job_id,
        "feasible": preview.feasible,
        "start": preview.start,
        "end": preview.end,
        "reason": preview.reason,
        "blocking_bookings": preview.blocking_bookings,
        "displaced": [
            {
                "job_id": d.job_id,
                "operation_id": d.operation_id,
                "customer": d.customer,
                "priority": d.priority_score,
                "machine_id": d.machine_id,
                "original_start": d.original_start,
                "original_end": d.original_end,
                "reason": d.reason,
            }
            for d in preview.displaced
        ],
        "impact": {
            "customers_affected": preview.impact.customers_affected,
            "machines_affected": preview.impact.machines_affected,
            "total_hours_displaced": preview.impact.total_hours_displaced,
        },
    }


@app.post("/api/time-off")
async def add_time_off(request: TimeOffRequest):
    """Insert operator time off and re-plan the affected bookings."""
    current = get_engine()
    current.store.get_operator(request.operator_id)
    time_off = TimeOff(
        time_off_id=request.time_off_id or current.store.next_id("TOFF"),
        operator_id=request.operator_id,
        start_date=request.start_date,
        end_date=request.end_date,
        reason=request.reason,
        approved=request.approved,
    )
    result = current.add_time_off(time_off)
    return {
        "time_off_id": result.time_off_id,
        "shifted": result.shifted,
        "substituted": result.substituted,
        "unscheduled": result.unscheduled,
        "flagged": result.flagged,
        "displacement_record_id": result.record.record_id if result.record else None,
        "undo_entry_id": result.undo_entry_id,
    }


@app.get("/api/bookings")
async def get_bookings(start: Optional[datetime] = None, end: Optional[datetime] = None):
    return {"bookings": export_bookings(get_engine().store, start, end)}


@app.post("/api/bookings")
async def place_booking(request: ManualBookingRequest):
    """Book an operation at a planner-chosen time."""
    bookings = get_engine().place_manual_booking(
        request.operation_id,
        request.machine_id,
        request.operator_id,
        request.start,
        end=request.end,
        method=request.method,
        lock=request.lock,
    )
    return {
        "bookings": [
            {"booking_id": b.booking_id, "start": b.start, "end": b.end, "method": b.method}
            for b in bookings
        ]
    }


@app.get("/api/inspections")
async def get_inspections(status: Optional[str] = None):
    """List the inspection queue by priority."""
    entries = [
        e for e in get_engine().store.inspection_queue if status is None or e.status == status
    ]
    entries.sort(key=lambda e: (-e.priority_score, e.enqueued_at, e.entry_id))
    return {
        "inspections": [
            {
                "entry_id": e.entry_id,
                "job_id": e.job_id,
                "operation_id": e.operation_id,
                "priority": e.priority_score,
                "enqueued_at": e.enqueued_at,
                "status": e.status,
            }
            for e in entries
        ]
    }


@app.put("/api/inspections/{entry_id}")
async def update_inspection(entry_id: str, request: InspectionStatusRequest):
    entry = get_engine().update_inspection_status(entry_id, request.status)
    return {"entry_id": entry.entry_id, "status": entry.status}


@app.get("/api/displacements")
async def get_displacements(since: Optional[datetime] = None):
    return {"displacements": export_displacement_history(get_engine().store, since)}


@app.get("/api/alerts")
async def get_alerts(severity: Optional[str] = None):
    alerts = [
        a for a in get_engine().store.alerts if severity is None or a.severity == severity
    ]
    return {
        "alerts": [
            {
                "alert_id": a.alert_id,
                "severity": a.severity,
                "alert_type": a.alert_type,
                "message": a.message,
                "job_id": a.job_id,
                "created_at": a.created_at,
            }
            for a in alerts
        ]
    }


@app.get("/api/undo")
async def get_undo_entries():
    return {"entries": [undo_entry_to_dict(e) for e in get_engine().available_undo()]}


@app.post("/api/undo/purge")
async def purge_undo():
    return {"purged": get_engine().purge_expired_undo()}


@app.post("/api/undo/{entry_id}")
async def undo(entry_id: str):
    """Reverse an undo entry."""
    entry = get_engine().undo(entry_id)
    return {"success": True, "entry": undo_entry_to_dict(entry)}


@app.get("/api/capacity")
async def get_capacity(start_date: Optional[date] = None, days: int = 7):
    """Summarise shift capacity against booked hours."""
    if days < 1:
        raise HTTPException(status_code=422, detail="days must be at least 1")
    current = get_engine()
    first = start_date or current.today()
    return {
        "capacity": summarize_shift_capacity(
            current.store, current.config, first, first + timedelta(days=days - 1)
        )
    }


@app.get("/api/validate")
async def validate():
    result = get_engine().validate()
    return {
        "is_valid": result.is_valid,
        "errors": [{"kind": i.kind, "message": i.message, "job_id": i.job_id} for i in result.errors],
        "warnings": [{"kind": i.kind, "message": i.message, "job_id": i.job_id} for i in result.warnings],
    }
