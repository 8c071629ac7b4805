# Alert sink helpers for the scheduling engine.
# Version: 1.0.0
# Raises alerts for disruptions that need a planner's attention.

import logging
from datetime import datetime
from typing import Any

from .models import Alert, AlertSeverity
from .store import ScheduleStore


logger = logging.getLogger(__name__)

# Alert types
ALERT_HIGH_PRIORITY_DISPLACED = "high_priority_displaced"
ALERT_PROMISE_DATE_VIOLATION = "promise_date_violation"
ALERT_LOCKED_JOB_BLOCKED = "locked_job_blocked"
ALERT_LOCKED_OPERATOR_UNAVAILABLE = "locked_job_operator_unavailable"
ALERT_NO_SUBSTITUTE = "no_substitute_found"
ALERT_OUTSOURCING_AT_RISK = "outsourcing_at_risk"
ALERT_IN_PROGRESS_SHIFTED = "in_progress_shifted"


def raise_alert(
    store: ScheduleStore,
    severity: AlertSeverity,
    alert_type: str,
    message: str,
    job_id: str | None,
    now: datetime,
    **details: Any
) -> Alert:
    """Add an alert to the store's alert sink and log it."""
    alert = Alert(
        alert_id=store.next_id("ALERT"),
        severity=severity,
        alert_type=alert_type,
        message=message,
        job_id=job_id,
        created_at=now,
        details=details,
    )
    store.add_alert(alert)
    logger.warning("[%s] %s: %s", severity.upper(), alert_type, message)
    return alert
