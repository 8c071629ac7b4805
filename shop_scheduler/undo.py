# Undo ledger for displacement and bulk scheduling changes.
# Version: 1.0.0
# Captures per-job booking state before a change and restores it within the retention window.

import copy
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Iterable

from .constants import EngineConfig
from .errors import InvariantViolationError, RecordNotFoundError, UndoConflictError, UndoExpiredError
from .models import JobSnapshot, UndoEntry
from .store import ScheduleStore


logger = logging.getLogger(__name__)

# Kinds of change the ledger records
UNDO_OPERATION_TYPES: frozenset[str] = frozenset({
    "displacement", "manual_reschedule", "auto_schedule", "bulk_schedule", "time_off",
})


class UndoLedger:
    """Record reversible snapshots of scheduling state.

    Usage: open an entry with begin() before mutating, add further jobs
    with include() before they are touched, then commit() once the change
    is complete. commit() stores a fingerprint of the post-change state so a
    later reversal can detect intervening modifications.
    """

    def __init__(self, store: ScheduleStore, config: EngineConfig) -> None:
        self.store = store
        self.config = config

    def snapshot_job(self, job_id: str) -> JobSnapshot:
        """Capture a job's bookings, routing state and status."""
        job = self.store.get_job(job_id)
        return JobSnapshot(
            job_id=job_id,
            job_status=job.status,
            bookings=[copy.deepcopy(b) for b in self.store.bookings_for_job(job_id)],
            routing={
                op.operation_id: (op.routing_status, op.planned_start, op.planned_end)
                for op in self.store.operations_for_job(job_id)
            },
        )

    def fingerprint_job(self, job_id: str) -> tuple:
        """Summarise a job's current scheduling state for change detection."""
        job = self.store.get_job(job_id)
        bookings = tuple(
            (b.booking_id, b.machine_id, b.operator_id, b.start, b.end, b.status, b.locked, b.version)
            for b in sorted(self.store.bookings_for_job(job_id), key=lambda b: b.booking_id)
        )
        routing = tuple(
            (op.operation_id, op.routing_status, op.planned_start, op.planned_end)
            for op in self.store.operations_for_job(job_id)
        )
        return (job.status, bookings, routing)

    def begin(
        self,
        operation_type: str,
        description: str,
        job_ids: Iterable[str],
        now: datetime
    ) -> UndoEntry:
        """Open an entry capturing the current state of the given jobs."""
        if operation_type not in UNDO_OPERATION_TYPES:
            raise ValueError(f"Unknown undo operation type: {operation_type}")
        entry = UndoEntry(
            entry_id=self.store.next_id("UNDO"),
            operation_type=operation_type,
            description=description,
            created_at=now,
            expires_at=now + timedelta(hours=self.config.undo_retention_hours),
        )
        self.include(entry, job_ids)
        return entry

    def include(self, entry: UndoEntry, job_ids: Iterable[str]) -> None:
        """Capture more jobs into an open entry; already captured jobs are kept."""
        for job_id in job_ids:
            if job_id not in entry.snapshots:
                entry.snapshots[job_id] = self.snapshot_job(job_id)

    def commit(self, entry: UndoEntry) -> UndoEntry:
        """Fingerprint the post-change state and store the entry."""
        entry.fingerprint = {job_id: self.fingerprint_job(job_id) for job_id in entry.snapshots}
        self.store.undo_entries[entry.entry_id] = entry
        logger.info(
            "Recorded undo entry %s (%s) for %d job(s)",
            entry.entry_id, entry.operation_type, len(entry.snapshots),
        )
        return entry

    def available(self, now: datetime) -> list[UndoEntry]:
        """Get entries that can still be reversed, newest first."""
        entries = [
            e for e in self.store.undo_entries.values()
            if e.reversed_at is None and not e.is_expired(now)
        ]
        return sorted(entries, key=lambda e: (e.created_at, e.entry_id), reverse=True)

    def reverse(self, entry_id: str, now: datetime) -> UndoEntry:
        """Restore the state captured by an entry.

        Args:
            entry_id: Entry to reverse.
            now: Current instant.

        Returns:
            The reversed entry.

        Raises:
            RecordNotFoundError: If the entry does not exist (or was purged).
            UndoExpiredError: If the entry expired or was already reversed.
            UndoConflictError: If the affected bookings changed since the
                entry was recorded, or restoring would double-book.
        """
        with self.store.transaction():
            entry = self.store.undo_entries.get(entry_id)
            if entry is None:
                raise RecordNotFoundError("undo entry", entry_id)
            if entry.reversed_at is not None:
                raise UndoExpiredError(entry_id, "undo entry was already reversed")
            if entry.is_expired(now):
                raise UndoExpiredError(entry_id)

            changed = [
                job_id for job_id in entry.job_ids
                if job_id not in self.store.jobs
                or self.fingerprint_job(job_id) != entry.fingerprint.get(job_id)
            ]
            if changed:
                raise UndoConflictError(entry_id, changed)

            for job_id in entry.job_ids:
                for booking in self.store.bookings_for_job(job_id):
                    self.store.delete_booking(booking.booking_id)

            for job_id, snapshot in entry.snapshots.items():
                for booking in snapshot.bookings:
                    try:
                        self.store.add_booking(replace(booking, version=booking.version + 1))
                    except InvariantViolationError as e:
                        raise UndoConflictError(
                            entry_id, [job_id], reason=f"restoring would double-book: {e.violation}"
                        ) from e

                job = self.store.get_job(job_id)
                job.status = snapshot.job_status
                for operation_id, (status, planned_start, planned_end) in snapshot.routing.items():
                    if operation_id in self.store.operations:
                        op = self.store.get_operation(operation_id)
                        op.routing_status = status
                        op.planned_start = planned_start
                        op.planned_end = planned_end

            entry.reversed_at = now

        logger.info("Reversed undo entry %s (%s)", entry_id, entry.operation_type)
        return self.store.undo_entries[entry_id]

    def purge_expired(self, now: datetime) -> int:
        """Delete expired entries that were never reversed.

        Reversed entries stay as a record of what was undone.

        Returns:
            Number of entries purged.
        """
        with self.store.transaction():
            expired = [
                e.entry_id for e in self.store.undo_entries.values()
                if e.reversed_at is None and e.is_expired(now)
            ]
            for entry_id in expired:
                del self.store.undo_entries[entry_id]
        if expired:
            logger.info("Purged %d expired undo entries", len(expired))
        return len(expired)
