# Re-evaluate bookings when operator time off is inserted.
# Version: 1.0.0
# Shifts in-progress work, substitutes qualified operators, or unschedules with alerts.

import logging
import time as perf
from dataclasses import dataclass, field
from datetime import date, datetime, time

from .alerts import (
    ALERT_IN_PROGRESS_SHIFTED,
    ALERT_LOCKED_OPERATOR_UNAVAILABLE,
    ALERT_NO_SUBSTITUTE,
    ALERT_PROMISE_DATE_VIOLATION,
    raise_alert,
)
from .constants import EngineConfig
from .displacement import PROTECTED_BOOKING_STATUSES, DisplacementEngine
from .models import Booking, DisplacementRecord, Job, TimeOff, UndoEntry
from .shift_calendar import CalendarResolver
from .store import ScheduleStore
from .undo import UndoLedger


logger = logging.getLogger(__name__)

# Guard against pathological chains of protected bookings
MAX_SHIFT_ATTEMPTS = 50


@dataclass
class Substitute:
    """An operator able to take over a booking.

    Attributes:
        operator_id: Substitute operator.
        conflicts: The substitute's own bookings that must be evicted.
    """
    operator_id: str
    conflicts: list[Booking] = field(default_factory=list)


@dataclass
class TimeOffResult:
    """Outcome of inserting one time-off record.

    Attributes:
        time_off_id: Inserted time off.
        record: Displacement record, None when nothing was affected.
        shifted: In-progress booking ids moved to the return date.
        substituted: booking_id -> substitute operator_id.
        unscheduled: Operation ids marked needs_rescheduling.
        flagged: Locked booking ids left in place for manual action.
        undo_entry_id: Undo entry for the re-evaluation.
    """
    time_off_id: str
    record: DisplacementRecord | None = None
    shifted: list[str] = field(default_factory=list)
    substituted: dict[str, str] = field(default_factory=dict)
    unscheduled: list[str] = field(default_factory=list)
    flagged: list[str] = field(default_factory=list)
    undo_entry_id: str | None = None


class TimeOffHandler:
    """Apply an operator absence to the affected bookings.

    Each intersecting booking is handled on its own, in-progress work first,
    then by descending priority:

    - in-progress bookings move to the return date at the same time of day;
    - locked bookings stay in place and raise a critical alert;
    - other bookings go to a qualified substitute on the same machine whose
      conflicting work is evictable, or are unscheduled with cascade.
    """

    def __init__(
        self,
        store: ScheduleStore,
        calendar: CalendarResolver,
        displacement: DisplacementEngine,
        ledger: UndoLedger,
        config: EngineConfig
    ) -> None:
        self.store = store
        self.calendar = calendar
        self.displacement = displacement
        self.ledger = ledger
        self.config = config

    def handle(self, time_off: TimeOff, now: datetime) -> TimeOffResult:
        """Insert a time-off record and re-evaluate intersecting bookings.

        The whole re-evaluation commits atomically.

        Args:
            time_off: Time off to insert.
            now: Current instant.

        Returns:
            TimeOffResult describing what happened to each booking.
        """
        started = perf.perf_counter()
        result = TimeOffResult(time_off_id=time_off.time_off_id)

        with self.store.transaction():
            self.store.add_time_off(time_off)
            if not time_off.approved:
                logger.info("Time off %s is not approved; bookings unchanged", time_off.time_off_id)
                return result

            affected = self._affected_bookings(time_off)
            if not affected:
                return result

            entry = self.ledger.begin(
                "time_off",
                f"Time off {time_off.time_off_id} for operator {time_off.operator_id}",
                sorted({b.job_id for b in affected}),
                now,
            )
            record = DisplacementRecord(
                record_id=self.store.next_id("DSP"),
                trigger_type="time_off",
                trigger_job_id=None,
                trigger_operation_id=None,
                time_off_id=time_off.time_off_id,
                success=True,
                created_at=now,
            )

            for original in affected:
                if original.booking_id not in self.store.bookings:
                    continue  # removed by an earlier cascade
                booking = self.store.get_booking(original.booking_id)
                job = self.store.get_job(booking.job_id)

                if booking.status == "in_progress":
                    self._shift_in_progress(booking, job, time_off, entry, record, now)
                    result.shifted.append(booking.booking_id)
                elif booking.locked or job.schedule_locked:
                    self._flag_locked(booking, job, time_off, now)
                    result.flagged.append(booking.booking_id)
                else:
                    substitute = self.find_substitute(booking, job, now.date())
                    if substitute is not None:
                        self._substitute(booking, job, substitute, entry, record)
                        result.substituted[booking.booking_id] = substitute.operator_id
                    else:
                        self._unschedule(booking, job, time_off, entry, record, now)
                        result.unscheduled.append(booking.operation_id)

            record.refresh_impact()
            record.execution_ms = int((perf.perf_counter() - started) * 1000)
            self.store.append_displacement(record)
            self.ledger.commit(entry)
            result.record = record
            result.undo_entry_id = entry.entry_id

        logger.info(
            "Time off %s: %d shifted, %d substituted, %d unscheduled, %d flagged",
            time_off.time_off_id,
            len(result.shifted),
            len(result.substituted),
            len(result.unscheduled),
            len(result.flagged),
        )
        return result

    def _affected_bookings(self, time_off: TimeOff) -> list[Booking]:
        start = datetime.combine(time_off.start_date, time.min)
        end = datetime.combine(time_off.return_date, time.min)
        bookings = [
            b for b in self.store.bookings_for_operator(time_off.operator_id, start, end)
            if b.status != "completed"
        ]
        return sorted(bookings, key=lambda b: (
            b.status != "in_progress",
            -self.store.get_job(b.job_id).priority_score,
            b.start,
            b.booking_id,
        ))

    def _shift_in_progress(
        self,
        booking: Booking,
        job: Job,
        time_off: TimeOff,
        entry: UndoEntry,
        record: DisplacementRecord,
        now: datetime
    ) -> None:
        """Move an in-progress booking to the return date, same time of day."""
        length = booking.end - booking.start
        new_start = datetime.combine(time_off.return_date, booking.start.time())

        for _ in range(MAX_SHIFT_ATTEMPTS):
            conflicts = self._conflicts_at(booking, new_start, new_start + length)
            protected = [
                c for c in conflicts
                if c.locked or c.status in PROTECTED_BOOKING_STATUSES
                or self.store.get_job(c.job_id).schedule_locked
            ]
            if not protected:
                break
            new_start = max(c.end for c in protected)
        else:
            raise_alert(
                self.store, "critical", ALERT_IN_PROGRESS_SHIFTED,
                f"Could not find room to resume in-progress booking {booking.booking_id}",
                job.job_id, now, booking_id=booking.booking_id,
            )
            return
        new_end = new_start + length

        if conflicts:
            self.ledger.include(entry, self.displacement.affected_jobs(conflicts))
            record.displaced.extend(self.displacement.evict(
                conflicts, reason=f"making room for in-progress job {job.job_id}"
            ))

        self.store.update_booking(
            booking.booking_id,
            start=new_start,
            end=new_end,
            notes=f"Shifted from {booking.start:%Y-%m-%d %H:%M} for time off {time_off.time_off_id}",
        )
        logger.info(
            "Shifted in-progress booking %s to %s", booking.booking_id, new_start
        )
        self.ledger.include(entry, self.displacement.dependent_jobs(job.job_id))
        record.displaced.extend(self.displacement.evict_early_successors(
            self.store.get_operation(booking.operation_id), new_end
        ))

        severity = "high" if job.priority_score > self.config.high_priority_threshold else "medium"
        raise_alert(
            self.store, severity, ALERT_IN_PROGRESS_SHIFTED,
            f"In-progress work for job {job.job_number} moved to {new_start:%Y-%m-%d %H:%M} "
            f"while operator {booking.operator_id} is away",
            job.job_id, now, booking_id=booking.booking_id,
        )
        self._check_promise(job, new_end, now)

    def _conflicts_at(self, booking: Booking, start: datetime, end: datetime) -> list[Booking]:
        seen = {
            b.booking_id: b
            for b in self.store.bookings_for_machine(booking.machine_id, start, end)
        }
        seen.update({
            b.booking_id: b
            for b in self.store.bookings_for_operator(booking.operator_id, start, end)
        })
        seen.pop(booking.booking_id, None)
        return sorted(seen.values(), key=lambda b: (b.start, b.booking_id))

    def _flag_locked(self, booking: Booking, job: Job, time_off: TimeOff, now: datetime) -> None:
        raise_alert(
            self.store, "critical", ALERT_LOCKED_OPERATOR_UNAVAILABLE,
            f"Locked job {job.job_number} is booked on {booking.start:%Y-%m-%d} but operator "
            f"{booking.operator_id} is on time off ({time_off.reason or 'no reason given'})",
            job.job_id, now, booking_id=booking.booking_id, time_off_id=time_off.time_off_id,
        )

    def find_substitute(self, booking: Booking, job: Job, today: date) -> Substitute | None:
        """Find a qualified operator who can take over a booking.

        The substitute must work during the whole booking and be qualified
        on the same machine. Any booking the substitute already has in that
        interval must be evictable by the requesting job's priority.

        Returns:
            The best Substitute (idle first, then preference and
            proficiency), or None.
        """
        options = []
        for qualification in self.store.qualifications_for_machine(booking.machine_id):
            operator_id = qualification.operator_id
            if operator_id == booking.operator_id:
                continue
            operator = self.store.operators.get(operator_id)
            if operator is None or not operator.is_active:
                continue
            if not self.calendar.is_available(operator_id, booking.start, booking.end):
                continue

            conflicts = self.store.bookings_for_operator(operator_id, booking.start, booking.end)
            if any(
                not self.displacement.is_evictable(c, job.priority_score, today)
                for c in conflicts
            ):
                continue
            options.append((
                len(conflicts),
                qualification.preference_rank,
                -qualification.proficiency_level,
                operator_id,
                conflicts,
            ))

        if not options:
            return None
        options.sort(key=lambda o: o[:4])
        best = options[0]
        return Substitute(operator_id=best[3], conflicts=best[4])

    def _substitute(
        self,
        booking: Booking,
        job: Job,
        substitute: Substitute,
        entry: UndoEntry,
        record: DisplacementRecord
    ) -> None:
        if substitute.conflicts:
            self.ledger.include(entry, self.displacement.affected_jobs(substitute.conflicts))
            record.displaced.extend(self.displacement.evict(
                substitute.conflicts,
                reason=f"operator {substitute.operator_id} reassigned to job {job.job_id}",
            ))
        self.store.update_booking(
            booking.booking_id,
            operator_id=substitute.operator_id,
            notes=f"Substitute for {booking.operator_id}",
        )
        logger.info(
            "Booking %s reassigned from %s to %s",
            booking.booking_id, booking.operator_id, substitute.operator_id,
        )

    def _unschedule(
        self,
        booking: Booking,
        job: Job,
        time_off: TimeOff,
        entry: UndoEntry,
        record: DisplacementRecord,
        now: datetime
    ) -> None:
        self.ledger.include(entry, self.displacement.affected_jobs([booking]))
        record.displaced.extend(self.displacement.evict(
            [booking], reason=f"operator {booking.operator_id} on time off"
        ))
        severity = "high" if job.priority_score > self.config.high_priority_threshold else "medium"
        raise_alert(
            self.store, severity, ALERT_NO_SUBSTITUTE,
            f"No substitute for operator {booking.operator_id} on job {job.job_number}; "
            f"operation {booking.operation_id} needs rescheduling",
            job.job_id, now,
            operation_id=booking.operation_id,
            priority_score=job.priority_score,
            time_off_id=time_off.time_off_id,
        )
        if job.promised_date is not None and job.promised_date <= time_off.end_date:
            raise_alert(
                self.store, "critical", ALERT_PROMISE_DATE_VIOLATION,
                f"Job {job.job_number} is promised {job.promised_date} but its operation "
                f"{booking.operation_id} lost its operator until {time_off.return_date}",
                job.job_id, now, promised_date=job.promised_date.isoformat(),
            )

    def _check_promise(self, job: Job, finish: datetime, now: datetime) -> None:
        deadline = job.promise_deadline
        if deadline is not None and finish > deadline:
            raise_alert(
                self.store, "critical", ALERT_PROMISE_DATE_VIOLATION,
                f"Job {job.job_number} now finishes {finish:%Y-%m-%d %H:%M}, after promise date "
                f"{job.promised_date}",
                job.job_id, now, promised_date=job.promised_date.isoformat(),
            )
