# Find free time slots on machine/operator calendars.
# Version: 1.0.0
# Walks forward day by day, placing an operation contiguously or chunking it across working days.

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable

from .constants import EngineConfig
from .matcher import Candidate
from .shift_calendar import CalendarResolver
from .store import ScheduleStore


logger = logging.getLogger(__name__)

Interval = tuple[datetime, datetime]


def ceil_minute(value: datetime) -> datetime:
    """Round an instant up to the next whole minute."""
    if value.second == 0 and value.microsecond == 0:
        return value
    return value.replace(second=0, microsecond=0) + timedelta(minutes=1)


def _minutes(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() // 60)


def subtract_intervals(window: Interval, busy: Iterable[Interval]) -> list[Interval]:
    """Remove busy intervals from a window.

    Args:
        window: (start, end) to carve up.
        busy: Occupied (start, end) intervals, in any order.

    Returns:
        Free (start, end) intervals inside the window, in time order.
    """
    start, end = window
    free = []
    cursor = start
    for busy_start, busy_end in sorted(busy):
        if busy_end <= cursor:
            continue
        if busy_start >= end:
            break
        if busy_start > cursor:
            free.append((cursor, busy_start))
        cursor = max(cursor, busy_end)
        if cursor >= end:
            break
    if cursor < end:
        free.append((cursor, end))
    return free


@dataclass(frozen=True)
class SlotChunk:
    """One contiguous piece of a placement.

    Attributes:
        start: Chunk start.
        end: Chunk end.
    """
    start: datetime
    end: datetime

    @property
    def minutes(self) -> int:
        return _minutes(self.start, self.end)


@dataclass
class Placement:
    """Where and when an operation can run.

    Attributes:
        candidate: Chosen (machine, operator) pair.
        chunks: Time pieces in order; one piece when contiguous.
        wall_minutes: Wall-clock minutes after the efficiency adjustment.
    """
    candidate: Candidate
    chunks: list[SlotChunk] = field(default_factory=list)
    wall_minutes: int = 0

    @property
    def start(self) -> datetime:
        return self.chunks[0].start

    @property
    def end(self) -> datetime:
        return self.chunks[-1].end

    @property
    def is_chunked(self) -> bool:
        return len(self.chunks) > 1

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return any(c.start < end and start < c.end for c in self.chunks)


class TimeSlotAllocator:
    """Search candidate calendars for free working time.

    The allocator never mutates the store; the engine commits placements.
    """

    def __init__(self, store: ScheduleStore, calendar: CalendarResolver, config: EngineConfig) -> None:
        self.store = store
        self.calendar = calendar
        self.config = config

    def free_intervals(
        self,
        machine_id: str,
        operator_id: str,
        start: datetime,
        end: datetime,
        exclude: frozenset[str] = frozenset()
    ) -> list[Interval]:
        """Get intervals in [start, end) where both machine and operator are free.

        Args:
            machine_id: Machine to check.
            operator_id: Operator to check.
            start: Window start.
            end: Window end.
            exclude: Booking ids treated as already removed.

        Returns:
            Free intervals in time order.
        """
        busy = [
            (b.start, b.end)
            for b in self.store.bookings_for_machine(machine_id, start, end)
            if b.booking_id not in exclude
        ]
        busy.extend(
            (b.start, b.end)
            for b in self.store.bookings_for_operator(operator_id, start, end)
            if b.booking_id not in exclude
        )
        return subtract_intervals((start, end), busy)

    def place_on_candidate(
        self,
        candidate: Candidate,
        nominal_minutes: int,
        earliest: datetime,
        latest_end: datetime | None = None,
        exclude: frozenset[str] = frozenset()
    ) -> Placement | None:
        """Find the earliest placement of an operation on one candidate pair.

        Walks forward from `earliest` one calendar day at a time. On each
        working day the remainder goes into the first free interval long
        enough to hold it; otherwise every usable free interval of the day
        is consumed as a chunk and the walk continues on the next day.

        Args:
            candidate: (machine, operator) pair.
            nominal_minutes: Nominal duration before the efficiency adjustment.
            earliest: Earliest allowed start.
            latest_end: Optional instant the operation must finish by.
            exclude: Booking ids treated as already removed.

        Returns:
            Placement, or None when the horizon is exhausted.
        """
        wall_minutes = candidate.machine.wall_minutes(nominal_minutes)
        earliest = ceil_minute(earliest)
        limit = earliest + timedelta(days=self.config.search_horizon_days)
        if latest_end is not None:
            limit = min(limit, latest_end)
        if limit <= earliest:
            return None

        remaining = wall_minutes
        chunks: list[SlotChunk] = []
        cursor = earliest
        # Start one day back so the tail of an overnight window is usable
        day = earliest.date() - timedelta(days=1)

        while day <= limit.date() and remaining > 0:
            window = self.calendar.window_for(candidate.operator.operator_id, day)
            day += timedelta(days=1)
            if not window.is_working_day:
                continue

            start = max(window.start, cursor)
            end = min(window.end, limit)
            if start >= end:
                continue

            free = self.free_intervals(
                candidate.machine.machine_id, candidate.operator.operator_id, start, end, exclude
            )

            fitting = next((f for f in free if _minutes(*f) >= remaining), None)
            if fitting is not None:
                chunk_start = fitting[0]
                chunks.append(SlotChunk(chunk_start, chunk_start + timedelta(minutes=remaining)))
                remaining = 0
                break

            for free_start, free_end in free:
                length = _minutes(free_start, free_end)
                if length >= remaining:
                    chunks.append(SlotChunk(free_start, free_start + timedelta(minutes=remaining)))
                    remaining = 0
                    break
                if length < self.config.min_chunk_minutes:
                    continue
                chunks.append(SlotChunk(free_start, free_end))
                remaining -= length
                if len(chunks) >= self.config.max_chunks:
                    return None
            cursor = end

        if remaining > 0:
            return None

        return Placement(candidate=candidate, chunks=chunks, wall_minutes=wall_minutes)

    def find_placement(
        self,
        candidates: list[Candidate],
        nominal_minutes: int,
        earliest: datetime,
        latest_end: datetime | None = None,
        exclude: frozenset[str] = frozenset()
    ) -> Placement | None:
        """Place an operation on the first candidate, in rank order, that has room.

        Returns:
            Placement, or None when no candidate has capacity.
        """
        for candidate in candidates:
            placement = self.place_on_candidate(
                candidate, nominal_minutes, earliest, latest_end, exclude
            )
            if placement is not None:
                logger.debug(
                    "Placed %d min on %s/%s starting %s in %d chunk(s)",
                    placement.wall_minutes,
                    candidate.machine.machine_id,
                    candidate.operator.operator_id,
                    placement.start,
                    len(placement.chunks),
                )
                return placement
        return None
