# Calculate job priority scores for the scheduling engine.
# Version: 1.0.0
# Computes the bounded 0-1000 priority from tier, lateness, expedite, urgency, assembly and outsourcing.

import logging
import re
from dataclasses import dataclass
from datetime import date

from .constants import EngineConfig
from .models import CustomerTier, Job
from .store import ScheduleStore


logger = logging.getLogger(__name__)

# Score components
LATE_BONUS = 250
EXPEDITE_BONUS = 200
ASSEMBLY_PARENT_BONUS = 50
COMPONENT_OFFSET = 50           # Components run ahead of their parent
OUTSOURCING_POINTS_PER_DAY = 5
OUTSOURCING_CAP = 100
MAX_PRIORITY = 1000

# (days until promised, bonus), checked in order
URGENCY_LADDER: tuple[tuple[int, int], ...] = ((7, 150), (14, 100), (21, 50))

# Label thresholds, checked in order
PRIORITY_LABELS: tuple[tuple[int, str, str], ...] = (
    (800, "CRITICAL", "#dc3545"),
    (600, "HIGH", "#fd7e14"),
    (300, "MEDIUM", "#ffc107"),
    (0, "STANDARD", "#28a745"),
)

DEFAULT_LEAD_DAYS = 5


def priority_label(score: int) -> str:
    """Get human-readable priority label for a score."""
    for threshold, label, _ in PRIORITY_LABELS:
        if score >= threshold:
            return label
    return "STANDARD"


def priority_color(score: int) -> str:
    """Get display colour for a score."""
    for threshold, _, color in PRIORITY_LABELS:
        if score >= threshold:
            return color
    return PRIORITY_LABELS[-1][2]


def parse_lead_days(text: str | int | float | None) -> int:
    """Parse a vendor lead time such as "10 days" or "2 weeks" into days.

    Args:
        text: Lead time text or number of days.

    Returns:
        Lead time in days, DEFAULT_LEAD_DAYS when it cannot be parsed.
    """
    if text is None:
        return DEFAULT_LEAD_DAYS
    if isinstance(text, (int, float)):
        return max(0, int(text))

    value = str(text).strip().lower()
    match = re.search(r"(\d+)\s*(day|week)", value)
    if match:
        amount = int(match.group(1))
        return amount * 7 if match.group(2) == "week" else amount
    if value.isdigit():
        return int(value)
    return DEFAULT_LEAD_DAYS


@dataclass
class PriorityBreakdown:
    """Score components for one job.

    Attributes:
        job_id: Scored job.
        customer_weight: Tier weight.
        late_bonus: Points for being past the promise date.
        expedite_bonus: Points for expedite status.
        urgency_bonus: Points from the days-until-promised ladder.
        assembly_bonus: Points for being an assembly parent.
        outsourcing_bonus: Points for vendor lead time.
        inherited_score: Parent score + offset for components, else None.
        total: Final bounded score.
        is_expedite: Resulting expedite flag.
        days_until_promised: Days from today to the promise date.
    """
    job_id: str
    customer_weight: int = 0
    late_bonus: int = 0
    expedite_bonus: int = 0
    urgency_bonus: int = 0
    assembly_bonus: int = 0
    outsourcing_bonus: int = 0
    inherited_score: int | None = None
    total: int = 0
    is_expedite: bool = False
    days_until_promised: int | None = None

    @property
    def label(self) -> str:
        return priority_label(self.total)


def calculate_priority(
    job: Job,
    today: date,
    config: EngineConfig,
    customer_weight: int = 0,
    outsourcing_lead_days: int = 0,
    parent_score: int | None = None
) -> PriorityBreakdown:
    """Calculate the priority score of a job.

    Pure function: the caller resolves the customer weight, the longest
    vendor lead time and the parent's score.

    Args:
        job: Job to score.
        today: Reference date.
        config: Engine configuration (expedite window).
        customer_weight: Weight of the customer's tier.
        outsourcing_lead_days: Longest vendor lead time on the job's routing.
        parent_score: Parent's score for assembly components.

    Returns:
        PriorityBreakdown with the bounded total.
    """
    breakdown = PriorityBreakdown(job_id=job.job_id, customer_weight=customer_weight)

    if job.promised_date is not None:
        days_until = (job.promised_date - today).days
        breakdown.days_until_promised = days_until

        if today > job.promised_date:
            breakdown.late_bonus = LATE_BONUS

        for max_days, bonus in URGENCY_LADDER:
            if days_until <= max_days:
                breakdown.urgency_bonus = bonus
                break

    is_expedite = job.is_expedite
    if job.order_date is not None and job.promised_date is not None:
        if (job.promised_date - job.order_date).days < config.expedite_window_days:
            is_expedite = True
    breakdown.is_expedite = is_expedite
    if is_expedite:
        breakdown.expedite_bonus = EXPEDITE_BONUS

    if job.is_assembly_parent:
        breakdown.assembly_bonus = ASSEMBLY_PARENT_BONUS

    if outsourcing_lead_days > 0:
        breakdown.outsourcing_bonus = min(
            OUTSOURCING_CAP, outsourcing_lead_days * OUTSOURCING_POINTS_PER_DAY
        )

    score = (
        breakdown.customer_weight
        + breakdown.late_bonus
        + breakdown.expedite_bonus
        + breakdown.urgency_bonus
        + breakdown.assembly_bonus
        + breakdown.outsourcing_bonus
    )

    if job.job_type == "assembly_component" and parent_score is not None:
        breakdown.inherited_score = parent_score + COMPONENT_OFFSET
        score = max(score, breakdown.inherited_score)

    breakdown.total = max(0, min(score, MAX_PRIORITY))
    return breakdown


def resolve_customer_weight(store: ScheduleStore, customer: str, config: EngineConfig) -> int:
    """Get the tier weight of a customer, registering unknown customers.

    Unknown customers are added at the standard tier.
    """
    tier = store.get_customer_tier(customer)
    if tier is None:
        tier = CustomerTier(
            customer_name=customer,
            tier="standard",
            priority_weight=config.get_tier_weight("standard"),
        )
        store.set_customer_tier(tier)
        logger.info("Registered customer %r at standard tier", customer)
    return tier.priority_weight


def outsourcing_lead_days(store: ScheduleStore, job_id: str) -> int:
    """Get the longest vendor lead time on a job's routing."""
    lead_days = [
        op.vendor_lead_days for op in store.operations_for_job(job_id) if op.is_outsourced
    ]
    return max(lead_days, default=0)


def recalculate_job_priority(
    store: ScheduleStore,
    job_id: str,
    config: EngineConfig,
    today: date,
    cascade: bool = True
) -> PriorityBreakdown:
    """Recompute and store the priority of a job.

    Writes the score and, when the expedite rule fired, the expedite flag.
    Never touches bookings.

    Args:
        store: Schedule store.
        job_id: Job to rescore.
        config: Engine configuration.
        today: Reference date.
        cascade: Also rescore assembly components of this job.

    Returns:
        PriorityBreakdown of the job.
    """
    job = store.get_job(job_id)
    parent_score = None
    if job.parent_job_id and job.parent_job_id in store.jobs:
        parent_score = store.get_job(job.parent_job_id).priority_score

    breakdown = calculate_priority(
        job,
        today,
        config,
        customer_weight=resolve_customer_weight(store, job.customer, config),
        outsourcing_lead_days=outsourcing_lead_days(store, job_id),
        parent_score=parent_score,
    )
    job.priority_score = breakdown.total
    job.is_expedite = breakdown.is_expedite

    if cascade:
        results = {job_id: breakdown}
        for component in sorted(store.components_of(job_id), key=lambda j: j.job_id):
            _recalculate_tree(store, component.job_id, config, today, results)

    return breakdown


def recalculate_all_priorities(
    store: ScheduleStore,
    config: EngineConfig,
    today: date
) -> dict[str, PriorityBreakdown]:
    """Recompute every job's priority, parents before their components.

    Returns:
        Dict of job_id -> PriorityBreakdown.
    """
    results: dict[str, PriorityBreakdown] = {}
    roots = [
        j for j in store.jobs.values()
        if not j.parent_job_id or j.parent_job_id not in store.jobs
    ]
    for job in sorted(roots, key=lambda j: j.job_id):
        _recalculate_tree(store, job.job_id, config, today, results)

    # Jobs caught in a parent cycle are not reachable from a root
    for job_id in sorted(store.jobs):
        if job_id not in results:
            results[job_id] = recalculate_job_priority(store, job_id, config, today, cascade=False)

    logger.info("Recalculated priority for %d jobs", len(results))
    return results


def _recalculate_tree(
    store: ScheduleStore,
    job_id: str,
    config: EngineConfig,
    today: date,
    results: dict[str, PriorityBreakdown]
) -> None:
    if job_id in results:
        return
    results[job_id] = recalculate_job_priority(store, job_id, config, today, cascade=False)
    for component in sorted(store.components_of(job_id), key=lambda j: j.job_id):
        _recalculate_tree(store, component.job_id, config, today, results)


def update_customer_tier(
    store: ScheduleStore,
    customer: str,
    tier: str,
    config: EngineConfig,
    today: date,
    priority_weight: int | None = None
) -> list[str]:
    """Change a customer's tier and rescore that customer's jobs.

    Args:
        store: Schedule store.
        customer: Customer name.
        tier: New tier (top, mid, standard).
        config: Engine configuration.
        today: Reference date.
        priority_weight: Explicit weight, defaults to the tier's configured weight.

    Returns:
        Ids of the jobs that were rescored.
    """
    weight = priority_weight if priority_weight is not None else config.get_tier_weight(tier)
    store.set_customer_tier(CustomerTier(customer_name=customer, tier=tier.lower(), priority_weight=weight))

    rescored = []
    for job in sorted(store.jobs.values(), key=lambda j: j.job_id):
        if job.customer.lower() == customer.lower():
            recalculate_job_priority(store, job.job_id, config, today, cascade=True)
            rescored.append(job.job_id)
    return rescored
