# Load and structure engine configuration from YAML config file.
# Version: 1.0.0
# Provides thresholds, shift patterns, transfer lags, tier weights and holidays.

from dataclasses import dataclass, field
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Literal
import yaml

from .errors import ConfigurationError, FileLoadError


# Type aliases for clarity
CustomerTierName = Literal["top", "mid", "standard"]

# Valid customer tiers, highest first
CUSTOMER_TIERS: tuple[CustomerTierName, ...] = ("top", "mid", "standard")

WEEKDAY_NAMES: tuple[str, ...] = (
    "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"
)

# Monday = 0, Friday = 4
MONDAY_TO_FRIDAY: frozenset[int] = frozenset({0, 1, 2, 3, 4})


@dataclass(frozen=True)
class ShiftPattern:
    """Named shift pattern an operator can be assigned to.

    A pattern whose end time is not after its start time crosses midnight.

    Attributes:
        name: Pattern name (e.g. "Day", "Night").
        start: Shift start time of day.
        end: Shift end time of day.
        working_weekdays: Weekdays (Monday=0) the pattern works.
        description: Human-readable description.
    """
    name: str
    start: time
    end: time
    working_weekdays: frozenset[int] = MONDAY_TO_FRIDAY
    description: str = ""

    @property
    def is_overnight(self) -> bool:
        """Check if the shift ends on the following day."""
        return self.end <= self.start

    @property
    def duration_hours(self) -> float:
        """Get shift length in hours, across midnight when overnight."""
        start_minutes = self.start.hour * 60 + self.start.minute
        end_minutes = self.end.hour * 60 + self.end.minute
        if self.is_overnight:
            end_minutes += 24 * 60
        return (end_minutes - start_minutes) / 60


@dataclass(frozen=True)
class TransferLag:
    """Fixed wait required after an operation type before the next may start.

    Attributes:
        keyword: Case-insensitive keyword matched against the operation name.
        hours: Hours to wait after the matching operation ends.
    """
    keyword: str
    hours: float

    def applies_to(self, operation_name: str) -> bool:
        """Check if this lag applies to an operation with the given name."""
        return self.keyword.lower() in operation_name.lower()


# Standard shift patterns used on the shop floor
DEFAULT_SHIFT_PATTERNS: dict[str, ShiftPattern] = {
    "Day": ShiftPattern("Day", time(6, 0), time(18, 0), description="Standard day shift"),
    "Night": ShiftPattern("Night", time(18, 0), time(6, 0), description="Overnight shift"),
    "Swing": ShiftPattern("Swing", time(14, 0), time(22, 0), description="Afternoon shift"),
    "Early Day": ShiftPattern("Early Day", time(5, 0), time(17, 0), description="Early start day shift"),
    "Extended Day": ShiftPattern("Extended Day", time(6, 0), time(22, 0), description="Extended day shift"),
    "Split": ShiftPattern("Split", time(6, 0), time(14, 0), description="First half split shift"),
    "Late Split": ShiftPattern("Late Split", time(14, 0), time(22, 0), description="Second half split shift"),
}

DEFAULT_TRANSFER_LAGS: tuple[TransferLag, ...] = (
    TransferLag("saw", 24.0),
    TransferLag("waterjet", 24.0),
)

DEFAULT_TIER_WEIGHTS: dict[str, int] = {"top": 400, "mid": 200, "standard": 0}


@dataclass
class EngineConfig:
    """Business parameters passed into every scheduling component.

    Attributes:
        displacement_threshold: Minimum relative priority gap required to evict
            a booking, as (requesting - occupying) / occupying.
        undo_retention_hours: Hours an undo entry stays reversible.
        search_horizon_days: Calendar days the allocator walks forward.
        max_chunks: Maximum number of chunks one operation may be split into.
        min_chunk_minutes: Shortest free fragment used for a partial chunk.
        default_shift_start: Start of the fallback working window.
        default_shift_end: End of the fallback working window.
        default_working_weekdays: Weekdays (Monday=0) of the fallback window.
        first_shift_efficiency: Usable fraction of first-shift hours.
        second_shift_efficiency: Usable fraction of second-shift hours.
        second_shift_start_hour: Windows starting at or after this hour are
            second shift for capacity summaries.
        tier_weights: Priority weight per customer tier.
        high_priority_threshold: Priority above which disruptions raise alerts.
        expedite_window_days: Order-to-promise gap below which a job is expedite.
        firm_zone_days: Jobs promised within this many days are immune to
            displacement. None disables the firm zone.
        reschedule_displaced: Re-place evicted operations in the same pass.
        transfer_lags: Wait rules applied after matching operations.
        shift_patterns: Named shift patterns keyed by name.
        holidays: Plant closure dates (non-working for every operator).
    """
    displacement_threshold: float = 0.15
    undo_retention_hours: int = 24
    search_horizon_days: int = 60
    max_chunks: int = 15
    min_chunk_minutes: int = 15
    default_shift_start: time = time(8, 0)
    default_shift_end: time = time(17, 0)
    default_working_weekdays: frozenset[int] = MONDAY_TO_FRIDAY
    first_shift_efficiency: float = 0.85
    second_shift_efficiency: float = 0.60
    second_shift_start_hour: int = 12
    tier_weights: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_TIER_WEIGHTS))
    high_priority_threshold: int = 700
    expedite_window_days: int = 28
    firm_zone_days: int | None = None
    reschedule_displaced: bool = False
    transfer_lags: tuple[TransferLag, ...] = DEFAULT_TRANSFER_LAGS
    shift_patterns: dict[str, ShiftPattern] = field(
        default_factory=lambda: dict(DEFAULT_SHIFT_PATTERNS)
    )
    holidays: set[date] = field(default_factory=set)

    def __post_init__(self) -> None:
        """Validate numeric ranges."""
        if self.displacement_threshold < 0:
            raise ConfigurationError("displacement_threshold", "must be >= 0")
        if self.undo_retention_hours <= 0:
            raise ConfigurationError("undo_retention_hours", "must be > 0")
        if self.search_horizon_days <= 0:
            raise ConfigurationError("search_horizon_days", "must be > 0")
        if self.max_chunks <= 0:
            raise ConfigurationError("max_chunks", "must be > 0")
        if self.min_chunk_minutes < 1:
            raise ConfigurationError("min_chunk_minutes", "must be >= 1")
        for name in ("first_shift_efficiency", "second_shift_efficiency"):
            value = getattr(self, name)
            if not 0 < value <= 1:
                raise ConfigurationError(name, f"must be in (0, 1], got {value}")
        if self.default_shift_end <= self.default_shift_start:
            raise ConfigurationError("default_shift_end", "must be after default_shift_start")
        if self.firm_zone_days is not None and self.firm_zone_days < 0:
            raise ConfigurationError("firm_zone_days", "must be >= 0 or null")

    def get_tier_weight(self, tier: str) -> int:
        """Get the priority weight for a customer tier.

        Args:
            tier: Tier name (top, mid, standard).

        Returns:
            Configured weight, 0 for unknown tiers.
        """
        return self.tier_weights.get(tier.lower(), 0)

    def get_shift_pattern(self, name: str) -> ShiftPattern:
        """Get a shift pattern by name.

        Raises:
            ConfigurationError: If pattern not found.
        """
        if name in self.shift_patterns:
            return self.shift_patterns[name]
        raise ConfigurationError("shift_patterns", f"Shift pattern not found: {name}")

    def transfer_lag_hours(self, operation_name: str) -> float:
        """Get the wait required after an operation, 0 when no rule matches."""
        lags = [lag.hours for lag in self.transfer_lags if lag.applies_to(operation_name)]
        return max(lags) if lags else 0.0

    def shift_efficiency(self, window_start: time) -> float:
        """Get the capacity efficiency for a shift starting at the given time."""
        if window_start.hour >= self.second_shift_start_hour:
            return self.second_shift_efficiency
        return self.first_shift_efficiency

    def is_holiday(self, check_date: date) -> bool:
        """Check if a date is a plant holiday."""
        return check_date in self.holidays


def parse_time_of_day(value: Any, key: str) -> time:
    """Parse a configuration value into a time of day.

    Accepts "HH:MM" strings, time objects and integer hours.

    Raises:
        ConfigurationError: If the value cannot be parsed.
    """
    if isinstance(value, time):
        return value
    if isinstance(value, int) and 0 <= value <= 23:
        return time(value, 0)
    if isinstance(value, str):
        try:
            return datetime.strptime(value.strip(), "%H:%M").time()
        except ValueError:
            pass
    raise ConfigurationError(key, f"Cannot parse time of day: {value!r}")


def _parse_date(value: Any, key: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.strptime(value, "%Y-%m-%d").date()
        except ValueError:
            pass
    raise ConfigurationError(key, f"Cannot parse date: {value!r}")


def _format_time(value: time) -> str:
    return value.strftime("%H:%M")


def config_from_dict(data: dict[str, Any]) -> EngineConfig:
    """Build an EngineConfig from a parsed YAML mapping.

    Missing keys fall back to the defaults.

    Args:
        data: Mapping as produced by yaml.safe_load.

    Returns:
        Validated EngineConfig.

    Raises:
        ConfigurationError: If a value is malformed.
    """
    data = data or {}
    kwargs: dict[str, Any] = {}

    for key in (
        "displacement_threshold", "second_shift_efficiency", "first_shift_efficiency",
    ):
        if key in data:
            kwargs[key] = float(data[key])
    for key in (
        "undo_retention_hours", "search_horizon_days", "max_chunks",
        "min_chunk_minutes", "second_shift_start_hour", "high_priority_threshold",
        "expedite_window_days",
    ):
        if key in data:
            kwargs[key] = int(data[key])
    if "firm_zone_days" in data:
        firm_zone = data["firm_zone_days"]
        kwargs["firm_zone_days"] = None if firm_zone is None else int(firm_zone)
    if "reschedule_displaced" in data:
        kwargs["reschedule_displaced"] = bool(data["reschedule_displaced"])

    default_shift = data.get("default_shift", {})
    if "start" in default_shift:
        kwargs["default_shift_start"] = parse_time_of_day(default_shift["start"], "default_shift.start")
    if "end" in default_shift:
        kwargs["default_shift_end"] = parse_time_of_day(default_shift["end"], "default_shift.end")
    if "weekdays" in default_shift:
        kwargs["default_working_weekdays"] = frozenset(int(d) for d in default_shift["weekdays"])

    if "tier_weights" in data:
        weights = {}
        for tier, weight in data["tier_weights"].items():
            if str(tier).lower() not in CUSTOMER_TIERS:
                raise ConfigurationError("tier_weights", f"Unknown tier '{tier}'")
            weights[str(tier).lower()] = int(weight)
        kwargs["tier_weights"] = weights

    if "transfer_lags" in data:
        kwargs["transfer_lags"] = tuple(
            TransferLag(keyword=str(lag["keyword"]), hours=float(lag["hours"]))
            for lag in data["transfer_lags"]
        )

    if "shift_patterns" in data:
        patterns = {}
        for p in data["shift_patterns"]:
            pattern = ShiftPattern(
                name=str(p["name"]),
                start=parse_time_of_day(p["start"], f"shift_patterns.{p['name']}.start"),
                end=parse_time_of_day(p["end"], f"shift_patterns.{p['name']}.end"),
                working_weekdays=frozenset(int(d) for d in p.get("weekdays", sorted(MONDAY_TO_FRIDAY))),
                description=str(p.get("description", "")),
            )
            patterns[pattern.name] = pattern
        kwargs["shift_patterns"] = patterns

    if "holidays" in data:
        kwargs["holidays"] = {
            _parse_date(h["date"] if isinstance(h, dict) else h, "holidays")
            for h in data["holidays"]
        }

    try:
        return EngineConfig(**kwargs)
    except (TypeError, ValueError) as e:
        raise ConfigurationError("engine config", str(e))


def config_to_dict(config: EngineConfig) -> dict[str, Any]:
    """Convert an EngineConfig to a YAML-friendly mapping."""
    return {
        "displacement_threshold": config.displacement_threshold,
        "undo_retention_hours": config.undo_retention_hours,
        "search_horizon_days": config.search_horizon_days,
        "max_chunks": config.max_chunks,
        "min_chunk_minutes": config.min_chunk_minutes,
        "default_shift": {
            "start": _format_time(config.default_shift_start),
            "end": _format_time(config.default_shift_end),
            "weekdays": sorted(config.default_working_weekdays),
        },
        "first_shift_efficiency": config.first_shift_efficiency,
        "second_shift_efficiency": config.second_shift_efficiency,
        "second_shift_start_hour": config.second_shift_start_hour,
        "tier_weights": dict(config.tier_weights),
        "high_priority_threshold": config.high_priority_threshold,
        "expedite_window_days": config.expedite_window_days,
        "firm_zone_days": config.firm_zone_days,
        "reschedule_displaced": config.reschedule_displaced,
        "transfer_lags": [
            {"keyword": lag.keyword, "hours": lag.hours} for lag in config.transfer_lags
        ],
        "shift_patterns": [
            {
                "name": p.name,
                "start": _format_time(p.start),
                "end": _format_time(p.end),
                "weekdays": sorted(p.working_weekdays),
                "description": p.description,
            }
            for p in config.shift_patterns.values()
        ],
        "holidays": [d.isoformat() for d in sorted(config.holidays)],
    }


def load_config_from_yaml(yaml_path: str | Path) -> EngineConfig:
    """Load engine configuration from YAML file.

    Args:
        yaml_path: Path to the YAML config file.

    Returns:
        EngineConfig with all loaded values.

    Raises:
        FileLoadError: If file cannot be read.
        ConfigurationError: If file format is invalid.
    """
    yaml_path = Path(yaml_path)

    if not yaml_path.exists():
        raise FileLoadError(str(yaml_path), FileNotFoundError(f"Config file not found: {yaml_path}"))

    try:
        with open(yaml_path, 'r') as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise FileLoadError(str(yaml_path), e)

    if data is not None and not isinstance(data, dict):
        raise ConfigurationError(str(yaml_path), "top level must be a mapping")

    return config_from_dict(data or {})


def save_config_to_yaml(config: EngineConfig, yaml_path: str | Path) -> None:
    """Save engine configuration to YAML file.

    Args:
        config: EngineConfig to save.
        yaml_path: Path to save the YAML config file.
    """
    with open(yaml_path, 'w') as f:
        yaml.dump(config_to_dict(config), f, default_flow_style=False, sort_keys=False, allow_unicode=True)
