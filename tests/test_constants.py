"""Tests for engine configuration loading."""

from datetime import date, time
from pathlib import Path

import pytest

from shop_scheduler.constants import (
    EngineConfig,
    config_from_dict,
    load_config_from_yaml,
    parse_time_of_day,
    save_config_to_yaml,
)
from shop_scheduler.errors import ConfigurationError, FileLoadError


CONFIG_PATH = Path(__file__).parent.parent / "config" / "engine.yaml"


def test_shipped_config_matches_defaults() -> None:
    config = load_config_from_yaml(CONFIG_PATH)

    defaults = EngineConfig()
    assert config.displacement_threshold == defaults.displacement_threshold
    assert config.tier_weights == defaults.tier_weights
    assert config.shift_patterns == defaults.shift_patterns
    assert config.transfer_lags == defaults.transfer_lags
    assert config.is_holiday(date(2026, 12, 25))


def test_save_and_load_round_trip(tmp_path) -> None:
    config = EngineConfig(firm_zone_days=3, holidays={date(2025, 9, 1)}, reschedule_displaced=True)
    path = tmp_path / "engine.yaml"

    save_config_to_yaml(config, path)

    assert load_config_from_yaml(path) == config


def test_partial_mapping_keeps_defaults() -> None:
    config = config_from_dict({"max_chunks": 4, "default_shift": {"start": "07:30"}})

    assert config.max_chunks == 4
    assert config.default_shift_start == time(7, 30)
    assert config.default_shift_end == time(17, 0)


@pytest.mark.parametrize("data", [
    {"displacement_threshold": -0.1},
    {"max_chunks": 0},
    {"first_shift_efficiency": 1.5},
    {"default_shift": {"start": "17:00", "end": "08:00"}},
    {"tier_weights": {"platinum": 900}},
])
def test_invalid_values_rejected(data) -> None:
    with pytest.raises(ConfigurationError):
        config_from_dict(data)


@pytest.mark.parametrize("value,expected", [
    ("06:30", time(6, 30)),
    (" 18:00 ", time(18, 0)),
    (7, time(7, 0)),
    (time(5, 15), time(5, 15)),
])
def test_parse_time_of_day(value, expected) -> None:
    assert parse_time_of_day(value, "start") == expected


@pytest.mark.parametrize("value", [24, "25:00", "noon", None])
def test_parse_time_of_day_rejects(value) -> None:
    with pytest.raises(ConfigurationError):
        parse_time_of_day(value, "start")


def test_transfer_lag_and_shift_efficiency() -> None:
    config = EngineConfig()

    assert config.transfer_lag_hours("Band SAW cut") == 24.0
    assert config.transfer_lag_hours("Deburr") == 0.0
    assert config.shift_efficiency(time(8, 0)) == 0.85
    assert config.shift_efficiency(time(14, 0)) == 0.60
    assert config.get_tier_weight("TOP") == 400


def test_missing_config_file(tmp_path) -> None:
    with pytest.raises(FileLoadError):
        load_config_from_yaml(tmp_path / "absent.yaml")


def test_non_mapping_config_file(tmp_path) -> None:
    path = tmp_path / "engine.yaml"
    path.write_text("- just\n- a list\n")

    with pytest.raises(ConfigurationError):
        load_config_from_yaml(path)
