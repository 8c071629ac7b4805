"""Tests for loading shop snapshots from spreadsheets."""

from datetime import date, datetime

import pandas as pd
import pytest

from shop_scheduler.data_loader import load_shop_frames, load_shop_snapshot
from shop_scheduler.errors import FileLoadError, ValidationError


TODAY = date(2025, 8, 18)


@pytest.fixture
def frames() -> dict[str, pd.DataFrame]:
    return {
        "CUSTOMER_TIERS": pd.DataFrame([{"CUSTOMER": "Acme", "TIER": "Top"}]),
        "MACHINES": pd.DataFrame([
            {"MACHINE_ID": "M1", "NAME": "Mill 1", "GROUPS": "MILL"},
            {"MACHINE_ID": "M2", "NAME": "Mill 2", "GROUPS": "MILL", "EFFICIENCY_MODIFIER": 1.25},
        ]),
        "OPERATORS": pd.DataFrame([
            {"OPERATOR_ID": "O1", "NAME": "Ana", "SHIFT_PATTERN": "Day"},
            {"OPERATOR_ID": "O2", "NAME": "Ben"},
        ]),
        "QUALIFICATIONS": pd.DataFrame([
            {"OPERATOR_ID": "O1", "MACHINE_ID": "M1", "PROFICIENCY_LEVEL": 4},
        ]),
        "JOBS": pd.DataFrame([
            {"JOB_ID": "J1", "CUSTOMER": "acme", "PROMISED_DATE": datetime(2025, 8, 25)},
            {"JOB_ID": "J2", "CUSTOMER": "Beta", "PROMISED_DATE": None},
        ]),
        "OPERATIONS": pd.DataFrame([
            {"OPERATION_ID": "J1-10", "JOB_ID": "J1", "SEQUENCE": 10, "NAME": "Mill",
             "ESTIMATED_HOURS": 2.0, "MACHINE_ID": "M1"},
            {"OPERATION_ID": "J2-10", "JOB_ID": "J2", "SEQUENCE": 10, "NAME": "Plating",
             "ESTIMATED_HOURS": 0.0, "CATEGORY": "Outsourced", "VENDOR": "Platers Inc",
             "VENDOR_LEAD_TIME": "10 days"},
        ]),
        "BOOKINGS": pd.DataFrame([
            {"BOOKING_ID": "BKG-1", "JOB_ID": "J1", "OPERATION_ID": "J1-10", "MACHINE_ID": "M1",
             "OPERATOR_ID": "O1", "START": datetime(2025, 8, 18, 8), "END": datetime(2025, 8, 18, 10)},
        ]),
    }


def test_load_frames_builds_store(frames) -> None:
    store = load_shop_frames(frames, today=TODAY)

    assert sorted(store.machines) == ["M1", "M2"]
    assert store.get_machine("M2").efficiency_modifier == 1.25
    assert store.get_machine("M1").groups == frozenset({"MILL"})
    assert store.get_operator("O1").shift_pattern == "Day"
    assert store.get_customer_tier("ACME").priority_weight == 400
    assert store.get_operation("J2-10").vendor_lead_days == 10
    assert store.get_operation("J2-10").is_outsourced


def test_loaded_jobs_are_scored(frames) -> None:
    store = load_shop_frames(frames, today=TODAY)

    # Top tier plus seven days to promise
    assert store.get_job("J1").priority_score == 550
    # Standard tier with ten vendor days
    assert store.get_job("J2").priority_score == 50


def test_loaded_bookings_mark_routing_scheduled(frames) -> None:
    store = load_shop_frames(frames, today=TODAY)

    assert store.get_operation("J1-10").routing_status == "scheduled"
    assert store.get_job("J1").status == "scheduled"
    assert store.get_job("J2").status == "pending"


def test_sheet_names_are_case_insensitive(frames) -> None:
    frames = {name.lower(): df for name, df in frames.items()}

    store = load_shop_frames(frames, today=TODAY)

    assert "J1" in store.jobs


def test_missing_required_sheet(frames) -> None:
    del frames["OPERATIONS"]

    with pytest.raises(ValidationError) as excinfo:
        load_shop_frames(frames, today=TODAY)

    assert excinfo.value.field == "sheets"


def test_missing_required_column(frames) -> None:
    frames["JOBS"] = frames["JOBS"].drop(columns=["CUSTOMER"])

    with pytest.raises(ValidationError) as excinfo:
        load_shop_frames(frames, today=TODAY)

    assert excinfo.value.field == "JOBS columns"


def test_invalid_value_reports_row(frames) -> None:
    frames["JOBS"].loc[0, "STATUS"] = "bogus"

    with pytest.raises(ValidationError) as excinfo:
        load_shop_frames(frames, today=TODAY)

    assert excinfo.value.field == "status"
    assert excinfo.value.row == 2


def test_unparseable_date_reports_row(frames) -> None:
    frames["JOBS"]["PROMISED_DATE"] = ["2025-08-25", "next week"]

    with pytest.raises(ValidationError) as excinfo:
        load_shop_frames(frames, today=TODAY)

    assert excinfo.value.field == "PROMISED_DATE"
    assert excinfo.value.row == 3


def test_snapshot_workbook_round_trip(frames, tmp_path) -> None:
    path = tmp_path / "shop.xlsx"
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        for name, df in frames.items():
            df.to_excel(writer, sheet_name=name, index=False)

    store = load_shop_snapshot(path, today=TODAY)

    booking = store.get_booking("BKG-1")
    assert (booking.start, booking.end) == (datetime(2025, 8, 18, 8), datetime(2025, 8, 18, 10))
    assert store.get_job("J1").promised_date == date(2025, 8, 25)
    assert store.get_job("J1").priority_score == 550


def test_missing_workbook(tmp_path) -> None:
    with pytest.raises(FileLoadError):
        load_shop_snapshot(tmp_path / "absent.xlsx")
