"""Tests for schedule exports and capacity summaries."""

import json
from datetime import date, datetime

import openpyxl

from shop_scheduler.output_generator import (
    BOOKING_COLUMNS,
    bookings_to_frame,
    export_bookings,
    export_displacement_history,
    export_to_excel,
    export_to_json,
    summarize_shift_capacity,
)


NINE = datetime(2025, 8, 18, 9, 0)
ONE_PM = datetime(2025, 8, 18, 13, 0)


def test_export_bookings_in_time_order(store, add_job, book) -> None:
    add_job("J1", [("Mill", 4, "M1")], priority=650)
    add_job("J2", [("Saw", 1, "SAW1")])
    book("BKG-2", "J1-10", "M1", "O1", NINE, ONE_PM)
    book("BKG-1", "J2-10", "SAW1", "O2", datetime(2025, 8, 18, 8), NINE)

    rows = export_bookings(store)

    assert [r["booking_id"] for r in rows] == ["BKG-1", "BKG-2"]
    assert rows[1]["priority_label"] == "HIGH"
    assert rows[1]["minutes"] == 240
    assert rows[1]["chunk"] == "1/1"


def test_export_bookings_window(store, add_job, book) -> None:
    add_job("J1", [("Mill", 4, "M1")])
    book("BKG-1", "J1-10", "M1", "O1", NINE, ONE_PM)

    assert export_bookings(store, start=ONE_PM) == []
    assert len(export_bookings(store, start=datetime(2025, 8, 18, 12), end=ONE_PM)) == 1


def test_bookings_frame_columns(store, add_job, book) -> None:
    add_job("J1", [("Mill", 4, "M1")])
    book("BKG-1", "J1-10", "M1", "O1", NINE, ONE_PM)

    df = bookings_to_frame(store)

    assert list(df.columns) == list(BOOKING_COLUMNS)
    assert df.loc[0, "MACHINE_ID"] == "M1"


def test_shift_capacity_summary(store, config, add_job, book) -> None:
    store.get_operator("O2").shift_pattern = "Swing"
    add_job("J1", [("Mill", 4, "M1")])
    book("BKG-1", "J1-10", "M1", "O1", NINE, ONE_PM)

    summary = summarize_shift_capacity(store, config, date(2025, 8, 18), date(2025, 8, 18))

    first, second = summary
    assert (first["shift"], first["operators"], first["capacity_hours"]) == ("first", 1, 7.65)
    assert first["scheduled_hours"] == 4.0
    assert first["utilization_pct"] == 52.3
    assert (second["shift"], second["capacity_hours"], second["utilization_pct"]) == ("second", 4.8, 0.0)


def test_capacity_skips_weekends(store, config) -> None:
    summary = summarize_shift_capacity(store, config, date(2025, 8, 23), date(2025, 8, 24))

    assert summary == []


def test_displacement_history_export(engine, store, add_job, book) -> None:
    add_job("B", [("Mill", 4, "M1")], priority=100)
    book("BKG-B", "B-10", "M1", "O1", NINE, ONE_PM)
    add_job("A", [("Mill", 4, "M1")], priority=900)
    engine.schedule_job("A", not_before=NINE, deadline=ONE_PM)

    history = export_displacement_history(store)

    assert len(history) == 1
    entry = history[0]
    assert entry["trigger_job_id"] == "A"
    assert entry["total_displaced"] == 1
    assert entry["displaced"][0]["original_start"] == NINE.isoformat()


def test_json_export(engine, store, add_job) -> None:
    add_job("J1", [("Mill", 2, "M1"), ("Inspect", 0, None, "inspection")])
    engine.schedule_job("J1")

    data = json.loads(export_to_json(store))

    assert set(data) == {"generated_at", "bookings", "inspection_queue", "displacements", "alerts"}
    assert data["bookings"][0]["start"] == "2025-08-18T08:00:00"
    assert data["inspection_queue"][0]["operation_id"] == "J1-20"


def test_excel_export(store, add_job, book, tmp_path) -> None:
    add_job("J1", [("Mill", 4, "M1")])
    book("BKG-1", "J1-10", "M1", "O1", NINE, ONE_PM, locked=True)

    path = export_to_excel(store, tmp_path / "out" / "schedule.xlsx")

    wb = openpyxl.load_workbook(path)
    assert wb.sheetnames == ["Bookings", "Displacements"]
    ws = wb["Bookings"]
    assert ws.cell(row=1, column=1).value == "BOOKING_ID"
    assert ws.cell(row=2, column=1).value == "BKG-1"
    assert ws.max_row == 2
