"""Tests for the FastAPI backend."""

from datetime import datetime

import pytest
from fastapi.testclient import TestClient

import web.app as web_app
from shop_scheduler.models import Machine


@pytest.fixture
def client(monkeypatch, engine) -> TestClient:
    monkeypatch.setattr(web_app, "engine", engine)
    return TestClient(web_app.app)


def test_jobs_listed_by_priority(client, add_job) -> None:
    add_job("J1", [("Mill", 2, "M1")], priority=100)
    add_job("J2", [("Mill", 2, "M1")], priority=650)

    response = client.get("/api/jobs")

    assert response.status_code == 200
    jobs = response.json()["jobs"]
    assert [j["job_id"] for j in jobs] == ["J2", "J1"]
    assert jobs[0]["priority_label"] == "HIGH"


def test_schedule_job_endpoint(client, add_job) -> None:
    add_job("J1", [("Mill", 2, "M1")])

    response = client.post("/api/jobs/J1/schedule", json={"not_before": "2025-08-19T08:00:00"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"]
    assert body["start"] == "2025-08-19T08:00:00"
    assert body["operations"][0]["machine_id"] == "M1"

    bookings = client.get("/api/bookings").json()["bookings"]
    assert [b["job_id"] for b in bookings] == ["J1"]


def test_schedule_all_and_undo(client, store, add_job) -> None:
    add_job("J1", [("Mill", 2, "M1")])
    add_job("J2", [("Mill", 2, "M2")])

    body = client.post("/api/schedule/all").json()
    assert sorted(body["scheduled"]) == ["J1", "J2"]

    entries = client.get("/api/undo").json()["entries"]
    assert [e["entry_id"] for e in entries] == [body["undo_entry_id"]]

    response = client.post(f"/api/undo/{body['undo_entry_id']}")
    assert response.status_code == 200
    assert store.bookings == {}


def test_unknown_job_is_404(client) -> None:
    response = client.post("/api/jobs/NOPE/schedule")

    assert response.status_code == 404
    assert response.json()["error"] == "RecordNotFoundError"


def test_closed_job_is_422(client, add_job) -> None:
    add_job("J1", [("Mill", 2, "M1")], status="completed")

    response = client.post("/api/jobs/J1/schedule")

    assert response.status_code == 422
    assert response.json()["reason_code"] == "validation"


def test_no_capacity_is_409(client, store, add_job) -> None:
    store.add_machine(Machine("LATHE", "Lathe", status="inactive"))
    add_job("J1", [("Turn", 2, "LATHE")])

    response = client.post("/api/jobs/J1/schedule")

    assert response.status_code == 409
    assert response.json()["reason_code"] == "no_capacity"


def test_undo_twice_is_409(client, add_job) -> None:
    add_job("J1", [("Mill", 2, "M1")])
    entry_id = client.post("/api/jobs/J1/schedule").json()["undo_entry_id"]
    client.post(f"/api/undo/{entry_id}")

    response = client.post(f"/api/undo/{entry_id}")

    assert response.status_code == 409


def test_time_off_endpoint(client, store, add_job, book) -> None:
    add_job("J1", [("Mill", 2, "M1")])
    book("BKG-1", "J1-10", "M1", "O1", datetime(2025, 8, 19, 10), datetime(2025, 8, 19, 12))

    response = client.post("/api/time-off", json={
        "operator_id": "O1", "start_date": "2025-08-19", "end_date": "2025-08-19",
    })

    assert response.status_code == 200
    body = response.json()
    assert body["substituted"] == {"BKG-1": "O2"}
    assert body["time_off_id"] == "TOFF-00001"
    assert store.get_booking("BKG-1").operator_id == "O2"


def test_time_off_unknown_operator(client) -> None:
    response = client.post("/api/time-off", json={
        "operator_id": "O9", "start_date": "2025-08-19", "end_date": "2025-08-19",
    })

    assert response.status_code == 404


def test_capacity_and_validate(client) -> None:
    capacity = client.get("/api/capacity", params={"start_date": "2025-08-18", "days": 1}).json()
    assert [row["operators"] for row in capacity["capacity"]] == [2]

    assert client.get("/api/capacity", params={"days": 0}).status_code == 422
    assert client.get("/api/validate").json()["is_valid"]


def test_config_endpoint(client) -> None:
    body = client.get("/api/config").json()

    assert body["config"]["displacement_threshold"] == 0.15
    assert body["jobs_count"] == 0


def test_upload_rejects_non_excel(client) -> None:
    response = client.post("/api/upload", files={"file": ("shop.csv", b"a,b", "text/csv")})

    assert response.status_code == 400


def test_manual_booking_endpoint(client, store, add_job) -> None:
    add_job("J1", [("Mill", 2, "M1")])

    response = client.post("/api/bookings", json={
        "operation_id": "J1-10", "machine_id": "M1", "operator_id": "O1",
        "start": "2025-08-18T13:00:00",
    })

    assert response.status_code == 200
    assert response.json()["bookings"][0]["end"] == "2025-08-18T15:00:00"

    clash = client.post("/api/bookings", json={
        "operation_id": "J1-10", "machine_id": "M2", "operator_id": "O1",
        "start": "2025-08-18T08:00:00",
    })
    assert clash.status_code == 422


def test_lock_and_tier_endpoints(client, store, add_job) -> None:
    add_job("J1", [("Mill", 2, "M1")])

    assert client.post("/api/jobs/J1/lock", json={"reason": "witness"}).json()["schedule_locked"]
    assert store.get_job("J1").lock_reason == "witness"
    assert not client.post("/api/jobs/J1/unlock").json()["schedule_locked"]

    response = client.put("/api/customers/Acme/tier", json={"tier": "top"})
    assert response.json()["rescored_jobs"] == ["J1"]
    assert store.get_job("J1").priority_score == 400

    assert client.put("/api/customers/Acme/tier", json={"tier": "gold"}).status_code == 422


def test_displacement_preview_endpoint(client, store, add_job, book) -> None:
    add_job("B", [("Mill", 4, "M1")], priority=100)
    book("BKG-B", "B-10", "M1", "O1", datetime(2025, 8, 18, 9), datetime(2025, 8, 18, 13))
    add_job("A", [("Mill", 4, "M1")], priority=900)

    response = client.get("/api/jobs/A/displacement-preview", params={
        "not_before": "2025-08-18T09:00:00", "deadline": "2025-08-18T13:00:00",
    })

    assert response.status_code == 200
    body = response.json()
    assert body["feasible"]
    assert [d["operation_id"] for d in body["displaced"]] == ["B-10"]
    assert body["impact"]["total_hours_displaced"] == 4.0
    assert "BKG-B" in store.bookings
    assert client.get("/api/jobs/NOPE/displacement-preview").status_code == 404


def test_inspection_queue_endpoints(client, engine, store, add_job) -> None:
    add_job("J1", [("Mill", 2, "M1"), ("Inspect", 0, None, "inspection")], priority=650)
    engine.schedule_job("J1")

    inspections = client.get("/api/inspections").json()["inspections"]
    assert [(i["operation_id"], i["status"]) for i in inspections] == [("J1-20", "awaiting")]
    entry_id = inspections[0]["entry_id"]

    assert client.put(f"/api/inspections/{entry_id}", json={"status": "bogus"}).status_code == 422
    assert client.put("/api/inspections/NOPE", json={"status": "hold"}).status_code == 404

    response = client.put(f"/api/inspections/{entry_id}", json={"status": "completed"})
    assert response.json()["status"] == "completed"
    assert store.get_operation("J1-20").routing_status == "completed"
    assert client.get("/api/inspections", params={"status": "awaiting"}).json()["inspections"] == []

    jobs = client.get("/api/jobs").json()["jobs"]
    assert jobs[0]["priority_color"] == "#fd7e14"
