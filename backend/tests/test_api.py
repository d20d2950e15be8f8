import cv2  # type: ignore
import numpy as np  # type: ignore

import database.db as db
from conftest import add_schedule

SCHEDULE = {
    "scholar_id": "S-001",
    "scholar_name": "Scholar One",
    "day_of_week": "Monday",
    "start_time": "8:00 AM",
    "end_time": "9:30 AM",
    "location": "201",
    "duty_kind": "Facilitator",
}


def _png_bytes() -> bytes:
    ok, buf = cv2.imencode(".png", np.zeros((16, 16, 3), dtype=np.uint8))
    assert ok
    return buf.tobytes()


def _create_schedule(client, **overrides):
    payload = {**SCHEDULE, **overrides}
    res = client.post("/schedules", json=payload)
    assert res.status_code == 200, res.text
    return res.json()


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_duty_config_reports_slot_grid(client):
    res = client.get("/config/duty")
    assert res.status_code == 200
    payload = res.json()
    assert payload["slots"][0] == "07:00"
    assert payload["slots"][-1] == "17:00"
    assert payload["min_duty_minutes"] == 60
    assert payload["sweep_time"] == "00:05"
    assert payload["default_location"] == "Unassigned"


def test_create_and_list_schedules(client):
    data = _create_schedule(client)
    assert data["id"] >= 1
    assert data["start_time"] == "08:00"
    assert data["time_window"] == "08:00-09:30"

    res = client.get("/schedules", params={"scholar_id": "S-001", "day": "mon"})
    assert res.status_code == 200
    assert [r["id"] for r in res.json()] == [data["id"]]

    res = client.get(f"/schedules/{data['id']}")
    assert res.status_code == 200
    assert res.json()["location"] == "201"

    assert client.get("/schedules/999").status_code == 404


def test_overlapping_schedule_returns_conflict(client):
    existing = _create_schedule(client, day_of_week="Tuesday", start_time="9:30 AM", end_time="11:00 AM")

    res = client.post(
        "/schedules",
        json={**SCHEDULE, "day_of_week": "Tuesday", "start_time": "9:00 AM", "end_time": "10:00 AM"},
    )
    assert res.status_code == 409
    detail = res.json()["detail"]
    assert detail["conflicting_schedule"]["id"] == existing["id"]
    assert detail["conflicting_schedule"]["time_window"] == "09:30-11:00"
    assert detail["conflicting_schedule"]["created_at"] == existing["created_at"]

    other = _create_schedule(client, day_of_week="Tuesday", start_time="1:00 PM", end_time="2:00 PM")
    res = client.put(
        f"/schedules/{other['id']}",
        json={**SCHEDULE, "day_of_week": "Tuesday", "start_time": "10:00 AM", "end_time": "11:00 AM"},
    )
    assert res.status_code == 409
    assert res.json()["detail"]["conflicting_schedule"]["id"] == existing["id"]
    assert client.get(f"/schedules/{other['id']}").json()["start_time"] == "13:00"


def test_invalid_window_is_rejected(client):
    res = client.post("/schedules", json={**SCHEDULE, "start_time": "9:15 AM", "end_time": "10:30 AM"})
    assert res.status_code == 400

    res = client.post("/schedules", json={**SCHEDULE, "day_of_week": "Sunday"})
    assert res.status_code == 400

    assert client.get("/schedules").json() == []


def test_overlap_check_endpoint(client):
    saved = _create_schedule(client, day_of_week="Tuesday", start_time="9:00 AM", end_time="11:00 AM")
    body = {
        "scholar_id": "S-001",
        "day_of_week": "Tuesday",
        "start_time": "10:00 AM",
        "end_time": "12:00 PM",
    }

    res = client.post("/schedules/check", json=body)
    assert res.status_code == 200
    assert res.json()["conflict"] is True

    res = client.post("/schedules/check", json={**body, "excluding_schedule_id": saved["id"]})
    assert res.json() == {"conflict": False, "conflicting_schedule": None}


def test_update_and_deactivate_schedule(client):
    saved = _create_schedule(client)

    res = client.put(f"/schedules/{saved['id']}", json={**SCHEDULE, "location": "305"})
    assert res.status_code == 200
    assert res.json()["location"] == "305"

    assert client.put("/schedules/999", json=SCHEDULE).status_code == 404

    res = client.post(f"/schedules/{saved['id']}/deactivate")
    assert res.status_code == 200
    assert res.json()["active"] is False
    assert client.get("/schedules", params={"active_only": True}).json() == []
    assert client.post("/schedules/999/deactivate").status_code == 404


def test_record_event_and_reject_malformed(client):
    res = client.post(
        "/attendance/events",
        json={
            "source": "ManualEncoding",
            "studentId": "S-001",
            "room": "201",
            "encodedTime": "2026-02-09 08:05:00",
            "facilitatorStatus": "Present",
            "requestId": "enc-1",
        },
    )
    assert res.status_code == 200, res.text
    event = res.json()
    assert event["source"] == "ManualEncoding"
    assert event["location"] == "201"
    assert event["occurred_at"] == "2026-02-09T08:05:00"

    res = client.post(
        "/attendance/events",
        json={"source": "ManualEncoding", "studentId": "S-001", "room": "201", "requestId": "enc-1",
              "encodedTime": "2026-02-09 08:05:00"},
    )
    assert res.json()["id"] == event["id"]

    res = client.post("/attendance/events", json={"source": "QrScan", "scholar_id": "S-001"})
    assert res.status_code == 422

    res = client.get("/attendance/events", params={"scholar_id": "S-001"})
    assert res.status_code == 200
    assert len(res.json()) == 1


def test_photo_upload_stores_self_photo_event(client, tmp_path):
    res = client.post(
        "/attendance/photo",
        data={"scholar_id": "S-001", "location": "201", "captured_at": "2026-02-09T08:10:00"},
        files={"file": ("selfie.png", _png_bytes(), "image/png")},
    )
    assert res.status_code == 200, res.text
    event = res.json()
    assert event["source"] == "SelfPhoto"
    assert event["raw_status"] is None
    stored = list((tmp_path / "photos" / "S-001").iterdir())
    assert [str(p) for p in stored] == [event["photo_ref"]]
    assert stored[0].name.startswith("20260209_081000_")


def test_photo_upload_rejects_bad_files(client):
    res = client.post(
        "/attendance/photo",
        data={"scholar_id": "S-001", "location": "201"},
        files={"file": ("notes.txt", b"hello", "text/plain")},
    )
    assert res.status_code == 400

    res = client.post(
        "/attendance/photo",
        data={"scholar_id": "S-001", "location": "201"},
        files={"file": ("frame.jpg", b"not-an-image", "image/jpeg")},
    )
    assert res.status_code == 422


def test_qr_checkout_pairs_with_check_in(client):
    check_in = client.post(
        "/attendance/events",
        json={"source": "qr", "studentId": "S-001", "room": "201", "checkInTime": "2026-02-09 07:58:00"},
    ).json()

    res = client.post(
        "/attendance/qr/checkout",
        json={"check_in_event_id": check_in["id"], "scholar_id": "S-001", "checked_out_at": "2026-02-09 09:40:00"},
    )
    assert res.status_code == 200
    assert res.json()["completed_at"] == "2026-02-09T09:40:00"

    res = client.post(
        "/attendance/qr/checkout",
        json={"check_in_event_id": 999, "scholar_id": "S-001", "checked_out_at": "2026-02-09 09:40:00"},
    )
    assert res.status_code == 404


def test_reconcile_records_and_absences(client):
    store = db.get_store()
    add_schedule(store)
    add_schedule(store, day_of_week="Tuesday")
    client.post(
        "/attendance/events",
        json={"source": "SelfPhoto", "scholar_id": "S-001", "location": "201", "occurred_at": "2026-02-09 08:10:00"},
    )

    res = client.post("/admin/reconcile", json={"date_from": "2026-02-09", "date_to": "2026-02-10"})
    assert res.status_code == 200
    body = res.json()
    assert body["created"] == 2
    assert body["failed"] == 0

    records = client.get("/attendance/records", params={"scholar_id": "S-001"}).json()
    assert {r["schedule_date"]: r["status"] for r in records} == {
        "2026-02-09": "Present",
        "2026-02-10": "Absent",
    }

    absent_only = client.get("/attendance/records", params={"status": "absent"}).json()
    assert [r["schedule_date"] for r in absent_only] == ["2026-02-10"]
    assert client.get("/attendance/records", params={"status": "late"}).status_code == 400

    assert client.get("/absences", params={"scholar_id": "S-001"}).json() == {"scholar_id": "S-001", "count": 1}
    markers = client.get("/absences/list", params={"scholar_id": "S-001"}).json()
    assert markers[0]["time_window"] == "08:00-09:30"

    again = client.post("/admin/reconcile", json={"date_from": "2026-02-09", "date_to": "2026-02-10"}).json()
    assert again["unchanged"] == 2

    res = client.post("/admin/reconcile", json={"date_from": "2026-02-10", "date_to": "2026-02-09"})
    assert res.status_code == 400


def test_recompute_for_one_scholar(client):
    store = db.get_store()
    add_schedule(store)
    add_schedule(store, scholar_id="S-002")

    res = client.post(
        "/attendance/recompute",
        json={"scholar_id": "S-002", "date_from": "2026-02-09", "date_to": "2026-02-09"},
    )
    assert res.status_code == 200
    assert res.json()["created"] == 1
    assert [r["scholar_id"] for r in client.get("/attendance/records").json()] == ["S-002"]

    res = client.post("/attendance/recompute", json={"scholar_id": "  "})
    assert res.status_code == 400


def test_backfill_endpoint_runs(client):
    res = client.post("/admin/backfill", json={})
    assert res.status_code == 200
    body = res.json()
    assert body["ok"] is True
    assert body["created"] == 0


def test_sweep_status_and_manual_run(client):
    res = client.get("/admin/sweep/status")
    assert res.status_code == 200
    assert "state" in res.json()

    res = client.post("/admin/sweep/run")
    assert res.status_code == 200
    body = res.json()
    assert body["ok"] is True
    assert body["status"]["state"] == "success"


def test_unavailable_store_returns_503(client, monkeypatch, tmp_path):
    monkeypatch.setattr(db, "DB_PATH", tmp_path / "gone" / "dutytrack.db")

    res = client.get("/schedules")
    assert res.status_code == 503
    assert "unavailable" in res.json()["detail"]
