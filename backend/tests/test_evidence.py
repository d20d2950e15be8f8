from datetime import datetime

import cv2  # type: ignore
import numpy as np  # type: ignore
import pytest

from backend.errors import MalformedEvidence, StorageError
from backend.services.evidence import (
    decode_photo,
    ingest,
    record_checkout,
    record_photo,
    save_photo,
)
from database.db import AttendanceStore
from conftest import add_event


def _png_bytes() -> bytes:
    ok, buf = cv2.imencode(".png", np.zeros((32, 32, 3), dtype=np.uint8))
    assert ok
    return buf.tobytes()


def test_ingest_manual_encoding_from_checker_form():
    event = ingest(
        {
            "source": "ManualEncoding",
            "studentId": "S-001",
            "room": "201",
            "encodedTime": "02/09/2026 08:05 AM",
            "facilitatorStatus": "Present",
            "checkerId": "C-100",
        }
    )
    assert event["scholar_id"] == "S-001"
    assert event["source"] == "ManualEncoding"
    assert event["location"] == "201"
    assert event["occurred_at"] == datetime(2026, 2, 9, 8, 5)
    assert event["completed_at"] is None
    assert event["raw_status"] == "Present"
    assert event["recorded_by"] == "C-100"


def test_ingest_self_photo_drops_client_status():
    event = ingest(
        {
            "source": "photo",
            "scholar_id": "S-001",
            "location": "201",
            "captured_at": "2026-02-09T08:10:00",
            "status": "Present",
        }
    )
    assert event["source"] == "SelfPhoto"
    assert event["raw_status"] is None
    assert event["occurred_at"] == datetime(2026, 2, 9, 8, 10)


def test_ingest_qr_scan_with_checkout_time():
    event = ingest(
        {
            "source": "qr",
            "studentId": "S-001",
            "location": "201",
            "checkInTime": "2026-02-09 07:58:00",
            "checkOutTime": "2026-02-09 09:35:00",
        }
    )
    assert event["source"] == "QrScan"
    assert event["completed_at"] == datetime(2026, 2, 9, 9, 35)


@pytest.mark.parametrize(
    "missing",
    ["scholar_id", "location", "occurred_at"],
)
def test_ingest_rejects_missing_required_fields(missing):
    raw = {
        "source": "QrScan",
        "scholar_id": "S-001",
        "location": "201",
        "occurred_at": "2026-02-09 08:00:00",
    }
    raw.pop(missing)
    with pytest.raises(MalformedEvidence):
        ingest(raw)


@pytest.mark.parametrize(
    "raw",
    [
        {"source": "carrier-pigeon", "scholar_id": "S-001", "location": "201", "occurred_at": "2026-02-09 08:00:00"},
        {"source": "QrScan", "scholar_id": "S-001", "location": "201", "occurred_at": "yesterday-ish"},
        {"source": "QrScan", "scholar_id": "  ", "location": "201", "occurred_at": "2026-02-09 08:00:00"},
        {
            "source": "QrScan",
            "scholar_id": "S-001",
            "location": "201",
            "occurred_at": "2026-02-09 08:00:00",
            "completed_at": "2026-02-09 07:00:00",
        },
    ],
)
def test_ingest_rejects_malformed_payloads(raw):
    with pytest.raises(MalformedEvidence):
        ingest(raw)


def test_record_event_is_idempotent_per_request_id(store):
    first = add_event(store, request_id="req-1")
    again = add_event(store, request_id="req-1", occurred_at="2026-02-09 08:20:00")

    assert again["id"] == first["id"]
    assert again["occurred_at"] == datetime(2026, 2, 9, 8, 10)
    assert len(store.list_events("S-001")) == 1


def test_record_event_rejects_without_storing(store):
    with pytest.raises(MalformedEvidence):
        add_event(store, location=None, room=None)
    assert store.list_events("S-001") == []


def test_query_events_filters_by_scholar_day_and_location(store):
    add_event(store)
    add_event(store, location="202")
    add_event(store, occurred_at="2026-02-10 08:10:00")
    add_event(store, scholar_id="S-002")

    rows = store.query_events("S-001", datetime(2026, 2, 9).date(), "201")
    assert len(rows) == 1
    assert rows[0]["location"] == "201"


def test_record_checkout_appends_paired_qr_event(store):
    check_in = add_event(store, source="QrScan", occurred_at="2026-02-09 07:58:00")

    checkout = record_checkout(
        store,
        check_in["id"],
        scholar_id="S-001",
        checked_out_at=datetime(2026, 2, 9, 9, 40),
    )

    assert checkout is not None
    assert checkout["id"] != check_in["id"]
    assert checkout["occurred_at"] == check_in["occurred_at"]
    assert checkout["completed_at"] == datetime(2026, 2, 9, 9, 40)
    # the check-in row itself is never modified
    assert store.get_event(check_in["id"])["completed_at"] is None


def test_record_checkout_validates_pairing(store):
    check_in = add_event(store, source="QrScan", occurred_at="2026-02-09 07:58:00")
    photo = add_event(store)

    assert record_checkout(store, 999, scholar_id="S-001", checked_out_at=datetime(2026, 2, 9, 9, 40)) is None
    with pytest.raises(MalformedEvidence):
        record_checkout(store, check_in["id"], scholar_id="S-002", checked_out_at=datetime(2026, 2, 9, 9, 40))
    with pytest.raises(MalformedEvidence):
        record_checkout(store, check_in["id"], scholar_id="S-001", checked_out_at=datetime(2026, 2, 9, 7, 0))
    with pytest.raises(MalformedEvidence):
        record_checkout(store, photo["id"], scholar_id="S-001", checked_out_at=datetime(2026, 2, 9, 9, 40))


def test_decode_photo_rejects_garbage():
    with pytest.raises(MalformedEvidence):
        decode_photo(b"not-an-image")
    with pytest.raises(MalformedEvidence):
        decode_photo(b"")
    assert decode_photo(_png_bytes()).shape == (32, 32, 3)


def test_save_photo_writes_under_scholar_folder(tmp_path):
    first = save_photo("S-001", _png_bytes(), "image/png", datetime(2026, 2, 9, 8, 10), photos_dir=tmp_path)
    second = save_photo("S-001", _png_bytes(), "image/png", datetime(2026, 2, 9, 8, 10), photos_dir=tmp_path)

    # same capture second, two files
    assert first != second
    saved = sorted(p.name for p in (tmp_path / "S-001").iterdir())
    assert len(saved) == 2
    assert all(name.startswith("20260209_081000_") and name.endswith(".png") for name in saved)

    with pytest.raises(MalformedEvidence):
        save_photo("S-001", _png_bytes(), "image/gif", datetime(2026, 2, 9, 8, 10), photos_dir=tmp_path)


PHOTO_RAW = {
    "source": "SelfPhoto",
    "scholar_id": "S-001",
    "location": "201",
    "occurred_at": "2026-02-09 08:10:00",
    "request_id": "photo-1",
}


def test_record_photo_keeps_one_file_per_request(store, tmp_path):
    photos = tmp_path / "photos"

    event = record_photo(store, PHOTO_RAW, _png_bytes(), "image/png", photos_dir=photos)
    again = record_photo(store, PHOTO_RAW, _png_bytes(), "image/png", photos_dir=photos)

    assert again["id"] == event["id"]
    assert [str(p) for p in (photos / "S-001").iterdir()] == [event["photo_ref"]]


class BrokenEventStore(AttendanceStore):
    def append_event(self, event):
        raise StorageError("disk full")


def test_record_photo_removes_file_when_event_is_not_stored(tmp_path):
    store = BrokenEventStore(tmp_path / "broken.db")
    photos = tmp_path / "photos"

    with pytest.raises(StorageError):
        record_photo(store, PHOTO_RAW, _png_bytes(), "image/png", photos_dir=photos)

    assert list((photos / "S-001").iterdir()) == []
