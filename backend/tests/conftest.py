from datetime import datetime

import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import backend.services.evidence as evidence
import database.db as db
from backend.services.evidence import record_event
from backend.services.schedules import assign_schedule

# 2026-02-09 is a Monday.
MONDAY = datetime(2026, 2, 9).date()
TUESDAY = datetime(2026, 2, 10).date()
WEDNESDAY = datetime(2026, 2, 11).date()
SCHEDULE_CREATED_AT = datetime(2026, 2, 2, 8, 0)


@pytest.fixture()
def store(tmp_path):
    s = db.AttendanceStore(tmp_path / "dutytrack_test.db")
    s.create_tables()
    return s


@pytest.fixture()
def client(tmp_path, monkeypatch):
    test_db = tmp_path / "dutytrack_api.db"

    # Point DB and photo storage to temp locations for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)
    monkeypatch.setattr(evidence, "PHOTOS_DIR", tmp_path / "photos")
    monkeypatch.setattr(main, "SWEEP_ENABLED", False)

    db.create_tables()

    with TestClient(main.app) as c:
        yield c


def add_schedule(store, **overrides):
    raw = {
        "scholar_id": "S-001",
        "scholar_name": "Scholar One",
        "day_of_week": "Monday",
        "start_time": "8:00 AM",
        "end_time": "9:30 AM",
        "location": "201",
        "duty_kind": "Facilitator",
    }
    raw.update(overrides)
    created_at = raw.pop("created_at", SCHEDULE_CREATED_AT)
    return assign_schedule(store, raw, created_at=created_at)


def add_event(store, **overrides):
    raw = {
        "source": "SelfPhoto",
        "scholar_id": "S-001",
        "location": "201",
        "occurred_at": "2026-02-09 08:10:00",
    }
    raw.update(overrides)
    return record_event(store, raw, now=datetime(2026, 2, 9, 8, 10, 5))
