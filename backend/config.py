import os
from datetime import time
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

ASSETS_DIR = Path(os.getenv("DUTYTRACK_ASSETS_DIR", BASE_DIR / "assets"))
PHOTOS_DIR = Path(os.getenv("DUTYTRACK_PHOTOS_DIR", ASSETS_DIR / "photos"))
DB_PATH = Path(os.getenv("DUTYTRACK_DB_PATH", BASE_DIR / "database" / "dutytrack.db"))
DB_TIMEOUT_SECONDS = float(os.getenv("DUTYTRACK_DB_TIMEOUT_SECONDS", "5"))
LOG_LEVEL = os.getenv("DUTYTRACK_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_time(value: str | None, fallback: time) -> time:
    if not value:
        return fallback
    parts = value.split(":")
    try:
        hh = int(parts[0])
        mm = int(parts[1]) if len(parts) > 1 else 0
        ss = int(parts[2]) if len(parts) > 2 else 0
        return time(hh, mm, ss)
    except Exception:
        return fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("DUTYTRACK_CORS_ALLOW_ORIGINS"),
    ["http://localhost:8081", "http://127.0.0.1:8081"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("DUTYTRACK_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("DUTYTRACK_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept", "X-Request-Id"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("DUTYTRACK_CORS_ALLOW_CREDENTIALS"), True)

# Duty slot grid (the assignment form only offers these boundaries)
GRID_START = _parse_time(os.getenv("DUTYTRACK_GRID_START"), time(7, 0))
GRID_END = _parse_time(os.getenv("DUTYTRACK_GRID_END"), time(17, 0))
GRID_STEP_MINUTES = max(1, int(os.getenv("DUTYTRACK_GRID_STEP_MINUTES", "30")))
MIN_DUTY_STEPS = max(1, int(os.getenv("DUTYTRACK_MIN_DUTY_STEPS", "2")))
DEFAULT_LOCATION = os.getenv("DUTYTRACK_DEFAULT_LOCATION", "Unassigned").strip() or "Unassigned"

# Reconciliation
SWEEP_ENABLED = _parse_bool(os.getenv("DUTYTRACK_SWEEP_ENABLED"), True)
SWEEP_TIME = _parse_time(os.getenv("DUTYTRACK_SWEEP_TIME"), time(0, 5))
# IANA zone of the institution; decides when the sweep fires and which day is "yesterday"
SWEEP_TIMEZONE = os.getenv("DUTYTRACK_SWEEP_TIMEZONE", "Asia/Manila").strip() or "Asia/Manila"
BACKFILL_FALLBACK_DAYS = max(0, int(os.getenv("DUTYTRACK_BACKFILL_FALLBACK_DAYS", "90")))

# Self-photo evidence
MAX_PHOTO_BYTES = int(os.getenv("DUTYTRACK_MAX_PHOTO_BYTES", str(10 * 1024 * 1024)))
