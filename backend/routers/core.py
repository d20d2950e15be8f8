from fastapi import APIRouter

from backend.config import (
    BACKFILL_FALLBACK_DAYS,
    DEFAULT_LOCATION,
    GRID_END,
    GRID_START,
    GRID_STEP_MINUTES,
    MIN_DUTY_STEPS,
    SWEEP_ENABLED,
    SWEEP_TIME,
    SWEEP_TIMEZONE,
)
from backend.services.schedules import SLOT_GRID

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/duty")
def duty_config():
    return {
        "grid_start": GRID_START.strftime("%H:%M"),
        "grid_end": GRID_END.strftime("%H:%M"),
        "grid_step_minutes": GRID_STEP_MINUTES,
        "min_duty_minutes": MIN_DUTY_STEPS * GRID_STEP_MINUTES,
        "slots": [slot.strftime("%H:%M") for slot in SLOT_GRID],
        "default_location": DEFAULT_LOCATION,
        "sweep_enabled": SWEEP_ENABLED,
        "sweep_time": SWEEP_TIME.strftime("%H:%M"),
        "sweep_timezone": SWEEP_TIMEZONE,
        "backfill_fallback_days": BACKFILL_FALLBACK_DAYS,
    }
