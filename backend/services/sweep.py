import threading
from datetime import datetime, time
from typing import Callable
from zoneinfo import ZoneInfo

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED
from apscheduler.schedulers.background import BackgroundScheduler

from backend.app_logger import get_logger
from backend.config import SWEEP_TIME, SWEEP_TIMEZONE
from backend.services.reconciliation import reconcile_yesterday, sweep_date
from database.db import AttendanceStore, get_store

logger = get_logger("sweep")

SWEEP_JOB_ID = "daily-sweep"

# -----------------------------
# Sweep Status (in-memory)
# -----------------------------
SWEEP_LOCK = threading.Lock()
STATUS_LOCK = threading.Lock()
# Set on shutdown so a sweep in progress stops between dates.
SWEEP_STOP = threading.Event()

SWEEP_STATUS = {
    "state": "idle",          # idle | running | success | failed
    "target_date": None,      # YYYY-MM-DD of the swept day
    "started_at": None,       # ISO string
    "finished_at": None,      # ISO string
    "message": "",
    "last_success": None,     # ISO string
    "last_counts": None,
    "next_run_at": None,      # ISO string, in the sweep timezone
}


def institution_now(tz: str = SWEEP_TIMEZONE) -> datetime:
    """Naive wall-clock time in the institution's zone."""
    return datetime.now(ZoneInfo(tz)).replace(tzinfo=None)


def run_sweep(
    store: AttendanceStore | None = None,
    *,
    now: datetime | None = None,
    should_stop: threading.Event | None = None,
) -> str:
    """
    Reconcile yesterday for every scholar and update SWEEP_STATUS.

    Returns:
      - "success": the sweep ran to completion
      - "failed": the engine raised; the next tick will retry
      - "already_running": another sweep holds the lock; nothing was done
    """
    if not SWEEP_LOCK.acquire(blocking=False):
        logger.info("Sweep already running; skipping this trigger")
        return "already_running"
    try:
        marker = now or institution_now()
        target = sweep_date(marker)
        with STATUS_LOCK:
            SWEEP_STATUS["state"] = "running"
            SWEEP_STATUS["target_date"] = target.isoformat()
            SWEEP_STATUS["started_at"] = datetime.now().isoformat(timespec="seconds")
            SWEEP_STATUS["finished_at"] = None
            SWEEP_STATUS["message"] = f"Sweeping {target.isoformat()}..."

        try:
            counts = reconcile_yesterday(store or get_store(), now=marker, should_stop=should_stop)
        except Exception as e:
            logger.exception("Sweep for %s failed; waiting for next tick", target.isoformat())
            with STATUS_LOCK:
                SWEEP_STATUS["state"] = "failed"
                SWEEP_STATUS["finished_at"] = datetime.now().isoformat(timespec="seconds")
                SWEEP_STATUS["message"] = f"Sweep failed: {e}"
            return "failed"

        finished_at = datetime.now().isoformat(timespec="seconds")
        with STATUS_LOCK:
            SWEEP_STATUS["state"] = "success"
            SWEEP_STATUS["finished_at"] = finished_at
            SWEEP_STATUS["last_success"] = finished_at
            SWEEP_STATUS["last_counts"] = dict(counts)
            SWEEP_STATUS["message"] = (
                "Sweep interrupted" if counts["interrupted"] else "Sweep completed"
            )
        return "success"
    finally:
        SWEEP_LOCK.release()


def get_sweep_status() -> dict:
    with STATUS_LOCK:
        return dict(SWEEP_STATUS)


def scheduled_sweep(
    store_factory: Callable[[], AttendanceStore] = get_store,
    tz: str = SWEEP_TIMEZONE,
) -> str:
    return run_sweep(store_factory(), now=institution_now(tz), should_stop=SWEEP_STOP)


def _note_next_run(scheduler: BackgroundScheduler) -> None:
    job = scheduler.get_job(SWEEP_JOB_ID)
    next_run = job.next_run_time if job is not None else None
    with STATUS_LOCK:
        SWEEP_STATUS["next_run_at"] = next_run.isoformat(timespec="seconds") if next_run else None


def build_scheduler(
    at: time = SWEEP_TIME,
    tz: str = SWEEP_TIMEZONE,
    *,
    store_factory: Callable[[], AttendanceStore] = get_store,
) -> BackgroundScheduler:
    """
    Background scheduler holding the daily sweep as a cron job at `at` in
    the institution's zone. A missed or failed run is not retried until the
    next day's tick; overlapping runs collapse into one.
    """
    scheduler = BackgroundScheduler(
        timezone=tz,
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": 3600,
        },
    )
    scheduler.add_job(
        scheduled_sweep,
        "cron",
        hour=at.hour,
        minute=at.minute,
        id=SWEEP_JOB_ID,
        kwargs={"store_factory": store_factory, "tz": tz},
        replace_existing=True,
    )
    scheduler.add_listener(
        lambda _event: _note_next_run(scheduler),
        EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED,
    )
    return scheduler


def start_scheduler(scheduler: BackgroundScheduler) -> None:
    SWEEP_STOP.clear()
    scheduler.start()
    _note_next_run(scheduler)
    logger.info("Sweep scheduler started; next run at %s", get_sweep_status()["next_run_at"])


def stop_scheduler(scheduler: BackgroundScheduler) -> None:
    SWEEP_STOP.set()
    if scheduler.running:
        scheduler.shutdown(wait=True)
    with STATUS_LOCK:
        SWEEP_STATUS["next_run_at"] = None
    logger.info("Sweep scheduler stopped")
