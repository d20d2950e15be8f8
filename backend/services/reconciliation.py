import threading
from collections.abc import Iterator
from datetime import date, datetime, timedelta
from typing import Literal, TypedDict

from backend.app_logger import get_logger
from backend.config import BACKFILL_FALLBACK_DAYS
from backend.errors import OccurrenceEvaluationError, StorageUnavailable
from backend.services.evaluator import Occurrence, evaluate, expand_occurrences
from database.db import DUTY_DAYS, TERMINAL_STATUSES, AttendanceStore

logger = get_logger("reconciliation")

OccurrenceOutcome = Literal["created", "updated", "unchanged"]


class ReconcileCounts(TypedDict):
    created: int
    updated: int
    unchanged: int
    failed: int
    dates: int
    interrupted: bool


def iter_dates(date_from: date, date_to: date) -> Iterator[date]:
    cursor = date_from
    while cursor <= date_to:
        yield cursor
        cursor += timedelta(days=1)


def reconcile_occurrence(
    store: AttendanceStore,
    occurrence: Occurrence,
    *,
    now: datetime,
) -> OccurrenceOutcome:
    """
    Evaluate one occurrence and persist the verdict.

    Terminal keys are never re-evaluated. Any failure other than the store
    being unavailable is raised as OccurrenceEvaluationError so the caller
    can move on to the next occurrence.
    """
    key = occurrence.key
    try:
        existing = store.get_record(key)
        if existing is not None and existing["status"] in TERMINAL_STATUSES:
            return "unchanged"

        events = store.query_events(occurrence.scholar_id, occurrence.schedule_date, occurrence.location)
        verdict = evaluate(occurrence, events, now=now)

        if verdict.status == "Pending":
            if existing is not None:
                return "unchanged"
            outcome = store.upsert_if_not_terminal(key, "Pending", now=now)
        elif verdict.status == "Present":
            evidence_ref = verdict.evidence["id"] if verdict.evidence else None
            outcome = store.upsert_if_not_terminal(key, "Present", evidence_ref, verified_at=now, now=now)
        else:
            outcome = store.mark_absent(key, occurrence.time_window, verified_at=now, now=now)
    except StorageUnavailable:
        raise
    except Exception as exc:
        raise OccurrenceEvaluationError(
            f"Could not reconcile {key.scholar_id} on {key.schedule_date} at {key.location}: {exc}",
            scholar_id=key.scholar_id,
            schedule_date=key.schedule_date.isoformat(),
            location=key.location,
        ) from exc

    if outcome == "skipped":
        # A concurrent writer reached a terminal status first.
        return "unchanged"
    if verdict.status != "Pending":
        logger.debug("%s %s %s -> %s (%s)", key.scholar_id, key.schedule_date, key.location, verdict.status, verdict.rule)
    return "created" if existing is None else "updated"


def reconcile(
    store: AttendanceStore,
    *,
    date_from: date,
    date_to: date,
    scholar_id: str | None = None,
    now: datetime | None = None,
    should_stop: threading.Event | None = None,
) -> ReconcileCounts:
    """
    Walk every date in [date_from, date_to] oldest first, expand the active
    duty schedules for that weekday and reconcile each occurrence.

    Per-occurrence failures are logged and counted as `failed`; only
    StorageUnavailable aborts the walk. Setting `should_stop` interrupts the
    walk between dates; rerunning later is safe because finished keys are
    terminal and skipped.
    """
    if date_from > date_to:
        raise ValueError("date_from must not be after date_to.")

    marker = now or datetime.now()
    counts: ReconcileCounts = {
        "created": 0,
        "updated": 0,
        "unchanged": 0,
        "failed": 0,
        "dates": 0,
        "interrupted": False,
    }

    for day in iter_dates(date_from, date_to):
        if should_stop is not None and should_stop.is_set():
            counts["interrupted"] = True
            logger.info("Reconcile interrupted before %s", day.isoformat())
            break

        weekday = day.strftime("%A")
        if weekday in DUTY_DAYS:
            schedules = store.list_active_schedules(scholar_id=scholar_id, day_of_week=weekday)
            for occurrence in expand_occurrences(schedules, day):
                try:
                    outcome = reconcile_occurrence(store, occurrence, now=marker)
                except OccurrenceEvaluationError as exc:
                    logger.error("%s", exc, exc_info=exc.__cause__)
                    counts["failed"] += 1
                    continue
                counts[outcome] += 1
        counts["dates"] += 1

    logger.info(
        "Reconciled %s..%s scholar=%s: created=%d updated=%d unchanged=%d failed=%d",
        date_from.isoformat(),
        date_to.isoformat(),
        scholar_id or "ALL",
        counts["created"],
        counts["updated"],
        counts["unchanged"],
        counts["failed"],
    )
    return counts


def backfill_range(
    store: AttendanceStore,
    *,
    scholar_id: str | None = None,
    now: datetime | None = None,
) -> tuple[date, date]:
    """From the earliest active schedule in scope (or the fallback horizon) to today."""
    today = (now or datetime.now()).date()
    earliest = store.earliest_schedule_created_at(scholar_id)
    if earliest is None:
        start = today - timedelta(days=BACKFILL_FALLBACK_DAYS)
    else:
        start = min(earliest.date(), today)
    return start, today


def backfill(
    store: AttendanceStore,
    *,
    scholar_id: str | None = None,
    now: datetime | None = None,
    should_stop: threading.Event | None = None,
) -> ReconcileCounts:
    marker = now or datetime.now()
    date_from, date_to = backfill_range(store, scholar_id=scholar_id, now=marker)
    return reconcile(
        store,
        date_from=date_from,
        date_to=date_to,
        scholar_id=scholar_id,
        now=marker,
        should_stop=should_stop,
    )


def sweep_date(now: datetime) -> date:
    return (now - timedelta(days=1)).date()


def reconcile_yesterday(
    store: AttendanceStore,
    *,
    now: datetime | None = None,
    should_stop: threading.Event | None = None,
) -> ReconcileCounts:
    marker = now or datetime.now()
    target = sweep_date(marker)
    return reconcile(store, date_from=target, date_to=target, now=marker, should_stop=should_stop)
