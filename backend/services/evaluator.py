from datetime import date, datetime
from typing import Iterable, NamedTuple

from backend.services.schedules import format_window
from database.db import AttendanceEvent, DutySchedule, RecordKey, RecordStatus

ABSENT_RAW_STATUSES = {"absent", "no facilitator", "no show"}


class Occurrence(NamedTuple):
    """One calendar-date instance of a recurring duty schedule."""

    scholar_id: str
    schedule_date: date
    schedule: DutySchedule

    @property
    def location(self) -> str:
        return self.schedule["location"]

    @property
    def start_at(self) -> datetime:
        return datetime.combine(self.schedule_date, self.schedule["start_time"])

    @property
    def end_at(self) -> datetime:
        return datetime.combine(self.schedule_date, self.schedule["end_time"])

    @property
    def time_window(self) -> str:
        return format_window(self.schedule["start_time"], self.schedule["end_time"])

    @property
    def key(self) -> RecordKey:
        return RecordKey(self.scholar_id, self.schedule_date, self.location)


class Evaluation(NamedTuple):
    status: RecordStatus
    evidence: AttendanceEvent | None = None
    rule: str | None = None


def _assigned_by(schedule: DutySchedule, on_date: date) -> bool:
    created_at = schedule["created_at"]
    return created_at is None or created_at.date() <= on_date


def expand_occurrences(schedules: Iterable[DutySchedule], on_date: date) -> list[Occurrence]:
    """Occurrences on `on_date`; a duty has none before the day it was assigned."""
    weekday = on_date.strftime("%A")
    return [
        Occurrence(s["scholar_id"], on_date, s)
        for s in schedules
        if s["active"] and s["day_of_week"] == weekday and _assigned_by(s, on_date)
    ]


def _claims_absence(event: AttendanceEvent) -> bool:
    status = (event["raw_status"] or "").strip().lower()
    return status in ABSENT_RAW_STATUSES


def _matches_occurrence(occurrence: Occurrence, event: AttendanceEvent) -> bool:
    return (
        event["scholar_id"] == occurrence.scholar_id
        and event["location"] == occurrence.location
        and event["occurred_at"].date() == occurrence.schedule_date
    )


def checked_out_after_end(occurrence: Occurrence, event: AttendanceEvent) -> bool:
    if not _matches_occurrence(occurrence, event) or _claims_absence(event):
        return False
    completed_at = event["completed_at"]
    return completed_at is not None and completed_at > occurrence.end_at


def self_photo_on_day(occurrence: Occurrence, event: AttendanceEvent) -> bool:
    return event["source"] == "SelfPhoto" and _matches_occurrence(occurrence, event)


def evaluate(
    occurrence: Occurrence,
    candidate_events: Iterable[AttendanceEvent],
    *,
    now: datetime,
) -> Evaluation:
    """
    Decide the status of one occurrence.

    Pending until the scheduled end has passed, whatever evidence exists.
    After that, Present when some event at the same location on the same day
    either checked out after the scheduled end, or is a self-photo taken that
    day. Otherwise Absent. When several events qualify the earliest one is
    kept as evidence.
    """
    if now < occurrence.end_at:
        return Evaluation("Pending")

    best: tuple[AttendanceEvent, str] | None = None
    for event in candidate_events:
        if checked_out_after_end(occurrence, event):
            rule = "checkout"
        elif self_photo_on_day(occurrence, event):
            rule = "self_photo"
        else:
            continue
        if best is None or _evidence_order(event) < _evidence_order(best[0]):
            best = (event, rule)

    if best is None:
        return Evaluation("Absent")
    return Evaluation("Present", best[0], best[1])


def _evidence_order(event: AttendanceEvent) -> tuple[datetime, int]:
    return event["occurred_at"], event["id"] if event["id"] is not None else 0
