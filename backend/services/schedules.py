from datetime import datetime, time, timedelta
from typing import Any, cast

from backend.app_logger import get_logger
from backend.config import (
    DEFAULT_LOCATION,
    GRID_END,
    GRID_START,
    GRID_STEP_MINUTES,
    MIN_DUTY_STEPS,
)
from backend.errors import InvalidWindow, ScheduleConflict
from database.db import (
    DUTY_DAYS,
    AttendanceStore,
    DayOfWeek,
    DutyKind,
    DutySchedule,
    NewSchedule,
)

logger = get_logger("schedules")

_TIME_FORMATS = ("%I:%M %p", "%I:%M%p", "%H:%M", "%H:%M:%S")
_DUTY_KIND_ALIASES: dict[str, DutyKind] = {
    "facilitator": "Facilitator",
    "student facilitator": "Facilitator",
    "checker": "Checker",
    "attendance checker": "Checker",
}


def build_slot_grid(
    start: time = GRID_START,
    end: time = GRID_END,
    step_minutes: int = GRID_STEP_MINUTES,
) -> tuple[time, ...]:
    """Ordered permitted slot boundaries, both ends included."""
    anchor = datetime(2000, 1, 1)
    cursor = datetime.combine(anchor, start)
    stop = datetime.combine(anchor, end)
    slots: list[time] = []
    while cursor <= stop:
        slots.append(cursor.time())
        cursor += timedelta(minutes=step_minutes)
    return tuple(slots)


SLOT_GRID = build_slot_grid()


def parse_clock(value: str | time) -> time:
    """Accepts `9:00 AM`, `9:00AM`, `09:00` or `09:00:00`."""
    if isinstance(value, time):
        return value
    text = str(value or "").strip().upper()
    for fmt in _TIME_FORMATS:
        try:
            return datetime.strptime(text, fmt).time()
        except ValueError:
            continue
    raise InvalidWindow(f"Unrecognised time value: {value!r}.")


def normalize_day(value: str) -> DayOfWeek:
    text = str(value or "").strip().lower()
    if len(text) >= 3:
        for day in DUTY_DAYS:
            if day.lower().startswith(text):
                return day
    raise InvalidWindow(f"Duty day must be Monday to Friday, got {value!r}.")


def normalize_duty_kind(value: str) -> DutyKind:
    kind = _DUTY_KIND_ALIASES.get(str(value or "").strip().lower())
    if kind is None:
        raise InvalidWindow(f"Unknown duty kind {value!r}; expected Facilitator or Checker.")
    return kind


def slot_index(value: time, grid: tuple[time, ...] = SLOT_GRID) -> int:
    try:
        return grid.index(value)
    except ValueError:
        raise InvalidWindow(
            f"{value.strftime('%H:%M')} is not a permitted slot boundary "
            f"({grid[0].strftime('%H:%M')}-{grid[-1].strftime('%H:%M')}, "
            f"every {GRID_STEP_MINUTES} minutes)."
        ) from None


def window_indices(start: time, end: time, grid: tuple[time, ...] = SLOT_GRID) -> tuple[int, int]:
    start_idx = slot_index(start, grid)
    end_idx = slot_index(end, grid)
    if start_idx >= end_idx:
        raise InvalidWindow("End time must be later than start time.")
    if end_idx - start_idx < MIN_DUTY_STEPS:
        minutes = MIN_DUTY_STEPS * GRID_STEP_MINUTES
        raise InvalidWindow(f"Duty windows must last at least {minutes} minutes.")
    return start_idx, end_idx


def windows_overlap(s1: int, e1: int, s2: int, e2: int) -> bool:
    # closed-open intervals; back-to-back slots share a boundary only
    return s1 < e2 and s2 < e1


def format_window(start: time, end: time) -> str:
    return f"{start.strftime('%H:%M')}-{end.strftime('%H:%M')}"


def find_conflict(
    existing: list[DutySchedule],
    start: time,
    end: time,
    *,
    excluding_schedule_id: int | None = None,
) -> DutySchedule | None:
    start_idx, end_idx = window_indices(start, end)
    for schedule in existing:
        if not schedule["active"] or schedule["id"] == excluding_schedule_id:
            continue
        try:
            other_start, other_end = window_indices(schedule["start_time"], schedule["end_time"])
        except InvalidWindow:
            # Rows written before a grid change are compared on raw clock time.
            if start < schedule["end_time"] and schedule["start_time"] < end:
                return schedule
            continue
        if windows_overlap(start_idx, end_idx, other_start, other_end):
            return schedule
    return None


def find_schedule_conflict(
    store: AttendanceStore,
    scholar_id: str,
    day_of_week: str,
    start: str | time,
    end: str | time,
    excluding_schedule_id: int | None = None,
) -> DutySchedule | None:
    """The scholar's active schedule that collides with the window, if any."""
    day = normalize_day(day_of_week)
    existing = store.list_active_schedules(scholar_id=scholar_id, day_of_week=day)
    return find_conflict(
        existing,
        parse_clock(start),
        parse_clock(end),
        excluding_schedule_id=excluding_schedule_id,
    )


def check_overlap(
    store: AttendanceStore,
    scholar_id: str,
    day_of_week: str,
    start: str | time,
    end: str | time,
    excluding_schedule_id: int | None = None,
) -> bool:
    conflict = find_schedule_conflict(
        store, scholar_id, day_of_week, start, end, excluding_schedule_id
    )
    return conflict is not None


def _conflict_guard(start: time, end: time):
    def guard(existing: list[DutySchedule]) -> None:
        conflict = find_conflict(existing, start, end)
        if conflict is not None:
            raise ScheduleConflict(
                "The selected schedule overlaps with "
                f"{conflict['day_of_week']} {format_window(conflict['start_time'], conflict['end_time'])} "
                f"at {conflict['location']}.",
                conflicting=dict(conflict),
            )

    return guard


def build_schedule(raw: dict[str, Any]) -> NewSchedule:
    """Normalize and validate a schedule payload without touching storage."""
    scholar_id = str(raw.get("scholar_id") or "").strip()
    if not scholar_id:
        raise InvalidWindow("scholar_id is required.")

    duty_kind = normalize_duty_kind(raw.get("duty_kind") or "Facilitator")
    location = str(raw.get("location") or "").strip()
    if not location:
        if duty_kind != "Checker":
            raise InvalidWindow("A location is required for facilitator duties.")
        location = DEFAULT_LOCATION

    start = parse_clock(raw.get("start_time"))
    end = parse_clock(raw.get("end_time"))
    window_indices(start, end)

    scholar_name = raw.get("scholar_name")
    return {
        "scholar_id": scholar_id,
        "scholar_name": str(scholar_name).strip() if scholar_name else None,
        "day_of_week": normalize_day(raw.get("day_of_week")),
        "start_time": start,
        "end_time": end,
        "location": location,
        "duty_kind": duty_kind,
        "active": bool(raw.get("active", True)),
    }


def assign_schedule(
    store: AttendanceStore,
    raw: dict[str, Any],
    *,
    created_at: datetime | None = None,
) -> DutySchedule:
    """
    Validate and persist a new duty assignment.

    Raises InvalidWindow for malformed windows and ScheduleConflict when the
    scholar already has an overlapping active window on that day.
    """
    schedule = build_schedule(raw)
    saved = store.add_schedule(
        schedule,
        created_at=created_at,
        guard=_conflict_guard(schedule["start_time"], schedule["end_time"]),
    )
    logger.info(
        "Assigned schedule %s: %s %s %s at %s",
        saved["id"],
        saved["scholar_id"],
        saved["day_of_week"],
        format_window(saved["start_time"], saved["end_time"]),
        saved["location"],
    )
    return saved


def edit_schedule(store: AttendanceStore, schedule_id: int, raw: dict[str, Any]) -> DutySchedule | None:
    schedule = build_schedule(raw)
    saved = store.update_schedule(
        schedule_id,
        schedule,
        guard=_conflict_guard(schedule["start_time"], schedule["end_time"]),
    )
    if saved is not None:
        logger.info("Updated schedule %s", schedule_id)
    return saved


def schedule_payload(schedule: DutySchedule) -> dict[str, Any]:
    """JSON-ready view of a schedule row; also embedded in HTTP error details."""
    created_at = schedule["created_at"]
    return {
        **cast(dict[str, Any], schedule),
        "created_at": created_at.isoformat(timespec="seconds") if created_at else None,
        "start_time": schedule["start_time"].strftime("%H:%M"),
        "end_time": schedule["end_time"].strftime("%H:%M"),
        "time_window": format_window(schedule["start_time"], schedule["end_time"]),
    }
