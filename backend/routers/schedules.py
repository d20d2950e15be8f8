from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.errors import InvalidWindow, ScheduleConflict
from backend.services.schedules import (
    assign_schedule,
    edit_schedule,
    find_schedule_conflict,
    normalize_day,
    schedule_payload,
)
from database.db import AttendanceStore, get_store

router = APIRouter()


class ScheduleIn(BaseModel):
    scholar_id: str
    scholar_name: str | None = None
    day_of_week: str
    start_time: str
    end_time: str
    location: str | None = None
    duty_kind: str = "Facilitator"
    active: bool = True


class OverlapCheck(BaseModel):
    scholar_id: str
    day_of_week: str
    start_time: str
    end_time: str
    excluding_schedule_id: int | None = None


def _conflict_detail(exc: ScheduleConflict) -> dict:
    return {
        "message": str(exc),
        "conflicting_schedule": schedule_payload(exc.conflicting),
    }


@router.get("/schedules")
def list_schedules(
    scholar_id: str | None = None,
    day: str | None = None,
    active_only: bool = False,
    store: AttendanceStore = Depends(get_store),
):
    try:
        day_of_week = normalize_day(day) if day else None
    except InvalidWindow as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    rows = store.list_schedules(scholar_id=scholar_id, day_of_week=day_of_week, active_only=active_only)
    return [schedule_payload(r) for r in rows]


@router.get("/schedules/{schedule_id}")
def schedule_detail(schedule_id: int, store: AttendanceStore = Depends(get_store)):
    row = store.get_schedule(schedule_id)
    if not row:
        raise HTTPException(status_code=404, detail="Schedule not found.")
    return schedule_payload(row)


@router.post("/schedules")
def create_schedule(payload: ScheduleIn, store: AttendanceStore = Depends(get_store)):
    try:
        saved = assign_schedule(store, payload.model_dump())
    except InvalidWindow as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except ScheduleConflict as exc:
        raise HTTPException(status_code=409, detail=_conflict_detail(exc))
    return schedule_payload(saved)


@router.post("/schedules/check")
def check_schedule(payload: OverlapCheck, store: AttendanceStore = Depends(get_store)):
    try:
        conflict = find_schedule_conflict(
            store,
            payload.scholar_id,
            payload.day_of_week,
            payload.start_time,
            payload.end_time,
            excluding_schedule_id=payload.excluding_schedule_id,
        )
    except InvalidWindow as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {
        "conflict": conflict is not None,
        "conflicting_schedule": schedule_payload(conflict) if conflict else None,
    }


@router.put("/schedules/{schedule_id}")
def update_schedule(schedule_id: int, payload: ScheduleIn, store: AttendanceStore = Depends(get_store)):
    try:
        saved = edit_schedule(store, schedule_id, payload.model_dump())
    except InvalidWindow as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except ScheduleConflict as exc:
        raise HTTPException(status_code=409, detail=_conflict_detail(exc))
    if saved is None:
        raise HTTPException(status_code=404, detail="Schedule not found.")
    return schedule_payload(saved)


@router.post("/schedules/{schedule_id}/deactivate")
def deactivate_schedule(schedule_id: int, store: AttendanceStore = Depends(get_store)):
    if not store.deactivate_schedule(schedule_id):
        raise HTTPException(status_code=404, detail="Schedule not found.")
    return {"ok": True, "id": schedule_id, "active": False}
