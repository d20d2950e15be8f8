from datetime import date, datetime
from typing import cast

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from pydantic import BaseModel, ConfigDict

from backend.errors import MalformedEvidence
from backend.services.evidence import (
    PHOTO_CONTENT_TYPES,
    parse_timestamp,
    record_checkout,
    record_event,
    record_photo,
)
from backend.services.reconciliation import backfill, reconcile
from database.db import AttendanceStore, RecordStatus, get_store

router = APIRouter()

ALLOWED_RECORD_STATUSES: set[str] = {"Pending", "Present", "Absent"}


class EvidenceIn(BaseModel):
    # Older clients post their own field names (studentId, room, encodedTime...)
    model_config = ConfigDict(extra="allow")

    source: str | None = None
    scholar_id: str | None = None
    location: str | None = None
    occurred_at: str | None = None
    completed_at: str | None = None
    raw_status: str | None = None
    request_id: str | None = None
    recorded_by: str | None = None


class CheckoutIn(BaseModel):
    check_in_event_id: int
    scholar_id: str
    checked_out_at: str | None = None
    request_id: str | None = None
    recorded_by: str | None = None


class RecomputeIn(BaseModel):
    scholar_id: str
    date_from: date | None = None
    date_to: date | None = None


@router.post("/attendance/events")
def create_event(payload: EvidenceIn, store: AttendanceStore = Depends(get_store)):
    raw = payload.model_dump(exclude_none=True)
    try:
        event = record_event(store, raw)
    except MalformedEvidence as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return event


@router.post("/attendance/photo")
async def upload_photo(
    scholar_id: str = Form(...),
    location: str = Form(...),
    captured_at: str | None = Form(None),
    request_id: str | None = Form(None),
    file: UploadFile = File(...),
    store: AttendanceStore = Depends(get_store),
):
    if file.content_type not in PHOTO_CONTENT_TYPES:
        raise HTTPException(status_code=400, detail="Upload JPG/PNG only.")

    raw = {
        "source": "SelfPhoto",
        "scholar_id": scholar_id,
        "location": location,
        "occurred_at": captured_at or datetime.now(),
        "request_id": request_id,
    }
    data = await file.read()
    try:
        event = record_photo(store, raw, data, cast(str, file.content_type))
    except MalformedEvidence as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return event


@router.post("/attendance/qr/checkout")
def qr_checkout(payload: CheckoutIn, store: AttendanceStore = Depends(get_store)):
    try:
        checked_out_at = (
            parse_timestamp(payload.checked_out_at, "checked_out_at")
            if payload.checked_out_at
            else datetime.now()
        )
        event = record_checkout(
            store,
            payload.check_in_event_id,
            scholar_id=payload.scholar_id.strip(),
            checked_out_at=checked_out_at,
            request_id=payload.request_id,
            recorded_by=payload.recorded_by,
        )
    except MalformedEvidence as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    if event is None:
        raise HTTPException(status_code=404, detail="Check-in event not found.")
    return event


@router.get("/attendance/events")
def list_events(
    scholar_id: str,
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    store: AttendanceStore = Depends(get_store),
):
    return store.list_events(
        scholar_id,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )


@router.get("/attendance/records")
def list_records(
    scholar_id: str | None = None,
    status: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    store: AttendanceStore = Depends(get_store),
):
    clean_status = status.strip().capitalize() if status else None
    if clean_status and clean_status not in ALLOWED_RECORD_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid status filter.")
    return store.list_records(
        scholar_id=scholar_id,
        status=cast(RecordStatus | None, clean_status),
        date_from=date_from,
        date_to=date_to,
    )


@router.post("/attendance/recompute")
def recompute(payload: RecomputeIn, store: AttendanceStore = Depends(get_store)):
    """Dashboard-load recompute for one scholar; same engine as the sweep."""
    scholar_id = payload.scholar_id.strip()
    if not scholar_id:
        raise HTTPException(status_code=400, detail="scholar_id is required.")

    if payload.date_from is None and payload.date_to is None:
        counts = backfill(store, scholar_id=scholar_id)
    else:
        today = datetime.now().date()
        date_from = payload.date_from or payload.date_to or today
        date_to = payload.date_to or today
        if date_from > date_to:
            raise HTTPException(status_code=400, detail="date_from must not be after date_to.")
        counts = reconcile(store, date_from=date_from, date_to=date_to, scholar_id=scholar_id)
    return {"ok": True, "scholar_id": scholar_id, **counts}


@router.get("/absences")
def absence_count(scholar_id: str, store: AttendanceStore = Depends(get_store)):
    return {"scholar_id": scholar_id, "count": store.count_absences(scholar_id)}


@router.get("/absences/list")
def absence_list(scholar_id: str, store: AttendanceStore = Depends(get_store)):
    return store.list_absences(scholar_id)
