from datetime import date

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.services.reconciliation import backfill, backfill_range, reconcile
from backend.services.sweep import get_sweep_status, run_sweep
from database.db import AttendanceStore, get_store

router = APIRouter()


class ReconcileIn(BaseModel):
    date_from: date
    date_to: date
    scholar_id: str | None = None


class BackfillIn(BaseModel):
    scholar_id: str | None = None


@router.post("/admin/reconcile")
def run_reconcile(payload: ReconcileIn, store: AttendanceStore = Depends(get_store)):
    if payload.date_from > payload.date_to:
        raise HTTPException(status_code=400, detail="date_from must not be after date_to.")
    scholar_id = payload.scholar_id.strip() if payload.scholar_id else None
    counts = reconcile(
        store,
        date_from=payload.date_from,
        date_to=payload.date_to,
        scholar_id=scholar_id or None,
    )
    return {
        "ok": True,
        "message": "Reconciliation completed.",
        "date_from": payload.date_from,
        "date_to": payload.date_to,
        **counts,
    }


@router.post("/admin/backfill")
def run_backfill(payload: BackfillIn, store: AttendanceStore = Depends(get_store)):
    scholar_id = payload.scholar_id.strip() if payload.scholar_id else None
    date_from, date_to = backfill_range(store, scholar_id=scholar_id or None)
    counts = backfill(store, scholar_id=scholar_id or None)
    return {
        "ok": True,
        "message": "Backfill completed.",
        "date_from": date_from,
        "date_to": date_to,
        **counts,
    }


@router.get("/admin/sweep/status")
def sweep_status():
    return get_sweep_status()


@router.post("/admin/sweep/run")
def sweep_run(store: AttendanceStore = Depends(get_store)):
    result = run_sweep(store)
    if result == "already_running":
        return {"ok": False, "message": "Sweep already running", "status": get_sweep_status()}
    return {"ok": result == "success", "message": f"Sweep {result}", "status": get_sweep_status()}
