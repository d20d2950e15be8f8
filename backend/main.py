from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.app_logger import get_logger
from backend.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    SWEEP_ENABLED,
)
from backend.errors import StorageError, StorageUnavailable
from backend.routers import admin, attendance, core, schedules
from backend.services.sweep import build_scheduler, start_scheduler, stop_scheduler
from database.db import create_tables

logger = get_logger("app")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    create_tables()
    scheduler = None
    if SWEEP_ENABLED:
        scheduler = build_scheduler()
        start_scheduler(scheduler)
    try:
        yield
    finally:
        if scheduler is not None:
            stop_scheduler(scheduler)


app = FastAPI(title="DutyTrack API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    if isinstance(exc, StorageUnavailable):
        return JSONResponse(status_code=503, content={"detail": "Attendance store unavailable. Please retry."})
    return JSONResponse(status_code=500, content={"detail": "Attendance store error."})


app.include_router(core.router)
app.include_router(schedules.router)
app.include_router(attendance.router)
app.include_router(admin.router)
