from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

import cv2  # type: ignore
import numpy as np  # type: ignore

from backend.app_logger import get_logger
from backend.config import MAX_PHOTO_BYTES, PHOTOS_DIR
from backend.errors import MalformedEvidence
from database.db import AttendanceEvent, AttendanceStore, EvidenceSource

logger = get_logger("evidence")

_SOURCE_ALIASES: dict[str, EvidenceSource] = {
    "manualencoding": "ManualEncoding",
    "manual_encoding": "ManualEncoding",
    "manual": "ManualEncoding",
    "selfphoto": "SelfPhoto",
    "self_photo": "SelfPhoto",
    "photo": "SelfPhoto",
    "qrscan": "QrScan",
    "qr_scan": "QrScan",
    "qr": "QrScan",
}

# Field names accepted per canonical field. The camelCase names are the ones
# the mobile clients send.
_SCHOLAR_KEYS = ("scholar_id", "scholarId", "studentId")
_LOCATION_KEYS = ("location", "room")
_COMPLETED_KEYS = ("completed_at", "completedAt", "checkOutTime", "verifiedAt")
_STATUS_KEYS = ("raw_status", "rawStatus", "status", "facilitatorStatus")
_OCCURRED_KEYS: dict[EvidenceSource, tuple[str, ...]] = {
    "ManualEncoding": ("occurred_at", "occurredAt", "encodedTime"),
    "SelfPhoto": ("occurred_at", "occurredAt", "captured_at", "capturedAt", "checkInTime"),
    "QrScan": ("occurred_at", "occurredAt", "scanned_at", "checkInTime"),
}
_TIMESTAMP_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y %H:%M",
)

PHOTO_CONTENT_TYPES = {"image/jpeg": ".jpg", "image/png": ".png"}


def _first(raw: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and str(value).strip() != "":
            return value
    return None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_source(value: Any) -> EvidenceSource:
    source = _SOURCE_ALIASES.get(str(value or "").strip().lower())
    if source is None:
        raise MalformedEvidence(f"Unknown evidence source {value!r}.")
    return source


def parse_timestamp(value: Any, field: str) -> datetime:
    if isinstance(value, datetime):
        stamp = value
    else:
        text = str(value).strip()
        try:
            stamp = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            for fmt in _TIMESTAMP_FORMATS:
                try:
                    stamp = datetime.strptime(text.upper(), fmt)
                    break
                except ValueError:
                    continue
            else:
                raise MalformedEvidence(f"{field} is not a recognised timestamp: {value!r}.") from None

    # Everything is compared on local wall-clock time.
    if stamp.tzinfo is not None:
        stamp = stamp.astimezone().replace(tzinfo=None)
    return stamp.replace(microsecond=0)


def ingest(raw: dict[str, Any]) -> AttendanceEvent:
    """
    Normalize one raw evidence payload from any channel into an
    AttendanceEvent. Pure: nothing is stored and no status is decided.

    Raises MalformedEvidence when scholar, location or occurrence time is
    missing or unreadable.
    """
    source = normalize_source(raw.get("source"))

    scholar_id = _text(_first(raw, _SCHOLAR_KEYS))
    if not scholar_id:
        raise MalformedEvidence("scholar_id is required.")
    location = _text(_first(raw, _LOCATION_KEYS))
    if not location:
        raise MalformedEvidence("location is required.")
    occurred_raw = _first(raw, _OCCURRED_KEYS[source])
    if occurred_raw is None:
        raise MalformedEvidence("occurred_at is required.")
    occurred_at = parse_timestamp(occurred_raw, "occurred_at")

    completed_at = None
    completed_raw = _first(raw, _COMPLETED_KEYS)
    if completed_raw is not None:
        completed_at = parse_timestamp(completed_raw, "completed_at")
        if completed_at < occurred_at:
            raise MalformedEvidence("completed_at cannot be earlier than occurred_at.")

    # A photo is its own proof; any status the client attached is ignored.
    raw_status = None if source == "SelfPhoto" else _text(_first(raw, _STATUS_KEYS))

    return {
        "id": None,
        "scholar_id": scholar_id,
        "source": source,
        "occurred_at": occurred_at,
        "completed_at": completed_at,
        "location": location,
        "raw_status": raw_status,
        "request_id": _text(_first(raw, ("request_id", "requestId"))),
        "photo_ref": _text(_first(raw, ("photo_ref", "photoRef", "photoId"))),
        "recorded_by": _text(_first(raw, ("recorded_by", "recordedBy", "checkerId"))),
        "recorded_at": None,
    }


def record_event(
    store: AttendanceStore,
    raw: dict[str, Any],
    *,
    now: datetime | None = None,
) -> AttendanceEvent:
    try:
        event = ingest(raw)
    except MalformedEvidence as exc:
        logger.warning("Rejected %s evidence: %s", raw.get("source") or "unknown", exc)
        raise
    event["recorded_at"] = now or datetime.now()
    saved = store.append_event(event)
    logger.info(
        "Recorded %s evidence %s for %s at %s",
        saved["source"],
        saved["id"],
        saved["scholar_id"],
        saved["location"],
    )
    return saved


def build_checkout_event(
    check_in: AttendanceEvent,
    checked_out_at: datetime,
    *,
    request_id: str | None = None,
    recorded_by: str | None = None,
) -> AttendanceEvent:
    """
    Pair a checkout scan with its check-in. The evidence log is append-only,
    so the pair becomes a new QrScan event carrying both timestamps.
    """
    if check_in["source"] == "SelfPhoto":
        raise MalformedEvidence("Self-photo evidence cannot be checked out.")
    checked_out_at = checked_out_at.replace(microsecond=0)
    if checked_out_at < check_in["occurred_at"]:
        raise MalformedEvidence("Checkout time is earlier than the check-in.")
    return {
        "id": None,
        "scholar_id": check_in["scholar_id"],
        "source": "QrScan",
        "occurred_at": check_in["occurred_at"],
        "completed_at": checked_out_at,
        "location": check_in["location"],
        "raw_status": check_in["raw_status"],
        "request_id": request_id,
        "photo_ref": None,
        "recorded_by": recorded_by or check_in["recorded_by"],
        "recorded_at": None,
    }


def record_checkout(
    store: AttendanceStore,
    check_in_event_id: int,
    *,
    scholar_id: str,
    checked_out_at: datetime,
    request_id: str | None = None,
    recorded_by: str | None = None,
    now: datetime | None = None,
) -> AttendanceEvent | None:
    """Returns None when the check-in event does not exist."""
    check_in = store.get_event(check_in_event_id)
    if check_in is None:
        return None
    if check_in["scholar_id"] != scholar_id:
        raise MalformedEvidence("Checkout scholar does not match the check-in event.")
    event = build_checkout_event(
        check_in,
        checked_out_at,
        request_id=request_id,
        recorded_by=recorded_by,
    )
    event["recorded_at"] = now or datetime.now()
    saved = store.append_event(event)
    logger.info("Recorded checkout %s for check-in %s", saved["id"], check_in_event_id)
    return saved


def decode_photo(data: bytes) -> np.ndarray:
    if not data:
        raise MalformedEvidence("Photo upload is empty.")
    if len(data) > MAX_PHOTO_BYTES:
        raise MalformedEvidence(f"Photo exceeds {MAX_PHOTO_BYTES} bytes.")
    img_array = np.frombuffer(data, np.uint8)
    frame = cv2.imdecode(img_array, cv2.IMREAD_COLOR)
    if frame is None:
        raise MalformedEvidence("Invalid image data.")
    return frame


def save_photo(
    scholar_id: str,
    data: bytes,
    content_type: str,
    captured_at: datetime,
    *,
    photos_dir: Path | None = None,
) -> str:
    """Validate and store a self-attendance photo, returning its path."""
    ext = PHOTO_CONTENT_TYPES.get(content_type)
    if ext is None:
        raise MalformedEvidence("Upload JPG/PNG only.")
    decode_photo(data)

    save_dir = (photos_dir or PHOTOS_DIR) / scholar_id
    save_dir.mkdir(parents=True, exist_ok=True)
    # Several uploads can share the same capture second.
    out_path = save_dir / f"{captured_at.strftime('%Y%m%d_%H%M%S')}_{uuid4().hex[:8]}{ext}"
    out_path.write_bytes(data)
    return str(out_path)


def record_photo(
    store: AttendanceStore,
    raw: dict[str, Any],
    data: bytes,
    content_type: str,
    *,
    photos_dir: Path | None = None,
    now: datetime | None = None,
) -> AttendanceEvent:
    """
    Store a self-photo and the SelfPhoto event that references it.

    The file is removed again when the event cannot be recorded, and when a
    redelivered request_id resolves to an event that already has its photo.
    """
    event = ingest(raw)
    photo_ref = save_photo(
        event["scholar_id"],
        data,
        content_type,
        event["occurred_at"],
        photos_dir=photos_dir,
    )
    try:
        saved = record_event(store, {**raw, "photo_ref": photo_ref}, now=now)
    except Exception:
        Path(photo_ref).unlink(missing_ok=True)
        raise
    if saved["photo_ref"] != photo_ref:
        logger.info("Duplicate photo upload for event %s; discarding %s", saved["id"], photo_ref)
        Path(photo_ref).unlink(missing_ok=True)
    return saved
