import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Literal, NamedTuple, TypedDict, cast

from backend.config import DB_PATH, DB_TIMEOUT_SECONDS
from backend.errors import StorageError, StorageUnavailable


DayOfWeek = Literal["Monday", "Tuesday", "Wednesday", "Thursday", "Friday"]
DutyKind = Literal["Facilitator", "Checker"]
EvidenceSource = Literal["ManualEncoding", "SelfPhoto", "QrScan"]
RecordStatus = Literal["Pending", "Present", "Absent"]
UpsertOutcome = Literal["written", "skipped"]

DUTY_DAYS: tuple[DayOfWeek, ...] = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday")
EVIDENCE_SOURCES: tuple[EvidenceSource, ...] = ("ManualEncoding", "SelfPhoto", "QrScan")
TERMINAL_STATUSES: frozenset[str] = frozenset({"Present", "Absent"})

DATE_FMT = "%Y-%m-%d"
TIME_FMT = "%H:%M:%S"
DATETIME_FMT = "%Y-%m-%d %H:%M:%S"


class DutySchedule(TypedDict):
    id: int
    scholar_id: str
    scholar_name: str | None
    day_of_week: DayOfWeek
    start_time: time
    end_time: time
    location: str
    duty_kind: DutyKind
    active: bool
    created_at: datetime | None


class NewSchedule(TypedDict):
    scholar_id: str
    scholar_name: str | None
    day_of_week: DayOfWeek
    start_time: time
    end_time: time
    location: str
    duty_kind: DutyKind
    active: bool


class AttendanceEvent(TypedDict):
    id: int | None
    scholar_id: str
    source: EvidenceSource
    occurred_at: datetime
    completed_at: datetime | None
    location: str
    raw_status: str | None
    request_id: str | None
    photo_ref: str | None
    recorded_by: str | None
    recorded_at: datetime | None


class ReconciledRecord(TypedDict):
    id: int
    scholar_id: str
    schedule_date: date
    location: str
    status: RecordStatus
    evidence_ref: int | None
    verified_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None


class AbsenceMarker(TypedDict):
    id: int
    scholar_id: str
    absence_date: date
    location: str
    time_window: str
    created_at: datetime | None


class RecordKey(NamedTuple):
    scholar_id: str
    schedule_date: date
    location: str


class AbsenceKey(NamedTuple):
    scholar_id: str
    absence_date: date
    location: str
    time_window: str


# Guards run inside the write transaction with the scholar's active
# schedules for the target day and raise to abort the write.
ScheduleGuard = Callable[[list[DutySchedule]], None]


def _fmt_date(value: date) -> str:
    return value.strftime(DATE_FMT)


def _fmt_time(value: time) -> str:
    return value.strftime(TIME_FMT)


def _fmt_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.strftime(DATETIME_FMT)


def _parse_date(value: Any) -> date:
    return datetime.strptime(str(value)[:10], DATE_FMT).date()


def _parse_time(value: Any) -> time:
    return datetime.strptime(str(value), TIME_FMT).time()


def _parse_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.strptime(str(value)[:19], DATETIME_FMT)
    except ValueError:
        return None


SCHEDULE_COLUMNS = """
    id, scholar_id, scholar_name, day_of_week, start_time, end_time,
    location, duty_kind, active, created_at
"""
EVENT_COLUMNS = """
    id, scholar_id, source, occurred_at, completed_at, location, raw_status,
    request_id, photo_ref, recorded_by, recorded_at
"""
RECORD_COLUMNS = """
    id, scholar_id, schedule_date, location, status, evidence_ref,
    verified_at, created_at, updated_at
"""


def _schedule_from_row(row: sqlite3.Row | tuple) -> DutySchedule:
    return {
        "id": int(row[0]),
        "scholar_id": str(row[1]),
        "scholar_name": row[2],
        "day_of_week": cast(DayOfWeek, row[3]),
        "start_time": _parse_time(row[4]),
        "end_time": _parse_time(row[5]),
        "location": str(row[6]),
        "duty_kind": cast(DutyKind, row[7]),
        "active": bool(row[8]),
        "created_at": _parse_datetime(row[9]),
    }


def _event_from_row(row: sqlite3.Row | tuple) -> AttendanceEvent:
    occurred_at = _parse_datetime(row[3])
    if occurred_at is None:
        raise StorageError(f"Attendance event {row[0]} has an unreadable occurred_at value.")
    return {
        "id": int(row[0]),
        "scholar_id": str(row[1]),
        "source": cast(EvidenceSource, row[2]),
        "occurred_at": occurred_at,
        "completed_at": _parse_datetime(row[4]),
        "location": str(row[5]),
        "raw_status": row[6],
        "request_id": row[7],
        "photo_ref": row[8],
        "recorded_by": row[9],
        "recorded_at": _parse_datetime(row[10]),
    }


def _record_from_row(row: sqlite3.Row | tuple) -> ReconciledRecord:
    return {
        "id": int(row[0]),
        "scholar_id": str(row[1]),
        "schedule_date": _parse_date(row[2]),
        "location": str(row[3]),
        "status": cast(RecordStatus, row[4]),
        "evidence_ref": int(row[5]) if row[5] is not None else None,
        "verified_at": _parse_datetime(row[6]),
        "created_at": _parse_datetime(row[7]),
        "updated_at": _parse_datetime(row[8]),
    }


class AttendanceStore:
    """
    SQLite-backed storage for duty schedules, attendance evidence and
    reconciled attendance state.

    Every call opens its own short-lived connection, so one store can be
    shared by the sweep thread and request threads. Uniqueness of the
    reconciled natural key and of absence markers is enforced by the schema;
    the engine relies on `upsert_if_not_terminal` and `upsert_absence_marker`
    instead of application locks.
    """

    def __init__(self, db_path: Path | str, *, timeout: float = DB_TIMEOUT_SECONDS):
        self.db_path = Path(db_path)
        self.timeout = timeout

    def connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=self.timeout, check_same_thread=False)
            conn.execute("PRAGMA foreign_keys = ON;")
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"Cannot open attendance store at {self.db_path}: {exc}") from exc
        return conn

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        conn = self.connect()
        try:
            cur = conn.cursor()
            yield cur
            conn.commit()
        except sqlite3.OperationalError as exc:
            conn.rollback()
            if "no such table" in str(exc):
                raise StorageUnavailable(f"Attendance store schema is missing: {exc}") from exc
            raise StorageError(str(exc)) from exc
        except sqlite3.Error as exc:
            conn.rollback()
            raise StorageError(str(exc)) from exc
        finally:
            conn.close()

    # -----------------------------
    # Schema
    # -----------------------------
    def create_tables(self) -> None:
        with self._cursor() as cur:
            cur.execute("PRAGMA journal_mode=WAL;")

            cur.execute("""
            CREATE TABLE IF NOT EXISTS duty_schedules (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                scholar_id TEXT NOT NULL,
                scholar_name TEXT,
                day_of_week TEXT NOT NULL,       -- Monday..Friday
                start_time TEXT NOT NULL,        -- HH:MM:SS
                end_time TEXT NOT NULL,          -- HH:MM:SS
                location TEXT NOT NULL,
                duty_kind TEXT NOT NULL,         -- Facilitator | Checker
                active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            )
            """)
            cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_duty_schedules_scholar_day
            ON duty_schedules (scholar_id, day_of_week, active)
            """)

            # Append-only evidence log
            cur.execute("""
            CREATE TABLE IF NOT EXISTS attendance_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                scholar_id TEXT NOT NULL,
                source TEXT NOT NULL,            -- ManualEncoding | SelfPhoto | QrScan
                occurred_at TEXT NOT NULL,       -- YYYY-MM-DD HH:MM:SS
                event_date TEXT NOT NULL,        -- YYYY-MM-DD
                completed_at TEXT,
                location TEXT NOT NULL,
                raw_status TEXT,
                request_id TEXT UNIQUE,
                photo_ref TEXT,
                recorded_by TEXT,
                recorded_at TEXT NOT NULL
            )
            """)
            cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_attendance_events_lookup
            ON attendance_events (scholar_id, event_date, location)
            """)

            cur.execute("""
            CREATE TABLE IF NOT EXISTS reconciled_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                scholar_id TEXT NOT NULL,
                schedule_date TEXT NOT NULL,     -- YYYY-MM-DD
                location TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'Pending',
                evidence_ref INTEGER,
                verified_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (evidence_ref) REFERENCES attendance_events(id),
                UNIQUE(scholar_id, schedule_date, location)
            )
            """)

            cur.execute("""
            CREATE TABLE IF NOT EXISTS absence_markers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                scholar_id TEXT NOT NULL,
                absence_date TEXT NOT NULL,      -- YYYY-MM-DD
                location TEXT NOT NULL,
                time_window TEXT NOT NULL,       -- HH:MM-HH:MM
                created_at TEXT NOT NULL,
                UNIQUE(scholar_id, absence_date, location, time_window)
            )
            """)

    # -----------------------------
    # Duty schedules
    # -----------------------------
    def list_schedules(
        self,
        *,
        scholar_id: str | None = None,
        day_of_week: DayOfWeek | None = None,
        active_only: bool = False,
    ) -> list[DutySchedule]:
        where = ["1=1"]
        params: list[Any] = []
        if scholar_id is not None:
            where.append("scholar_id = ?")
            params.append(scholar_id)
        if day_of_week is not None:
            where.append("day_of_week = ?")
            params.append(day_of_week)
        if active_only:
            where.append("active = 1")

        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT {SCHEDULE_COLUMNS}
                FROM duty_schedules
                WHERE {" AND ".join(where)}
                ORDER BY scholar_id ASC, start_time ASC, id ASC
                """,
                params,
            )
            return [_schedule_from_row(row) for row in cur.fetchall()]

    def list_active_schedules(
        self,
        scholar_id: str | None = None,
        day_of_week: DayOfWeek | None = None,
    ) -> list[DutySchedule]:
        return self.list_schedules(scholar_id=scholar_id, day_of_week=day_of_week, active_only=True)

    def get_schedule(self, schedule_id: int) -> DutySchedule | None:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {SCHEDULE_COLUMNS} FROM duty_schedules WHERE id = ?",
                (schedule_id,),
            )
            row = cur.fetchone()
        return _schedule_from_row(row) if row else None

    def earliest_schedule_created_at(self, scholar_id: str | None = None) -> datetime | None:
        with self._cursor() as cur:
            if scholar_id is None:
                cur.execute("SELECT MIN(created_at) FROM duty_schedules WHERE active = 1")
            else:
                cur.execute(
                    "SELECT MIN(created_at) FROM duty_schedules WHERE active = 1 AND scholar_id = ?",
                    (scholar_id,),
                )
            row = cur.fetchone()
        return _parse_datetime(row[0]) if row else None

    def _active_for_day(self, cur: sqlite3.Cursor, scholar_id: str, day_of_week: str) -> list[DutySchedule]:
        cur.execute(
            f"""
            SELECT {SCHEDULE_COLUMNS}
            FROM duty_schedules
            WHERE scholar_id = ? AND day_of_week = ? AND active = 1
            ORDER BY start_time ASC
            """,
            (scholar_id, day_of_week),
        )
        return [_schedule_from_row(row) for row in cur.fetchall()]

    def add_schedule(
        self,
        schedule: NewSchedule,
        *,
        created_at: datetime | None = None,
        guard: ScheduleGuard | None = None,
    ) -> DutySchedule:
        """
        Insert a duty schedule. When `guard` is given it sees the scholar's
        active schedules for the same day inside an IMMEDIATE transaction, so
        two concurrent assignments cannot both pass the overlap check.
        """
        stamp = created_at or datetime.now()
        with self._cursor() as cur:
            cur.execute("BEGIN IMMEDIATE")
            if guard is not None and schedule["active"]:
                guard(self._active_for_day(cur, schedule["scholar_id"], schedule["day_of_week"]))
            cur.execute(
                """
                INSERT INTO duty_schedules (
                    scholar_id, scholar_name, day_of_week, start_time, end_time,
                    location, duty_kind, active, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    schedule["scholar_id"],
                    schedule["scholar_name"],
                    schedule["day_of_week"],
                    _fmt_time(schedule["start_time"]),
                    _fmt_time(schedule["end_time"]),
                    schedule["location"],
                    schedule["duty_kind"],
                    1 if schedule["active"] else 0,
                    _fmt_datetime(stamp),
                ),
            )
            new_id = int(cur.lastrowid)
            cur.execute(f"SELECT {SCHEDULE_COLUMNS} FROM duty_schedules WHERE id = ?", (new_id,))
            return _schedule_from_row(cur.fetchone())

    def update_schedule(
        self,
        schedule_id: int,
        schedule: NewSchedule,
        *,
        guard: ScheduleGuard | None = None,
    ) -> DutySchedule | None:
        with self._cursor() as cur:
            cur.execute("BEGIN IMMEDIATE")
            cur.execute("SELECT id FROM duty_schedules WHERE id = ?", (schedule_id,))
            if not cur.fetchone():
                return None
            if guard is not None and schedule["active"]:
                existing = self._active_for_day(cur, schedule["scholar_id"], schedule["day_of_week"])
                guard([s for s in existing if s["id"] != schedule_id])
            cur.execute(
                """
                UPDATE duty_schedules
                SET scholar_id = ?,
                    scholar_name = ?,
                    day_of_week = ?,
                    start_time = ?,
                    end_time = ?,
                    location = ?,
                    duty_kind = ?,
                    active = ?
                WHERE id = ?
                """,
                (
                    schedule["scholar_id"],
                    schedule["scholar_name"],
                    schedule["day_of_week"],
                    _fmt_time(schedule["start_time"]),
                    _fmt_time(schedule["end_time"]),
                    schedule["location"],
                    schedule["duty_kind"],
                    1 if schedule["active"] else 0,
                    schedule_id,
                ),
            )
            cur.execute(f"SELECT {SCHEDULE_COLUMNS} FROM duty_schedules WHERE id = ?", (schedule_id,))
            return _schedule_from_row(cur.fetchone())

    def deactivate_schedule(self, schedule_id: int) -> bool:
        with self._cursor() as cur:
            cur.execute("UPDATE duty_schedules SET active = 0 WHERE id = ?", (schedule_id,))
            return cur.rowcount > 0

    # -----------------------------
    # Evidence (append-only)
    # -----------------------------
    def append_event(self, event: AttendanceEvent) -> AttendanceEvent:
        """
        Append one normalized event and return it with its id. A repeated
        `request_id` returns the event stored by the first delivery.
        """
        recorded_at = event["recorded_at"] or datetime.now()
        with self._cursor() as cur:
            try:
                cur.execute(
                    """
                    INSERT INTO attendance_events (
                        scholar_id, source, occurred_at, event_date, completed_at,
                        location, raw_status, request_id, photo_ref, recorded_by,
                        recorded_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event["scholar_id"],
                        event["source"],
                        _fmt_datetime(event["occurred_at"]),
                        _fmt_date(event["occurred_at"].date()),
                        _fmt_datetime(event["completed_at"]),
                        event["location"],
                        event["raw_status"],
                        event["request_id"],
                        event["photo_ref"],
                        event["recorded_by"],
                        _fmt_datetime(recorded_at),
                    ),
                )
                event_id = int(cur.lastrowid)
            except sqlite3.IntegrityError:
                if not event["request_id"]:
                    raise
                cur.execute(
                    "SELECT id FROM attendance_events WHERE request_id = ? LIMIT 1",
                    (event["request_id"],),
                )
                row = cur.fetchone()
                if not row:
                    raise
                event_id = int(row[0])

            cur.execute(f"SELECT {EVENT_COLUMNS} FROM attendance_events WHERE id = ?", (event_id,))
            return _event_from_row(cur.fetchone())

    def get_event(self, event_id: int) -> AttendanceEvent | None:
        with self._cursor() as cur:
            cur.execute(f"SELECT {EVENT_COLUMNS} FROM attendance_events WHERE id = ?", (event_id,))
            row = cur.fetchone()
        return _event_from_row(row) if row else None

    def query_events(self, scholar_id: str, on_date: date, location: str) -> list[AttendanceEvent]:
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT {EVENT_COLUMNS}
                FROM attendance_events
                WHERE scholar_id = ? AND event_date = ? AND location = ?
                ORDER BY occurred_at ASC, id ASC
                """,
                (scholar_id, _fmt_date(on_date), location),
            )
            return [_event_from_row(row) for row in cur.fetchall()]

    def list_events(
        self,
        scholar_id: str,
        *,
        date_from: date | None = None,
        date_to: date | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AttendanceEvent]:
        where = ["scholar_id = ?"]
        params: list[Any] = [scholar_id]
        if date_from is not None:
            where.append("event_date >= ?")
            params.append(_fmt_date(date_from))
        if date_to is not None:
            where.append("event_date <= ?")
            params.append(_fmt_date(date_to))
        params.extend([max(1, min(int(limit), 500)), max(0, int(offset))])

        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT {EVENT_COLUMNS}
                FROM attendance_events
                WHERE {" AND ".join(where)}
                ORDER BY occurred_at DESC, id DESC
                LIMIT ?
                OFFSET ?
                """,
                params,
            )
            return [_event_from_row(row) for row in cur.fetchall()]

    # -----------------------------
    # Reconciled state
    # -----------------------------
    def get_record(self, key: RecordKey) -> ReconciledRecord | None:
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT {RECORD_COLUMNS}
                FROM reconciled_records
                WHERE scholar_id = ? AND schedule_date = ? AND location = ?
                """,
                (key.scholar_id, _fmt_date(key.schedule_date), key.location),
            )
            row = cur.fetchone()
        return _record_from_row(row) if row else None

    def _upsert_record(
        self,
        cur: sqlite3.Cursor,
        key: RecordKey,
        status: RecordStatus,
        evidence_ref: int | None,
        verified_at: datetime | None,
        stamp: str | None,
    ) -> UpsertOutcome:
        cur.execute(
            """
            INSERT INTO reconciled_records (
                scholar_id, schedule_date, location, status, evidence_ref,
                verified_at, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(scholar_id, schedule_date, location) DO UPDATE SET
                status = excluded.status,
                evidence_ref = excluded.evidence_ref,
                verified_at = excluded.verified_at,
                updated_at = excluded.updated_at
            WHERE reconciled_records.status = 'Pending'
            """,
            (
                key.scholar_id,
                _fmt_date(key.schedule_date),
                key.location,
                status,
                evidence_ref,
                _fmt_datetime(verified_at),
                stamp,
                stamp,
            ),
        )
        return "written" if cur.rowcount > 0 else "skipped"

    def _upsert_marker(self, cur: sqlite3.Cursor, key: AbsenceKey, stamp: str | None) -> bool:
        cur.execute(
            """
            INSERT INTO absence_markers (scholar_id, absence_date, location, time_window, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(scholar_id, absence_date, location, time_window) DO NOTHING
            """,
            (
                key.scholar_id,
                _fmt_date(key.absence_date),
                key.location,
                key.time_window,
                stamp,
            ),
        )
        return cur.rowcount > 0

    def upsert_if_not_terminal(
        self,
        key: RecordKey,
        status: RecordStatus,
        evidence_ref: int | None = None,
        *,
        verified_at: datetime | None = None,
        now: datetime | None = None,
    ) -> UpsertOutcome:
        """
        Insert the record, or overwrite it only while it is still Pending.

        A single statement makes this atomic: a key that any writer has
        already moved to Present or Absent is left untouched.
        """
        with self._cursor() as cur:
            return self._upsert_record(
                cur, key, status, evidence_ref, verified_at, _fmt_datetime(now or datetime.now())
            )

    def upsert_absence_marker(self, key: AbsenceKey, *, now: datetime | None = None) -> bool:
        """Returns True when a new marker was created."""
        with self._cursor() as cur:
            return self._upsert_marker(cur, key, _fmt_datetime(now or datetime.now()))

    def mark_absent(
        self,
        key: RecordKey,
        time_window: str,
        *,
        verified_at: datetime | None = None,
        now: datetime | None = None,
    ) -> UpsertOutcome:
        """
        Move a key to Absent and upsert its marker in one transaction. The
        marker is only written when the record write was not skipped, so a
        concurrent Present can never end up with a penalty row.
        """
        stamp = _fmt_datetime(now or datetime.now())
        with self._cursor() as cur:
            cur.execute("BEGIN IMMEDIATE")
            outcome = self._upsert_record(cur, key, "Absent", None, verified_at, stamp)
            if outcome == "written":
                self._upsert_marker(
                    cur,
                    AbsenceKey(key.scholar_id, key.schedule_date, key.location, time_window),
                    stamp,
                )
            return outcome

    def list_records(
        self,
        *,
        scholar_id: str | None = None,
        status: RecordStatus | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[ReconciledRecord]:
        where = ["1=1"]
        params: list[Any] = []
        if scholar_id is not None:
            where.append("scholar_id = ?")
            params.append(scholar_id)
        if status is not None:
            where.append("status = ?")
            params.append(status)
        if date_from is not None:
            where.append("schedule_date >= ?")
            params.append(_fmt_date(date_from))
        if date_to is not None:
            where.append("schedule_date <= ?")
            params.append(_fmt_date(date_to))

        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT {RECORD_COLUMNS}
                FROM reconciled_records
                WHERE {" AND ".join(where)}
                ORDER BY schedule_date DESC, scholar_id ASC, location ASC
                """,
                params,
            )
            return [_record_from_row(row) for row in cur.fetchall()]

    def count_absences(self, scholar_id: str) -> int:
        with self._cursor() as cur:
            cur.execute("SELECT COUNT(1) FROM absence_markers WHERE scholar_id = ?", (scholar_id,))
            row = cur.fetchone()
        return int(row[0] or 0) if row else 0

    def list_absences(self, scholar_id: str) -> list[AbsenceMarker]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT id, scholar_id, absence_date, location, time_window, created_at
                FROM absence_markers
                WHERE scholar_id = ?
                ORDER BY absence_date DESC, time_window ASC
                """,
                (scholar_id,),
            )
            rows = cur.fetchall()
        return [
            {
                "id": int(row[0]),
                "scholar_id": str(row[1]),
                "absence_date": _parse_date(row[2]),
                "location": str(row[3]),
                "time_window": str(row[4]),
                "created_at": _parse_datetime(row[5]),
            }
            for row in rows
        ]


def get_store() -> AttendanceStore:
    return AttendanceStore(DB_PATH)


def create_tables() -> None:
    get_store().create_tables()
