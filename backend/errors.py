from typing import Any


class DutyTrackError(Exception):
    """Base class for every error raised by the duty attendance engine."""


class InvalidWindow(DutyTrackError):
    """A duty window is off-grid, reversed, too short or on a non-duty day."""


class ScheduleConflict(DutyTrackError):
    """A duty window overlaps one of the scholar's active windows."""

    def __init__(self, message: str, conflicting: dict[str, Any]):
        super().__init__(message)
        self.conflicting = conflicting


class MalformedEvidence(DutyTrackError):
    """A raw attendance event is missing required fields and was rejected."""


class StorageError(DutyTrackError):
    """A storage call failed."""


class StorageUnavailable(StorageError):
    """The store cannot be reached at all; reconciliation must stop."""


class OccurrenceEvaluationError(DutyTrackError):
    """Evaluating or persisting a single occurrence failed."""

    def __init__(self, message: str, *, scholar_id: str, schedule_date: str, location: str):
        super().__init__(message)
        self.scholar_id = scholar_id
        self.schedule_date = schedule_date
        self.location = location
