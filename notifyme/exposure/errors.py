"""Error taxonomy for the NotifyMe exposure engine.

Sync pipeline errors (``SyncError`` subclasses) are raised by the backend
client and event decoder and absorbed by the sync scheduler, which reports
them to callers only as a coarse ``SyncOutcome``.  Diary errors are contract
violations and propagate to the caller.
"""

from __future__ import annotations


class NotifyMeError(Exception):
    """Base class for all errors raised by the exposure engine."""


# ---------------------------------------------------------------------------
# Sync pipeline
# ---------------------------------------------------------------------------


class SyncError(NotifyMeError):
    """A sync pass could not consume a batch of problematic events."""


class NetworkError(SyncError):
    """Transport-level failure (connection, DNS, timeout)."""


class ServerError(SyncError):
    """The backend answered with a non-success status."""

    def __init__(self, status_code: int, message: str | None = None) -> None:
        self.status_code = status_code
        super().__init__(message or f"Backend returned HTTP {status_code}")


class DecodeError(SyncError):
    """A problematic event batch could not be parsed."""


class SyncInProgressError(NotifyMeError):
    """A sync was requested without waiting while another one is running."""


# ---------------------------------------------------------------------------
# Diary store
# ---------------------------------------------------------------------------


class DiaryError(NotifyMeError):
    """Base class for diary contract violations."""


class NotFoundError(DiaryError, KeyError):
    """No check-in with the given id exists in the diary."""

    def __init__(self, check_in_id: str) -> None:
        self.check_in_id = check_in_id
        super().__init__(f"No check-in with id '{check_in_id}'")

    def __str__(self) -> str:
        return self.args[0]


class DuplicateIdError(DiaryError):
    """A check-in with the given id already exists in the diary."""

    def __init__(self, check_in_id: str) -> None:
        self.check_in_id = check_in_id
        super().__init__(f"Check-in '{check_in_id}' already exists")


class InvalidTimeWindowError(DiaryError, ValueError):
    """A check-out time precedes the check-in time."""
