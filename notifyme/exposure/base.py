"""Base classes and canonical data models for the NotifyMe exposure engine.

The match provider must subclass MatchProvider and answer with MatchPayload
instances.  The dataclasses below are the single source of truth consumed by
the diary store, match engine, dedup ledger and sync scheduler.

All datetimes are timezone-aware UTC.
"""

from __future__ import annotations

import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping

logger = logging.getLogger("notifyme.exposure")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    """Return milliseconds since the Unix epoch for an aware datetime."""
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _parse_iso_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ---------------------------------------------------------------------------
# Diary records
# ---------------------------------------------------------------------------


@dataclass
class VenueInfo:
    """Venue descriptor decoded from a scanned QR code.

    The engine never interprets these fields; they are stored for the diary.
    """

    name: str | None = None
    location: str | None = None
    room: str | None = None
    venue_type: str | None = None

    def to_json(self) -> dict:
        return {
            "name": self.name,
            "location": self.location,
            "room": self.room,
            "venue_type": self.venue_type,
        }

    @classmethod
    def from_json(cls, data: dict) -> "VenueInfo":
        return cls(
            name=data.get("name"),
            location=data.get("location"),
            room=data.get("room"),
            venue_type=data.get("venue_type"),
        )


@dataclass(eq=False)
class CheckInRecord:
    """A single visit to a venue held in the local diary.

    Equality and hashing use ``id`` only: an edited record is still the same
    visit and must never become a second matching target.

    Attributes:
        id:              Opaque identifier, stable across edits.
        check_in_time:   UTC timestamp of the check-in.
        check_out_time:  UTC timestamp of the check-out.  ``None`` means the
                         visit is still open and ends "now".
        venue:           Venue metadata, if known.
        qr_code:         The code the check-in was created from.
        comment:         Free-text user annotation.
        hide_from_diary: Excluded from the user-visible diary but still
                         eligible for matching.
    """

    id: str
    check_in_time: datetime
    check_out_time: datetime | None = None
    venue: VenueInfo | None = None
    qr_code: str | None = None
    comment: str | None = None
    hide_from_diary: bool = False

    @classmethod
    def create(
        cls,
        id: str,
        check_in_time: datetime,
        venue: VenueInfo | None = None,
        qr_code: str | None = None,
        hide_from_diary: bool = False,
    ) -> "CheckInRecord":
        """Create a record for a fresh check-in; check-out starts equal to check-in."""
        return cls(
            id=id,
            check_in_time=check_in_time,
            check_out_time=check_in_time,
            venue=venue,
            qr_code=qr_code,
            hide_from_diary=hide_from_diary,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CheckInRecord):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    @property
    def is_open(self) -> bool:
        return self.check_out_time is None

    def window(self, now: datetime | None = None) -> tuple[datetime, datetime]:
        """Return ``(start, end)``; an open visit ends at ``now``."""
        end = self.check_out_time or now or utc_now()
        return self.check_in_time, end

    def overlaps(self, start: datetime, end: datetime, now: datetime | None = None) -> bool:
        own_start, own_end = self.window(now)
        return own_start <= end and start <= own_end

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "check_in_time": self.check_in_time.isoformat(),
            "check_out_time": (
                self.check_out_time.isoformat() if self.check_out_time else None
            ),
            "venue": self.venue.to_json() if self.venue else None,
            "qr_code": self.qr_code,
            "comment": self.comment,
            "hide_from_diary": self.hide_from_diary,
        }

    @classmethod
    def from_json(cls, data: dict) -> "CheckInRecord":
        venue = data.get("venue")
        return cls(
            id=data["id"],
            check_in_time=_parse_iso_datetime(data["check_in_time"]),
            check_out_time=_parse_iso_datetime(data.get("check_out_time")),
            venue=VenueInfo.from_json(venue) if venue else None,
            qr_code=data.get("qr_code"),
            comment=data.get("comment"),
            hide_from_diary=bool(data.get("hide_from_diary", False)),
        )


# ---------------------------------------------------------------------------
# Problematic events and matches
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProblematicEventRecord:
    """One flagged occasion decoded from a backend batch.

    Lives for a single sync pass only.  ``private_key`` and ``message`` are
    opaque and handed to the match provider untouched.
    """

    private_key: bytes
    window_start: datetime
    window_end: datetime
    message: bytes = b""

    def __repr__(self) -> str:
        return (
            f"ProblematicEventRecord(window_start={self.window_start.isoformat()}, "
            f"window_end={self.window_end.isoformat()}, "
            f"key_len={len(self.private_key)}, message_len={len(self.message)})"
        )


@dataclass(frozen=True)
class MatchPayload:
    """What a MatchProvider returns for a positive match.

    Attributes:
        message:  Decrypted guidance text / severity payload (opaque).
        metadata: Any structured data the provider derived.
    """

    message: bytes = b""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExposureMatch:
    """A positive match between a problematic event and a diary check-in.

    Attributes:
        check_in_id:  Diary record the match belongs to.
        window_start: Start of the matched visit.
        window_end:   End of the matched visit.
        message:      Opaque message from the match payload.
        metadata:     Provider-derived metadata.
        matched_at:   UTC timestamp of the sync pass that produced the match.
    """

    check_in_id: str
    window_start: datetime
    window_end: datetime
    message: bytes = b""
    metadata: dict[str, Any] = field(default_factory=dict)
    matched_at: datetime = field(default_factory=utc_now)

    def to_json(self) -> dict:
        return {
            "check_in_id": self.check_in_id,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "message": base64.b64encode(self.message).decode("ascii"),
            "metadata": self.metadata,
            "matched_at": self.matched_at.isoformat(),
        }

    @classmethod
    def from_json(cls, data: dict) -> "ExposureMatch":
        return cls(
            check_in_id=data["check_in_id"],
            window_start=_parse_iso_datetime(data["window_start"]),
            window_end=_parse_iso_datetime(data["window_end"]),
            message=base64.b64decode(data.get("message", "")),
            metadata=dict(data.get("metadata") or {}),
            matched_at=_parse_iso_datetime(data.get("matched_at")) or utc_now(),
        )


class ExposureResultSet(Mapping[str, ExposureMatch]):
    """Immutable mapping of check-in id → latest ExposureMatch."""

    def __init__(self, matches: Mapping[str, ExposureMatch] | None = None) -> None:
        self._matches: dict[str, ExposureMatch] = dict(matches or {})

    def __getitem__(self, key: str) -> ExposureMatch:
        return self._matches[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._matches)

    def __len__(self) -> int:
        return len(self._matches)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ExposureResultSet):
            return self._matches == other._matches
        return NotImplemented

    def __repr__(self) -> str:
        return f"ExposureResultSet({sorted(self._matches)})"

    @property
    def ids(self) -> frozenset[str]:
        return frozenset(self._matches)

    def ordered(self) -> list[ExposureMatch]:
        """Matches ordered by visit start, oldest first."""
        return sorted(
            self._matches.values(), key=lambda m: (m.window_start, m.check_in_id)
        )

    def newest(self) -> ExposureMatch | None:
        ordered = self.ordered()
        return ordered[-1] if ordered else None

    def merged_with(self, newer: Mapping[str, ExposureMatch]) -> "ExposureResultSet":
        """Return a new set where ``newer`` entries overwrite ours."""
        combined = dict(self._matches)
        combined.update(newer)
        return ExposureResultSet(combined)

    def to_json(self) -> list[dict]:
        return [m.to_json() for m in self.ordered()]

    @classmethod
    def from_json(cls, data: list[dict]) -> "ExposureResultSet":
        matches = (ExposureMatch.from_json(item) for item in data or [])
        return cls({m.check_in_id: m for m in matches})


@dataclass(frozen=True)
class SyncOutcome:
    """Coarse result reported to the caller of a sync pass."""

    new_data: bool
    needs_notification: bool

    def __iter__(self) -> Iterator[bool]:
        yield self.new_data
        yield self.needs_notification


NO_NEW_DATA = SyncOutcome(new_data=False, needs_notification=False)


# ---------------------------------------------------------------------------
# Abstract match provider
# ---------------------------------------------------------------------------


class MatchProvider(ABC):
    """Abstract cryptographic matching capability.

    The provider is the sole authority on whether a problematic event and a
    check-in describe the same occasion.  The engine treats it as a black box.

    Subclasses must implement:
        - try_match()

    Optional overrides:
        - clean_up_old_data()
    """

    @abstractmethod
    def try_match(
        self, event: ProblematicEventRecord, check_in: CheckInRecord
    ) -> MatchPayload | None:
        """Decide whether ``event`` and ``check_in`` correspond.

        Args:
            event:    Decoded problematic event.
            check_in: Diary record whose window overlaps the event's window.

        Returns:
            MatchPayload on a positive match, None otherwise.
        """

    def clean_up_old_data(self, max_days_to_keep: int) -> None:
        """Purge provider-side data older than ``max_days_to_keep`` days.

        Default is a no-op for providers that keep no state of their own.
        """
        return None
