"""Check-in diary store.

Owns the device's check-in records, keyed by id.  The store is single-writer,
multi-reader: every mutation holds the store lock and is persisted before it
returns, and readers get copies so a sync pass never sees a half-edited
record.  A sync pass takes one ``snapshot()`` and works from it for the whole
pass.

Retention is not handled here; ``remove_ended_before`` exists only for the
match engine's sweep.
"""

from __future__ import annotations

import copy
import logging
import threading
from datetime import datetime
from typing import Callable, Iterable

from notifyme.exposure.base import CheckInRecord, utc_now
from notifyme.exposure.errors import (
    DuplicateIdError,
    InvalidTimeWindowError,
    NotFoundError,
)
from notifyme.exposure.notifier import StateNotifier
from notifyme.exposure.storage import DIARY_KEY, StateStore

logger = logging.getLogger("notifyme.exposure.diary")


def _diary_order(records: Iterable[CheckInRecord]) -> list[CheckInRecord]:
    # Newest visit first, the order the diary is shown in
    return sorted(records, key=lambda r: (r.check_in_time, r.id), reverse=True)


def _validate(record: CheckInRecord) -> None:
    if record.check_out_time is not None and record.check_out_time < record.check_in_time:
        raise InvalidTimeWindowError(
            f"Check-out {record.check_out_time.isoformat()} precedes check-in "
            f"{record.check_in_time.isoformat()} for '{record.id}'"
        )


class DiarySnapshot:
    """Immutable point-in-time copy of the diary used by one sync pass."""

    def __init__(self, records: Iterable[CheckInRecord], taken_at: datetime) -> None:
        self._records = tuple(copy.deepcopy(list(records)))
        self.taken_at = taken_at

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self):
        return iter(self._records)

    def records_overlapping(
        self, start: datetime, end: datetime, now: datetime | None = None
    ) -> list[CheckInRecord]:
        """Records whose visit window intersects ``[start, end]``.

        Open visits end at ``now`` (defaults to the snapshot time).
        """
        now = now or self.taken_at
        return [r for r in self._records if r.overlaps(start, end, now)]


class DiaryStore:
    """Persisted, lock-guarded collection of CheckInRecords.

    Usage::

        diary = DiaryStore(store)
        diary.add(CheckInRecord.create("abc", check_in_time=utc_now()))
        diary.check_out("abc", utc_now())
    """

    def __init__(self, store: StateStore, notifier: StateNotifier | None = None) -> None:
        self._store = store
        self._notifier = notifier
        self._lock = threading.RLock()
        self._records: dict[str, CheckInRecord] = {}
        for item in store.get(DIARY_KEY, []) or []:
            record = CheckInRecord.from_json(item)
            self._records[record.id] = record
        logger.debug("Diary loaded with %d check-ins", len(self._records))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add(self, record: CheckInRecord) -> None:
        """Add a new check-in.

        Raises:
            DuplicateIdError:       If a record with the same id exists.
            InvalidTimeWindowError: If check-out precedes check-in.
        """
        _validate(record)
        with self._lock:
            if record.id in self._records:
                raise DuplicateIdError(record.id)
            self._records[record.id] = copy.deepcopy(record)
            self._persist()
        logger.info("Diary: added check-in %s", record.id)
        self._changed(record.id)

    def update(self, check_in_id: str, mutator: Callable[[CheckInRecord], None]) -> CheckInRecord:
        """Apply ``mutator`` to a copy of the record and swap it in.

        The record id cannot be changed.  Nothing is stored if the mutator
        raises or leaves an invalid time window.

        Returns:
            A copy of the updated record.

        Raises:
            NotFoundError:          If no record has ``check_in_id``.
            InvalidTimeWindowError: If the edit leaves check-out before check-in.
        """
        with self._lock:
            current = self._records.get(check_in_id)
            if current is None:
                raise NotFoundError(check_in_id)
            edited = copy.deepcopy(current)
            mutator(edited)
            if edited.id != check_in_id:
                raise ValueError(
                    f"Check-in id is immutable ('{check_in_id}' → '{edited.id}')"
                )
            _validate(edited)
            self._records[check_in_id] = edited
            self._persist()
            result = copy.deepcopy(edited)
        logger.debug("Diary: updated check-in %s", check_in_id)
        self._changed(check_in_id)
        return result

    def check_out(self, check_in_id: str, at: datetime | None = None) -> CheckInRecord:
        """End a visit at ``at`` (now by default)."""
        checkout_time = at or utc_now()

        def _end(record: CheckInRecord) -> None:
            record.check_out_time = checkout_time

        return self.update(check_in_id, _end)

    def remove(self, check_in_id: str) -> None:
        """Delete a check-in.

        Raises:
            NotFoundError: If no record has ``check_in_id``.
        """
        with self._lock:
            if check_in_id not in self._records:
                raise NotFoundError(check_in_id)
            del self._records[check_in_id]
            self._persist()
        logger.info("Diary: removed check-in %s", check_in_id)
        self._changed(check_in_id)

    def remove_ended_before(self, cutoff: datetime) -> list[str]:
        """Delete every closed visit that ended before ``cutoff``.

        Open visits are never removed.

        Returns:
            The removed ids.
        """
        with self._lock:
            removed = [
                r.id
                for r in self._records.values()
                if r.check_out_time is not None and r.check_out_time < cutoff
            ]
            for check_in_id in removed:
                del self._records[check_in_id]
            if removed:
                self._persist()
        if removed:
            logger.info("Diary: pruned %d check-ins older than %s", len(removed), cutoff)
            self._changed(*removed)
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, check_in_id: str) -> CheckInRecord:
        with self._lock:
            record = self._records.get(check_in_id)
            if record is None:
                raise NotFoundError(check_in_id)
            return copy.deepcopy(record)

    def __contains__(self, check_in_id: object) -> bool:
        with self._lock:
            return check_in_id in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def list(self, include_hidden: bool = False) -> list[CheckInRecord]:
        """Return diary records newest first.

        Args:
            include_hidden: Also return records flagged ``hide_from_diary``.
        """
        with self._lock:
            records = [
                copy.deepcopy(r)
                for r in self._records.values()
                if include_hidden or not r.hide_from_diary
            ]
        return _diary_order(records)

    def records_overlapping(
        self, start: datetime, end: datetime, now: datetime | None = None
    ) -> list[CheckInRecord]:
        """Records (hidden included) whose window intersects ``[start, end]``."""
        now = now or utc_now()
        with self._lock:
            return [
                copy.deepcopy(r)
                for r in self._records.values()
                if r.overlaps(start, end, now)
            ]

    def snapshot(self, now: datetime | None = None) -> DiarySnapshot:
        """Take a consistent copy of every record for one sync pass."""
        with self._lock:
            return DiarySnapshot(self._records.values(), taken_at=now or utc_now())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _persist(self) -> None:
        self._store.set(DIARY_KEY, [r.to_json() for r in self._records.values()])

    def _changed(self, *check_in_ids: str) -> None:
        if self._notifier is not None:
            self._notifier.diary_changed(*check_in_ids)
