"""Notification deduplication for exposure matches.

Prevents notifying the user twice about the same check-in when repeated sync
passes return a result set that still contains it.

Dedup key: the check-in id of the exposure match.  Once an id is in the
ledger it stays there until a full app reset, so each check-in causes at most
one notification over the ledger's lifetime.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from notifyme.exposure.base import ExposureResultSet
from notifyme.exposure.storage import NOTIFIED_IDS_KEY, StateStore

logger = logging.getLogger("notifyme.exposure.sync.dedup")


@dataclass(frozen=True)
class LedgerDiff:
    """Outcome of comparing a result set with the ledger.

    Attributes:
        newly_flagged_ids: Check-in ids not notified before, in stable order.
        needs_notification: True iff ``newly_flagged_ids`` is non-empty.
    """

    newly_flagged_ids: tuple[str, ...] = field(default_factory=tuple)

    @property
    def needs_notification(self) -> bool:
        return bool(self.newly_flagged_ids)


class NotificationLedger:
    """Persisted set of check-in ids that already caused a notification.

    Usage::

        ledger = NotificationLedger(store)
        diff = ledger.diff_against_notified(result_set)
        if diff.needs_notification:
            notifications.show_exposure_notification()
    """

    def __init__(self, store: StateStore) -> None:
        self._store = store
        # Insertion order kept for the persisted list; set for O(1) membership
        self._ordered: list[str] = list(store.get(NOTIFIED_IDS_KEY, []) or [])
        self._seen: set[str] = set(self._ordered)

    def contains(self, check_in_id: str) -> bool:
        return check_in_id in self._seen

    __contains__ = contains

    def __len__(self) -> int:
        return len(self._seen)

    @property
    def ids(self) -> frozenset[str]:
        return frozenset(self._seen)

    def diff_against_notified(self, result_set: ExposureResultSet | Iterable[str]) -> LedgerDiff:
        """Record every id in ``result_set`` that has not been notified yet.

        New ids are appended and persisted unconditionally, whether or not the
        caller ends up showing a notification.  The in-memory ledger only
        changes once the store write succeeded.

        Args:
            result_set: Exposure result set (or any iterable of check-in ids).

        Returns:
            LedgerDiff with the newly flagged ids.

        Raises:
            Whatever the store raises on write; the ledger is then unchanged.
        """
        candidates = sorted(set(result_set))
        new_ids = tuple(i for i in candidates if i not in self._seen)
        if new_ids:
            self._store.set(NOTIFIED_IDS_KEY, self._ordered + list(new_ids))
            self._ordered.extend(new_ids)
            self._seen.update(new_ids)
            logger.info("Ledger: %d check-ins newly flagged", len(new_ids))
        else:
            logger.debug("Ledger: nothing new among %d exposures", len(candidates))
        return LedgerDiff(newly_flagged_ids=new_ids)

    def clear(self) -> None:
        """Reset the ledger; only used by an app-level reset."""
        self._ordered.clear()
        self._seen.clear()
        self._store.delete(NOTIFIED_IDS_KEY)
