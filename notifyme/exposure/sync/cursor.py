"""Incremental sync cursor.

The cursor is the server-clock time (epoch milliseconds, from the ``Date``
header) of the last batch that was fully consumed.  It is sent as
``lastSync`` so the backend only returns newer events.  Absent on first run,
meaning "fetch everything".

The stored value never decreases: a candidate older than the current value
is ignored.
"""

from __future__ import annotations

import logging

from notifyme.exposure.storage import LAST_SYNC_KEY, StateStore

logger = logging.getLogger("notifyme.exposure.sync.cursor")


class SyncCursor:
    """Persisted, monotonically non-decreasing sync cursor."""

    def __init__(self, store: StateStore) -> None:
        self._store = store

    @property
    def value(self) -> int | None:
        raw = self._store.get(LAST_SYNC_KEY)
        if raw is None:
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring corrupt sync cursor %r; next sync is a full fetch", raw)
            return None

    def commit(self, candidate: int | None) -> int | None:
        """Advance the cursor to ``candidate`` if it is newer.

        Args:
            candidate: Server timestamp of the consumed batch, or None when the
                       response had no usable ``Date`` header.

        Returns:
            The stored cursor after the commit.
        """
        current = self.value
        if candidate is None:
            logger.debug("No cursor candidate; keeping %s", current)
            return current
        if current is not None and candidate < current:
            logger.warning(
                "Server time %d is older than cursor %d; keeping cursor", candidate, current
            )
            return current
        self._store.set(LAST_SYNC_KEY, int(candidate))
        logger.debug("Sync cursor advanced %s → %d", current, candidate)
        return int(candidate)

    def clear(self) -> None:
        """Forget the cursor; only used by an app-level reset."""
        self._store.delete(LAST_SYNC_KEY)
