"""Persisted exposure result set."""

from __future__ import annotations

import logging

from notifyme.exposure.base import ExposureResultSet
from notifyme.exposure.storage import EXPOSURES_KEY, StateStore

logger = logging.getLogger("notifyme.exposure.results")


class ExposureRepository:
    """Load and save the current ExposureResultSet through a StateStore."""

    def __init__(self, store: StateStore) -> None:
        self._store = store

    def load(self) -> ExposureResultSet:
        return ExposureResultSet.from_json(self._store.get(EXPOSURES_KEY, []) or [])

    def save(self, result_set: ExposureResultSet) -> None:
        self._store.set(EXPOSURES_KEY, result_set.to_json())
        logger.debug("Saved %d exposures", len(result_set))

    def clear(self) -> None:
        self._store.delete(EXPOSURES_KEY)
