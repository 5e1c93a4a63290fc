"""Exposure sync scheduler.

Coordinates one sync pass:
1. Fetch problematic events since the sync cursor
2. Keep the server timestamp as the cursor candidate
3. Decode the batch
4. Run the retention sweep and recompute the exposure result set
5. Persist the result set, then diff it against the notification ledger
   (which persists newly flagged ids); only then publish it to subscribers
6. Commit the cursor candidate
7. Report ``SyncOutcome(new_data=True, needs_notification=...)``

Any failure in steps 1–5 ends the pass with ``SyncOutcome(False, False)``;
the cursor, the ledger and the previous result set are left as they were.
Once the ledger holds new ids the pass reports success even if the cursor
write fails, so a flagged match always reaches the caller.

Only one pass runs at a time.  Requests that arrive while a pass is running
join a single follow-up pass (or raise SyncInProgressError when the caller
does not want to wait).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable

from notifyme.exposure.backend import BackendClient
from notifyme.exposure.base import NO_NEW_DATA, ExposureResultSet, SyncOutcome, utc_now
from notifyme.exposure.config_loader import ExposureConfig, get_exposure_config
from notifyme.exposure.decoder import EventDecoder
from notifyme.exposure.diary import DiaryStore
from notifyme.exposure.errors import (
    DecodeError,
    NetworkError,
    ServerError,
    SyncInProgressError,
)
from notifyme.exposure.match_engine import MatchEngine
from notifyme.exposure.notifier import StateNotifier
from notifyme.exposure.results import ExposureRepository
from notifyme.exposure.sync.cursor import SyncCursor
from notifyme.exposure.sync.dedup import NotificationLedger

logger = logging.getLogger("notifyme.exposure.sync.scheduler")

Completion = Callable[[bool, bool], None]


class SyncScheduler:
    """Run exposure sync passes one at a time.

    Usage::

        scheduler = SyncScheduler(
            backend=BackendClient(settings.backend_base_url),
            decoder=EventDecoder(),
            diary=diary,
            engine=MatchEngine(provider),
            cursor=SyncCursor(store),
            ledger=NotificationLedger(store),
            exposures=ExposureRepository(store),
            notifier=notifier,
        )
        outcome = await scheduler.sync(is_background=True)
    """

    def __init__(
        self,
        backend: BackendClient,
        decoder: EventDecoder,
        diary: DiaryStore,
        engine: MatchEngine,
        cursor: SyncCursor,
        ledger: NotificationLedger,
        exposures: ExposureRepository,
        notifier: StateNotifier | None = None,
        config: ExposureConfig | None = None,
        ui_loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            backend:   Problematic events client.
            decoder:   Batch decoder.
            diary:     Diary store read once per pass.
            engine:    Match engine (wraps the match provider).
            cursor:    Persisted sync cursor.
            ledger:    Persisted notification ledger.
            exposures: Persisted exposure result set.
            notifier:  Receives an ``exposures`` change after every recompute.
            config:    Exposure config (coalescing, interval).
            ui_loop:   Loop that foreground completions are dispatched to.
        """
        self._backend = backend
        self._decoder = decoder
        self._diary = diary
        self._engine = engine
        self._cursor = cursor
        self._ledger = ledger
        self._exposures = exposures
        self._notifier = notifier
        self._config = config or get_exposure_config()
        self._ui_loop = ui_loop

        self._lock = asyncio.Lock()
        self._follow_up: asyncio.Future[SyncOutcome] | None = None
        self._current: ExposureResultSet = exposures.load()
        self._last_success_at: datetime | None = None
        self.passes_run = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    @property
    def last_success_at(self) -> datetime | None:
        return self._last_success_at

    def get_exposure_events(self) -> ExposureResultSet:
        """Return the current exposure result set."""
        return self._current

    def reset(self) -> None:
        """Forget every exposure, notified id and the cursor."""
        self._exposures.clear()
        self._ledger.clear()
        self._cursor.clear()
        self._current = ExposureResultSet()
        self._last_success_at = None
        logger.info("Exposure state reset")
        if self._notifier is not None:
            self._notifier.exposures_changed(self._current)

    def should_sync(self, now: datetime | None = None) -> bool:
        """Return True if the periodic interval has elapsed since the last success."""
        if self._last_success_at is None:
            return True
        elapsed = ((now or utc_now()) - self._last_success_at).total_seconds()
        return elapsed >= self._config.sync.interval_seconds

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def sync(self, is_background: bool = False, *, wait: bool = True) -> SyncOutcome:
        """Run a sync pass, or join the follow-up if one is already running.

        Args:
            is_background: True for periodic/background triggers.
            wait:          When False and a pass is running, raise instead of
                           queueing.

        Returns:
            SyncOutcome for the pass that served this request.

        Raises:
            SyncInProgressError: If ``wait`` is False and a pass is running.
        """
        if self._lock.locked():
            if not wait:
                raise SyncInProgressError("An exposure sync is already running")
            if self._config.sync.coalesce_concurrent:
                if self._follow_up is None or self._follow_up.done():
                    logger.debug("Sync requested while running; scheduling follow-up")
                    self._follow_up = asyncio.ensure_future(
                        self._run_follow_up(is_background)
                    )
                else:
                    logger.debug("Sync requested while running; joining follow-up")
                return await asyncio.shield(self._follow_up)

        async with self._lock:
            return await self._run_pass(is_background)

    def request_sync(
        self, completion: Completion, is_background: bool = False
    ) -> asyncio.Task[SyncOutcome]:
        """Start a sync and report ``completion(new_data, needs_notification)``.

        Background completions run inline on the loop the pass finished on.
        Foreground completions are dispatched to ``ui_loop`` (or the running
        loop) so UI code reads state from its own context.

        Must be called from a running event loop.
        """
        loop = asyncio.get_running_loop()
        target_loop = self._ui_loop or loop
        task = loop.create_task(self.sync(is_background))

        def _on_done(finished: asyncio.Task[SyncOutcome]) -> None:
            if finished.cancelled():
                outcome = NO_NEW_DATA
            elif finished.exception() is not None:
                logger.error("Sync task failed: %s", finished.exception())
                outcome = NO_NEW_DATA
            else:
                outcome = finished.result()

            if is_background:
                completion(outcome.new_data, outcome.needs_notification)
            else:
                target_loop.call_soon_threadsafe(
                    completion, outcome.new_data, outcome.needs_notification
                )

        task.add_done_callback(_on_done)
        return task

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run_follow_up(self, is_background: bool) -> SyncOutcome:
        async with self._lock:
            # Requests arriving from here on need another follow-up
            self._follow_up = None
            return await self._run_pass(is_background)

    async def _run_pass(self, is_background: bool) -> SyncOutcome:
        self.passes_run += 1
        mode = "background" if is_background else "foreground"
        since = self._cursor.value
        logger.info("Exposure sync started (%s, lastSync=%s)", mode, since)

        # 1. Fetch
        try:
            fetched = await self._backend.fetch_events(since)
        except (NetworkError, ServerError) as exc:
            logger.warning(
                "Exposure sync fetch failed: %s", exc,
                extra={"sync_stage": "fetch", "error_type": type(exc).__name__},
            )
            return NO_NEW_DATA

        # 2. Cursor candidate, committed only at the end
        candidate = fetched.server_timestamp

        # 3. Decode
        try:
            events = self._decoder.decode(fetched.raw_batch)
        except DecodeError as exc:
            logger.warning(
                "Exposure sync decode failed: %s", exc,
                extra={"sync_stage": "decode", "error_type": type(exc).__name__},
            )
            return NO_NEW_DATA

        # 4. Recompute
        try:
            now = utc_now()
            self._engine.sweep(self._diary, now)
            snapshot = self._diary.snapshot(now)
            result = self._engine.recompute(snapshot, events, self._current, now)
        except Exception as exc:
            logger.exception(
                "Exposure sync matching failed: %s", exc,
                extra={"sync_stage": "match", "error_type": type(exc).__name__},
            )
            return NO_NEW_DATA

        # 5. Persist the result set, then the ledger
        previous = self._current
        try:
            self._exposures.save(result)
        except Exception as exc:
            logger.exception(
                "Exposure sync could not persist exposures: %s", exc,
                extra={"sync_stage": "persist", "error_type": type(exc).__name__},
            )
            return NO_NEW_DATA
        try:
            diff = self._ledger.diff_against_notified(result)
        except Exception as exc:
            logger.exception(
                "Exposure sync could not persist the notification ledger: %s", exc,
                extra={"sync_stage": "ledger", "error_type": type(exc).__name__},
            )
            self._restore_exposures(previous)
            return NO_NEW_DATA

        self._current = result
        if self._notifier is not None:
            self._notifier.exposures_changed(result)

        # 6. Commit cursor; a lost write only means the batch is fetched again
        try:
            self._cursor.commit(candidate)
        except Exception as exc:
            logger.exception(
                "Exposure sync could not persist the cursor: %s", exc,
                extra={"sync_stage": "cursor", "error_type": type(exc).__name__},
            )
        self._last_success_at = now

        logger.info(
            "Exposure sync complete (%s): %d events, %d exposures, %d newly flagged",
            mode,
            len(events),
            len(result),
            len(diff.newly_flagged_ids),
        )
        return SyncOutcome(new_data=True, needs_notification=diff.needs_notification)

    def _restore_exposures(self, previous: ExposureResultSet) -> None:
        try:
            self._exposures.save(previous)
        except Exception:
            logger.exception("Could not restore the previous exposure result set")
