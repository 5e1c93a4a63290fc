"""NotifyMe application shell — wires the exposure engine for a host app.

The host supplies the match provider, a notification sink and (optionally) a
credential store, then drives syncs from its background fetch hook or from
``run_periodic``.

Usage::

    app = create_app(provider=crowd_notifier, notification_sink=notifications)
    status = await app.perform_background_fetch()
"""

from __future__ import annotations

import asyncio
import logging
import sys
from abc import ABC, abstractmethod
from enum import Enum

import httpx

from notifyme.config import Settings, get_settings
from notifyme.exposure.backend import BackendClient
from notifyme.exposure.base import ExposureResultSet, MatchProvider, SyncOutcome
from notifyme.exposure.config_loader import ExposureConfig, get_exposure_config
from notifyme.exposure.decoder import EventDecoder
from notifyme.exposure.diary import DiaryStore
from notifyme.exposure.match_engine import MatchEngine
from notifyme.exposure.notifier import StateNotifier
from notifyme.exposure.results import ExposureRepository
from notifyme.exposure.storage import FIRST_RUN_KEY, JsonFileStore, StateStore
from notifyme.exposure.sync.cursor import SyncCursor
from notifyme.exposure.sync.dedup import NotificationLedger
from notifyme.exposure.sync.scheduler import SyncScheduler

logger = logging.getLogger("notifyme")


# ---------- Logging ----------

def log_level_for(settings: Settings) -> int:
    """``debug`` forces DEBUG; otherwise ``log_level`` (INFO if unknown)."""
    if settings.debug:
        return logging.DEBUG
    return getattr(logging, settings.log_level.upper(), logging.INFO)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=log_level_for(settings),
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


# ---------- Host collaborators ----------

class NotificationSink(ABC):
    """Delivers user-facing notifications; delivery itself is the host's job."""

    @abstractmethod
    def show_exposure_notification(self) -> None:
        """Tell the user a check-in matched a problematic event."""


class CredentialStore(ABC):
    """Secure credential storage (keychain) owned by the host."""

    @abstractmethod
    def delete_all(self) -> None:
        """Remove every stored credential."""


class FetchStatus(str, Enum):
    """Result reported back to the host's background fetch hook."""

    NO_DATA = "no_data"
    NEW_DATA = "new_data"


# ---------- App ----------

class NotifyMeApp:
    """Explicitly constructed owner of the engine components.

    Attributes:
        store:     Persisted state backing every component.
        notifier:  State notifier UI layers subscribe to.
        diary:     Check-in diary.
        scheduler: Exposure sync scheduler.
    """

    def __init__(
        self,
        store: StateStore,
        scheduler: SyncScheduler,
        diary: DiaryStore,
        notifier: StateNotifier,
        notification_sink: NotificationSink,
        config: ExposureConfig,
        credential_store: CredentialStore | None = None,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.diary = diary
        self.notifier = notifier
        self._notification_sink = notification_sink
        self._credential_store = credential_store
        self._config = config

    def handle_first_run(self) -> bool:
        """Wipe leftover credentials on the first launch after install.

        Returns:
            True if this was the first run.
        """
        if not self.store.get(FIRST_RUN_KEY, True):
            return False
        if self._credential_store is not None:
            self._credential_store.delete_all()
            logger.info("First run: cleared stored credentials")
        self.store.set(FIRST_RUN_KEY, False)
        return True

    def get_exposure_events(self) -> ExposureResultSet:
        return self.scheduler.get_exposure_events()

    async def perform_background_fetch(self) -> FetchStatus:
        """Background trigger: sync, notify if needed, report the fetch result."""
        outcome = await self.scheduler.sync(is_background=True)
        return self._handle_outcome(outcome)

    async def sync_now(self) -> SyncOutcome:
        """Foreground, user-triggered sync."""
        outcome = await self.scheduler.sync(is_background=False)
        self._handle_outcome(outcome)
        return outcome

    def _handle_outcome(self, outcome: SyncOutcome) -> FetchStatus:
        if not outcome.new_data:
            return FetchStatus.NO_DATA
        if outcome.needs_notification:
            self._notification_sink.show_exposure_notification()
        return FetchStatus.NEW_DATA

    async def run_periodic(self, stop: asyncio.Event) -> None:
        """Run a background sync every ``sync.interval_seconds`` until ``stop`` is set."""
        interval = self._config.sync.interval_seconds
        logger.info("Periodic exposure sync every %ds", interval)
        while not stop.is_set():
            if self.scheduler.should_sync():
                await self.perform_background_fetch()
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Periodic exposure sync stopped")

    def reset(self) -> None:
        """App-level data reset: exposures, notified ids and the sync cursor."""
        self.scheduler.reset()


# ---------- App factory ----------

def create_app(
    provider: MatchProvider,
    notification_sink: NotificationSink,
    settings: Settings | None = None,
    credential_store: CredentialStore | None = None,
    store: StateStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    config: ExposureConfig | None = None,
) -> NotifyMeApp:
    settings = settings or get_settings()
    config = config or get_exposure_config()
    store = store if store is not None else JsonFileStore(settings.state_path)

    logger.info(
        "Starting %s v%s [%s]",
        settings.app_name,
        settings.app_version,
        settings.environment,
    )

    notifier = StateNotifier()
    diary = DiaryStore(store, notifier=notifier)
    scheduler = SyncScheduler(
        backend=BackendClient(
            settings.backend_base_url,
            http_client=http_client,
            timeout=settings.http_timeout_seconds,
            config=config,
        ),
        decoder=EventDecoder(config),
        diary=diary,
        engine=MatchEngine(provider, config),
        cursor=SyncCursor(store),
        ledger=NotificationLedger(store),
        exposures=ExposureRepository(store),
        notifier=notifier,
        config=config,
    )

    app = NotifyMeApp(
        store=store,
        scheduler=scheduler,
        diary=diary,
        notifier=notifier,
        notification_sink=notification_sink,
        config=config,
        credential_store=credential_store,
    )
    app.handle_first_run()
    return app
