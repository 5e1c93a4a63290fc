"""Shared fixtures, fakes and mock backend responses for exposure engine tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

import httpx
import pytest

from notifyme.exposure.backend import BackendClient
from notifyme.exposure.base import (
    CheckInRecord,
    MatchPayload,
    MatchProvider,
    ProblematicEventRecord,
    VenueInfo,
)
from notifyme.exposure.config_loader import ExposureConfig, load_exposure_config
from notifyme.exposure.decoder import EventDecoder, encode_events
from notifyme.exposure.diary import DiaryStore
from notifyme.exposure.match_engine import MatchEngine
from notifyme.exposure.notifier import StateNotifier
from notifyme.exposure.results import ExposureRepository
from notifyme.exposure.storage import InMemoryStore
from notifyme.exposure.sync.cursor import SyncCursor
from notifyme.exposure.sync.dedup import NotificationLedger
from notifyme.exposure.sync.scheduler import SyncScheduler

BASE_URL = "https://backend.test/v1"
SERVER_DATE_HEADER = "Mon, 19 Oct 2026 08:00:00 GMT"
SERVER_DATE_MS = int(datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc).timestamp() * 1000)


def recent_time(hours_ago: int = 6) -> datetime:
    """A whole-second UTC time inside the retention horizon."""
    now = datetime.now(timezone.utc).replace(microsecond=0)
    return now - timedelta(hours=hours_ago)


def make_check_in(
    check_in_id: str,
    start: datetime,
    duration: timedelta | None = timedelta(hours=1),
    hidden: bool = False,
) -> CheckInRecord:
    return CheckInRecord(
        id=check_in_id,
        check_in_time=start,
        check_out_time=start + duration if duration is not None else None,
        venue=VenueInfo(name=f"Venue {check_in_id}", location="Zürich"),
        hide_from_diary=hidden,
    )


def make_event(
    start: datetime,
    end: datetime,
    key: bytes = b"secret-key",
    message: bytes = b"please get tested",
) -> ProblematicEventRecord:
    return ProblematicEventRecord(
        private_key=key, window_start=start, window_end=end, message=message
    )


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeMatchProvider(MatchProvider):
    """Matches a check-in when its id is registered for the event's key."""

    def __init__(self, matches: dict[bytes, set[str]] | None = None) -> None:
        self.matches: dict[bytes, set[str]] = matches or {}
        self.calls: list[tuple[bytes, str]] = []
        self.cleanups: list[int] = []

    def try_match(
        self, event: ProblematicEventRecord, check_in: CheckInRecord
    ) -> MatchPayload | None:
        self.calls.append((event.private_key, check_in.id))
        if check_in.id in self.matches.get(event.private_key, set()):
            return MatchPayload(message=event.message, metadata={"severity": "high"})
        return None

    def clean_up_old_data(self, max_days_to_keep: int) -> None:
        self.cleanups.append(max_days_to_keep)


class FlakyStore(InMemoryStore):
    """In-memory store whose writes to ``failing_keys`` raise OSError."""

    def __init__(self) -> None:
        super().__init__()
        self.failing_keys: set[str] = set()

    def set(self, key: str, value) -> None:
        if key in self.failing_keys:
            raise OSError(28, "No space left on device")
        super().set(key, value)


@dataclass
class FakeBackend:
    """httpx.MockTransport handler with a scripted list of responses."""

    responses: list[Callable[[httpx.Request], httpx.Response]] = field(default_factory=list)
    requests: list[httpx.Request] = field(default_factory=list)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            return batch_response([])(request)
        respond = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return respond(request)

    def queue(self, *responders: Callable[[httpx.Request], httpx.Response]) -> None:
        self.responses.extend(responders)


def batch_response(
    events: list[ProblematicEventRecord],
    date_header: str | None = SERVER_DATE_HEADER,
    status_code: int = 200,
) -> Callable[[httpx.Request], httpx.Response]:
    def _respond(request: httpx.Request) -> httpx.Response:
        headers = {"Content-Type": "application/protobuf"}
        if date_header is not None:
            headers["Date"] = date_header
        return httpx.Response(status_code, content=encode_events(events), headers=headers)

    return _respond


def raw_response(
    body: bytes, date_header: str | None = SERVER_DATE_HEADER, status_code: int = 200
) -> Callable[[httpx.Request], httpx.Response]:
    def _respond(request: httpx.Request) -> httpx.Response:
        headers = {"Date": date_header} if date_header is not None else {}
        return httpx.Response(status_code, content=body, headers=headers)

    return _respond


def failing_response(exc: Exception) -> Callable[[httpx.Request], httpx.Response]:
    def _respond(request: httpx.Request) -> httpx.Response:
        raise exc

    return _respond


# ---------------------------------------------------------------------------
# Config / component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def exposure_config() -> ExposureConfig:
    """Load the real exposure config for tests."""
    return load_exposure_config()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def notifier() -> StateNotifier:
    return StateNotifier()


@pytest.fixture
def diary(store: InMemoryStore, notifier: StateNotifier) -> DiaryStore:
    return DiaryStore(store, notifier=notifier)


@pytest.fixture
def provider() -> FakeMatchProvider:
    return FakeMatchProvider()


@pytest.fixture
def engine(provider: FakeMatchProvider, exposure_config: ExposureConfig) -> MatchEngine:
    return MatchEngine(provider, exposure_config)


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def http_client(fake_backend: FakeBackend) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_backend))


@pytest.fixture
def backend_client(
    http_client: httpx.AsyncClient, exposure_config: ExposureConfig
) -> BackendClient:
    return BackendClient(BASE_URL, http_client=http_client, config=exposure_config)


@pytest.fixture
def scheduler(
    store: InMemoryStore,
    diary: DiaryStore,
    engine: MatchEngine,
    backend_client: BackendClient,
    notifier: StateNotifier,
    exposure_config: ExposureConfig,
) -> SyncScheduler:
    return SyncScheduler(
        backend=backend_client,
        decoder=EventDecoder(exposure_config),
        diary=diary,
        engine=engine,
        cursor=SyncCursor(store),
        ledger=NotificationLedger(store),
        exposures=ExposureRepository(store),
        notifier=notifier,
        config=exposure_config,
    )
