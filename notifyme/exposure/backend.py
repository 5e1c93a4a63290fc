"""Problematic events backend client.

Fetches one serialized batch of problematic events per call from the
``traceKeys`` endpoint and reads the server clock from the ``Date`` response
header, which becomes the next sync cursor candidate.

Request shape::

    GET {base_url}/traceKeys[?lastSync=<epoch ms>]
    Accept: application/protobuf

``lastSync`` is omitted entirely when no cursor exists (full fetch).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timezone
from email.utils import parsedate_to_datetime

import httpx

from notifyme.exposure.base import to_epoch_ms
from notifyme.exposure.config_loader import ExposureConfig, get_exposure_config
from notifyme.exposure.errors import NetworkError, ServerError

logger = logging.getLogger("notifyme.exposure.backend")

_DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class FetchResult:
    """One backend response.

    Attributes:
        raw_batch:        Response body, still serialized.
        server_timestamp: Server clock in epoch milliseconds from the ``Date``
                          header, or None if missing or unparsable.
    """

    raw_batch: bytes
    server_timestamp: int | None


def parse_date_header(value: str | None) -> int | None:
    """Parse an RFC 1123 ``Date`` header (``E, dd MMM yyyy HH:mm:ss zzz``).

    Day and month names are read as English tokens regardless of locale.

    Returns:
        Epoch milliseconds, or None when the header is absent or malformed.
    """
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        logger.warning("Could not parse Date header: %r", value)
        return None
    if parsed is None:
        logger.warning("Could not parse Date header: %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return to_epoch_ms(parsed)


class BackendClient:
    """HTTP client for the problematic events endpoint.

    Usage::

        client = BackendClient("https://backend.example.org/v1")
        result = await client.fetch_events(since=cursor.value)
    """

    def __init__(
        self,
        base_url: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
        config: ExposureConfig | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url:    Backend base URL, without the endpoint path.
            http_client: Optional pre-configured httpx client (for testing).
            timeout:     Transport timeout in seconds for short-lived clients.
            config:      Exposure config (endpoint name, Accept header).
        """
        self._base_url = base_url.rstrip("/")
        self._http_client = http_client
        self._timeout = timeout
        self._config = config or get_exposure_config()

    @property
    def endpoint_url(self) -> str:
        return f"{self._base_url}/{self._config.backend.endpoint}"

    def _build_params(self, since: int | None) -> dict[str, str]:
        if since is None:
            return {}
        return {"lastSync": str(since)}

    def _build_headers(self) -> dict[str, str]:
        return {"Accept": self._config.backend.accept}

    async def fetch_events(self, since: int | None = None) -> FetchResult:
        """Fetch all problematic events published after ``since``.

        Args:
            since: Sync cursor in epoch milliseconds, or None for a full fetch.

        Returns:
            FetchResult with the raw body and the server timestamp.

        Raises:
            NetworkError: On transport failures (including timeouts), body decoding
                          failures, redirect loops and invalid URLs.
            ServerError:  On non-2xx responses.
        """
        params = self._build_params(since)
        headers = self._build_headers()
        logger.debug("Fetching problematic events (lastSync=%s)", since)

        try:
            if self._http_client:
                response = await self._http_client.get(
                    self.endpoint_url, params=params, headers=headers
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(
                        self.endpoint_url, params=params, headers=headers
                    )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise NetworkError(f"Fetching {self.endpoint_url} failed: {exc}") from exc

        if not response.is_success:
            raise ServerError(response.status_code)

        server_timestamp = parse_date_header(response.headers.get("Date"))
        logger.info(
            "Fetched %d bytes of problematic events (server time %s)",
            len(response.content),
            server_timestamp,
        )
        return FetchResult(raw_batch=response.content, server_timestamp=server_timestamp)
