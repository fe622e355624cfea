"""HTTP client for the TMDB API with classified failures and bounded retry."""

from __future__ import annotations

import asyncio
import logging
import random

import httpx

from ..config import Settings
from ..endpoints import Endpoint
from ..errors import ClassifiedError, ErrorKind, classify_payload, classify_status, classify_transport
from .credentials import ApiKeyProvider, ConfigurationError

logger = logging.getLogger(__name__)

# Body handed back for no-op descriptors: a well-formed, empty listing page.
EMPTY_PAGE_BODY = b'{"page": 1, "results": [], "total_pages": 0, "total_results": 0}'


def parse_retry_after(headers: httpx.Headers) -> float | None:
    """Return the ``Retry-After`` delay in seconds, ignoring the HTTP-date form."""

    raw = headers.get("retry-after")
    if raw is None:
        return None
    try:
        delay = float(raw)
    except (TypeError, ValueError):
        return None
    return delay if delay >= 0 else None


class TMDBClient:
    """Executes one endpoint call, retrying transient failures only."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        credentials: ApiKeyProvider,
        *,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._client = http_client
        self._credentials = credentials
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        http_client: httpx.AsyncClient,
        credentials: ApiKeyProvider,
    ) -> "TMDBClient":
        return cls(
            http_client,
            credentials,
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def fetch(self, endpoint: Endpoint) -> bytes | ClassifiedError:
        """Return the raw JSON body for ``endpoint`` or the last classified failure."""

        if endpoint.is_noop:
            return EMPTY_PAGE_BODY
        invalid = endpoint.validate()
        if invalid is not None:
            return invalid

        try:
            api_key = await self._credentials.get_api_key()
        except ConfigurationError as exc:
            logger.warning("Skipping %s: %s", endpoint, exc)
            return ClassifiedError.unauthorized()

        attempt = 0
        while True:
            attempt += 1
            outcome, retry_after = await self._attempt(endpoint, api_key)
            if isinstance(outcome, bytes):
                return outcome
            if not outcome.retryable or attempt >= self._max_attempts:
                logger.warning(
                    "TMDB request %s failed after %s attempt(s): %s",
                    endpoint,
                    attempt,
                    outcome,
                )
                return outcome
            delay = self._backoff(attempt, retry_after)
            logger.info(
                "Retry %s/%s for %s in %.1fs after %s",
                attempt,
                self._max_attempts - 1,
                endpoint,
                delay,
                outcome,
            )
            await asyncio.sleep(delay)

    async def _attempt(
        self, endpoint: Endpoint, api_key: str
    ) -> tuple[bytes | ClassifiedError, float | None]:
        try:
            response = await self._client.get(
                endpoint.url(api_key),
                headers={"Accept": "application/json"},
                timeout=endpoint.timeout,
            )
        except httpx.RequestError as exc:
            return classify_transport(exc), None

        if response.is_success:
            payload_error = classify_payload(response.content)
            if payload_error is not None:
                return payload_error, None
            return response.content, None

        error = classify_status(response.status_code)
        retry_after = None
        if error.kind is ErrorKind.RATE_LIMITED:
            retry_after = parse_retry_after(response.headers)
        logger.debug(
            "TMDB %s answered %s: %s", endpoint.name, response.status_code, response.text[:200]
        )
        return error, retry_after

    def _backoff(self, attempt: int, retry_after: float | None) -> float:
        if retry_after is not None:
            return min(retry_after, self._max_delay)
        delay = self._base_delay * (2 ** (attempt - 1))
        jitter = random.uniform(0, 0.5) * delay
        return min(delay + jitter, self._max_delay)
