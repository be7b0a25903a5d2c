"""HTTP client for downloading the upstream ICS feed."""

import asyncio
import logging
import random
from typing import Any, Optional
from urllib.parse import urlparse

import httpx

from .errors import (
    UpstreamAuthError,
    UpstreamFetchError,
    UpstreamNetworkError,
    UpstreamTimeoutError,
)
from .http_client import build_client
from .middleware.correlation_id import NO_REQUEST_ID, get_request_id
from .models import ICSResponse, ICSSource

logger = logging.getLogger(__name__)

# Backoff calculation constants
MAX_BACKOFF_SECONDS = 30.0
JITTER_MIN_FACTOR = 0.1
JITTER_MAX_FACTOR = 0.3


def validate_source_url(url: str) -> bool:
    """Check that ``url`` is an absolute http(s) URL with a hostname.

    Args:
        url: Candidate feed URL

    Returns:
        True if the URL may be fetched
    """
    try:
        parsed = urlparse(url)
    except ValueError as e:
        logger.debug("URL validation error for %s: %s", url, e)
        return False

    if parsed.scheme not in ("http", "https"):
        logger.debug("Blocked non-HTTP(S) URL: %s", url)
        return False
    if not parsed.hostname:
        logger.debug("Blocked URL with missing hostname: %s", url)
        return False
    return True


def redact_url(url: str) -> str:
    """Drop the query string and credentials from ``url`` for logging.

    Calendar share links usually carry their secret in the path or query.
    """
    try:
        parsed = urlparse(url)
    except ValueError:
        return "<invalid url>"
    host = parsed.hostname or ""
    path = parsed.path
    if len(path) > 24:
        path = path[:24] + "..."
    return f"{parsed.scheme}://{host}{path}"


class ICSFetcher:
    """Async HTTP client for downloading ICS feeds.

    One instance serves one request; pass ``shared_client`` to reuse a pooled
    ``httpx.AsyncClient`` (it is never closed by the fetcher).
    """

    def __init__(self, settings: Any, shared_client: Optional[httpx.AsyncClient] = None) -> None:
        """Initialize the fetcher.

        Args:
            settings: Config with request_timeout, max_retries, retry_backoff_factor
            shared_client: Optional shared HTTP client for connection reuse
        """
        self.settings = settings
        self.client: Optional[httpx.AsyncClient] = shared_client
        self._use_shared_client = shared_client is not None

        logger.debug("ICS fetcher initialized (shared_client: %s)", self._use_shared_client)

    async def __aenter__(self) -> "ICSFetcher":
        await self._ensure_client()
        return self

    async def __aexit__(self, _exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        await self._close_client()

    async def _close_client(self) -> None:
        """Close the HTTP client if it is not shared."""
        if self.client is not None and not self._use_shared_client and not self.client.is_closed:
            await self.client.aclose()
            logger.debug("Closed individual HTTP client")
        self.client = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            request_timeout = getattr(self.settings, "request_timeout", 30)
            self.client = build_client(
                timeout=httpx.Timeout(connect=10.0, read=request_timeout, write=10.0, pool=30.0)
            )
            self._use_shared_client = False
        return self.client

    def _source_headers(self, source: ICSSource) -> dict[str, str]:
        headers = dict(source.custom_headers)
        request_id = get_request_id()
        if request_id != NO_REQUEST_ID:
            headers.setdefault("X-Request-ID", request_id)
        return headers

    async def fetch_ics(self, source: ICSSource) -> ICSResponse:
        """Download ICS content from ``source``.

        Network errors and timeouts are retried with exponential backoff and
        jitter; HTTP error statuses are not retried.

        Args:
            source: Upstream feed description

        Returns:
            ICSResponse with the feed text

        Raises:
            UpstreamAuthError: HTTP 401/403 from the upstream
            UpstreamTimeoutError: Every attempt timed out
            UpstreamNetworkError: Every attempt failed at the network level
            UpstreamFetchError: Invalid URL, other non-2xx status or empty body
        """
        if not validate_source_url(source.url):
            raise UpstreamFetchError("Source URL is not an absolute http(s) URL")

        client = await self._ensure_client()
        safe_url = redact_url(source.url)
        logger.debug("Fetching %s ICS from %s", source.name, safe_url)

        try:
            response = await self._make_request_with_retry(
                client, source.url, self._source_headers(source), source.timeout
            )
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.warning("HTTP %d fetching ICS from %s", status, safe_url)
            if status in (401, 403):
                raise UpstreamAuthError(f"Upstream rejected the request (HTTP {status})", status) from e
            raise UpstreamFetchError(f"Upstream returned HTTP {status}: {e.response.reason_phrase}", status) from e
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"Upstream timed out after {source.timeout}s") from e
        except httpx.TransportError as e:
            raise UpstreamNetworkError(f"Network error: {e}") from e
        except httpx.HTTPError as e:
            raise UpstreamFetchError(f"Unexpected HTTP error: {e}") from e

        return self._create_response(response)

    def _calculate_backoff(self, attempt: int, backoff_factor: float) -> float:
        """Calculate exponential backoff time with jitter.

        Args:
            attempt: Current retry attempt number (0-indexed)
            backoff_factor: Base factor for exponential backoff calculation

        Returns:
            Backoff time in seconds including jitter
        """
        base_backoff = min(backoff_factor**attempt, MAX_BACKOFF_SECONDS)
        jitter = random.uniform(JITTER_MIN_FACTOR, JITTER_MAX_FACTOR) * base_backoff  # nosec B311 - jitter not cryptographic
        return base_backoff + jitter

    async def _make_request_with_retry(
        self, client: httpx.AsyncClient, url: str, headers: dict[str, str], timeout: int
    ) -> httpx.Response:
        """GET ``url``, retrying network errors and timeouts only."""
        max_retries = int(getattr(self.settings, "max_retries", 3))
        backoff_factor = float(getattr(self.settings, "retry_backoff_factor", 1.5))

        attempt = 0
        while True:
            try:
                response = await client.get(url, headers=headers, timeout=timeout, follow_redirects=True)
                response.raise_for_status()
            except (httpx.TimeoutException, httpx.TransportError) as e:
                if attempt >= max_retries:
                    logger.warning("All %d attempts failed for %s: %s", attempt + 1, redact_url(url), e)
                    raise
                backoff_time = self._calculate_backoff(attempt, backoff_factor)
                logger.warning(
                    "Request failed (attempt %s/%s), retrying in %.1fs: %s",
                    attempt + 1,
                    max_retries + 1,
                    backoff_time,
                    e,
                )
                await asyncio.sleep(backoff_time)
                attempt += 1
                continue

            logger.debug(
                "Fetched ICS from %s (attempt %d) - %d bytes", redact_url(url), attempt + 1, len(response.content)
            )
            return response

    def _create_response(self, http_response: httpx.Response) -> ICSResponse:
        """Build an ``ICSResponse`` from a successful HTTP response.

        Raises:
            UpstreamFetchError: If the body is empty
        """
        headers = dict(http_response.headers)
        content = http_response.text
        content_type = headers.get("content-type", "").lower()

        if content_type and not any(ct in content_type for ct in ("text/calendar", "text/plain", "octet-stream")):
            logger.warning("Unexpected content type: %s", content_type)

        if not content or not content.strip():
            raise UpstreamFetchError("Upstream returned an empty body", http_response.status_code)

        if "BEGIN:VCALENDAR" not in content:
            logger.warning("Content does not appear to be valid ICS format")

        return ICSResponse(
            success=True,
            content=content,
            status_code=http_response.status_code,
            headers=headers,
        )
