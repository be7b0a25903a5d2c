"""Published feed and health routes."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import web

from ..errors import FeedParseError, UpstreamAuthError, UpstreamFetchError
from ..feed_service import build_busy_feed
from ..fetcher import redact_url, validate_source_url
from ..timezone_utils import now_utc

logger = logging.getLogger(__name__)

ICS_CONTENT_TYPE = "text/calendar"


def resolve_source_url(request: web.Request, config: Any) -> str:
    """Pick the upstream URL for ``request``.

    A ``url`` query parameter overrides the configured source only when
    ``allow_url_override`` is enabled.

    Raises:
        web.HTTPBadRequest: No usable source URL
    """
    override = request.query.get("url")
    if override:
        if not getattr(config, "allow_url_override", False):
            raise web.HTTPBadRequest(text="URL override is disabled")
        if not validate_source_url(override):
            raise web.HTTPBadRequest(text="Invalid source ICS URL")
        return override

    source_url = getattr(config, "source_url", None)
    if not source_url:
        raise web.HTTPBadRequest(text="Missing source ICS URL")
    return source_url


def upstream_failure_message(exc: Exception) -> str:
    """Client-facing description of a whole-request failure."""
    if isinstance(exc, UpstreamAuthError):
        return "Upstream calendar rejected the request"
    if isinstance(exc, UpstreamFetchError):
        return "Failed to fetch source calendar"
    return "Source calendar could not be parsed"


def register_feed_routes(
    app: Any,
    config: Any,
    get_http_client: Callable[[], Awaitable[Any]],
    health_tracker: Any,
) -> None:
    """Register ``/busy.ics`` and ``/health``.

    Args:
        app: aiohttp web application
        config: Application configuration
        get_http_client: Coroutine function returning the shared httpx client
        health_tracker: HealthTracker instance
    """

    async def busy_feed(request: web.Request) -> web.Response:
        """Serve the sanitized busy-only calendar."""
        source_url = resolve_source_url(request, config)
        client = await get_http_client()

        try:
            feed = await build_busy_feed(config, source_url, client)
        except (UpstreamFetchError, FeedParseError) as e:
            logger.warning("Feed build failed for %s: %s", redact_url(source_url), e)
            health_tracker.record_failure(type(e).__name__)
            return web.Response(text=upstream_failure_message(e), status=502)

        health_tracker.record_success(feed.block_count)
        return web.Response(
            text=feed.ics,
            content_type=ICS_CONTENT_TYPE,
            charset="utf-8",
            headers={
                "Content-Disposition": 'inline; filename="busy.ics"',
                "Cache-Control": "no-store",
                "X-Busy-Expansion-Errors": str(len(feed.result.errors)),
            },
        )

    async def health_check(_request: web.Request) -> web.Response:
        """Health check endpoint for monitoring."""
        now_iso = now_utc().strftime("%Y-%m-%dT%H:%M:%SZ")
        status = health_tracker.get_health_status(now_iso)
        return web.json_response(status.to_dict())

    app.router.add_get("/busy.ics", busy_feed)
    app.router.add_get("/health", health_check)

    logger.debug("Feed routes registered")
