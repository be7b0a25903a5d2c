"""Inspection routes, mounted only when ``enable_debug_endpoints`` is set.

Responses expose timing metadata only; summaries and other event text are
never returned.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import web

from ..errors import FeedParseError, UpstreamFetchError
from ..feed_service import describe_events, expand_feed, fetch_source
from ..ics_parser import ParsedFeed, parse_ics
from ..windows import named_window
from .feed_routes import resolve_source_url, upstream_failure_message

logger = logging.getLogger(__name__)


def _iso_z(value: Any) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def register_debug_routes(
    app: Any,
    config: Any,
    get_http_client: Callable[[], Awaitable[Any]],
) -> None:
    """Register ``/debug/events`` and ``/debug/busy``.

    Args:
        app: aiohttp web application
        config: Application configuration
        get_http_client: Coroutine function returning the shared httpx client
    """

    async def _load(request: web.Request) -> ParsedFeed:
        source_url = resolve_source_url(request, config)
        client = await get_http_client()
        try:
            content = await fetch_source(config, source_url, client)
            return parse_ics(content, config)
        except (UpstreamFetchError, FeedParseError) as e:
            logger.warning("Debug request failed: %s", e)
            raise web.HTTPBadGateway(
                text=upstream_failure_message(e), content_type="text/plain"
            ) from e

    async def debug_events(request: web.Request) -> web.Response:
        """List parsed events with their anchors and recurrence rules."""
        parsed = await _load(request)
        return web.json_response(
            {
                "calendar_name": parsed.calendar_name,
                "default_timezone": parsed.default_timezone,
                "floating_timezone": parsed.floating_timezone,
                "declared_timezones": parsed.timezones.declared_tzids,
                "total_events": parsed.total_events,
                "skipped_events": parsed.skipped_events,
                "events": describe_events(parsed),
                "errors": [e.model_dump() for e in parsed.errors],
                "warnings": parsed.warnings,
            }
        )

    async def debug_busy(request: web.Request) -> web.Response:
        """Expand the feed over a named window (``?range=today|week|month|next-month|8-weeks``)."""
        range_name = request.query.get("range")
        window_start, window_end = named_window(
            range_name, display_timezone=getattr(config, "display_timezone", "UTC")
        )

        parsed = await _load(request)
        result = expand_feed(parsed, config, window_start, window_end)
        return web.json_response(
            {
                "range": range_name or "30-days",
                "window_start": _iso_z(result.window_start),
                "window_end": _iso_z(result.window_end),
                "count": len(result.blocks),
                "blocks": [block.model_dump() for block in result.blocks],
                "errors": [e.model_dump() for e in result.errors],
            }
        )

    app.router.add_get("/debug/events", debug_events)
    app.router.add_get("/debug/busy", debug_busy)

    logger.debug("Debug routes registered")
