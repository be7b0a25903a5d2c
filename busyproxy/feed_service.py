"""Fetch -> parse -> expand -> serialize pipeline behind ``/busy.ics``."""

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import httpx

from .fetcher import ICSFetcher
from .ics_parser import ParsedFeed, parse_ics
from .ics_writer import render_busy_ics
from .models import ExpansionResult, ICSSource, RecurringEvent
from .rrule_expander import ExpanderConfig, expand_all
from .timezone_utils import now_utc
from .windows import default_window

logger = logging.getLogger(__name__)


@dataclass
class BusyFeed:
    """Result of one pipeline run."""

    ics: str
    parsed: ParsedFeed
    result: ExpansionResult

    @property
    def block_count(self) -> int:
        return len(self.result.blocks)


def expander_config_for(config: Any, parsed: ParsedFeed) -> ExpanderConfig:
    """Expansion settings for ``parsed``, honoring the feed's own floating zone."""
    return dataclasses.replace(ExpanderConfig.from_settings(config), floating_timezone=parsed.floating_timezone)


def expand_feed(
    parsed: ParsedFeed,
    config: Any,
    window_start: datetime,
    window_end: datetime,
    inclusive: bool = False,
) -> ExpansionResult:
    """Expand a parsed feed and fold parse-time event errors into the result."""
    result = expand_all(
        parsed.registry,
        window_start,
        window_end,
        inclusive,
        timezones=parsed.timezones,
        config=expander_config_for(config, parsed),
    )
    if parsed.errors:
        result = result.model_copy(update={"errors": tuple(parsed.errors) + result.errors})
    return result


def render_feed_text(
    ics_content: str,
    config: Any,
    window: Optional[tuple[datetime, datetime]] = None,
    now: Optional[datetime] = None,
) -> BusyFeed:
    """Turn raw source ICS text into the published busy feed.

    Args:
        ics_content: Source calendar text
        config: ``Config`` (or any object with the same attributes)
        window: Explicit ``(start, end)``; defaults to ``[now, now + window_weeks)``
        now: Reference instant for the default window

    Raises:
        FeedParseError: If the source text is not a usable calendar
    """
    parsed = parse_ics(ics_content, config)
    if window is None:
        window = default_window(now or now_utc(), getattr(config, "window_weeks", 8))
    result = expand_feed(parsed, config, window[0], window[1])

    if result.errors:
        logger.warning("%d events could not be expanded", len(result.errors))
    ics = render_busy_ics(result.blocks, getattr(config, "calendar_name", None))
    logger.info(
        "Built busy feed: %d blocks from %d events (%d skipped)",
        len(result.blocks),
        parsed.total_events,
        parsed.skipped_events,
    )
    return BusyFeed(ics=ics, parsed=parsed, result=result)


async def fetch_source(config: Any, source_url: str, http_client: Optional[httpx.AsyncClient] = None) -> str:
    """Download the source calendar text.

    Raises:
        UpstreamFetchError: On any upstream failure
    """
    source = ICSSource(url=source_url, timeout=getattr(config, "request_timeout", 30))
    async with ICSFetcher(config, shared_client=http_client) as fetcher:
        response = await fetcher.fetch_ics(source)
    return response.content or ""


async def build_busy_feed(
    config: Any,
    source_url: str,
    http_client: Optional[httpx.AsyncClient] = None,
    window: Optional[tuple[datetime, datetime]] = None,
) -> BusyFeed:
    """Fetch ``source_url`` and build the busy feed for it.

    Raises:
        UpstreamFetchError: If the upstream cannot be fetched
        FeedParseError: If the upstream content is not a usable calendar
    """
    content = await fetch_source(config, source_url, http_client)
    return render_feed_text(content, config, window=window)


def describe_events(parsed: ParsedFeed) -> list[dict[str, Any]]:
    """Summarize parsed events for the inspection endpoint.

    Summaries are never included; only timing metadata is exposed.
    """
    described = []
    for event in parsed.registry:
        anchor = event.anchor
        entry: dict[str, Any] = {
            "event_id": event.event_id,
            "kind": event.kind,
            "anchor_kind": anchor.kind.value,
            "tzid": anchor.tzid,
            "start": anchor.start.isoformat(),
            "end": anchor.end.isoformat() if anchor.end else None,
            "duration_seconds": anchor.duration.total_seconds() if anchor.duration is not None else None,
            "all_day": anchor.all_day,
        }
        if isinstance(event, RecurringEvent):
            entry["rrule"] = event.rrule
            entry["overridden_instants"] = sorted(i.isoformat() for i in event.overridden_instants)
        described.append(entry)
    return described
