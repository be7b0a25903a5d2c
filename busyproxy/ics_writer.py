"""Serialization of busy blocks into a sanitized ICS document.

Each published VEVENT carries only a synthesized UID, DTSTAMP, UTC start/end
and fixed SUMMARY/TRANSP/CLASS values. Nothing from the source event other
than its timing crosses this boundary.
"""

import hashlib
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Optional

from icalendar import Calendar, Event

from .models import BusyBlock
from .timezone_utils import now_utc

logger = logging.getLogger(__name__)

PRODID = "-//Busy ICS Proxy//EN"
DEFAULT_CALENDAR_NAME = "Busy Calendar"
BUSY_SUMMARY = "Busy"
UID_DOMAIN = "busy-proxy"


def synthesize_uid(block: BusyBlock) -> str:
    """Return a stable UID derived from the block's identity.

    The UID depends only on ``(event_id, start)``, so repeated fetches publish
    the same UID for the same occurrence without exposing the source UID.
    """
    digest = hashlib.sha1(f"{block.event_id}|{block.start.isoformat()}".encode(), usedforsecurity=False)
    return f"busy-{digest.hexdigest()[:16]}@{UID_DOMAIN}"


def _utc_seconds(value: datetime) -> datetime:
    return value.astimezone(UTC).replace(microsecond=0)


def build_calendar(
    blocks: Iterable[BusyBlock],
    calendar_name: Optional[str] = None,
    generated_at: Optional[datetime] = None,
) -> Calendar:
    """Build the published VCALENDAR for ``blocks``.

    Args:
        blocks: Busy blocks, already ordered
        calendar_name: X-WR-CALNAME value
        generated_at: DTSTAMP value (defaults to now)

    Returns:
        icalendar Calendar ready for ``to_ical()``
    """
    stamp = _utc_seconds(generated_at or now_utc())

    calendar = Calendar()
    calendar.add("prodid", PRODID)
    calendar.add("version", "2.0")
    calendar.add("calscale", "GREGORIAN")
    calendar.add("method", "PUBLISH")
    calendar.add("x-wr-calname", calendar_name or DEFAULT_CALENDAR_NAME)
    calendar.add("x-wr-timezone", "UTC")

    count = 0
    for block in blocks:
        vevent = Event()
        vevent.add("uid", synthesize_uid(block))
        vevent.add("dtstamp", stamp)
        vevent.add("dtstart", _utc_seconds(block.start))
        vevent.add("dtend", _utc_seconds(block.end))
        vevent.add("summary", BUSY_SUMMARY)
        vevent.add("transp", "OPAQUE")
        vevent.add("class", "PRIVATE")
        calendar.add_component(vevent)
        count += 1

    logger.debug("Serialized %d busy blocks", count)
    return calendar


def render_busy_ics(
    blocks: Iterable[BusyBlock],
    calendar_name: Optional[str] = None,
    generated_at: Optional[datetime] = None,
) -> str:
    """Serialize ``blocks`` to ICS text (CRLF line endings)."""
    return build_calendar(blocks, calendar_name, generated_at).to_ical().decode("utf-8")
