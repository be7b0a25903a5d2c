"""iCalendar parsing into typed events and timezone rules.

Raw ICS text is parsed with icalendar. VTIMEZONE blocks become
``TimezoneRule`` records, VEVENTs become ``SingleEvent``/``RecurringEvent``
records owned by an ``EventRegistry``. Wall-clock values are kept exactly as
declared; conversion to UTC happens during expansion.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Any, Optional

from icalendar import Calendar

from .errors import FeedParseError, UnknownTimezone
from .models import (
    AnchorKind,
    Event,
    EventAnchor,
    EventRegistry,
    ExpansionError,
    RecurringEvent,
    SingleEvent,
    TimezoneRule,
)
from .tz_resolver import TimezoneTable, resolve_wall_clock, rule_from_vtimezone

logger = logging.getLogger(__name__)

MAX_ICS_SIZE_BYTES = 50 * 1024 * 1024
MAX_ICS_SIZE_WARNING = 10 * 1024 * 1024

_UTC_RULE = TimezoneRule.fixed("UTC", timedelta(0))


@dataclass
class ParsedFeed:
    """Everything extracted from one ICS document."""

    registry: EventRegistry
    timezones: TimezoneTable
    calendar_name: Optional[str] = None
    default_timezone: Optional[str] = None
    floating_timezone: str = "UTC"
    total_events: int = 0
    skipped_events: int = 0
    errors: list[ExpansionError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class _TimeValue:
    wall: datetime
    tzid: Optional[str]
    kind: AnchorKind
    all_day: bool


def _read_time(prop: Any) -> _TimeValue:
    """Split a DTSTART/DTEND/RECURRENCE-ID property into wall-clock parts."""
    value = prop.dt
    if not isinstance(value, datetime):
        if isinstance(value, date):
            return _TimeValue(datetime(value.year, value.month, value.day), None, AnchorKind.FLOATING, True)
        raise ValueError(f"Unsupported date-time value {value!r}")

    tzid = prop.params.get("TZID") if hasattr(prop, "params") else None
    if tzid:
        return _TimeValue(value.replace(tzinfo=None), str(tzid), AnchorKind.ZONED, False)
    if value.tzinfo is not None:
        return _TimeValue(value.astimezone(UTC).replace(tzinfo=None), None, AnchorKind.UTC, False)
    return _TimeValue(value, None, AnchorKind.FLOATING, False)


def _first(prop: Any) -> Any:
    # Repeated properties come back as a list
    if isinstance(prop, list):
        return prop[0] if prop else None
    return prop


class ICSFeedParser:
    """Parses ICS text into a ``ParsedFeed``.

    Settings consulted (all optional, via ``getattr``):
        include_transparent: keep free/transparent/cancelled events
        floating_timezone: zone used for floating times when the feed
            declares no X-WR-TIMEZONE
        prefer_iana_timezones: look TZIDs up in the IANA database first
    """

    def __init__(self, settings: Any = None):
        self.settings = settings
        self.include_transparent = bool(getattr(settings, "include_transparent", False))
        self.floating_timezone = getattr(settings, "floating_timezone", "UTC") or "UTC"
        self.prefer_iana = bool(getattr(settings, "prefer_iana_timezones", False))

    def parse(self, ics_content: str) -> ParsedFeed:
        """Parse raw ICS text.

        Args:
            ics_content: Raw ICS document

        Returns:
            ParsedFeed with the event registry and timezone table

        Raises:
            FeedParseError: If the text is empty, oversized or not iCalendar
        """
        if not ics_content or not ics_content.strip():
            raise FeedParseError("Empty ICS content")
        self._validate_size(ics_content)

        try:
            calendar = Calendar.from_ical(ics_content)
        except ValueError as e:
            raise FeedParseError(f"Invalid ICS content: {e}") from e
        if getattr(calendar, "name", None) != "VCALENDAR":
            raise FeedParseError("ICS content does not contain a VCALENDAR")

        warnings: list[str] = []
        timezones = TimezoneTable(self._collect_timezones(calendar, warnings), prefer_iana=self.prefer_iana)

        default_timezone = self._calendar_property(calendar, "X-WR-TIMEZONE")
        floating_rule = self._floating_rule(timezones, default_timezone or self.floating_timezone, warnings)

        events: list[Event] = []
        errors: list[ExpansionError] = []
        overrides: dict[str, set[datetime]] = {}
        total = 0
        skipped = 0

        for index, component in enumerate(calendar.walk("VEVENT")):
            total += 1
            uid = str(component.get("UID") or f"event-{index}")
            try:
                event = self._parse_event(component, uid, timezones, floating_rule, overrides, errors)
            except UnknownTimezone as e:
                logger.warning("Skipping event %s: %s", uid, e)
                errors.append(ExpansionError(event_id=uid, kind=type(e).__name__, message=str(e)))
                skipped += 1
                continue
            except (ValueError, KeyError) as e:
                warning = f"Failed to parse event {uid}: {e}"
                warnings.append(warning)
                logger.warning(warning)
                skipped += 1
                continue

            if event is None:
                skipped += 1
                continue
            events.append(event)

        events = [self._with_overrides(event, overrides) for event in events]
        registry = EventRegistry(events)

        logger.debug(
            "Parsed %d events (%d skipped, %d timezones declared)", len(registry), skipped, len(timezones)
        )
        return ParsedFeed(
            registry=registry,
            timezones=timezones,
            calendar_name=self._calendar_property(calendar, "X-WR-CALNAME"),
            default_timezone=default_timezone,
            floating_timezone=floating_rule.tzid,
            total_events=total,
            skipped_events=skipped,
            errors=errors,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Calendar-level helpers
    # ------------------------------------------------------------------

    def _validate_size(self, ics_content: str) -> None:
        size_bytes = len(ics_content.encode("utf-8"))
        if size_bytes > MAX_ICS_SIZE_BYTES:
            raise FeedParseError(f"ICS content too large: {size_bytes} bytes exceeds {MAX_ICS_SIZE_BYTES} limit")
        if size_bytes > MAX_ICS_SIZE_WARNING:
            logger.warning("Large ICS content detected: %d bytes (threshold: %d)", size_bytes, MAX_ICS_SIZE_WARNING)

    def _calendar_property(self, calendar: Calendar, name: str) -> Optional[str]:
        value = calendar.get(name)
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def _collect_timezones(self, calendar: Calendar, warnings: list[str]) -> dict[str, TimezoneRule]:
        rules: dict[str, TimezoneRule] = {}
        for component in calendar.walk("VTIMEZONE"):
            try:
                rule = rule_from_vtimezone(component)
            except UnknownTimezone as e:
                warning = f"Ignoring VTIMEZONE: {e}"
                warnings.append(warning)
                logger.warning(warning)
                continue
            rules[rule.tzid] = rule
        return rules

    def _floating_rule(self, timezones: TimezoneTable, tzid: str, warnings: list[str]) -> TimezoneRule:
        try:
            return timezones.get(tzid)
        except UnknownTimezone:
            warning = f"Floating timezone {tzid!r} is unknown, floating times are read as UTC"
            warnings.append(warning)
            logger.warning(warning)
            return _UTC_RULE

    # ------------------------------------------------------------------
    # Event helpers
    # ------------------------------------------------------------------

    def _is_busy(self, component: Any) -> bool:
        """Decide whether an event blocks time.

        Cancelled, transparent and Microsoft FREE/deleted events are free.
        """
        status = str(component.get("STATUS", "")).upper()
        transparency = str(component.get("TRANSP", "OPAQUE")).upper()
        ms_busystatus = str(component.get("X-MICROSOFT-CDO-BUSYSTATUS", "")).upper()
        ms_deleted = str(component.get("X-OUTLOOK-DELETED", "")).upper()

        if ms_deleted == "TRUE" or status == "CANCELLED":
            return False
        if ms_busystatus == "FREE":
            return False
        return transparency != "TRANSPARENT"

    def _build_anchor(self, component: Any, timezones: TimezoneTable, floating_rule: TimezoneRule) -> EventAnchor:
        start_prop = _first(component.get("DTSTART"))
        if start_prop is None:
            raise ValueError("Event missing DTSTART")
        start = _read_time(start_prop)

        end_wall: Optional[datetime] = None
        duration: Optional[timedelta] = None
        end_prop = _first(component.get("DTEND"))
        duration_prop = _first(component.get("DURATION"))

        if end_prop is not None:
            end = _read_time(end_prop)
            if (end.kind, end.tzid) == (start.kind, start.tzid):
                end_wall = end.wall
            else:
                # Mixed zones: keep the elapsed time between the two instants
                duration = self._instant(end, timezones, floating_rule) - self._instant(
                    start, timezones, floating_rule
                )
        elif duration_prop is not None:
            duration = duration_prop.dt

        return EventAnchor(
            start=start.wall,
            end=end_wall,
            duration=duration,
            tzid=start.tzid,
            kind=start.kind,
            all_day=start.all_day,
        )

    def _instant(self, value: _TimeValue, timezones: TimezoneTable, floating_rule: TimezoneRule) -> datetime:
        if value.kind == AnchorKind.UTC:
            return value.wall.replace(tzinfo=UTC)
        rule = timezones.get(value.tzid) if value.kind == AnchorKind.ZONED else floating_rule
        return resolve_wall_clock(rule, value.wall).instant

    def _rrule_text(self, component: Any, uid: str) -> Optional[str]:
        for name, message in getattr(component, "errors", []):
            if name == "RRULE":
                raise ValueError(f"Malformed RRULE: {message}")
        prop = component.get("RRULE")
        if isinstance(prop, list):
            if len(prop) > 1:
                logger.warning("Event %s declares %d RRULEs, only the first is used", uid, len(prop))
            prop = _first(prop)
        if prop is None:
            return None
        return prop.to_ical().decode()

    def _parse_event(
        self,
        component: Any,
        uid: str,
        timezones: TimezoneTable,
        floating_rule: TimezoneRule,
        overrides: dict[str, set[datetime]],
        errors: list[ExpansionError],
    ) -> Optional[Event]:
        summary = component.get("SUMMARY")
        summary = str(summary) if summary is not None else None

        recurrence_prop = _first(component.get("RECURRENCE-ID"))
        if recurrence_prop is not None:
            try:
                replaced = self._instant(_read_time(recurrence_prop), timezones, floating_rule)
            except UnknownTimezone as e:
                logger.warning("Ignoring override of %s: %s", uid, e)
                return None
            # Recorded even when the override itself is free, so the master drops it
            overrides.setdefault(uid, set()).add(replaced)
            if not self.include_transparent and not self._is_busy(component):
                return None
            return SingleEvent(
                event_id=f"{uid}@{replaced.strftime('%Y%m%dT%H%M%SZ')}",
                uid=uid,
                anchor=self._build_anchor(component, timezones, floating_rule),
                summary=summary,
                recurrence_id=replaced,
            )

        if not self.include_transparent and not self._is_busy(component):
            logger.debug("Skipping non-busy event %s", uid)
            return None

        anchor = self._build_anchor(component, timezones, floating_rule)
        try:
            rrule_text = self._rrule_text(component, uid)
        except ValueError as e:
            logger.warning("Skipping event %s: %s", uid, e)
            errors.append(ExpansionError(event_id=uid, kind="InvalidRecurrenceRule", message=str(e)))
            return None

        if rrule_text is None:
            return SingleEvent(event_id=uid, uid=uid, anchor=anchor, summary=summary)
        return RecurringEvent(event_id=uid, uid=uid, anchor=anchor, summary=summary, rrule=rrule_text)

    def _with_overrides(self, event: Event, overrides: dict[str, set[datetime]]) -> Event:
        if not isinstance(event, RecurringEvent) or event.uid not in overrides:
            return event
        return event.model_copy(update={"overridden_instants": frozenset(overrides[event.uid])})


def parse_ics(ics_content: str, settings: Any = None) -> ParsedFeed:
    """Parse ICS text with an ``ICSFeedParser`` built from ``settings``."""
    return ICSFeedParser(settings).parse(ics_content)
