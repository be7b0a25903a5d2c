"""Recurrence expansion for busy-feed generation.

Occurrences are generated as wall-clock candidates by dateutil, then each
candidate is resolved to a UTC instant through the event's own timezone rule.
The host's local timezone never takes part in the computation.
"""

import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Optional

from dateutil.rrule import DAILY, FR, MO, MONTHLY, SA, SU, TH, TU, WE, WEEKLY, YEARLY, rrule

from .errors import InvalidRecurrenceRule, UnknownTimezone
from .models import (
    AnchorKind,
    BusyBlock,
    Event,
    EventAnchor,
    EventRegistry,
    ExpansionError,
    ExpansionResult,
    Frequency,
    RecurrenceRule,
    RecurringEvent,
    TimezoneRule,
    Weekday,
    WeekdayRule,
)
from .tz_resolver import TimezoneTable, resolve_wall_clock

logger = logging.getLogger(__name__)

DURATION_ABSOLUTE = "absolute"
DURATION_WALL_CLOCK = "wall_clock"

DEFAULT_DURATION = timedelta(hours=1)
DEFAULT_ALL_DAY_DURATION = timedelta(days=1)

_UTC_RULE = TimezoneRule.fixed("UTC", timedelta(0))

_FREQUENCIES = {
    Frequency.DAILY: DAILY,
    Frequency.WEEKLY: WEEKLY,
    Frequency.MONTHLY: MONTHLY,
    Frequency.YEARLY: YEARLY,
}
_WEEKDAYS = {
    Weekday.MO: MO,
    Weekday.TU: TU,
    Weekday.WE: WE,
    Weekday.TH: TH,
    Weekday.FR: FR,
    Weekday.SA: SA,
    Weekday.SU: SU,
}
_SUB_DAILY = frozenset({"SECONDLY", "MINUTELY", "HOURLY"})
# Parts that would generate sub-daily or week-number based sets
_UNSUPPORTED_PARTS = frozenset({"BYSECOND", "BYMINUTE", "BYHOUR", "BYWEEKNO", "BYYEARDAY"})
_BYDAY_RE = re.compile(r"^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$")


@dataclass(frozen=True)
class ExpanderConfig:
    """Settings that shape recurrence expansion.

    Consolidates the expansion-related settings with explicit defaults.
    """

    max_occurrences_per_rule: int = 1000
    duration_mode: str = DURATION_ABSOLUTE
    floating_timezone: str = "UTC"

    @classmethod
    def from_settings(cls, settings: Any) -> "ExpanderConfig":
        """Extract expansion settings from a config object.

        Args:
            settings: Configuration object (``Config`` or any namespace)

        Returns:
            ExpanderConfig with values from settings or defaults
        """
        mode = getattr(settings, "duration_mode", DURATION_ABSOLUTE)
        if mode not in (DURATION_ABSOLUTE, DURATION_WALL_CLOCK):
            logger.warning("Unknown duration_mode %r, using %r", mode, DURATION_ABSOLUTE)
            mode = DURATION_ABSOLUTE
        return cls(
            max_occurrences_per_rule=getattr(settings, "max_occurrences_per_rule", 1000),
            duration_mode=mode,
            floating_timezone=getattr(settings, "floating_timezone", "UTC") or "UTC",
        )


# --------------------------------------------------------------------------
# RRULE parsing
# --------------------------------------------------------------------------


def _parse_until(value: str) -> datetime:
    if re.fullmatch(r"\d{8}", value):
        # DATE bounds include the whole day
        return datetime.strptime(value, "%Y%m%d") + timedelta(days=1, seconds=-1)
    if re.fullmatch(r"\d{8}T\d{6}Z", value, re.IGNORECASE):
        return datetime.strptime(value[:15], "%Y%m%dT%H%M%S").replace(tzinfo=UTC)
    if re.fullmatch(r"\d{8}T\d{6}", value):
        return datetime.strptime(value, "%Y%m%dT%H%M%S")
    raise ValueError(f"Invalid UNTIL value {value!r}")


def _parse_weekday_rule(value: str) -> WeekdayRule:
    match = _BYDAY_RE.match(value.strip().upper())
    if not match:
        raise ValueError(f"Invalid BYDAY value {value!r}")
    ordinal = int(match.group(1)) if match.group(1) else None
    if ordinal == 0 or (ordinal is not None and abs(ordinal) > 53):
        raise ValueError(f"BYDAY ordinal out of range in {value!r}")
    return WeekdayRule(weekday=Weekday(match.group(2)), ordinal=ordinal)


def _int_list(value: str) -> tuple[int, ...]:
    return tuple(int(part) for part in value.split(",") if part.strip())


def parse_rrule(text: str) -> RecurrenceRule:
    """Parse an RRULE value into a ``RecurrenceRule``.

    Args:
        text: RRULE value, with or without the ``RRULE:`` prefix
            (e.g. "FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE")

    Returns:
        Immutable RecurrenceRule

    Raises:
        InvalidRecurrenceRule: If the text is malformed or uses a sub-daily
            frequency or an unsupported BY-part
    """
    if not text or not text.strip():
        raise InvalidRecurrenceRule("Empty RRULE", rule_text=text)

    body = text.strip()
    if body.upper().startswith("RRULE:"):
        body = body[len("RRULE:"):]

    parts: dict[str, str] = {}
    for part in body.split(";"):
        if not part.strip():
            continue
        if "=" not in part:
            raise InvalidRecurrenceRule(f"Malformed RRULE part {part!r}", rule_text=text)
        key, value = part.split("=", 1)
        key = key.strip().upper()
        if key in parts:
            raise InvalidRecurrenceRule(f"Duplicate RRULE part {key}", rule_text=text)
        parts[key] = value.strip()

    freq = parts.pop("FREQ", "").upper()
    if not freq:
        raise InvalidRecurrenceRule("RRULE missing required FREQ", rule_text=text)
    if freq in _SUB_DAILY:
        raise InvalidRecurrenceRule(f"Unsupported sub-daily frequency {freq}", rule_text=text)

    try:
        fields: dict[str, Any] = {"frequency": Frequency(freq)}
        for key, value in parts.items():
            if key == "INTERVAL":
                fields["interval"] = int(value)
            elif key == "COUNT":
                fields["count"] = int(value)
            elif key == "UNTIL":
                fields["until"] = _parse_until(value)
            elif key == "BYDAY":
                fields["by_day"] = tuple(_parse_weekday_rule(v) for v in value.split(","))
            elif key == "BYMONTHDAY":
                fields["by_month_day"] = _int_list(value)
            elif key == "BYMONTH":
                fields["by_month"] = _int_list(value)
            elif key == "BYSETPOS":
                fields["by_set_pos"] = _int_list(value)
            elif key == "WKST":
                fields["week_start"] = Weekday(value.upper())
            elif key in _UNSUPPORTED_PARTS:
                raise InvalidRecurrenceRule(f"Unsupported RRULE part {key}", rule_text=text)
            elif key.startswith("X-"):
                logger.debug("Ignoring RRULE extension part %s", key)
            else:
                raise InvalidRecurrenceRule(f"Unknown RRULE part {key}", rule_text=text)
        return RecurrenceRule(**fields)
    except ValueError as e:
        # pydantic's ValidationError is a ValueError too
        raise InvalidRecurrenceRule(f"Invalid RRULE {text!r}: {e}", rule_text=text) from e


def _build_recurrence(rule: RecurrenceRule, dtstart: datetime) -> rrule:
    until = rule.until if rule.until is not None and rule.until.tzinfo is None else None
    byweekday = None
    if rule.by_day:
        byweekday = tuple(
            _WEEKDAYS[d.weekday] if d.ordinal is None else _WEEKDAYS[d.weekday](d.ordinal) for d in rule.by_day
        )
    try:
        return rrule(
            _FREQUENCIES[rule.frequency],
            dtstart=dtstart,
            interval=rule.interval,
            wkst=_WEEKDAYS[rule.week_start],
            count=rule.count,
            until=until,
            bysetpos=rule.by_set_pos or None,
            bymonth=rule.by_month or None,
            bymonthday=rule.by_month_day or None,
            byweekday=byweekday,
        )
    except ValueError as e:
        raise InvalidRecurrenceRule(f"Cannot evaluate recurrence: {e}") from e


# --------------------------------------------------------------------------
# Anchor handling
# --------------------------------------------------------------------------


def _anchor_rule(anchor: EventAnchor, timezones: TimezoneTable, config: ExpanderConfig) -> TimezoneRule:
    """Pick the rule that maps this anchor's wall-clock values to UTC."""
    if anchor.kind == AnchorKind.UTC:
        return _UTC_RULE
    if anchor.kind == AnchorKind.ZONED:
        return timezones.get(anchor.tzid or "")
    # Floating times are read in the configured zone, never the host's
    return timezones.get(config.floating_timezone)


def _wall_duration(anchor: EventAnchor) -> timedelta:
    if anchor.end is not None:
        duration = anchor.end - anchor.start
    elif anchor.duration is not None:
        duration = anchor.duration
    else:
        duration = DEFAULT_ALL_DAY_DURATION if anchor.all_day else DEFAULT_DURATION

    if duration < timedelta(0):
        logger.debug("Negative duration %s treated as zero-length", duration)
        return timedelta(0)
    return duration


def _exact_duration(anchor: EventAnchor) -> Optional[timedelta]:
    """Return the elapsed length of anchors not bound to a same-zone DTEND.

    DURATION values and mixed-zone DTENDs are exact elapsed time, except
    whole days and weeks, which are nominal and follow the wall clock.
    Returns None when the end must be re-resolved on the wall clock.
    """
    if anchor.end is not None:
        return None
    duration = _wall_duration(anchor)
    if duration.days and not duration.seconds and not duration.microseconds:
        return None
    return duration


def _resolve(rule: TimezoneRule, wall: datetime) -> datetime:
    return resolve_wall_clock(rule, wall).instant


def _overlaps(start: datetime, end: datetime, window_start: datetime, window_end: datetime, inclusive: bool) -> bool:
    if inclusive:
        return start <= window_end and end >= window_start
    if end > start:
        return start < window_end and end > window_start
    # Zero-length occurrences count when their instant is inside the window
    return window_start <= start < window_end


def _check_window(window_start: datetime, window_end: datetime) -> None:
    if window_start.tzinfo is None or window_end.tzinfo is None:
        raise ValueError("Query window bounds must be timezone-aware")
    if window_end < window_start:
        raise ValueError("Query window ends before it starts")


# --------------------------------------------------------------------------
# Expansion
# --------------------------------------------------------------------------


def _expand_single(
    event: Event,
    rule: TimezoneRule,
    window_start: datetime,
    window_end: datetime,
    inclusive: bool,
) -> Iterator[BusyBlock]:
    anchor = event.anchor
    start = _resolve(rule, anchor.start)
    exact = _exact_duration(anchor)
    if exact is not None:
        end = start + exact
    else:
        end = _resolve(rule, anchor.start + _wall_duration(anchor))
    if end < start:
        end = start
    if _overlaps(start, end, window_start, window_end, inclusive):
        yield BusyBlock(event_id=event.event_id, start=start, end=end)


def _expand_recurring(
    event: RecurringEvent,
    rule: TimezoneRule,
    window_start: datetime,
    window_end: datetime,
    inclusive: bool,
    config: ExpanderConfig,
) -> Iterator[BusyBlock]:
    recurrence_rule = parse_rrule(event.rrule)
    anchor = event.anchor
    wall_duration = _wall_duration(anchor)
    exact = _exact_duration(anchor)

    if exact is not None:
        absolute_duration = exact
    else:
        anchor_start = _resolve(rule, anchor.start)
        absolute_duration = max(_resolve(rule, anchor.start + wall_duration) - anchor_start, timedelta(0))

    until_utc = recurrence_rule.until if recurrence_rule.until and recurrence_rule.until.tzinfo else None
    recurrence = _build_recurrence(recurrence_rule, anchor.start)

    # Skip candidates that cannot reach the window. The margin covers any
    # UTC offset plus the occurrence length.
    floor = window_start.astimezone(UTC).replace(tzinfo=None) - absolute_duration - timedelta(days=2)
    candidates = recurrence.xafter(floor, inc=True) if floor > anchor.start else iter(recurrence)

    previous: Optional[datetime] = None
    examined = 0
    for wall in candidates:
        examined += 1
        if examined > config.max_occurrences_per_rule:
            logger.warning(
                "Event %s hit the %d occurrence cap, remaining occurrences dropped",
                event.event_id,
                config.max_occurrences_per_rule,
            )
            return

        start = _resolve(rule, wall)
        if until_utc is not None and start > until_utc:
            return
        if start > window_end or (start == window_end and not inclusive):
            return
        if previous is not None and start <= previous:
            logger.debug("Event %s: candidate %s collapses onto %s, skipped", event.event_id, wall, previous)
            continue
        previous = start

        if start in event.overridden_instants:
            continue

        if exact is None and config.duration_mode == DURATION_WALL_CLOCK:
            end = max(_resolve(rule, wall + wall_duration), start)
        else:
            end = start + absolute_duration

        if _overlaps(start, end, window_start, window_end, inclusive):
            yield BusyBlock(event_id=event.event_id, start=start, end=end)


def expand(
    event: Event,
    window_start: datetime,
    window_end: datetime,
    inclusive: bool = False,
    *,
    timezones: Optional[TimezoneTable] = None,
    config: Optional[ExpanderConfig] = None,
) -> Iterator[BusyBlock]:
    """Yield the busy blocks of ``event`` inside the query window.

    The window is half-open ``[window_start, window_end)`` unless
    ``inclusive`` is set, in which case both bounds are closed. Blocks are
    produced lazily in strictly increasing start order; the function keeps no
    state between calls.

    Args:
        event: Single or recurring event
        window_start: Aware start of the query window
        window_end: Aware end of the query window
        inclusive: Treat the window as a closed interval
        timezones: TZID lookup for the feed (defaults to IANA only)
        config: Expansion settings

    Raises:
        InvalidRecurrenceRule: If the event's RRULE is malformed
        UnknownTimezone: If the anchor's timezone cannot be resolved
    """
    _check_window(window_start, window_end)
    timezones = timezones if timezones is not None else TimezoneTable()
    config = config or ExpanderConfig()
    window_start = window_start.astimezone(UTC)
    window_end = window_end.astimezone(UTC)

    rule = _anchor_rule(event.anchor, timezones, config)
    if isinstance(event, RecurringEvent):
        yield from _expand_recurring(event, rule, window_start, window_end, inclusive, config)
    else:
        yield from _expand_single(event, rule, window_start, window_end, inclusive)


def expand_all(
    registry: EventRegistry,
    window_start: datetime,
    window_end: datetime,
    inclusive: bool = False,
    *,
    timezones: Optional[TimezoneTable] = None,
    config: Optional[ExpanderConfig] = None,
) -> ExpansionResult:
    """Expand every event in ``registry``, tolerating per-event failures.

    Events whose rule or timezone cannot be resolved contribute no blocks and
    an ``ExpansionError`` record; the rest of the feed is still produced.

    Returns:
        ExpansionResult with blocks sorted by ``(start, event_id)``
    """
    _check_window(window_start, window_end)
    blocks: list[BusyBlock] = []
    errors: list[ExpansionError] = []

    for event in registry:
        try:
            event_blocks = list(
                expand(event, window_start, window_end, inclusive, timezones=timezones, config=config)
            )
        except (InvalidRecurrenceRule, UnknownTimezone) as e:
            logger.warning("Skipping event %s: %s", event.event_id, e)
            errors.append(ExpansionError(event_id=event.event_id, kind=type(e).__name__, message=str(e)))
            continue
        blocks.extend(event_blocks)

    blocks.sort(key=lambda b: (b.start, b.event_id))
    logger.debug(
        "Expanded %d events into %d busy blocks (%d errors)", len(registry), len(blocks), len(errors)
    )
    return ExpansionResult(
        window_start=window_start.astimezone(UTC),
        window_end=window_end.astimezone(UTC),
        blocks=tuple(blocks),
        errors=tuple(errors),
    )
