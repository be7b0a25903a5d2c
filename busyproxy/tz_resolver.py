"""Timezone rule resolution.

Answers "which UTC offset is in effect at instant I in zone Z" from explicit
transition tables, either declared by a feed's VTIMEZONE blocks or derived from
the bundled IANA database. No function here consults the host's local time
settings.

Transition onsets follow RFC 5545: an onset is a wall-clock time expressed in
the offset in effect *before* the transition, so its absolute instant is
``onset - offset_before``.
"""

import logging
import re
import zoneinfo
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any, Optional

from dateutil.rrule import rrule, rrulestr

from .errors import UnknownTimezone
from .models import AmbiguityKind, AmbiguousWallClock, ResolvedInstant, TimezoneRule, Transition
from .timezone_utils import normalize_timezone_name

logger = logging.getLogger(__name__)

# Year range scanned when deriving a rule from the IANA database
ZONEINFO_FIRST_YEAR = 1970
ZONEINFO_LAST_YEAR = 2100

_UTC_UNTIL_RE = re.compile(r"UNTIL=(\d{8}T\d{6})Z", re.IGNORECASE)


@lru_cache(maxsize=512)
def _onset_recurrence(rule_text: str, onset: datetime) -> rrule:
    try:
        return rrulestr(rule_text, dtstart=onset)
    except (ValueError, TypeError) as e:
        raise UnknownTimezone(f"Unusable transition rule {rule_text!r}: {e}") from e


@lru_cache(maxsize=4096)
def _onsets_around(rule_text: str, onset: datetime, year: int) -> tuple[datetime, ...]:
    """Onsets of a recurring transition from Jan 1 of ``year - 1`` to the end of ``year``.

    VTIMEZONE rules from Exchange start in 1601, so each year's onsets are
    materialized once and reused for every lookup in that year.
    """
    recurrence = _onset_recurrence(rule_text, onset)
    return tuple(recurrence.between(datetime(year - 1, 1, 1), datetime(year + 1, 1, 1), inc=True))


@lru_cache(maxsize=1024)
def _onset_before_year(rule_text: str, onset: datetime, year: int) -> Optional[datetime]:
    # Rules sparser than yearly, or ended by UNTIL/COUNT
    return _onset_recurrence(rule_text, onset).before(datetime(year - 1, 1, 1))


def _latest_onset(transition: Transition, utc_naive: datetime) -> Optional[datetime]:
    """Return the latest onset of ``transition`` at or before ``utc_naive`` (as naive UTC)."""
    # Onsets are compared in the transition's own wall-clock convention.
    target = utc_naive + transition.offset_before
    candidates = []

    if transition.onset <= target:
        candidates.append(transition.onset)
        if transition.rrule:
            nearby = [
                hit
                for hit in _onsets_around(transition.rrule, transition.onset, target.year)
                if hit <= target
            ]
            if nearby:
                candidates.append(max(nearby))
            else:
                hit = _onset_before_year(transition.rrule, transition.onset, target.year)
                if hit is not None:
                    candidates.append(hit)

    candidates.extend(rdate for rdate in transition.rdates if rdate <= target)

    if not candidates:
        return None
    return max(candidates) - transition.offset_before


def offset_at(rule: TimezoneRule, instant: datetime) -> timedelta:
    """Return the UTC offset in effect at ``instant`` under ``rule``.

    Args:
        rule: Timezone rule to evaluate
        instant: Timezone-aware instant

    Returns:
        Offset from UTC (local = utc + offset)

    Raises:
        UnknownTimezone: If the instant predates every transition and the
            rule declares no base offset
        ValueError: If ``instant`` is naive
    """
    if instant.tzinfo is None:
        raise ValueError("offset_at() requires a timezone-aware instant")

    utc_naive = instant.astimezone(UTC).replace(tzinfo=None)

    best_onset: Optional[datetime] = None
    best_offset: Optional[timedelta] = None
    for transition in rule.transitions:
        onset = _latest_onset(transition, utc_naive)
        if onset is not None and (best_onset is None or onset > best_onset):
            best_onset = onset
            best_offset = transition.offset_after

    if best_offset is not None:
        return best_offset
    if rule.base_offset is not None:
        return rule.base_offset
    raise UnknownTimezone(
        f"{instant.isoformat()} is outside the coverage of timezone {rule.tzid!r}",
        tzid=rule.tzid,
    )


def wall_clock_at(rule: TimezoneRule, instant: datetime) -> datetime:
    """Return the naive wall-clock reading of ``instant`` in ``rule``'s zone."""
    utc = instant.astimezone(UTC)
    return (utc + offset_at(rule, utc)).replace(tzinfo=None)


def resolve_wall_clock(rule: TimezoneRule, wall: datetime) -> ResolvedInstant:
    """Map a naive wall-clock time onto an absolute UTC instant.

    Every offset the rule can produce is tried; an offset is consistent when
    the instant it yields actually has that offset in effect.

    Tie-breaks:
        - gap (no consistent offset, spring forward): the offset-after
        - overlap (two consistent offsets, fall back): the offset-before

    Both resolve to the larger of the two offsets involved. Ambiguous
    results carry an ``AmbiguousWallClock`` tag.

    Raises:
        UnknownTimezone: If the rule cannot resolve the surrounding instants
        ValueError: If ``wall`` is timezone-aware
    """
    if wall.tzinfo is not None:
        raise ValueError("resolve_wall_clock() requires a naive wall-clock datetime")

    offsets = rule.offsets
    if not offsets:
        raise UnknownTimezone(f"Timezone {rule.tzid!r} declares no offsets", tzid=rule.tzid)

    in_effect = {}
    for offset in sorted(offsets):
        in_effect[offset] = offset_at(rule, (wall - offset).replace(tzinfo=UTC))

    consistent = [offset for offset, actual in in_effect.items() if actual == offset]

    if len(consistent) == 1:
        chosen = consistent[0]
        return ResolvedInstant(instant=(wall - chosen).replace(tzinfo=UTC), offset=chosen)

    if consistent:
        kind = AmbiguityKind.OVERLAP
        chosen = max(consistent)
    else:
        kind = AmbiguityKind.GAP
        chosen = max(in_effect.values())

    tag = AmbiguousWallClock(kind=kind, wall_clock=wall, tzid=rule.tzid, chosen_offset=chosen)
    logger.debug("Wall-clock %s in %s falls in a %s, using offset %s", wall, rule.tzid, kind.value, chosen)
    return ResolvedInstant(instant=(wall - chosen).replace(tzinfo=UTC), offset=chosen, ambiguity=tag)


# --------------------------------------------------------------------------
# Rule construction
# --------------------------------------------------------------------------


def _localize_until(rule_text: str, offset_before: timedelta) -> str:
    """Rewrite a UTC UNTIL into the naive onset convention used by dateutil."""

    def _replace(match: "re.Match[str]") -> str:
        until_utc = datetime.strptime(match.group(1), "%Y%m%dT%H%M%S")
        return "UNTIL=" + (until_utc + offset_before).strftime("%Y%m%dT%H%M%S")

    return _UTC_UNTIL_RE.sub(_replace, rule_text)


def _naive(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    # DATE-only onsets are midnight
    return datetime(value.year, value.month, value.day)


def _rdates(prop: Any) -> tuple[datetime, ...]:
    if prop is None:
        return ()
    props = prop if isinstance(prop, list) else [prop]
    found = []
    for entry in props:
        for item in getattr(entry, "dts", []):
            value = item.dt
            if isinstance(value, tuple):
                # PERIOD values: the onset is the period start
                value = value[0]
            found.append(_naive(value))
    return tuple(found)


def rule_from_vtimezone(component: Any) -> TimezoneRule:
    """Build a ``TimezoneRule`` from an icalendar VTIMEZONE component.

    Args:
        component: ``icalendar.Timezone`` (or any component named VTIMEZONE)

    Raises:
        UnknownTimezone: If the block has no TZID or a malformed observance
    """
    tzid = str(component.get("TZID", "")).strip()
    if not tzid:
        raise UnknownTimezone("VTIMEZONE without TZID")

    transitions = []
    for sub in component.subcomponents:
        if sub.name not in ("STANDARD", "DAYLIGHT"):
            continue
        try:
            offset_before = sub["TZOFFSETFROM"].td
            offset_after = sub["TZOFFSETTO"].td
            onset = _naive(sub["DTSTART"].dt)
        except (KeyError, AttributeError) as e:
            raise UnknownTimezone(f"Malformed {sub.name} block in VTIMEZONE {tzid!r}: {e}", tzid=tzid) from e

        rule_text = None
        if sub.get("RRULE") is not None:
            rule_text = _localize_until(sub["RRULE"].to_ical().decode(), offset_before)

        transitions.append(
            Transition(
                name=sub.name,
                onset=onset,
                rrule=rule_text,
                rdates=_rdates(sub.get("RDATE")),
                offset_before=offset_before,
                offset_after=offset_after,
            )
        )

    transitions.sort(key=lambda t: t.onset - t.offset_before)
    base_offset = transitions[0].offset_before if transitions else None
    logger.debug("Loaded VTIMEZONE %s with %d observances", tzid, len(transitions))
    return TimezoneRule(tzid=tzid, transitions=tuple(transitions), base_offset=base_offset)


def _zone_offset(zone: zoneinfo.ZoneInfo, utc: datetime) -> timedelta:
    return utc.astimezone(zone).utcoffset() or timedelta(0)


@lru_cache(maxsize=64)
def rule_from_zoneinfo(tzid: str) -> TimezoneRule:
    """Derive a ``TimezoneRule`` from the bundled IANA database.

    The zone is sampled daily between ZONEINFO_FIRST_YEAR and
    ZONEINFO_LAST_YEAR; each change is narrowed to the exact second by
    bisection and recorded as a one-off transition.

    Raises:
        UnknownTimezone: If ``tzid`` is not an IANA identifier
    """
    try:
        zone = zoneinfo.ZoneInfo(tzid)
    except (zoneinfo.ZoneInfoNotFoundError, ValueError) as e:
        raise UnknownTimezone(f"Unknown timezone {tzid!r}", tzid=tzid) from e

    cursor = datetime(ZONEINFO_FIRST_YEAR, 1, 1, tzinfo=UTC)
    stop = datetime(ZONEINFO_LAST_YEAR + 1, 1, 1, tzinfo=UTC)
    base_offset = current = _zone_offset(zone, cursor)
    step = timedelta(days=1)
    transitions = []

    while cursor < stop:
        nxt = cursor + step
        offset = _zone_offset(zone, nxt)
        if offset != current:
            low, high = cursor, nxt
            while high - low > timedelta(seconds=1):
                mid = low + (high - low) / 2
                if _zone_offset(zone, mid) == current:
                    low = mid
                else:
                    high = mid
            changed_at = high.replace(microsecond=0)
            name = "DAYLIGHT" if changed_at.astimezone(zone).dst() else "STANDARD"
            transitions.append(
                Transition(
                    name=name,
                    onset=(changed_at + current).replace(tzinfo=None),
                    offset_before=current,
                    offset_after=offset,
                )
            )
            current = offset
        cursor = nxt

    logger.debug("Derived %d transitions for %s from zoneinfo", len(transitions), tzid)
    return TimezoneRule(tzid=tzid, transitions=tuple(transitions), base_offset=base_offset)


class TimezoneTable:
    """Read-only TZID -> TimezoneRule lookup for one feed.

    Lookup order is the feed's own VTIMEZONE blocks, then Windows/alias
    normalization against the IANA database. ``prefer_iana`` reverses that
    order for feeds whose VTIMEZONE blocks are known to be stale.
    """

    def __init__(self, rules: Optional[Mapping[str, TimezoneRule]] = None, *, prefer_iana: bool = False):
        self._rules = dict(rules or {})
        self.prefer_iana = prefer_iana

    def __contains__(self, tzid: object) -> bool:
        return tzid in self._rules

    def __len__(self) -> int:
        return len(self._rules)

    @property
    def declared_tzids(self) -> list[str]:
        """TZIDs declared by the feed itself."""
        return sorted(self._rules)

    def _from_feed(self, tzid: str) -> Optional[TimezoneRule]:
        return self._rules.get(tzid) or self._rules.get(tzid.strip('"'))

    def _from_iana(self, tzid: str) -> Optional[TimezoneRule]:
        name = normalize_timezone_name(tzid)
        if name is None:
            return None
        return rule_from_zoneinfo(name)

    def get(self, tzid: str) -> TimezoneRule:
        """Return the rule for ``tzid``.

        Raises:
            UnknownTimezone: If no source knows the identifier
        """
        lookups = (self._from_iana, self._from_feed) if self.prefer_iana else (self._from_feed, self._from_iana)
        for lookup in lookups:
            rule = lookup(tzid)
            if rule is not None:
                return rule
        raise UnknownTimezone(f"Unknown timezone {tzid!r}", tzid=tzid)
