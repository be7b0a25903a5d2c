"""Data models for busy-feed generation."""

import logging
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime, timedelta
from enum import Enum
from types import MappingProxyType
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator

from .timezone_utils import now_utc as _now_utc

logger = logging.getLogger(__name__)


def _require_naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        raise ValueError("wall-clock datetimes must be naive")
    return value


def _require_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError("instants must be timezone-aware")
    return value.astimezone(UTC)


# --------------------------------------------------------------------------
# Timezone rules
# --------------------------------------------------------------------------


class Transition(BaseModel):
    """One STANDARD or DAYLIGHT observance of a timezone.

    ``onset`` is the wall-clock time of the first transition, expressed in the
    offset that was in effect *before* it (RFC 5545 VTIMEZONE convention).
    ``rrule`` and ``rdates`` describe later onsets in the same convention.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(default="STANDARD", description="STANDARD or DAYLIGHT")
    onset: datetime = Field(..., description="First onset, naive wall-clock")
    rrule: Optional[str] = Field(default=None, description="Recurrence of the onset")
    rdates: tuple[datetime, ...] = Field(default=(), description="Extra naive onsets")
    offset_before: timedelta
    offset_after: timedelta

    @field_validator("onset")
    @classmethod
    def _naive_onset(cls, value: datetime) -> datetime:
        return _require_naive(value)

    @field_validator("rdates")
    @classmethod
    def _naive_rdates(cls, value: tuple[datetime, ...]) -> tuple[datetime, ...]:
        for rdate in value:
            _require_naive(rdate)
        return value


class TimezoneRule(BaseModel):
    """All transitions known for one TZID."""

    model_config = ConfigDict(frozen=True)

    tzid: str
    transitions: tuple[Transition, ...] = ()
    base_offset: Optional[timedelta] = Field(
        default=None, description="Offset in effect before the earliest transition"
    )

    @property
    def offsets(self) -> frozenset[timedelta]:
        """Every offset this rule can produce."""
        found = {t.offset_after for t in self.transitions}
        found.update(t.offset_before for t in self.transitions)
        if self.base_offset is not None:
            found.add(self.base_offset)
        return frozenset(found)

    @classmethod
    def fixed(cls, tzid: str, offset: timedelta) -> "TimezoneRule":
        """Build a rule with a single constant offset."""
        return cls(tzid=tzid, base_offset=offset)


class AmbiguityKind(str, Enum):
    """How a wall-clock time failed to map to exactly one instant."""

    GAP = "gap"
    OVERLAP = "overlap"


class AmbiguousWallClock(BaseModel):
    """Informational tag for a wall-clock time resolved by tie-break."""

    model_config = ConfigDict(frozen=True)

    kind: AmbiguityKind
    wall_clock: datetime
    tzid: str
    chosen_offset: timedelta


class ResolvedInstant(BaseModel):
    """A wall-clock time mapped onto an absolute UTC instant."""

    model_config = ConfigDict(frozen=True)

    instant: datetime
    offset: timedelta
    ambiguity: Optional[AmbiguousWallClock] = None

    @field_validator("instant")
    @classmethod
    def _utc_instant(cls, value: datetime) -> datetime:
        return _require_utc(value)


# --------------------------------------------------------------------------
# Recurrence rules
# --------------------------------------------------------------------------


class Frequency(str, Enum):
    """Supported RRULE frequencies."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class Weekday(str, Enum):
    """RFC 5545 two-letter weekday codes."""

    MO = "MO"
    TU = "TU"
    WE = "WE"
    TH = "TH"
    FR = "FR"
    SA = "SA"
    SU = "SU"


class WeekdayRule(BaseModel):
    """A BYDAY entry, e.g. ``-1SU`` (last Sunday) or plain ``TH``."""

    model_config = ConfigDict(frozen=True)

    weekday: Weekday
    ordinal: Optional[int] = Field(default=None, description="Nth occurrence, negative from end")

    def __str__(self) -> str:
        if self.ordinal is None:
            return self.weekday.value
        return f"{self.ordinal}{self.weekday.value}"


class RecurrenceRule(BaseModel):
    """A parsed RRULE restricted to daily and coarser frequencies."""

    model_config = ConfigDict(frozen=True)

    frequency: Frequency
    interval: int = Field(default=1, ge=1)
    by_day: tuple[WeekdayRule, ...] = ()
    by_month_day: tuple[int, ...] = ()
    by_month: tuple[int, ...] = ()
    by_set_pos: tuple[int, ...] = ()
    week_start: Weekday = Weekday.MO
    count: Optional[int] = Field(default=None, ge=1)
    until: Optional[datetime] = Field(
        default=None, description="Aware UTC bound, or naive wall-clock bound"
    )

    @model_validator(mode="after")
    def _count_or_until(self) -> "RecurrenceRule":
        if self.count is not None and self.until is not None:
            raise ValueError("COUNT and UNTIL are mutually exclusive")
        return self

    @field_validator("by_month_day")
    @classmethod
    def _month_day_range(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        for day in value:
            if day == 0 or not -31 <= day <= 31:
                raise ValueError(f"BYMONTHDAY out of range: {day}")
        return value

    @field_validator("by_month")
    @classmethod
    def _month_range(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        for month in value:
            if not 1 <= month <= 12:
                raise ValueError(f"BYMONTH out of range: {month}")
        return value

    @field_validator("by_set_pos")
    @classmethod
    def _set_pos_range(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        for pos in value:
            if pos == 0 or not -366 <= pos <= 366:
                raise ValueError(f"BYSETPOS out of range: {pos}")
        return value


# --------------------------------------------------------------------------
# Events
# --------------------------------------------------------------------------


class AnchorKind(str, Enum):
    """How an anchor's wall-clock values map onto absolute time."""

    ZONED = "zoned"
    UTC = "utc"
    FLOATING = "floating"


class EventAnchor(BaseModel):
    """Start/end of an event exactly as the feed declared them."""

    model_config = ConfigDict(frozen=True)

    start: datetime = Field(..., description="Naive wall-clock start")
    end: Optional[datetime] = Field(default=None, description="Naive wall-clock end")
    duration: Optional[timedelta] = None
    tzid: Optional[str] = None
    kind: AnchorKind = AnchorKind.FLOATING
    all_day: bool = False

    @field_validator("start", "end")
    @classmethod
    def _naive_wall_clock(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _require_naive(value)

    @model_validator(mode="after")
    def _zoned_needs_tzid(self) -> "EventAnchor":
        if self.kind == AnchorKind.ZONED and not self.tzid:
            raise ValueError("zoned anchors require a tzid")
        return self


class CalendarEvent(BaseModel):
    """Fields shared by single and recurring events.

    ``summary`` is kept only for the access-controlled debug endpoints and is
    never written to the published feed.
    """

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(..., description="Registry key")
    uid: str = Field(..., description="UID as declared by the feed")
    anchor: EventAnchor
    summary: Optional[str] = None


class SingleEvent(CalendarEvent):
    """A one-off event, or a RECURRENCE-ID override of one instance."""

    kind: Literal["single"] = "single"
    recurrence_id: Optional[datetime] = Field(
        default=None, description="UTC instant of the replaced occurrence"
    )

    @field_validator("recurrence_id")
    @classmethod
    def _utc_recurrence_id(cls, value: Optional[datetime]) -> Optional[datetime]:
        return None if value is None else _require_utc(value)


class RecurringEvent(CalendarEvent):
    """An event whose occurrences are generated from an RRULE."""

    kind: Literal["recurring"] = "recurring"
    rrule: str = Field(..., description="Raw RRULE value text")
    overridden_instants: frozenset[datetime] = Field(
        default=frozenset(), description="UTC starts replaced by RECURRENCE-ID overrides"
    )

    @field_validator("overridden_instants")
    @classmethod
    def _utc_overrides(cls, value: frozenset[datetime]) -> frozenset[datetime]:
        return frozenset(_require_utc(v) for v in value)


Event = Union[SingleEvent, RecurringEvent]


class EventRegistry:
    """Read-only collection of parsed events keyed by event id.

    Recurring masters are keyed by UID; RECURRENCE-ID overrides are keyed
    ``uid@<recurrence-id>``. The first event seen for a key wins.
    """

    def __init__(self, events: Iterable[Event] = ()):
        entries: dict[str, Event] = {}
        for event in events:
            if event.event_id in entries:
                logger.warning("Duplicate event id %r ignored", event.event_id)
                continue
            entries[event.event_id] = event
        self._events = MappingProxyType(entries)

    @property
    def events(self) -> MappingProxyType:
        return self._events

    def get(self, event_id: str) -> Optional[Event]:
        return self._events.get(event_id)

    def __iter__(self) -> Iterator[Event]:
        return iter(self._events.values())

    def __len__(self) -> int:
        return len(self._events)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._events


# --------------------------------------------------------------------------
# Expansion output
# --------------------------------------------------------------------------


class BusyBlock(BaseModel):
    """One materialized busy interval. Identity is ``(event_id, start)``."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _utc_instants(cls, value: datetime) -> datetime:
        return _require_utc(value)

    @field_serializer("start", "end")
    def _serialize_instant(self, value: datetime) -> str:
        return value.strftime("%Y-%m-%dT%H:%M:%SZ")


class ExpansionError(BaseModel):
    """Record of one event that could not be expanded."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    kind: str = Field(..., description="Exception class name")
    message: str


class ExpansionResult(BaseModel):
    """Busy blocks for a whole feed plus per-event failures."""

    model_config = ConfigDict(frozen=True)

    window_start: datetime
    window_end: datetime
    blocks: tuple[BusyBlock, ...] = ()
    errors: tuple[ExpansionError, ...] = ()

    @property
    def success(self) -> bool:
        return not self.errors


# --------------------------------------------------------------------------
# Upstream fetching
# --------------------------------------------------------------------------


class ICSSource(BaseModel):
    """Configuration for the upstream ICS feed."""

    name: str = Field(default="source", description="Human-readable name for logging")
    url: str = Field(..., description="ICS calendar URL")
    timeout: int = Field(default=30, description="HTTP timeout in seconds")
    custom_headers: dict[str, str] = Field(default_factory=dict, description="Extra HTTP headers")


class ICSResponse(BaseModel):
    """Result of one upstream fetch."""

    success: bool
    content: Optional[str] = None
    status_code: Optional[int] = None
    headers: dict[str, str] = Field(default_factory=dict)
    fetch_time: datetime = Field(default_factory=_now_utc)
