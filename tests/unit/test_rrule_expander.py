"""Unit tests for busyproxy.rrule_expander."""

import logging
import os
import time
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta

import pytest
from dateutil.rrule import WEEKLY, rrule

from busyproxy.errors import InvalidRecurrenceRule, UnknownTimezone
from busyproxy.ics_writer import render_busy_ics
from busyproxy.models import (
    AnchorKind,
    BusyBlock,
    EventAnchor,
    EventRegistry,
    Frequency,
    RecurringEvent,
    SingleEvent,
    Weekday,
)
from busyproxy.rrule_expander import (
    DURATION_ABSOLUTE,
    DURATION_WALL_CLOCK,
    ExpanderConfig,
    expand,
    expand_all,
    parse_rrule,
)
from busyproxy.tz_resolver import rule_from_zoneinfo, wall_clock_at

pytestmark = pytest.mark.unit


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=UTC)


def berlin_anchor(start: datetime, end: datetime | None = None) -> EventAnchor:
    return EventAnchor(start=start, end=end, tzid="Europe/Berlin", kind=AnchorKind.ZONED)


def recurring(rule: str, anchor: EventAnchor, event_id: str = "weekly@example.com", **extra) -> RecurringEvent:
    return RecurringEvent(event_id=event_id, uid=event_id, anchor=anchor, rrule=rule, **extra)


def starts(blocks) -> list[datetime]:
    return [block.start for block in blocks]


@pytest.fixture
def berlin_weekly() -> RecurringEvent:
    """FREQ=WEEKLY at 08:00-09:00 Europe/Berlin from Thursday 2025-08-07."""
    return recurring(
        "FREQ=WEEKLY",
        berlin_anchor(datetime(2025, 8, 7, 8, 0), datetime(2025, 8, 7, 9, 0)),
    )


@pytest.fixture
def host_timezone(request: pytest.FixtureRequest) -> Iterator[str]:
    """Force the process-wide local timezone for the duration of a test."""
    if not hasattr(time, "tzset"):
        pytest.skip("time.tzset() is not available on this platform")
    original = os.environ.get("TZ")
    os.environ["TZ"] = request.param
    time.tzset()
    try:
        yield request.param
    finally:
        if original is None:
            os.environ.pop("TZ", None)
        else:
            os.environ["TZ"] = original
        time.tzset()


class TestBerlinWeeklyScenarios:
    """Weekly 08:00 Europe/Berlin meeting around the October 2025 DST change."""

    def test_expand_when_september_window_then_single_cest_occurrence(self, berlin_weekly: RecurringEvent) -> None:
        blocks = list(expand(berlin_weekly, utc(2025, 9, 24), utc(2025, 9, 26)))

        assert len(blocks) == 1
        assert blocks[0].start == utc(2025, 9, 25, 6, 0)
        assert blocks[0].end == utc(2025, 9, 25, 7, 0)
        assert blocks[0].event_id == "weekly@example.com"

    def test_expand_when_window_between_thursdays_then_empty(self, berlin_weekly: RecurringEvent) -> None:
        """Oct 24-27 contains the DST change but no Thursday."""
        assert list(expand(berlin_weekly, utc(2025, 10, 24), utc(2025, 10, 27))) == []

    def test_expand_when_window_straddles_dst_end_then_offset_changes(self, berlin_weekly: RecurringEvent) -> None:
        blocks = list(expand(berlin_weekly, utc(2025, 10, 20), utc(2025, 11, 3)))

        assert starts(blocks) == [utc(2025, 10, 23, 6, 0), utc(2025, 10, 30, 7, 0)]
        assert [b.end - b.start for b in blocks] == [timedelta(hours=1), timedelta(hours=1)]

    def test_expand_when_october_to_november_then_shift_lands_on_transition_week(
        self, berlin_weekly: RecurringEvent
    ) -> None:
        blocks = list(expand(berlin_weekly, utc(2025, 10, 1), utc(2025, 11, 15)))

        assert starts(blocks) == [
            utc(2025, 10, 2, 6, 0),
            utc(2025, 10, 9, 6, 0),
            utc(2025, 10, 16, 6, 0),
            utc(2025, 10, 23, 6, 0),
            utc(2025, 10, 30, 7, 0),
            utc(2025, 11, 6, 7, 0),
            utc(2025, 11, 13, 7, 0),
        ]

    @pytest.mark.parametrize("host_timezone", ["UTC", "Etc/GMT-2", "Etc/GMT+5"], indirect=True)
    def test_expand_when_host_timezone_changes_then_output_identical(
        self, berlin_weekly: RecurringEvent, host_timezone: str
    ) -> None:
        blocks = list(expand(berlin_weekly, utc(2025, 10, 1), utc(2025, 11, 15)))
        ics = render_busy_ics(blocks, generated_at=utc(2025, 10, 1))

        assert starts(blocks)[3:5] == [utc(2025, 10, 23, 6, 0), utc(2025, 10, 30, 7, 0)]
        assert "DTSTART:20251023T060000Z" in ics
        assert "DTSTART:20251030T070000Z" in ics
        assert ics == render_busy_ics(
            [
                BusyBlock(event_id="weekly@example.com", start=s, end=s + timedelta(hours=1))
                for s in starts(blocks)
            ],
            generated_at=utc(2025, 10, 1),
        )


class TestExpansionProperties:
    """Round-trip, idempotence and ordering guarantees."""

    def test_expand_when_recurring_then_each_start_round_trips_to_candidate(
        self, berlin_weekly: RecurringEvent
    ) -> None:
        candidates = set(rrule(WEEKLY, dtstart=datetime(2025, 8, 7, 8, 0), count=60))
        rule = rule_from_zoneinfo("Europe/Berlin")

        blocks = list(expand(berlin_weekly, utc(2025, 8, 1), utc(2026, 6, 1)))

        assert blocks
        for block in blocks:
            assert wall_clock_at(rule, block.start) in candidates

    def test_expand_when_called_twice_then_identical(self, berlin_weekly: RecurringEvent) -> None:
        first = list(expand(berlin_weekly, utc(2025, 9, 1), utc(2025, 12, 1)))
        second = list(expand(berlin_weekly, utc(2025, 9, 1), utc(2025, 12, 1)))
        assert first == second

    @pytest.mark.parametrize(
        "rule",
        [
            "FREQ=DAILY",
            "FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE,FR",
            "FREQ=MONTHLY;BYDAY=-1FR",
            "FREQ=MONTHLY;BYDAY=MO,TU,WE,TH,FR;BYSETPOS=-1",
            "FREQ=YEARLY;BYMONTH=3,10;BYDAY=-1SU",
        ],
    )
    def test_expand_when_any_rule_then_strictly_increasing(self, rule: str) -> None:
        event = recurring(rule, berlin_anchor(datetime(2025, 1, 3, 2, 30), datetime(2025, 1, 3, 3, 30)))

        result = starts(expand(event, utc(2025, 1, 1), utc(2027, 1, 1)))

        assert result
        assert all(a < b for a, b in zip(result, result[1:]))

    def test_expand_when_last_weekday_rule_then_matches_calendar(self) -> None:
        event = recurring(
            "FREQ=MONTHLY;BYDAY=MO,TU,WE,TH,FR;BYSETPOS=-1",
            EventAnchor(start=datetime(2025, 9, 1, 16, 0), kind=AnchorKind.UTC),
        )
        assert starts(expand(event, utc(2025, 9, 1), utc(2025, 11, 1))) == [
            utc(2025, 9, 30, 16, 0),
            utc(2025, 10, 31, 16, 0),
        ]


class TestSingleEvents:
    """Non-recurring events produce one block iff they overlap the window."""

    @pytest.mark.parametrize(
        ("start", "end", "expected"),
        [
            (utc(2025, 9, 10, 9), utc(2025, 9, 10, 10), 1),
            (utc(2025, 8, 31, 23), utc(2025, 9, 1, 1), 1),
            (utc(2025, 9, 30, 23), utc(2025, 10, 1, 1), 1),
            (utc(2025, 8, 31, 22), utc(2025, 9, 1, 0), 0),
            (utc(2025, 10, 1, 0), utc(2025, 10, 1, 1), 0),
            (utc(2025, 11, 1, 9), utc(2025, 11, 1, 10), 0),
        ],
    )
    def test_expand_when_single_event_then_overlap_decides(
        self, start: datetime, end: datetime, expected: int
    ) -> None:
        event = SingleEvent(
            event_id="one-off",
            uid="one-off",
            anchor=EventAnchor(
                start=start.replace(tzinfo=None), end=end.replace(tzinfo=None), kind=AnchorKind.UTC
            ),
        )
        assert len(list(expand(event, utc(2025, 9, 1), utc(2025, 10, 1)))) == expected

    def test_expand_when_touching_window_start_then_inclusive_only(self) -> None:
        event = SingleEvent(
            event_id="edge",
            uid="edge",
            anchor=EventAnchor(start=datetime(2025, 8, 31, 23), end=datetime(2025, 9, 1), kind=AnchorKind.UTC),
        )
        assert list(expand(event, utc(2025, 9, 1), utc(2025, 10, 1))) == []
        assert len(list(expand(event, utc(2025, 9, 1), utc(2025, 10, 1), inclusive=True))) == 1

    def test_expand_when_no_end_then_one_hour_default(self) -> None:
        event = SingleEvent(
            event_id="open", uid="open", anchor=EventAnchor(start=datetime(2025, 9, 10, 9), kind=AnchorKind.UTC)
        )
        (block,) = expand(event, utc(2025, 9, 1), utc(2025, 10, 1))
        assert block.end - block.start == timedelta(hours=1)

    def test_expand_when_all_day_without_end_then_one_day(self) -> None:
        event = SingleEvent(
            event_id="holiday",
            uid="holiday",
            anchor=EventAnchor(start=datetime(2025, 9, 10), kind=AnchorKind.FLOATING, all_day=True),
        )
        (block,) = expand(event, utc(2025, 9, 1), utc(2025, 10, 1))
        assert (block.start, block.end) == (utc(2025, 9, 10), utc(2025, 9, 11))

    def test_expand_when_zero_length_at_window_start_then_included(self) -> None:
        event = SingleEvent(
            event_id="instant",
            uid="instant",
            anchor=EventAnchor(start=datetime(2025, 9, 1), end=datetime(2025, 9, 1), kind=AnchorKind.UTC),
        )
        assert len(list(expand(event, utc(2025, 9, 1), utc(2025, 10, 1)))) == 1
        assert list(expand(event, utc(2025, 8, 1), utc(2025, 9, 1))) == []

    def test_expand_when_floating_then_uses_configured_zone(self) -> None:
        event = SingleEvent(
            event_id="floating", uid="floating", anchor=EventAnchor(start=datetime(2025, 9, 10, 9), kind=AnchorKind.FLOATING)
        )
        config = ExpanderConfig(floating_timezone="America/New_York")

        (block,) = expand(event, utc(2025, 9, 1), utc(2025, 10, 1), config=config)

        assert block.start == utc(2025, 9, 10, 13)

    def test_expand_when_window_naive_then_raises(self, berlin_weekly: RecurringEvent) -> None:
        with pytest.raises(ValueError):
            list(expand(berlin_weekly, datetime(2025, 9, 1), utc(2025, 10, 1)))

    def test_expand_when_window_reversed_then_raises(self, berlin_weekly: RecurringEvent) -> None:
        with pytest.raises(ValueError):
            list(expand(berlin_weekly, utc(2025, 10, 1), utc(2025, 9, 1)))


class TestRuleBounds:
    """COUNT, UNTIL, overrides and the occurrence cap."""

    def test_expand_when_count_then_stops(self) -> None:
        event = recurring("FREQ=DAILY;COUNT=3", EventAnchor(start=datetime(2025, 9, 1, 9), kind=AnchorKind.UTC))
        assert len(list(expand(event, utc(2025, 9, 1), utc(2025, 10, 1)))) == 3

    def test_expand_when_count_and_window_after_start_then_counts_from_dtstart(self) -> None:
        event = recurring("FREQ=DAILY;COUNT=5", EventAnchor(start=datetime(2025, 9, 1, 9), kind=AnchorKind.UTC))
        assert starts(expand(event, utc(2025, 9, 4), utc(2025, 10, 1))) == [utc(2025, 9, 4, 9), utc(2025, 9, 5, 9)]

    def test_expand_when_utc_until_then_bound_is_inclusive(self) -> None:
        event = recurring(
            "FREQ=DAILY;UNTIL=20250903T070000Z", berlin_anchor(datetime(2025, 9, 1, 9), datetime(2025, 9, 1, 10))
        )
        assert starts(expand(event, utc(2025, 8, 1), utc(2025, 10, 1))) == [
            utc(2025, 9, 1, 7),
            utc(2025, 9, 2, 7),
            utc(2025, 9, 3, 7),
        ]

    def test_expand_when_date_until_then_covers_whole_day(self) -> None:
        event = recurring(
            "FREQ=DAILY;UNTIL=20250903", berlin_anchor(datetime(2025, 9, 1, 18), datetime(2025, 9, 1, 19))
        )
        assert len(list(expand(event, utc(2025, 8, 1), utc(2025, 10, 1)))) == 3

    def test_expand_when_instance_overridden_then_master_skips_it(self) -> None:
        event = recurring(
            "FREQ=WEEKLY",
            berlin_anchor(datetime(2025, 8, 7, 8), datetime(2025, 8, 7, 9)),
            overridden_instants=frozenset({utc(2025, 9, 25, 6)}),
        )
        assert starts(expand(event, utc(2025, 9, 17), utc(2025, 10, 3))) == [
            utc(2025, 9, 18, 6),
            utc(2025, 10, 2, 6),
        ]

    def test_expand_when_cap_reached_then_truncates_and_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        event = recurring("FREQ=DAILY", EventAnchor(start=datetime(2025, 1, 1, 9), kind=AnchorKind.UTC))
        config = ExpanderConfig(max_occurrences_per_rule=5)

        with caplog.at_level(logging.WARNING, logger="busyproxy.rrule_expander"):
            blocks = list(expand(event, utc(2025, 1, 1), utc(2026, 1, 1), config=config))

        assert len(blocks) == 5
        assert "occurrence cap" in caplog.text

    def test_expand_when_long_running_rule_then_window_far_from_start(self) -> None:
        event = recurring("FREQ=DAILY", EventAnchor(start=datetime(2000, 1, 1, 9), kind=AnchorKind.UTC))
        config = ExpanderConfig(max_occurrences_per_rule=50)

        blocks = list(expand(event, utc(2025, 9, 1), utc(2025, 9, 8), config=config))

        assert starts(blocks)[0] == utc(2025, 9, 1, 9)
        assert len(blocks) == 7


class TestDurationModes:
    """Absolute (default) versus wall-clock preserving durations."""

    @pytest.fixture
    def overnight(self) -> RecurringEvent:
        """Daily 00:00-06:00 Europe/Berlin; the Oct 26 instance spans the DST end."""
        return recurring(
            "FREQ=DAILY",
            berlin_anchor(datetime(2025, 10, 20, 0, 0), datetime(2025, 10, 20, 6, 0)),
            event_id="overnight",
        )

    def test_expand_when_absolute_duration_then_fixed_elapsed_time(self, overnight: RecurringEvent) -> None:
        config = ExpanderConfig(duration_mode=DURATION_ABSOLUTE)
        (block,) = expand(overnight, utc(2025, 10, 25, 23), utc(2025, 10, 26, 1), config=config)

        assert block.start == utc(2025, 10, 25, 22)
        assert block.end == utc(2025, 10, 26, 4)

    def test_expand_when_wall_clock_duration_then_ends_at_local_six(self, overnight: RecurringEvent) -> None:
        config = ExpanderConfig(duration_mode=DURATION_WALL_CLOCK)
        (block,) = expand(overnight, utc(2025, 10, 25, 23), utc(2025, 10, 26, 1), config=config)

        assert block.start == utc(2025, 10, 25, 22)
        assert block.end == utc(2025, 10, 26, 5)

    def test_from_settings_when_unknown_mode_then_absolute(self) -> None:
        class Settings:
            duration_mode = "elastic"
            max_occurrences_per_rule = 10
            floating_timezone = "Europe/Paris"

        config = ExpanderConfig.from_settings(Settings())
        assert config.duration_mode == DURATION_ABSOLUTE
        assert config.max_occurrences_per_rule == 10
        assert config.floating_timezone == "Europe/Paris"


class TestDurationProperty:
    """DURATION values measure elapsed time; whole days follow the wall clock."""

    def _zoned(self, start: datetime, duration: timedelta) -> EventAnchor:
        return EventAnchor(start=start, duration=duration, tzid="Europe/Berlin", kind=AnchorKind.ZONED)

    def test_expand_when_hours_duration_across_fall_back_then_exact_elapsed(self) -> None:
        event = SingleEvent(
            event_id="night-shift",
            uid="night-shift",
            anchor=self._zoned(datetime(2025, 10, 26, 1, 0), timedelta(hours=3)),
        )
        (block,) = expand(event, utc(2025, 10, 20), utc(2025, 11, 3))

        assert block.start == utc(2025, 10, 25, 23)
        assert block.end == utc(2025, 10, 26, 2)
        assert block.end - block.start == timedelta(hours=3)

    def test_expand_when_hours_duration_across_spring_forward_then_exact_elapsed(self) -> None:
        event = SingleEvent(
            event_id="early", uid="early", anchor=self._zoned(datetime(2025, 3, 30, 1, 0), timedelta(hours=2))
        )
        (block,) = expand(event, utc(2025, 3, 24), utc(2025, 4, 7))

        assert (block.start, block.end) == (utc(2025, 3, 30, 0), utc(2025, 3, 30, 2))

    @pytest.mark.parametrize("mode", [DURATION_ABSOLUTE, DURATION_WALL_CLOCK])
    def test_expand_when_recurring_hours_duration_then_exact_in_every_mode(self, mode: str) -> None:
        event = recurring(
            "FREQ=DAILY",
            self._zoned(datetime(2025, 10, 20, 1, 0), timedelta(hours=3)),
            event_id="nightly",
        )
        config = ExpanderConfig(duration_mode=mode)

        (block,) = expand(event, utc(2025, 10, 25, 22), utc(2025, 10, 26, 1), config=config)

        assert (block.start, block.end) == (utc(2025, 10, 25, 23), utc(2025, 10, 26, 2))

    def test_expand_when_whole_day_duration_across_fall_back_then_wall_clock_day(self) -> None:
        event = SingleEvent(
            event_id="offsite", uid="offsite", anchor=self._zoned(datetime(2025, 10, 25, 12, 0), timedelta(days=1))
        )
        (block,) = expand(event, utc(2025, 10, 20), utc(2025, 11, 3))

        assert block.start == utc(2025, 10, 25, 10)
        assert block.end == utc(2025, 10, 26, 11)
        assert block.end - block.start == timedelta(hours=25)

    def test_expand_when_same_zone_end_across_fall_back_then_wall_clock_end(self) -> None:
        event = SingleEvent(
            event_id="dtend",
            uid="dtend",
            anchor=berlin_anchor(datetime(2025, 10, 26, 1, 0), datetime(2025, 10, 26, 4, 0)),
        )
        (block,) = expand(event, utc(2025, 10, 20), utc(2025, 11, 3))

        assert (block.start, block.end) == (utc(2025, 10, 25, 23), utc(2025, 10, 26, 3))


class TestExpandAll:
    """Whole-feed expansion with per-event failure tolerance."""

    def test_expand_all_when_bad_rule_then_other_events_survive(
        self, berlin_weekly: RecurringEvent, caplog: pytest.LogCaptureFixture
    ) -> None:
        broken = recurring("FREQ=HOURLY", EventAnchor(start=datetime(2025, 9, 1, 9), kind=AnchorKind.UTC), "broken")
        registry = EventRegistry([broken, berlin_weekly])

        with caplog.at_level(logging.WARNING, logger="busyproxy.rrule_expander"):
            result = expand_all(registry, utc(2025, 9, 24), utc(2025, 9, 26))

        assert starts(result.blocks) == [utc(2025, 9, 25, 6)]
        assert not result.success
        assert [(e.event_id, e.kind) for e in result.errors] == [("broken", "InvalidRecurrenceRule")]
        assert "broken" in caplog.text

    def test_expand_all_when_unknown_timezone_then_error_recorded(self) -> None:
        lost = SingleEvent(
            event_id="lost",
            uid="lost",
            anchor=EventAnchor(start=datetime(2025, 9, 25, 8), tzid="Mars/Base", kind=AnchorKind.ZONED),
        )
        result = expand_all(EventRegistry([lost]), utc(2025, 9, 24), utc(2025, 9, 26))

        assert result.blocks == ()
        assert result.errors[0].kind == "UnknownTimezone"

    def test_expand_all_when_several_events_then_sorted_by_start_and_id(self) -> None:
        events = [
            SingleEvent(event_id=name, uid=name, anchor=EventAnchor(start=start, kind=AnchorKind.UTC))
            for name, start in [
                ("b", datetime(2025, 9, 2, 9)),
                ("a", datetime(2025, 9, 2, 9)),
                ("c", datetime(2025, 9, 1, 9)),
            ]
        ]
        result = expand_all(EventRegistry(events), utc(2025, 9, 1), utc(2025, 9, 3))

        assert [(b.event_id, b.start.day) for b in result.blocks] == [("c", 1), ("a", 2), ("b", 2)]
        assert result.success


class TestParseRrule:
    """Tests for parse_rrule()."""

    def test_parse_when_full_rule_then_fields_populated(self) -> None:
        rule = parse_rrule("RRULE:FREQ=MONTHLY;INTERVAL=2;BYDAY=-1FR,2MO;BYMONTH=1,7;WKST=SU;COUNT=4")

        assert rule.frequency == Frequency.MONTHLY
        assert rule.interval == 2
        assert [str(d) for d in rule.by_day] == ["-1FR", "2MO"]
        assert rule.by_month == (1, 7)
        assert rule.week_start == Weekday.SU
        assert rule.count == 4

    def test_parse_when_utc_until_then_aware(self) -> None:
        assert parse_rrule("FREQ=DAILY;UNTIL=20250903T070000Z").until == utc(2025, 9, 3, 7)

    def test_parse_when_extension_part_then_ignored(self) -> None:
        assert parse_rrule("FREQ=WEEKLY;X-VENDOR=1").frequency == Frequency.WEEKLY

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "INTERVAL=2",
            "FREQ=HOURLY",
            "FREQ=SOMETIMES",
            "FREQ=DAILY;BYHOUR=9",
            "FREQ=DAILY;COUNT=2;UNTIL=20250101",
            "FREQ=DAILY;INTERVAL=0",
            "FREQ=WEEKLY;BYDAY=XX",
            "FREQ=MONTHLY;BYMONTHDAY=32",
            "FREQ=DAILY;FREQ=WEEKLY",
            "FREQ=DAILY;BOGUS",
            "FREQ=DAILY;UNTIL=tomorrow",
        ],
    )
    def test_parse_when_malformed_then_raises(self, text: str) -> None:
        with pytest.raises(InvalidRecurrenceRule):
            parse_rrule(text)

    def test_expand_when_malformed_rule_then_raises(self) -> None:
        event = recurring("FREQ=WEEKLY;BYDAY=XX", EventAnchor(start=datetime(2025, 9, 1), kind=AnchorKind.UTC))
        with pytest.raises(InvalidRecurrenceRule):
            list(expand(event, utc(2025, 9, 1), utc(2025, 10, 1)))

    def test_expand_when_zoned_tz_unknown_then_raises(self) -> None:
        event = recurring("FREQ=DAILY", EventAnchor(start=datetime(2025, 9, 1), tzid="Nowhere", kind=AnchorKind.ZONED))
        with pytest.raises(UnknownTimezone):
            list(expand(event, utc(2025, 9, 1), utc(2025, 10, 1)))
