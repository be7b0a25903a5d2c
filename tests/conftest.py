"""Shared fixtures for busyproxy tests."""

from collections.abc import AsyncIterator, Generator
from types import SimpleNamespace
from typing import Any

import pytest

from busyproxy.http_client import close_all_clients
from busyproxy.timezone_utils import TEST_TIME_ENV_VAR
from tests.ics_samples import BERLIN_VTIMEZONE, make_calendar, make_vevent


@pytest.fixture
def simple_settings() -> SimpleNamespace:
    """Lightweight settings object accepted wherever a ``Config`` is.

    Fields mirror ``Config`` defaults that the pipeline reads via getattr.
    """
    return SimpleNamespace(
        request_timeout=30,
        max_retries=3,
        retry_backoff_factor=1.5,
        include_transparent=False,
        floating_timezone="UTC",
        prefer_iana_timezones=False,
        duration_mode="absolute",
        max_occurrences_per_rule=1000,
        window_weeks=8,
        calendar_name="Busy Calendar",
    )


@pytest.fixture
def berlin_weekly_ics() -> str:
    """Weekly Thursday 08:00-09:00 Europe/Berlin meeting from 2025-08-07."""
    return make_calendar(
        BERLIN_VTIMEZONE,
        make_vevent(
            "weekly-berlin@example.com",
            "DTSTART;TZID=Europe/Berlin:20250807T080000",
            "DTEND;TZID=Europe/Berlin:20250807T090000",
            "RRULE:FREQ=WEEKLY",
            "LOCATION:Room 4",
            "DESCRIPTION:Quarterly numbers",
        ),
    )


@pytest.fixture(autouse=True)
def clean_test_environment(monkeypatch: Any) -> Generator[None, Any, None]:
    """Clear the frozen-time override and config env vars around every test."""
    for name in (
        TEST_TIME_ENV_VAR,
        "BUSYPROXY_SOURCE_ICS_URL",
        "SOURCE_ICS_URL",
        "BUSYPROXY_FEED_KEY",
        "FEED_KEY",
        "BUSYPROXY_PORT",
        "PORT",
        "BUSYPROXY_HOST",
        "BUSYPROXY_LOG_LEVEL",
        "BUSYPROXY_DEBUG",
        "BUSYPROXY_ENABLE_DEBUG_ENDPOINTS",
    ):
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture(autouse=True)
async def cleanup_shared_http_clients() -> AsyncIterator[None]:
    """Close shared httpx clients after each test to prevent resource leaks."""
    yield
    await close_all_clients()
