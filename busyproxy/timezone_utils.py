"""Timezone name normalization and clock utilities for busyproxy.

Nothing in this module reads the host's local timezone. Names found in feeds
(Windows display names, obsolete IANA aliases) are mapped onto canonical IANA
identifiers, and "now" is always an aware UTC instant.
"""

from __future__ import annotations

import datetime
import logging
import os
import zoneinfo
from functools import lru_cache

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

TEST_TIME_ENV_VAR = "BUSYPROXY_TEST_TIME"

# Windows timezone names to IANA identifier mapping.
# Outlook/Exchange feeds commonly declare TZIDs using these display names.
# https://docs.microsoft.com/en-us/windows-hardware/manufacture/desktop/default-time-zones
WINDOWS_TZ_MAP: dict[str, str] = {
    # US
    "Pacific Standard Time": "America/Los_Angeles",
    "Mountain Standard Time": "America/Denver",
    "Central Standard Time": "America/Chicago",
    "Eastern Standard Time": "America/New_York",
    "Alaskan Standard Time": "America/Anchorage",
    "Hawaiian Standard Time": "Pacific/Honolulu",
    "US Mountain Standard Time": "America/Phoenix",
    "Atlantic Standard Time": "America/Halifax",
    "Newfoundland Standard Time": "America/St_Johns",
    # Europe
    "GMT Standard Time": "Europe/London",
    "Greenwich Standard Time": "Atlantic/Reykjavik",
    "Central European Standard Time": "Europe/Warsaw",
    "W. Europe Standard Time": "Europe/Berlin",
    "E. Europe Standard Time": "Europe/Chisinau",
    "FLE Standard Time": "Europe/Kyiv",
    "GTB Standard Time": "Europe/Bucharest",
    "Romance Standard Time": "Europe/Paris",
    "Central Europe Standard Time": "Europe/Budapest",
    "Russian Standard Time": "Europe/Moscow",
    # Asia
    "China Standard Time": "Asia/Shanghai",
    "Tokyo Standard Time": "Asia/Tokyo",
    "Korea Standard Time": "Asia/Seoul",
    "Singapore Standard Time": "Asia/Singapore",
    "India Standard Time": "Asia/Kolkata",
    "SE Asia Standard Time": "Asia/Bangkok",
    "Arabian Standard Time": "Asia/Dubai",
    "Israel Standard Time": "Asia/Jerusalem",
    "Iran Standard Time": "Asia/Tehran",
    # Australia & Pacific
    "AUS Eastern Standard Time": "Australia/Sydney",
    "AUS Central Standard Time": "Australia/Darwin",
    "Cen. Australia Standard Time": "Australia/Adelaide",
    "E. Australia Standard Time": "Australia/Brisbane",
    "W. Australia Standard Time": "Australia/Perth",
    "New Zealand Standard Time": "Pacific/Auckland",
    # South America & Africa
    "E. South America Standard Time": "America/Sao_Paulo",
    "SA Pacific Standard Time": "America/Bogota",
    "Argentina Standard Time": "America/Argentina/Buenos_Aires",
    "South Africa Standard Time": "Africa/Johannesburg",
    "Egypt Standard Time": "Africa/Cairo",
    "W. Central Africa Standard Time": "Africa/Lagos",
    "UTC": "UTC",
}

# Obsolete or alternate names found in older feeds.
TZ_ALIAS_MAP: dict[str, str] = {
    "US/Pacific": "America/Los_Angeles",
    "US/Mountain": "America/Denver",
    "US/Central": "America/Chicago",
    "US/Eastern": "America/New_York",
    "US/Alaska": "America/Anchorage",
    "US/Hawaii": "Pacific/Honolulu",
    "US/Arizona": "America/Phoenix",
    "GMT": "UTC",
    "Z": "UTC",
    "Etc/UTC": "UTC",
    "Etc/GMT": "UTC",
    "Etc/Universal": "UTC",
    "Universal": "UTC",
    "Zulu": "UTC",
    "Asia/Rangoon": "Asia/Yangon",
    "America/Godthab": "America/Nuuk",
    "Europe/Kiev": "Europe/Kyiv",
}


def now_utc() -> datetime.datetime:
    """Return the current time as an aware UTC datetime.

    Can be overridden for testing via the BUSYPROXY_TEST_TIME environment
    variable (ISO 8601, e.g. "2025-09-24T00:00:00Z"). A naive override value
    is taken to be UTC.
    """
    test_time = os.environ.get(TEST_TIME_ENV_VAR)
    if test_time:
        try:
            dt = date_parser.isoparse(test_time)
        except ValueError as e:
            logger.warning("Failed to parse %s=%r: %s", TEST_TIME_ENV_VAR, test_time, e)
        else:
            if dt.tzinfo is None:
                return dt.replace(tzinfo=datetime.UTC)
            return dt.astimezone(datetime.UTC)

    return datetime.datetime.now(datetime.UTC)


def windows_tz_to_iana(windows_tz: str) -> str | None:
    """Convert a Windows timezone display name to an IANA identifier, if known."""
    return WINDOWS_TZ_MAP.get(windows_tz)


def resolve_timezone_alias(tz_name: str) -> str:
    """Resolve an alias to its canonical IANA identifier.

    Examples:
        >>> resolve_timezone_alias("US/Pacific")
        'America/Los_Angeles'
        >>> resolve_timezone_alias("Europe/Berlin")
        'Europe/Berlin'
    """
    return TZ_ALIAS_MAP.get(tz_name, tz_name)


def _strip_tzid(tz_str: str) -> str:
    # Some producers quote TZIDs or prefix them with a "/" (globally unique marker).
    return tz_str.strip().strip('"').lstrip("/")


@lru_cache(maxsize=256)
def normalize_timezone_name(tz_str: str) -> str | None:
    """Normalize a timezone string to a canonical IANA identifier.

    Resolution order:
    1. Windows display name
    2. Alias
    3. Validation against the bundled IANA database

    Args:
        tz_str: Timezone string (Windows name, alias or IANA identifier)

    Returns:
        Canonical IANA identifier, or None if the name cannot be resolved
    """
    if not tz_str:
        return None

    candidate = _strip_tzid(tz_str)
    mapped = windows_tz_to_iana(candidate)
    if mapped is None:
        mapped = resolve_timezone_alias(candidate)

    try:
        zoneinfo.ZoneInfo(mapped)
    except (zoneinfo.ZoneInfoNotFoundError, ValueError):
        logger.debug("Timezone %r is not known to the IANA database", tz_str)
        return None
    return mapped
