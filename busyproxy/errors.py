"""Exception hierarchy for busyproxy.

Per-event failures (``UnknownTimezone``, ``InvalidRecurrenceRule``) are caught
at the expansion boundary and recorded, so one bad event never aborts a feed.
Request-level failures (``UpstreamFetchError``, ``FeedParseError``) fail the
whole feed request with a server error.
"""

from typing import Optional


class BusyProxyError(Exception):
    """Base exception for all busyproxy errors."""


class UnknownTimezone(BusyProxyError):
    """A timezone identifier or instant could not be resolved.

    Raised when:
    - A TZID is neither declared by a VTIMEZONE block nor known to the IANA database
    - An instant falls outside the declared coverage of a TimezoneRule

    Fatal to the affected event's expansion only.
    """

    def __init__(self, message: str, tzid: Optional[str] = None):
        super().__init__(message)
        self.tzid = tzid


class InvalidRecurrenceRule(BusyProxyError):
    """An RRULE value is malformed or uses an unsupported frequency.

    Fatal to the affected event's expansion only.
    """

    def __init__(self, message: str, rule_text: Optional[str] = None):
        super().__init__(message)
        self.rule_text = rule_text


class FeedParseError(BusyProxyError):
    """The fetched calendar text is not parseable as iCalendar."""


class UpstreamFetchError(BusyProxyError):
    """Fetching the source feed failed (non-2xx response or network failure)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamAuthError(UpstreamFetchError):
    """The source feed rejected our credentials (HTTP 401/403)."""


class UpstreamNetworkError(UpstreamFetchError):
    """Network error while talking to the source feed."""


class UpstreamTimeoutError(UpstreamFetchError):
    """The source feed did not answer within the configured timeout."""
