"""Health tracking for the busy-feed server."""

from __future__ import annotations

import os
import time
from dataclasses import asdict, dataclass
from typing import Any, Optional


@dataclass
class HealthStatus:
    """Health status information for the server."""

    status: str  # "ok" or "degraded"
    server_time_iso: str
    uptime_seconds: int
    pid: int
    feed_builds: int
    feed_failures: int
    last_block_count: Optional[int]
    last_success_age_seconds: Optional[int]
    last_error: Optional[str]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class HealthTracker:
    """Counts feed builds and remembers the outcome of the latest one.

    The server has no background refresh, so a feed that has never been
    requested is still healthy.
    """

    def __init__(self) -> None:
        self._start_time: float = time.time()
        self._builds = 0
        self._failures = 0
        self._last_success: Optional[float] = None
        self._last_ok: Optional[bool] = None
        self._last_block_count: Optional[int] = None
        self._last_error: Optional[str] = None

    def record_success(self, block_count: int) -> None:
        """Record a feed that was built and served.

        Args:
            block_count: Number of busy blocks published
        """
        self._builds += 1
        self._last_success = time.time()
        self._last_block_count = block_count
        self._last_ok = True

    def record_failure(self, error_kind: str) -> None:
        """Record a feed request that ended in an upstream or parse failure."""
        self._failures += 1
        self._last_ok = False
        self._last_error = error_kind

    def get_uptime_seconds(self) -> int:
        return int(time.time() - self._start_time)

    def get_last_success_age_seconds(self) -> Optional[int]:
        if self._last_success is None:
            return None
        return int(time.time() - self._last_success)

    def determine_overall_status(self) -> str:
        """Return "degraded" when the most recent feed build failed."""
        return "degraded" if self._last_ok is False else "ok"

    def get_health_status(self, current_time_iso: str) -> HealthStatus:
        """Get health status.

        Args:
            current_time_iso: Current time in ISO format
        """
        return HealthStatus(
            status=self.determine_overall_status(),
            server_time_iso=current_time_iso,
            uptime_seconds=self.get_uptime_seconds(),
            pid=os.getpid(),
            feed_builds=self._builds,
            feed_failures=self._failures,
            last_block_count=self._last_block_count,
            last_success_age_seconds=self.get_last_success_age_seconds(),
            last_error=self._last_error,
        )
