"""
Central logging configuration for busyproxy.

Quiets the chatty third-party loggers (aiohttp access logs, httpx, asyncio)
and tags every record with the current request's correlation id.
"""

import logging
import os
from typing import Optional

from .middleware.correlation_id import get_request_id

_VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

PROXY_MODULES = (
    "busyproxy",
    "busyproxy.server",
    "busyproxy.feed_service",
    "busyproxy.fetcher",
    "busyproxy.ics_parser",
    "busyproxy.rrule_expander",
    "busyproxy.tz_resolver",
)


class CorrelationIdFilter(logging.Filter):
    """Add correlation ID to all log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        return True


def configure_proxy_logging(
    debug_mode: bool = False,
    force_debug: Optional[bool] = None,
    log_level: Optional[str] = None,
) -> None:
    """
    Configure logger levels for busyproxy.

    Args:
        debug_mode: Whether to enable debug logging for busyproxy modules
        force_debug: Override debug mode setting (None to use env var detection)
        log_level: Configured level name for the root and busyproxy loggers

    Environment Variables:
        BUSYPROXY_DEBUG: Set to '1', 'true', 'yes' to force debug logging
        BUSYPROXY_LOG_LEVEL: Override root log level (DEBUG, INFO, WARNING, ERROR)
    """
    env_debug = os.getenv("BUSYPROXY_DEBUG", "").lower() in ("1", "true", "yes")
    env_log_level = os.getenv("BUSYPROXY_LOG_LEVEL", "").upper()
    config_level = (log_level or "").upper()

    if force_debug is not None:
        final_debug = force_debug
    elif env_debug:
        final_debug = True
    else:
        final_debug = debug_mode or config_level == "DEBUG"

    root_level = logging.DEBUG if final_debug else logging.INFO
    if not final_debug and config_level in _VALID_LEVELS:
        root_level = getattr(logging, config_level)
    if env_log_level in _VALID_LEVELS:
        root_level = getattr(logging, env_log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)

    correlation_filter = CorrelationIdFilter()

    # Keep the colored handler installed by _init_logging when there is one
    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(root_level)
        handler.setFormatter(
            logging.Formatter("[%(asctime)s] [%(request_id)s] %(levelname)s - %(name)s - %(message)s")
        )
        handler.addFilter(correlation_filter)
        root_logger.addHandler(handler)
    else:
        for existing_handler in root_logger.handlers:
            if not any(isinstance(f, CorrelationIdFilter) for f in existing_handler.filters):
                existing_handler.addFilter(correlation_filter)

    logger_config: dict[str, int] = {
        "aiohttp.access": logging.WARNING,
        "aiohttp.server": logging.WARNING,
        "aiohttp.web": logging.INFO,
        "aiohttp.web_log": logging.WARNING,
        "httpx": logging.WARNING,
        "httpcore": logging.WARNING,
        "asyncio": logging.WARNING,
        "icalendar": logging.INFO,
    }

    proxy_level = logging.DEBUG if final_debug else root_level
    for module in PROXY_MODULES:
        logger_config[module] = proxy_level

    for logger_name, level in logger_config.items():
        logging.getLogger(logger_name).setLevel(level)

    if final_debug:
        root_logger.info("Debug logging enabled for busyproxy modules; third-party debug logs suppressed")
    else:
        root_logger.debug("Production logging configuration applied")
