"""busyproxy - publish a busy-only view of an ICS calendar.

The package keeps top-level imports light; the server and the pipeline are
imported when an entrypoint runs.
"""

__version__ = "0.1.0"

from typing import Any, Optional, TextIO


def _console_handler(stream: TextIO) -> Any:
    """Build the colorized stderr handler tagged with the request correlation ID."""
    import logging

    from colorlog import ColoredFormatter

    from .proxy_logging import CorrelationIdFilter

    handler = logging.StreamHandler(stream=stream)
    # HH:MM:SS [request-id] LEVEL logger.name: message, with only the level colorized
    fmt = "%(asctime)s [%(request_id)s] %(log_color)s%(levelname)-7s%(reset)s %(name)s: %(message)s"
    log_colors = {
        "DEBUG": "cyan",
        "INFO": "green",
        "WARNING": "yellow",
        "ERROR": "red",
        "CRITICAL": "bold_red",
    }
    handler.setFormatter(ColoredFormatter(fmt, datefmt="%H:%M:%S", log_colors=log_colors))
    handler.addFilter(CorrelationIdFilter())
    return handler


def _init_logging(level_name: Optional[str]) -> None:
    """Initialize root logging to stream colorized records to stderr.

    Honors BUSYPROXY_DEBUG (truthy values: "1", "true", "yes", "on"), which
    forces DEBUG verbosity regardless of ``level_name``.
    """
    import logging
    import os
    import sys

    debug_env = os.environ.get("BUSYPROXY_DEBUG", "")
    if debug_env.strip().lower() in ("1", "true", "yes", "on"):
        level_name = "DEBUG"

    root = logging.getLogger()
    # Only configure a handler if none is present to avoid duplicate output.
    if not root.handlers:
        root.addHandler(_console_handler(sys.stderr))

    level = logging.INFO
    if isinstance(level_name, str):
        level = getattr(logging, level_name.upper(), logging.INFO)
    root.setLevel(level)
    logging.getLogger(__name__).debug("Logging initialized at level %s", logging.getLevelName(level))


def _overrides_from_args(args: Optional[object]) -> dict:
    overrides: dict = {}
    if args is None:
        return overrides
    host = getattr(args, "host", None)
    if host:
        overrides["server_bind"] = host
    port = getattr(args, "port", None)
    if port is not None:
        overrides["server_port"] = port
    if getattr(args, "debug", False):
        overrides["log_level"] = "DEBUG"
    return overrides


def run_server(args: Optional[object] = None) -> None:
    """Resolve configuration and run the HTTP server until interrupted.

    Args:
        args: Optional argparse namespace with ``host``, ``port``, ``config``
            and ``debug``
    """
    import logging
    import os

    _init_logging(os.environ.get("BUSYPROXY_LOG_LEVEL"))
    logger = logging.getLogger(__name__)

    from .config_loader import resolve_config
    from .server import start_server

    cfg = resolve_config(getattr(args, "config", None), _overrides_from_args(args))
    logging.getLogger().setLevel(getattr(logging, cfg.log_level, logging.INFO))
    logger.info("Starting busyproxy %s", __version__)

    start_server(cfg)


def render_file(args: object) -> int:
    """Render a local ICS file as a busy feed on stdout.

    Args:
        args: argparse namespace with ``render`` (path), optional ``from_``,
            ``to`` and ``config``

    Returns:
        Process exit code
    """
    import logging
    import os
    import sys
    from pathlib import Path

    _init_logging(os.environ.get("BUSYPROXY_LOG_LEVEL") or "WARNING")
    logger = logging.getLogger(__name__)

    from .config_loader import resolve_config
    from .errors import FeedParseError
    from .feed_service import render_feed_text
    from .windows import default_window, parse_instant

    cfg = resolve_config(getattr(args, "config", None), _overrides_from_args(args))

    try:
        start_text = getattr(args, "from_", None)
        end_text = getattr(args, "to", None)
        now = parse_instant(start_text) if start_text else None
        window_start, window_end = default_window(now, weeks=cfg.window_weeks)
        if end_text:
            window_end = parse_instant(end_text)
    except ValueError as e:
        logger.error("Invalid window bound: %s", e)
        return 2
    if window_end < window_start:
        logger.error("--to must not be before --from")
        return 2

    path = Path(args.render)  # type: ignore[attr-defined]
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        logger.error("Cannot read %s: %s", path, e)
        return 1

    try:
        feed = render_feed_text(content, cfg, window=(window_start, window_end))
    except FeedParseError as e:
        logger.error("Cannot parse %s: %s", path, e)
        return 1

    for error in feed.result.errors:
        logger.warning("Event %s skipped (%s): %s", error.event_id, error.kind, error.message)
    sys.stdout.write(feed.ics)
    return 0
