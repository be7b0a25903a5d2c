"""aiohttp server for the busy-feed proxy.

Every ``/busy.ics`` request fetches the upstream calendar, expands it over
the published window and serializes the busy blocks. Nothing is cached
between requests.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from pathlib import Path
from typing import Any, Optional

import httpx
from aiohttp import web

from .config_loader import Config
from .health_tracker import HealthTracker
from .http_client import close_all_clients, get_shared_client
from .middleware import correlation_id_middleware, make_feed_key_middleware
from .proxy_logging import configure_proxy_logging
from .routes import register_debug_routes, register_feed_routes, register_static_routes

logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).resolve().parent / "static"
SHARED_CLIENT_ID = "busyproxy"

CONFIG_KEY = web.AppKey("config", Config)
HEALTH_KEY = web.AppKey("health_tracker", HealthTracker)


def _get_config_value(config: Any, key: str, default: Any = None) -> Any:
    """Support dict or dataclass-like config access."""
    if isinstance(config, dict):
        return config.get(key, default)
    return getattr(config, key, default)


def _as_config(config: Any) -> Config:
    if isinstance(config, Config):
        return config
    if isinstance(config, dict):
        return Config.from_dict(config)
    raise TypeError(f"Unsupported config type: {type(config).__name__}")


async def _make_app(
    config: Any,
    http_client: Optional[httpx.AsyncClient] = None,
    health_tracker: Optional[HealthTracker] = None,
) -> web.Application:
    """Create the aiohttp application.

    Args:
        config: ``Config`` or a plain mapping accepted by ``Config.from_dict``
        http_client: Client for upstream fetches; the shared pooled client
            is used when omitted
        health_tracker: Tracker exposed on ``/health`` (a new one by default)
    """
    cfg = _as_config(config)
    tracker = health_tracker or HealthTracker()

    app = web.Application(
        middlewares=[correlation_id_middleware, make_feed_key_middleware(cfg.feed_key)]
    )
    app[CONFIG_KEY] = cfg
    app[HEALTH_KEY] = tracker

    async def get_http_client() -> httpx.AsyncClient:
        if http_client is not None:
            return http_client
        return await get_shared_client(SHARED_CLIENT_ID)

    register_static_routes(app, STATIC_DIR)
    register_feed_routes(app, cfg, get_http_client, tracker)
    if cfg.enable_debug_endpoints:
        register_debug_routes(app, cfg, get_http_client)
        logger.info("Debug endpoints enabled")

    if not cfg.feed_key:
        logger.info("No feed key configured; /busy.ics is publicly readable")
    return app


async def _serve(config: Config) -> None:
    """Run the server until SIGINT/SIGTERM."""
    stop_event = asyncio.Event()

    app = await _make_app(config)
    runner = web.AppRunner(app)
    await runner.setup()

    host = config.server_bind
    port = config.server_port
    site = web.TCPSite(runner, host=host, port=port)
    try:
        await site.start()
    except OSError:
        logger.exception("Failed to start server on %s:%d", host, port)
        await runner.cleanup()
        raise
    logger.info("Busy ICS proxy listening on %s:%d", host, port)
    if not config.source_url:
        logger.warning("No source URL configured; /busy.ics will answer 400")

    loop = asyncio.get_running_loop()

    def _on_signal() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _on_signal)

    await stop_event.wait()
    logger.info("Stop event received, shutting down")

    await runner.cleanup()

    try:
        await close_all_clients()
        logger.debug("Shared HTTP clients cleaned up")
    except httpx.HTTPError as e:
        logger.warning("Error cleaning up shared HTTP clients: %s", e)

    logger.info("Server shutdown complete")


def start_server(config: Any) -> None:
    """Run the HTTP server, blocking until SIGINT/SIGTERM.

    Args:
        config: ``Config`` or a plain mapping with the same keys
    """
    cfg = _as_config(config)
    configure_proxy_logging(log_level=_get_config_value(cfg, "log_level", "INFO"))
    logger.debug("Resolved configuration: %s", cfg.redacted())

    try:
        asyncio.run(_serve(cfg))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
