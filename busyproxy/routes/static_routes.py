"""Static usage page."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from aiohttp import web

logger = logging.getLogger(__name__)


def register_static_routes(app: Any, static_dir: Path) -> None:
    """Register ``/``.

    Args:
        app: aiohttp web application
        static_dir: Directory holding ``index.html``
    """

    async def serve_index(_request: web.Request) -> web.StreamResponse:
        """Serve the usage page."""
        html_file = static_dir / "index.html"
        if not html_file.exists():
            logger.error("Static HTML file not found: %s", html_file)
            return web.Response(text="Static HTML file not found", status=404)
        return web.FileResponse(html_file)

    app.router.add_get("/", serve_index)

    logger.debug("Static routes registered")
