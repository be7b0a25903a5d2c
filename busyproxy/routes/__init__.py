"""Route registration for the busyproxy server."""

from .debug_routes import register_debug_routes
from .feed_routes import register_feed_routes
from .static_routes import register_static_routes

__all__ = ["register_debug_routes", "register_feed_routes", "register_static_routes"]
