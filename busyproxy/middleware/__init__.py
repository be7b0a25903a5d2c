"""aiohttp middleware for busyproxy."""

from .correlation_id import correlation_id_middleware, get_request_id, request_id_var
from .feed_key import key_matches, make_feed_key_middleware

__all__ = [
    "correlation_id_middleware",
    "get_request_id",
    "key_matches",
    "make_feed_key_middleware",
    "request_id_var",
]
