"""Shared-secret check for the published feed.

Calendar clients cannot send custom headers when subscribing, so the secret
travels as a ``?key=`` query parameter on the subscription URL.
"""

import hmac
import logging
from collections.abc import Callable, Iterable
from typing import Any, Optional

from aiohttp import web

logger = logging.getLogger(__name__)

DEFAULT_PROTECTED_PREFIXES = ("/busy.ics", "/debug/")


def key_matches(expected: str, provided: Optional[str]) -> bool:
    """Compare ``provided`` against ``expected`` in constant time."""
    if not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def make_feed_key_middleware(
    feed_key: Optional[str],
    protected_prefixes: Iterable[str] = DEFAULT_PROTECTED_PREFIXES,
) -> Callable[..., Any]:
    """Build middleware that requires ``?key=<feed_key>`` on protected paths.

    Args:
        feed_key: Shared secret; when empty every request passes
        protected_prefixes: Path prefixes that require the key

    Returns:
        aiohttp middleware
    """
    prefixes = tuple(protected_prefixes)

    @web.middleware
    async def feed_key_middleware(
        request: web.Request, handler: Callable[[web.Request], Any]
    ) -> web.StreamResponse:
        if feed_key and request.path.startswith(prefixes):
            if not key_matches(feed_key, request.query.get("key")):
                logger.warning("Rejected request to %s: missing or invalid feed key", request.path)
                return web.json_response({"error": "Forbidden"}, status=403)
        return await handler(request)

    return feed_key_middleware
