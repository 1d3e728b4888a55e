"""
Rate limiting middleware for the admin HTTP API.

In-memory sliding window per client IP; the bot runs as a single process so
no shared backend is needed.
"""

import logging
import time
from collections import defaultdict
from collections.abc import Callable

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from marketbot.core.config import settings

logger = logging.getLogger(__name__)

# {client_ip: [timestamp, ...]}
_rate_limit_store: dict[str, list[float]] = defaultdict(list)


def _is_rate_limited(client_ip: str, now: float | None = None) -> bool:
    """Record the hit and report whether the client is over its window budget."""
    if not settings.rate_limit_enabled:
        return False

    now = time.time() if now is None else now
    cutoff = now - settings.rate_limit_window_seconds
    hits = [ts for ts in _rate_limit_store[client_ip] if ts > cutoff]
    if len(hits) >= settings.rate_limit_requests:
        _rate_limit_store[client_ip] = hits
        return True
    hits.append(now)
    _rate_limit_store[client_ip] = hits
    return False


def reset_rate_limits() -> None:
    _rate_limit_store.clear()


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, honoring proxy headers."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rate limiting middleware for specific path prefixes."""

    def __init__(self, app, rate_limited_paths: list[str]):
        super().__init__(app)
        self.rate_limited_paths = rate_limited_paths

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if any(path.startswith(prefix) for prefix in self.rate_limited_paths):
            client_ip = get_client_ip(request)
            if _is_rate_limited(client_ip):
                logger.warning(
                    f"Rate limit exceeded for {client_ip} on {path} "
                    f"({settings.rate_limit_requests} requests per "
                    f"{settings.rate_limit_window_seconds}s)"
                )
                return JSONResponse(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    content={
                        "error": "Rate limit exceeded",
                        "retry_after": settings.rate_limit_window_seconds,
                    },
                    headers={"Retry-After": str(settings.rate_limit_window_seconds)},
                )

        return await call_next(request)
