"""
Request rate limiting.

Two layers:
  - RedisRateLimitMiddleware: fixed-window counter per owner (or IP) across
    all API routes, shared between instances. No-op when Redis is absent.
  - ``limiter``: slowapi decorators on the expensive routes (create, remix),
    in-process, so they still apply without Redis.
"""

import logging
import time

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from sora_studio.config import get_settings
from sora_studio.errors import AuthenticationError
from sora_studio.middleware.auth import owner_from_headers
from sora_studio.middleware.correlation import get_request_owner_id
from sora_studio.schemas.video import ANONYMOUS_OWNER

_log = logging.getLogger(__name__)

# Requests per window
IDENTIFIED_LIMIT = 200
ANONYMOUS_LIMIT = 60
WINDOW_SECONDS = 60

KEY_PREFIX = "sora:rl:"

# Paths that bypass rate limiting
EXEMPT_PATHS = frozenset({"/health", "/health/ready", "/metrics", "/"})


def owner_or_ip(request: Request) -> str:
    """slowapi key: the resolved owner when known, the client address otherwise"""
    owner_id = get_request_owner_id()
    if owner_id and owner_id != ANONYMOUS_OWNER:
        return owner_id
    return get_remote_address(request)


def create_rate_limit() -> str:
    return get_settings().create_rate_limit


limiter = Limiter(key_func=owner_or_ip, enabled=get_settings().rate_limit_enabled)


class RedisRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.url.path in EXEMPT_PATHS or request.method == "OPTIONS":
            return await call_next(request)

        services = getattr(request.app.state, "services", None)
        r = services.redis if services is not None else None
        if r is None or not services.settings.rate_limit_enabled:
            # No Redis, slowapi decorators handle it
            return await call_next(request)

        try:
            owner_id = owner_from_headers(
                request.headers.get("authorization"),
                request.headers.get("x-user-id"),
                services.settings.jwt_secret,
            )
        except AuthenticationError:
            # resolve_owner rejects the request; count it against the address
            owner_id = ANONYMOUS_OWNER

        if owner_id != ANONYMOUS_OWNER:
            key = f"{KEY_PREFIX}user:{owner_id}"
            limit = IDENTIFIED_LIMIT
        else:
            client_ip = request.client.host if request.client else "unknown"
            key = f"{KEY_PREFIX}ip:{client_ip}"
            limit = ANONYMOUS_LIMIT

        now = int(time.time())
        window_key = f"{key}:{now // WINDOW_SECONDS}"
        try:
            pipe = r.pipeline(transaction=True)
            pipe.incr(window_key)
            pipe.expire(window_key, WINDOW_SECONDS + 1)
            results = await pipe.execute()
        except Exception as exc:
            _log.debug(f"[rate_limit] Redis error ({exc}), skipping rate limit")
            return await call_next(request)

        current_count = results[0]
        if current_count > limit:
            return JSONResponse(
                status_code=429,
                content={
                    "success": False,
                    "error": {"code": "RATE_LIMITED", "message": "Rate limit exceeded. Try again shortly."},
                },
                headers={
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                    "Retry-After": str(WINDOW_SECONDS),
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, limit - current_count))
        response.headers["X-RateLimit-Reset"] = str(((now // WINDOW_SECONDS) + 1) * WINDOW_SECONDS)
        return response
