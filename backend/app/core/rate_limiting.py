"""Rate limiting: slowapi route limits and fixed-window client quotas.

Two layers share one error envelope:

- ``limiter`` (slowapi) decorates session and cron routes with
  "count/period" limits, keyed per user when a session cookie is present.
- ``assert_rate_limit`` enforces per-client quotas on the HMAC endpoints,
  where the key is the caller-supplied client id rather than the request.
  It runs on the ``limits`` fixed-window strategy (the backend slowapi
  itself uses) over process-local memory, so counters are cleared on
  restart and are not shared between instances.

Usage in routers:
    from app.core.rate_limiting import assert_rate_limit, limiter

    @router.post("/cron/expire-grants")
    @limiter.limit(lambda: settings.rate_limit_cron)
    async def expire_grants(request: Request, ...):
        ...

    assert_rate_limit(f"credits:{client_id}", 120, 60_000)
"""

import math
import time

import jwt
from fastapi import Request, Response
from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.responses import JSONResponse

from app.core.config import settings
from app.core.errors import RateLimitedError


def _rate_limit_key_func(request: Request) -> str:
    """Get rate limit key from request.

    When auth is enabled, extracts user ID from the JWT cookie for per-user
    limiting. Falls back to IP-based keying when auth is disabled, no cookie
    is present, or the JWT is invalid.

    Key format:
    - Auth disabled: "{ip}" (local dev mode)
    - Auth enabled + valid JWT: "user:{sub}"
    - Auth enabled + no/invalid JWT: "unauth:{ip}"

    Args:
        request: The incoming request.

    Returns:
        Rate limit key string.
    """
    if not settings.auth_enabled:
        return get_remote_address(request)

    # Only the sub claim is needed for keying; full validation happens in deps.py.
    token = request.cookies.get(settings.auth_cookie_name)
    if token:
        try:
            payload = jwt.decode(
                token,
                settings.auth_secret.get_secret_value(),
                algorithms=["HS256"],
                audience=settings.auth_audience,
                issuer=settings.auth_issuer,
            )
            sub = payload["sub"]
            if len(sub) <= 36:
                return f"user:{sub}"
        except (jwt.InvalidTokenError, KeyError):
            pass

    return f"unauth:{get_remote_address(request)}"


# Global limiter instance (in-memory storage, single-instance deployment)
limiter = Limiter(
    key_func=_rate_limit_key_func,
    enabled=settings.rate_limit_enabled,
)


def _retry_after_seconds(request: Request, exc: RateLimitExceeded) -> int:
    """Seconds until the exceeded slowapi window resets.

    slowapi records the limit it was evaluating on request.state; its
    window stats give the exact reset time. Without them the full window
    length of the limit is used, and 60 seconds as a last resort.
    """
    view_limit = getattr(request.state, "view_rate_limit", None)
    if view_limit is not None:
        item, args = view_limit
        stats = limiter.limiter.get_window_stats(item, *args)
        return max(1, math.ceil(stats.reset_time - time.time()))
    try:
        return max(1, int(exc.limit.limit.get_expiry()))
    except AttributeError:
        return 60


def rate_limit_exceeded_handler(
    request: Request,
    exc: RateLimitExceeded,
) -> Response:
    """Handle slowapi rate limit exceeded errors.

    Returns 429 Too Many Requests with the standard error envelope.

    Args:
        request: The incoming request.
        exc: The rate limit exception.

    Returns:
        JSONResponse with 429 status and retry-after header.
    """
    retry_after = str(_retry_after_seconds(request, exc))

    return JSONResponse(
        status_code=429,
        content={
            "error": {
                "code": "RATE_LIMITED",
                "message": f"Rate limit exceeded: {exc.detail}",
            }
        },
        headers={"Retry-After": retry_after},
    )


# Process-wide quota store for assert_rate_limit
_quota_storage = MemoryStorage()
_fixed_window = FixedWindowRateLimiter(_quota_storage)


def assert_rate_limit(key: str, max_requests: int, window_ms: int) -> None:
    """Count one request against ``key`` and fail once the quota is spent.

    Windows are fixed: the first request for a key opens a window of
    ``window_ms`` and at most ``max_requests`` requests are accepted
    until it closes.

    Args:
        key: Caller identity, e.g. "credits:n8n-prod".
        max_requests: Requests allowed per window (>= 1).
        window_ms: Window length in milliseconds. Must be a positive
            multiple of 1000; the quota store counts whole seconds.

    Raises:
        ValueError: If max_requests is not positive or window_ms is not a
            positive whole number of seconds.
        RateLimitedError: If the window's quota is exhausted. Carries
            retry_after_seconds (>= 1) until the window resets.
    """
    if max_requests < 1:
        raise ValueError("max_requests must be at least 1")
    if window_ms <= 0 or window_ms % 1000:
        raise ValueError("window_ms must be a positive multiple of 1000")

    window_seconds = window_ms // 1000
    item = RateLimitItemPerSecond(max_requests, window_seconds)
    if _fixed_window.hit(item, key):
        return

    stats = _fixed_window.get_window_stats(item, key)
    retry_after = max(1, math.ceil(stats.reset_time - time.time()))
    raise RateLimitedError(retry_after_seconds=retry_after)


def reset_rate_limits() -> None:
    """Clear every quota counter and slowapi route counter."""
    _quota_storage.reset()
    limiter.reset()
