"""Rate limiting for the HTTP layer.

This module wires the rate limiting adapter into the request pipeline.

Two entry points:
- ``rate_limit_middleware``: global throttling for every request, using the
  process-wide limiter built from settings.
- ``rate_limit_dependency(options)``: a FastAPI dependency with its own
  limiter, so individual routes can carry stricter limits without sharing
  counters with the global one.

Requests are attributed to the remote address. Requests without one share
the ``"unknown"`` key.
"""

from __future__ import annotations

import hashlib
import logging
import weakref
from typing import Awaitable, Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from app.adapters.rate_limit.base import (
    UNKNOWN_CLIENT_KEY,
    AbstractRateLimiter,
    RateLimitOptions,
    RateLimitResult,
)
from app.adapters.rate_limit.in_memory import InMemoryFixedWindowRateLimiter
from app.core.config import AppSettings, parse_csv, settings
from app.core.errors import RateLimitExceededError

logger = logging.getLogger(__name__)


_limiter: AbstractRateLimiter | None = None
_limiter_options: RateLimitOptions | None = None

# Per-route limiters, so shutdown can stop their sweepers.
_route_limiters: weakref.WeakSet[AbstractRateLimiter] = weakref.WeakSet()


def options_from_settings(app_settings: AppSettings | None = None) -> RateLimitOptions:
    """Translate application settings into limiter options."""

    cfg = app_settings or settings.app
    return RateLimitOptions(
        window_ms=cfg.rate_limit_window_ms,
        max=cfg.rate_limit_max,
        message=cfg.rate_limit_message,
        status_code=cfg.rate_limit_status_code,
        sweep_interval_ms=cfg.rate_limit_sweep_interval_ms,
        include_headers=cfg.rate_limit_include_headers,
    )


def get_rate_limiter() -> AbstractRateLimiter:
    """Return the process-wide rate limiter instance.

    The instance is cached in-module to preserve counters across requests.
    If configuration changes (primarily in tests), the limiter is rebuilt;
    when the previous one had a running sweeper, it is stopped and the new
    limiter's sweeper is started in its place.

    Returns:
        AbstractRateLimiter: Configured limiter instance.
    """

    global _limiter, _limiter_options

    options = options_from_settings()
    if _limiter is None or _limiter_options != options:
        was_running = _limiter is not None and _limiter.running
        if _limiter is not None:
            _limiter.stop()
        _limiter = InMemoryFixedWindowRateLimiter(options)
        _limiter_options = options
        if was_running:
            _limiter.start()

    return _limiter


def build_client_key(request: Request, *, trust_forwarded_for: bool | None = None) -> str:
    """Resolve the client identity for a request.

    Args:
        request: Incoming request.
        trust_forwarded_for: Use the first X-Forwarded-For hop when set;
            defaults to the ``rate_limit_trust_forwarded_for`` setting.

    Returns:
        str: Remote address, or ``"unknown"`` when it cannot be determined.
    """

    if trust_forwarded_for is None:
        trust_forwarded_for = settings.app.rate_limit_trust_forwarded_for

    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop

    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_CLIENT_KEY


def _hash_client_key(key: str) -> str:
    """Hash the client key for logging without exposing addresses."""
    return hashlib.sha256(key.encode()).hexdigest()[:16]


def denial_headers(result: RateLimitResult) -> dict[str, str]:
    """Build Retry-After and X-RateLimit-* headers for a denied request.

    Retry-After is measured on the limiter's own clock, at decision time.
    """

    return {
        "Retry-After": str(result.retry_after_seconds()),
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_time // 1000),
    }


def _check(limiter: AbstractRateLimiter, request: Request) -> RateLimitResult:
    key = build_client_key(request)
    result = limiter.admit(key)
    log_fields = {
        "key_hash": _hash_client_key(result.key),
        "count": result.count,
        "limit": result.limit,
        "window_ms": limiter.options.window_ms,
        "path": request.url.path,
    }
    if result.allowed:
        logger.debug("rate_limit.allowed", extra=log_fields)
    else:
        logger.warning("rate_limit.exceeded", extra=log_fields)
    return result


async def rate_limit_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """HTTP middleware enforcing the global per-client limit.

    Denied requests never reach the route; they get the configured status
    and a ``{"success": false, "message": ...}`` body.

    Usage:
        app.middleware("http")(rate_limit_middleware)
    """

    if not settings.app.rate_limit_enabled:
        return await call_next(request)
    if request.url.path in parse_csv(settings.app.rate_limit_exempt_paths):
        return await call_next(request)

    limiter = get_rate_limiter()
    result = _check(limiter, request)
    if result.allowed:
        return await call_next(request)

    headers = denial_headers(result) if limiter.options.include_headers else None
    return JSONResponse(
        status_code=result.status_code or limiter.options.status_code,
        content=result.to_response_body(),
        headers=headers,
    )


def rate_limit_dependency(
    options: RateLimitOptions | None = None,
    *,
    limiter: AbstractRateLimiter | None = None,
) -> Callable[[Request], Awaitable[None]]:
    """Build a FastAPI dependency backed by its own limiter.

    Args:
        options: Options for a new in-memory limiter.
        limiter: Existing limiter to use instead (takes precedence).

    Returns:
        Dependency callable; the limiter is exposed as ``dependency.limiter``.
        Its sweeper starts on the first request and is stopped by
        ``stop_rate_limiters()`` at application shutdown.

    Example:
        >>> login_limit = rate_limit_dependency(RateLimitOptions(window_ms=900_000, max=5))
        >>> @router.post("/auth/login", dependencies=[Depends(login_limit)])
        ... async def login(): ...
    """

    route_limiter = limiter or InMemoryFixedWindowRateLimiter(options)
    _route_limiters.add(route_limiter)

    async def enforce_rate_limit(request: Request) -> None:
        if not route_limiter.running:
            route_limiter.start()
        result = _check(route_limiter, request)
        if result.allowed:
            return

        raise RateLimitExceededError(
            code="rate_limit_exceeded",
            message=result.message or route_limiter.options.message,
            status_code=result.status_code or route_limiter.options.status_code,
            headers=denial_headers(result) if route_limiter.options.include_headers else None,
        )

    enforce_rate_limit.limiter = route_limiter  # type: ignore[attr-defined]
    return enforce_rate_limit


def stop_rate_limiters() -> None:
    """Stop the sweepers of the global limiter and every per-route limiter."""

    if _limiter is not None:
        _limiter.stop()
    for route_limiter in list(_route_limiters):
        route_limiter.stop()
