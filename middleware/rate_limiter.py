"""
Rate limiting for the collar gateway, built on slowapi.

Collars post telemetry on a fixed cadence and the companion app polls the
read endpoints; both are limited per client IP. Each app keeps its limits
on ``app.state.rate_limits``; a small middleware exposes them to the
decorators below for the duration of a request, so the decorators take
callables rather than fixed strings.
"""

import json
import logging
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import FastAPI, Request, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from errors.codes import ErrorCode

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """
    Extract the client IP address, honouring proxy forwarding headers.

    Args:
        request: The incoming FastAPI request

    Returns:
        The client's IP address as a string
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return get_remote_address(request)


limiter = Limiter(key_func=get_client_ip)


def get_rate_limit_string(requests_per_minute: int) -> str:
    """Build a slowapi limit string such as ``"600/minute"``."""
    return f"{requests_per_minute}/minute"


@dataclass(frozen=True)
class RateLimits:
    """Limits for one application instance."""
    telemetry: str = "600/minute"
    api: str = "300/minute"
    enabled: bool = True


DEFAULT_RATE_LIMITS = RateLimits()

_active_limits: ContextVar[Optional[RateLimits]] = ContextVar("rate_limits", default=None)


def current_rate_limits() -> RateLimits:
    """Limits of the app handling the current request."""
    return _active_limits.get() or DEFAULT_RATE_LIMITS


def telemetry_rate_limit() -> str:
    """Current limit for POST /telemetry."""
    return current_rate_limits().telemetry


def api_rate_limit() -> str:
    """Current limit for the device read and walk endpoints."""
    return current_rate_limits().api


def rate_limiting_disabled() -> bool:
    return not current_rate_limits().enabled


class RateLimitContextMiddleware(BaseHTTPMiddleware):
    """Binds the serving app's ``RateLimits`` for the limit callables."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        token = _active_limits.set(getattr(request.app.state, "rate_limits", None))
        try:
            return await call_next(request)
        finally:
            _active_limits.reset(token)


def setup_rate_limiting(
    app: FastAPI,
    telemetry_per_minute: int = 600,
    api_per_minute: int = 300,
    enabled: bool = True
) -> None:
    """
    Configure rate limiting for a FastAPI application.

    Args:
        app: The FastAPI application instance
        telemetry_per_minute: Maximum telemetry posts per minute per IP
        api_per_minute: Maximum read/walk requests per minute per IP
        enabled: Whether limits are enforced for this app
    """
    app.state.rate_limits = RateLimits(
        telemetry=get_rate_limit_string(telemetry_per_minute),
        api=get_rate_limit_string(api_per_minute),
        enabled=enabled,
    )
    app.state.limiter = limiter
    app.add_middleware(RateLimitContextMiddleware)
    app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)

    if not enabled:
        logger.info("Rate limiting is disabled")
        return

    logger.info(
        f"Rate limiting configured: telemetry={telemetry_per_minute}/min, "
        f"api={api_per_minute}/min"
    )


async def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """
    Return the gateway's structured error body with a 429 status.

    Devices are expected to back off on 429; Retry-After tells them how long.
    """
    request_id = getattr(request.state, "request_id", "unknown")
    retry_after = getattr(exc, "retry_after", 60)

    response_body = {
        "error_code": ErrorCode.RATE_LIMITED.value,
        "message": "Too many requests. Please slow down.",
        "details": {
            "limit": str(exc.detail) if hasattr(exc, "detail") else "Rate limit exceeded",
            "retry_after_seconds": retry_after
        },
        "request_id": request_id
    }

    logger.warning(
        f"Rate limit exceeded for IP {get_client_ip(request)}",
        extra={"extra_data": {
            "path": request.url.path,
            "method": request.method
        }}
    )

    return Response(
        content=json.dumps(response_body),
        status_code=429,
        media_type="application/json",
        headers={
            "Retry-After": str(retry_after),
            "X-Request-ID": request_id
        }
    )
