"""
Middleware components for the collar gateway.

Request/device correlation for logs and slowapi rate limiting.
"""

from middleware.request_id import (
    RequestIDMiddleware,
    bind_device_id,
    device_id_var,
    request_id_var,
)
from middleware.rate_limiter import (
    RateLimitContextMiddleware,
    RateLimits,
    api_rate_limit,
    current_rate_limits,
    get_client_ip,
    limiter,
    rate_limiting_disabled,
    setup_rate_limiting,
    telemetry_rate_limit,
)

__all__ = [
    "RequestIDMiddleware",
    "bind_device_id",
    "device_id_var",
    "request_id_var",
    "RateLimitContextMiddleware",
    "RateLimits",
    "api_rate_limit",
    "current_rate_limits",
    "get_client_ip",
    "limiter",
    "rate_limiting_disabled",
    "setup_rate_limiting",
    "telemetry_rate_limit",
]
