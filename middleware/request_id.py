"""
Request correlation middleware.

Each request gets a request id (taken from ``X-Request-ID`` or generated)
and, for ``/device/{id}/...`` routes, the device id it concerns. Both are
kept in context variables so the JSON log formatter can stamp every line
written while the request is being handled.
"""

import uuid
from contextvars import ContextVar
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
device_id_var: ContextVar[str] = ContextVar("device_id", default="")

REQUEST_ID_HEADER = "X-Request-ID"
DEVICE_PATH_PREFIX = "/device/"


def device_id_from_path(path: str) -> str:
    """
    Extract the device id from a ``/device/{id}/...`` path.

    Returns an empty string for any other path.
    """
    if not path.startswith(DEVICE_PATH_PREFIX):
        return ""
    return path[len(DEVICE_PATH_PREFIX):].split("/", 1)[0]


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware that binds request and device correlation ids.

    The request id is:
    1. Extracted from the X-Request-ID header if present
    2. Generated as a new UUID if not present
    3. Stored in request.state for use by error handlers
    4. Stored in a context variable for use by logging
    5. Added to the response headers

    Telemetry posts carry their device id in the body; the ingestion
    service binds it with ``bind_device_id`` once the payload is parsed.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        request_token = request_id_var.set(request_id)
        device_token = device_id_var.set(device_id_from_path(request.url.path))

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            device_id_var.reset(device_token)
            request_id_var.reset(request_token)


def get_request_id() -> str:
    """Get the current request ID, or empty string outside a request."""
    return request_id_var.get()


def bind_device_id(device_id: str) -> None:
    """Attach a device id to the current logging context."""
    device_id_var.set(device_id)
