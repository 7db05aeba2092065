"""
Error code catalog for the collar gateway.

This module defines all error codes used throughout the gateway, covering
payload validation, device signature failures, missing records, record
store failures, and internal errors.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """
    Enumeration of all error codes used in the gateway.

    Each error code maps to a specific HTTP status code and error category:
    - Validation errors (4xx): Malformed or incomplete device reports
    - Authentication errors (4xx): Signature failures
    - Lookup errors (4xx): Unknown devices or walk sessions
    - Store errors (5xx): Record store missing or unreachable
    - Internal errors (5xx): Server-side issues
    """

    # Validation errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    """Required field missing from the payload (HTTP 400)"""

    INVALID_REQUEST = "INVALID_REQUEST"
    """Malformed request structure (HTTP 400)"""

    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    """Requested device or walk session does not exist (HTTP 404)"""

    WALK_ALREADY_ENDED = "WALK_ALREADY_ENDED"
    """Walk session has already been finalized (HTTP 409)"""

    # Authentication errors (4xx)
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    """Payload signature missing or mismatched (HTTP 401)"""

    RATE_LIMITED = "RATE_LIMITED"
    """Too many requests (HTTP 429)"""

    # Store errors (5xx)
    STORE_NOT_CONFIGURED = "STORE_NOT_CONFIGURED"
    """No record store endpoint configured (HTTP 500)"""

    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    """Record store operation failed or circuit is open (HTTP 500)"""

    # Internal errors (5xx)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    """Unexpected server error (HTTP 500)"""


# Mapping of error codes to their default HTTP status codes
ERROR_CODE_STATUS_MAP: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.RESOURCE_NOT_FOUND: 404,
    ErrorCode.WALK_ALREADY_ENDED: 409,
    ErrorCode.INVALID_SIGNATURE: 401,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.STORE_NOT_CONFIGURED: 500,
    ErrorCode.STORE_UNAVAILABLE: 500,
    ErrorCode.INTERNAL_ERROR: 500,
}


def get_default_status_code(error_code: ErrorCode) -> int:
    """
    Get the default HTTP status code for an error code.

    Args:
        error_code: The error code to look up

    Returns:
        The default HTTP status code for the error code
    """
    return ERROR_CODE_STATUS_MAP.get(error_code, 500)
