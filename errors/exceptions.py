"""
Exception classes for the collar gateway.

AppException carries an ErrorCode, a message safe to return to devices and
apps, and optional structured details. The factory functions below are the
only way the rest of the gateway raises client-visible errors.
"""

from typing import Any, Optional

from errors.codes import ErrorCode, get_default_status_code


class AppException(Exception):
    """
    Base exception class for all gateway errors surfaced to a caller.

    Attributes:
        error_code: A standardized error code from the ErrorCode enum
        message: A human-readable error message
        status_code: The HTTP status code to return
        details: Optional additional context (e.g., the walk id)

    Example:
        raise AppException(
            error_code=ErrorCode.RESOURCE_NOT_FOUND,
            message="Walk session not found",
            details={"walk_id": "abc123"}
        )
    """

    def __init__(
        self,
        error_code: ErrorCode,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.status_code = status_code or get_default_status_code(error_code)
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for JSON serialization.

        Returns:
            Dictionary containing error_code, message, and details
        """
        result = {
            "error_code": self.error_code.value,
            "message": self.message,
        }
        if self.details is not None:
            result["details"] = self.details
        return result

    def __repr__(self) -> str:
        return (
            f"AppException(error_code={self.error_code.value!r}, "
            f"message={self.message!r}, status_code={self.status_code}, "
            f"details={self.details!r})"
        )


def validation_error(
    message: str,
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create a validation error exception."""
    return AppException(
        error_code=ErrorCode.VALIDATION_ERROR,
        message=message,
        details=details
    )


def invalid_request(
    message: str,
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create an invalid request exception."""
    return AppException(
        error_code=ErrorCode.INVALID_REQUEST,
        message=message,
        details=details
    )


def resource_not_found(
    message: str,
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create a resource not found exception."""
    return AppException(
        error_code=ErrorCode.RESOURCE_NOT_FOUND,
        message=message,
        details=details
    )


def walk_already_ended(
    message: str = "Walk session has already been ended",
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create an exception for a second end call on a finalized walk."""
    return AppException(
        error_code=ErrorCode.WALK_ALREADY_ENDED,
        message=message,
        details=details
    )


def invalid_signature(
    message: str = "Invalid signature",
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create an invalid signature exception."""
    return AppException(
        error_code=ErrorCode.INVALID_SIGNATURE,
        message=message,
        details=details
    )


def rate_limited(
    message: str = "Too many requests",
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create a rate limited exception."""
    return AppException(
        error_code=ErrorCode.RATE_LIMITED,
        message=message,
        details=details
    )


def store_not_configured(
    message: str = "Record store is not configured",
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create an exception for a gateway running without a record store."""
    return AppException(
        error_code=ErrorCode.STORE_NOT_CONFIGURED,
        message=message,
        details=details
    )


def store_unavailable(
    message: str = "Record store operation failed",
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create a record store unavailable exception."""
    return AppException(
        error_code=ErrorCode.STORE_UNAVAILABLE,
        message=message,
        details=details
    )


def internal_error(
    message: str = "An unexpected error occurred",
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create an internal error exception."""
    return AppException(
        error_code=ErrorCode.INTERNAL_ERROR,
        message=message,
        details=details
    )
