"""
Error code catalog for the session store service.

This module defines all error codes used throughout the application,
covering session store availability, connection management, configuration
and internal errors.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """
    Enumeration of all error codes used in the application.

    Each error code maps to a default HTTP status code:
    - Store errors (5xx): Remote session store unreachable or failing
    - Internal errors (5xx): Server-side issues
    """

    SESSION_STORE_UNAVAILABLE = "SESSION_STORE_UNAVAILABLE"
    """Session operation attempted while the store is unhealthy (HTTP 503)"""

    CONNECTION_FAILED = "CONNECTION_FAILED"
    """Handshake or liveness ping against Redis failed (HTTP 503)"""

    SHUTDOWN_FAILED = "SHUTDOWN_FAILED"
    """Best-effort shutdown step failed (HTTP 500)"""

    INTERNAL_ERROR = "INTERNAL_ERROR"
    """Unexpected server error (HTTP 500)"""


# Mapping of error codes to their default HTTP status codes
ERROR_CODE_STATUS_MAP: dict[ErrorCode, int] = {
    ErrorCode.SESSION_STORE_UNAVAILABLE: 503,
    ErrorCode.CONNECTION_FAILED: 503,
    ErrorCode.SHUTDOWN_FAILED: 500,
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
