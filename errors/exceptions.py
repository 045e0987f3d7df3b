"""
Exception classes for the session store service.

Taxonomy:
- StoreConnectionError: handshake or ping against Redis failed. Handled by the
  connection manager (reconnect schedule); only connection-management callers
  ever see it.
- StoreUnavailable: a session operation was attempted while the store could
  not serve it. Callers treat it as "no session".
- ShutdownError: a shutdown step failed. Logged, never re-raised past the
  store handle.

Configuration problems are reported with config.settings.ConfigurationError.
"""

from typing import Any, Optional

from errors.codes import ErrorCode, get_default_status_code


class AppException(Exception):
    """
    Base exception class for all application-specific errors.

    This exception provides structured error information including:
    - error_code: A standardized error code from the ErrorCode enum
    - message: A human-readable error message
    - status_code: The HTTP status code to return
    - details: Optional additional context

    Example:
        raise AppException(
            error_code=ErrorCode.SESSION_STORE_UNAVAILABLE,
            message="Session store unavailable",
            details={"operation": "load", "state": "reconnecting"}
        )
    """

    def __init__(
        self,
        error_code: ErrorCode,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None
    ):
        """
        Initialize an AppException.

        Args:
            error_code: The error code from the ErrorCode enum
            message: A human-readable error message
            status_code: The HTTP status code (defaults to the error code's default)
            details: Optional dictionary with additional error context
        """
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
            f"{type(self).__name__}(error_code={self.error_code.value!r}, "
            f"message={self.message!r}, status_code={self.status_code}, "
            f"details={self.details!r})"
        )


class StoreUnavailable(AppException):
    """Raised when a session operation cannot be served by the active store."""

    def __init__(
        self,
        message: str = "Session store unavailable",
        details: Optional[dict[str, Any]] = None
    ):
        super().__init__(ErrorCode.SESSION_STORE_UNAVAILABLE, message, details=details)


class StoreConnectionError(AppException):
    """Raised when the handshake or liveness ping against Redis fails."""

    def __init__(
        self,
        message: str = "Could not connect to the session store",
        details: Optional[dict[str, Any]] = None
    ):
        super().__init__(ErrorCode.CONNECTION_FAILED, message, details=details)


class ShutdownError(AppException):
    """Raised when a shutdown step fails; shutdown itself still completes."""

    def __init__(
        self,
        message: str = "Session store shutdown did not complete cleanly",
        details: Optional[dict[str, Any]] = None
    ):
        super().__init__(ErrorCode.SHUTDOWN_FAILED, message, details=details)
