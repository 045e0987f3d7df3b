"""
Error handling module for the session store service.

This module provides structured error handling with:
- ErrorCode enum for standardized error codes
- AppException and the session store exception taxonomy
- Error response models and exception handlers for FastAPI integration
"""

from errors.codes import ErrorCode
from errors.exceptions import (
    AppException,
    ShutdownError,
    StoreConnectionError,
    StoreUnavailable,
)
from errors.handlers import (
    ErrorResponse,
    handle_app_exception,
    handle_unexpected_exception,
    register_exception_handlers,
)

__all__ = [
    "ErrorCode",
    "AppException",
    "ShutdownError",
    "StoreConnectionError",
    "StoreUnavailable",
    "ErrorResponse",
    "handle_app_exception",
    "handle_unexpected_exception",
    "register_exception_handlers",
]
