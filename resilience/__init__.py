"""
Resilience patterns for the session store service.

This package provides the exponential backoff schedule that drives
reconnection to the remote session store.
"""

from resilience.backoff import BackoffPolicy, calculate_delay

__all__ = [
    "BackoffPolicy",
    "calculate_delay",
]
