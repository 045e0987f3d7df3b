"""
Health check module for the session store service.

This module provides health snapshots, readiness/liveness checks and
background statistics polling for the active session store.
"""

from health.service import (
    DependencyHealth,
    HealthMonitor,
    HealthSnapshot,
    HealthStatus,
    collect_snapshot,
)

__all__ = [
    "DependencyHealth",
    "HealthMonitor",
    "HealthSnapshot",
    "HealthStatus",
    "collect_snapshot",
]
