"""
Health and statistics reporting for the session store.

This module provides:
- HealthSnapshot: connection state plus session counts, recomputed per call
- HealthMonitor: readiness/liveness checks with response times and timeouts,
  and an optional background task polling snapshots and running cleanup

Session counts come from enumerating stored sessions, which costs O(number
of sessions). Snapshots are meant for periodic diagnostics, not per-request use.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, TYPE_CHECKING

from errors.exceptions import StoreUnavailable
from session.store import BackendKind, CleanupReport, SessionStore
from telemetry.service import get_telemetry_service

if TYPE_CHECKING:
    from session.connection import ConnectionManager
    from session.initializer import ActiveStoreHandle

logger = logging.getLogger(__name__)


@dataclass
class HealthSnapshot:
    """
    Point-in-time view of the active session store.

    Attributes:
        backend_kind: Which store is serving sessions
        connected: Whether the active store can serve requests right now
        reconnect_attempts: Reconnect attempts made since the last success
        state: Connection state of the Redis connection, None if there is none
        active_session_count: Sessions with time left, None if unknown
        expired_session_count: Sessions found expired or evicted, None if unknown
        total_session_count: All sessions found, None if unknown
        memory_usage_bytes: Backend memory usage when the backend reports it
        timestamp: When the snapshot was computed
    """
    backend_kind: BackendKind
    connected: bool
    reconnect_attempts: int = 0
    state: Optional[str] = None
    active_session_count: Optional[int] = None
    expired_session_count: Optional[int] = None
    total_session_count: Optional[int] = None
    memory_usage_bytes: Optional[int] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "backend_kind": self.backend_kind.value,
            "connected": self.connected,
            "state": self.state,
            "reconnect_attempts": self.reconnect_attempts,
            "active_session_count": self.active_session_count,
            "expired_session_count": self.expired_session_count,
            "total_session_count": self.total_session_count,
            "memory_usage_bytes": self.memory_usage_bytes,
            "timestamp": self.timestamp.isoformat() + "Z",
        }


async def collect_snapshot(
    store: SessionStore,
    manager: Optional["ConnectionManager"] = None
) -> HealthSnapshot:
    """
    Compute a HealthSnapshot for a store and its connection manager.

    Never raises for an unreachable store: counts are left as None instead.
    Counts are also None when the store cannot introspect expiry.
    """
    snapshot = HealthSnapshot(
        backend_kind=store.backend_kind,
        connected=store.is_healthy(),
        reconnect_attempts=manager.reconnect_attempts if manager is not None else 0,
        state=manager.state.value if manager is not None else None,
    )

    if not store.supports_expiry_introspection or not snapshot.connected:
        return snapshot

    try:
        counts = await store.count_sessions()
    except StoreUnavailable as e:
        logger.warning(f"Session counts unavailable: {e.message}")
        snapshot.connected = store.is_healthy()
        if manager is not None:
            snapshot.state = manager.state.value
        return snapshot

    snapshot.active_session_count = counts.active
    snapshot.expired_session_count = counts.expired
    snapshot.total_session_count = counts.total
    snapshot.memory_usage_bytes = counts.memory_usage_bytes
    return snapshot


@dataclass
class DependencyHealth:
    """
    Health status of a single dependency.

    Attributes:
        name: The name of the dependency (e.g., "session_store")
        healthy: Whether the dependency is healthy and responding
        response_time_ms: The time taken to check the dependency in milliseconds
        error: Optional error message if the dependency check failed
        details: Optional extra context (backend kind, connection state)
    """
    name: str
    healthy: bool
    response_time_ms: float
    error: Optional[str] = None
    details: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            "name": self.name,
            "healthy": self.healthy,
            "response_time_ms": round(self.response_time_ms, 2),
        }
        if self.error is not None:
            result["error"] = self.error
        if self.details is not None:
            result["details"] = self.details
        return result


@dataclass
class HealthStatus:
    """
    Overall health status of the service.

    Attributes:
        status: Overall status - "healthy", "degraded", or "unhealthy"
        timestamp: When the health check was performed
        dependencies: List of individual dependency health statuses
    """
    status: str  # "healthy", "degraded", "unhealthy"
    timestamp: datetime
    dependencies: list[DependencyHealth] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "status": self.status,
            "timestamp": self.timestamp.isoformat() + "Z",
            "dependencies": [dep.to_dict() for dep in self.dependencies],
        }


class HealthMonitor:
    """
    Health checks and periodic statistics for the active session store.

    Attributes:
        handle: The ActiveStoreHandle being monitored
        check_timeout: Timeout in seconds for a single dependency check
        poll_interval: Seconds between background polls
    """

    def __init__(
        self,
        handle: "ActiveStoreHandle",
        check_timeout: float = 5.0,
        poll_interval: float = 60.0
    ):
        self.handle = handle
        self.check_timeout = check_timeout
        self.poll_interval = poll_interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def snapshot(self) -> HealthSnapshot:
        """Current HealthSnapshot of the handle."""
        return await self.handle.stats()

    async def cleanup(self) -> CleanupReport:
        """Run the store's cleanup pass."""
        return await self.handle.cleanup()

    async def check_liveness(self) -> dict[str, Any]:
        """
        Simple liveness check - process is running.

        Does not touch the session store.
        """
        return {
            "status": "alive",
            "timestamp": datetime.utcnow().isoformat() + "Z"
        }

    async def check_health(self) -> dict[str, Any]:
        """
        Basic health check - service is accepting requests.
        """
        return {
            "status": "ok",
            "timestamp": datetime.utcnow().isoformat() + "Z"
        }

    async def check_readiness(self) -> HealthStatus:
        """
        Check whether the session store can serve requests.

        Status determination:
        - "healthy": Redis-backed and responding
        - "degraded": served by the in-memory fallback store
        - "unhealthy": the active store cannot serve requests

        Returns:
            HealthStatus: The aggregate status with the session store dependency
        """
        dependency = await self._check_session_store()

        if not dependency.healthy:
            status = "unhealthy"
        elif self.handle.backend_kind is BackendKind.FALLBACK:
            status = "degraded"
        else:
            status = "healthy"

        return HealthStatus(
            status=status,
            timestamp=datetime.utcnow(),
            dependencies=[dependency]
        )

    async def _check_session_store(self) -> DependencyHealth:
        """
        Ping the session store with a timeout, recording the response time.
        """
        start_time = time.perf_counter()
        details = {"backend_kind": self.handle.backend_kind.value}
        manager = self.handle.connection_manager
        if manager is not None:
            details["state"] = manager.state.value

        try:
            result = await asyncio.wait_for(self.handle.ping(), timeout=self.check_timeout)
            elapsed_ms = (time.perf_counter() - start_time) * 1000

            if result:
                logger.debug(f"Session store health check passed in {elapsed_ms:.2f}ms")
                return DependencyHealth(
                    name="session_store",
                    healthy=True,
                    response_time_ms=elapsed_ms,
                    details=details
                )

            logger.warning(f"Session store health check returned False after {elapsed_ms:.2f}ms")
            return DependencyHealth(
                name="session_store",
                healthy=False,
                response_time_ms=elapsed_ms,
                error="Session store health check returned False",
                details=details
            )

        except asyncio.TimeoutError:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            error_msg = f"Session store health check timed out after {self.check_timeout} seconds"
            logger.warning(error_msg)
            return DependencyHealth(
                name="session_store",
                healthy=False,
                response_time_ms=elapsed_ms,
                error=error_msg,
                details=details
            )

        except StoreUnavailable as e:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            error_msg = f"Session store health check failed: {e.message}"
            logger.warning(error_msg)
            return DependencyHealth(
                name="session_store",
                healthy=False,
                response_time_ms=elapsed_ms,
                error=error_msg,
                details=details
            )

    def start(self) -> None:
        """Start the background polling task. No-op if already running."""
        if self.running:
            return
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive to start polling")
        self._task = asyncio.create_task(self._poll_loop(), name="session-store-health")
        logger.info(f"Session store health polling started every {self.poll_interval}s")

    async def stop(self) -> None:
        """Stop the background polling task. Safe to call when not running."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def poll_once(self) -> HealthSnapshot:
        """Take one snapshot, report it, and run cleanup when the store is healthy."""
        snapshot = await self.snapshot()

        logger.info(
            "Session store health snapshot",
            extra={"extra_data": snapshot.to_dict()}
        )
        telemetry = get_telemetry_service()
        if telemetry:
            tags = {"backend": snapshot.backend_kind.value}
            telemetry.record_metric("session_store.connected", float(snapshot.connected), tags)
            if snapshot.active_session_count is not None:
                telemetry.record_metric("session_store.active_sessions", float(snapshot.active_session_count), tags)
                telemetry.record_metric("session_store.expired_sessions", float(snapshot.expired_session_count), tags)

        if snapshot.connected:
            try:
                await self.cleanup()
            except StoreUnavailable as e:
                logger.warning(f"Skipping session cleanup: {e.message}")

        return snapshot

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Session store health poll failed")
