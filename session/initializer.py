"""
Session store startup, the active store handle, and shutdown.

initialize_session_store() is called once by the process startup routine. It
tries Redis first and falls back to the in-memory store when Redis cannot be
reached, so a session store outage degrades service instead of crashing the
server. The returned ActiveStoreHandle is passed explicitly to whatever needs
sessions and lives for the rest of the process.
"""

import asyncio
import logging
from typing import Optional, TYPE_CHECKING

from config.settings import StoreConfig, load_store_config
from errors.exceptions import ShutdownError, StoreUnavailable
from session.connection import ClientFactory, ConnectionManager, ConnectionState
from session.memory_store import InMemorySessionStore
from session.redis_store import RedisSessionStore
from session.store import BackendKind, CleanupReport, SessionStore

if TYPE_CHECKING:
    from health.service import HealthSnapshot

logger = logging.getLogger(__name__)


class ActiveStoreHandle:
    """
    Stable reference to whichever session store is active.

    Exactly one store is active at a time. When a Redis-backed handle's
    connection reaches FAILED and ``fallback_on_failure`` is set, the handle
    switches permanently to a fresh in-memory store; sessions are never
    copied between the two stores.
    The Redis store it replaces is closed.

    After shutdown() the handle is inert: session operations raise
    StoreUnavailable and is_healthy() is False.
    """

    def __init__(
        self,
        store: SessionStore,
        manager: Optional[ConnectionManager] = None,
        config: Optional[StoreConfig] = None,
    ):
        self._store = store
        self._manager = manager
        self.config = config or (manager.config if manager is not None else None)
        self._closed = False
        self._retired: Optional[asyncio.Task] = None

        if manager is not None:
            manager.add_listener(self._on_connection_state)

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def backend_kind(self) -> BackendKind:
        return self._store.backend_kind

    @property
    def connection_manager(self) -> Optional[ConnectionManager]:
        return self._manager

    @property
    def closed(self) -> bool:
        return self._closed

    def _on_connection_state(self, previous: ConnectionState, current: ConnectionState) -> None:
        if current is not ConnectionState.FAILED or self._closed:
            return
        if self._store.backend_kind is not BackendKind.REMOTE:
            return
        if self.config is not None and not self.config.fallback_on_failure:
            return

        retired, self._store = self._store, InMemorySessionStore(self.config)
        # Stray references to the Redis store must fail fast from now on
        self._retired = asyncio.get_running_loop().create_task(retired.close())
        logger.warning(
            "Redis reconnection failed permanently; serving sessions from the in-memory store. "
            "Sessions stored in Redis are not carried over.",
            extra={"extra_data": {"previous_state": previous.value}}
        )

    def _active(self, operation: str) -> SessionStore:
        if self._closed:
            raise StoreUnavailable("Session store has been shut down", details={"operation": operation})
        return self._store

    async def load(self, session_id: str) -> Optional[bytes]:
        """Session payload, or None if absent or expired."""
        record = await self._active("load").load(session_id)
        return record.payload if record is not None else None

    async def save(self, session_id: str, payload: bytes, ttl: Optional[int] = None) -> None:
        await self._active("save").save(session_id, payload, ttl)

    async def destroy(self, session_id: str) -> None:
        await self._active("destroy").destroy(session_id)

    async def touch(self, session_id: str, ttl: Optional[int] = None) -> bool:
        return await self._active("touch").touch(session_id, ttl)

    def is_healthy(self) -> bool:
        """
        Whether the active store can serve requests.

        The fallback store always reports healthy for availability purposes.
        """
        return not self._closed and self._store.is_healthy()

    async def ping(self) -> bool:
        if self._closed:
            return False
        return await self._store.ping()

    async def stats(self) -> "HealthSnapshot":
        """Recompute the HealthSnapshot for the active store."""
        # health.service imports the session package
        from health.service import collect_snapshot

        return await collect_snapshot(self._store, self._manager)

    async def cleanup(self) -> CleanupReport:
        return await self._active("cleanup").cleanup()

    async def shutdown(self) -> None:
        """
        Stop reconnecting, close the connection and make the handle inert.

        Idempotent. Shutdown failures are logged, never raised.
        """
        if self._closed:
            return
        self._closed = True
        logger.info("Shutting down session store...")

        if self._retired is not None:
            await self._retired
        await self._store.close()
        if self._manager is not None:
            try:
                await self._manager.shutdown()
            except ShutdownError as e:
                logger.error(
                    f"Error shutting down session store: {e.message}",
                    extra={"extra_data": e.to_dict()}
                )

        logger.info("Session store shutdown completed")

    def __repr__(self) -> str:
        return f"ActiveStoreHandle(backend={self.backend_kind.value}, closed={self._closed})"


async def initialize_session_store(
    config: Optional[StoreConfig] = None,
    client_factory: Optional[ClientFactory] = None,
) -> ActiveStoreHandle:
    """
    Build the process-wide session store handle.

    Args:
        config: Store configuration; loaded from the environment if omitted.
        client_factory: Optional factory for the Redis client (used by tests).

    Returns:
        A Redis-backed handle when the first connection attempt succeeds,
        otherwise an in-memory handle.

    Raises:
        ConfigurationError: Only when ``config`` is omitted and the
            environment holds invalid values. Nothing else escapes.
    """
    if config is None:
        config = load_store_config()

    logger.info("Initializing session store...")
    manager: Optional[ConnectionManager] = None
    try:
        manager = ConnectionManager(config, client_factory=client_factory)
        await manager.connect()
        handle = ActiveStoreHandle(RedisSessionStore(manager, config), manager, config)
        logger.info(
            "Session store initialized with Redis",
            extra={"extra_data": config.describe()}
        )
        return handle
    except Exception as e:
        logger.warning(
            f"Failed to initialize Redis session store ({e}); falling back to in-memory store. "
            "Session persistence is degraded.",
            extra={"extra_data": {"error_type": type(e).__name__, **config.describe()}}
        )

    if manager is not None:
        try:
            await manager.shutdown()
        except ShutdownError as e:
            logger.error(f"Error discarding Redis connection manager: {e.message}")

    return ActiveStoreHandle(InMemorySessionStore(config), None, config)


async def shutdown_session_store(handle: Optional[ActiveStoreHandle]) -> None:
    """Shut down a handle returned by initialize_session_store(). Safe to repeat."""
    if handle is None:
        return
    await handle.shutdown()
