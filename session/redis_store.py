"""
Redis-based session store implementation.

Sessions are stored as raw bytes under ``<key_prefix><session_id>`` with a
native Redis expiry, so Redis is the source of truth and may expire or evict
records on its own. Operations fail fast with StoreUnavailable while the
connection is unhealthy; nothing is queued for later.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError

from config.settings import StoreConfig
from errors.exceptions import StoreUnavailable
from session.connection import TRANSPORT_ERRORS, ConnectionManager
from session.store import (
    BackendKind,
    CleanupReport,
    SessionCounts,
    SessionRecord,
    SessionStore,
)
from telemetry.service import span_for

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Redis TTL/PTTL reply for a key that does not exist
KEY_MISSING = -2

SCAN_BATCH_SIZE = 500

_GLOB_SPECIAL = "\\*?[]"


def escape_glob(value: str) -> str:
    """Escape Redis glob metacharacters so a prefix matches literally."""
    return "".join(f"\\{ch}" if ch in _GLOB_SPECIAL else ch for ch in value)


class RedisSessionStore(SessionStore):
    """
    Redis-backed session store.

    Every operation checks ``ConnectionManager.is_healthy()`` first. A
    transport fault during an operation is reported to the manager (which
    starts reconnecting) and surfaces to the caller as StoreUnavailable.

    Attributes:
        manager: The ConnectionManager owning the Redis client
        config: The store configuration (key prefix, default TTL, timeouts)
    """

    backend_kind = BackendKind.REMOTE
    supports_expiry_introspection = True

    def __init__(self, manager: ConnectionManager, config: Optional[StoreConfig] = None):
        self.manager = manager
        self.config = config or manager.config
        self._closed = False

    def _get_key(self, session_id: str) -> str:
        return f"{self.config.key_prefix}{session_id}"

    async def _execute(
        self,
        operation: str,
        command: Callable[[redis.Redis], Awaitable[T]],
        bounded: bool = True,
    ) -> T:
        if self._closed:
            raise StoreUnavailable("Session store has been shut down", details={"operation": operation})
        if not self.manager.is_healthy():
            raise StoreUnavailable(details={
                "operation": operation,
                "state": self.manager.state.value,
            })

        client = self.manager.client
        with span_for(operation, {"db.redis.database_index": self.config.db}):
            try:
                if not bounded:
                    return await command(client)
                return await asyncio.wait_for(command(client), timeout=self.config.operation_timeout)
            except TRANSPORT_ERRORS as e:
                logger.warning(
                    f"Redis {operation} failed with {type(e).__name__}: {e}",
                    extra={"extra_data": {"operation": operation, "error_type": type(e).__name__}}
                )
                await self.manager.report_failure(e)
                raise StoreUnavailable(details={"operation": operation, "error": str(e)}) from e
            except RedisError as e:
                logger.error(
                    f"Redis rejected {operation}: {e}",
                    extra={"extra_data": {"operation": operation, "error_type": type(e).__name__}}
                )
                raise StoreUnavailable(details={"operation": operation, "error": str(e)}) from e

    async def load(self, session_id: str) -> Optional[SessionRecord]:
        key = self._get_key(session_id)

        async def _load(client: redis.Redis):
            async with client.pipeline(transaction=True) as pipe:
                pipe.get(key)
                pipe.pttl(key)
                return await pipe.execute()

        payload, pttl = await self._execute("load", _load)
        if payload is None:
            return None

        expires_at = time.time() + pttl / 1000.0 if pttl is not None and pttl >= 0 else None
        return SessionRecord(id=session_id, payload=bytes(payload), expires_at=expires_at)

    async def save(self, session_id: str, payload: bytes, ttl: Optional[int] = None) -> None:
        effective_ttl = self.config.ttl if ttl is None else int(ttl)
        if effective_ttl <= 0:
            await self.destroy(session_id)
            return

        key = self._get_key(session_id)
        await self._execute("save", lambda client: client.set(key, payload, ex=effective_ttl))

    async def destroy(self, session_id: str) -> None:
        key = self._get_key(session_id)
        await self._execute("destroy", lambda client: client.delete(key))

    async def touch(self, session_id: str, ttl: Optional[int] = None) -> bool:
        effective_ttl = self.config.ttl if ttl is None else int(ttl)
        if effective_ttl <= 0:
            await self.destroy(session_id)
            return False

        key = self._get_key(session_id)
        # EXPIRE returns True only if the key exists
        result = await self._execute("touch", lambda client: client.expire(key, effective_ttl))
        return bool(result)

    def is_healthy(self) -> bool:
        return not self._closed and self.manager.is_healthy()

    async def ping(self) -> bool:
        return bool(await self._execute("ping", lambda client: client.ping()))

    async def count_sessions(self) -> SessionCounts:
        """
        Enumerate keys under the prefix with SCAN and classify each by TTL.

        A key whose TTL reply is the missing-key sentinel was expired or
        evicted between the SCAN and the TTL lookup.
        """
        pattern = f"{escape_glob(self.config.key_prefix)}*"

        async def _count(client: redis.Redis) -> SessionCounts:
            counts = SessionCounts()
            batch: List[Any] = []
            async for key in client.scan_iter(match=pattern, count=SCAN_BATCH_SIZE):
                batch.append(key)
                if len(batch) >= SCAN_BATCH_SIZE:
                    await self._classify(client, batch, counts)
                    batch = []
            if batch:
                await self._classify(client, batch, counts)

            try:
                info = await client.info("memory")
                counts.memory_usage_bytes = int(info.get("used_memory", 0)) or None
            except ResponseError as e:
                logger.debug(f"INFO memory not available: {e}")
            return counts

        # Enumeration is O(sessions): each command keeps its socket timeout, the
        # whole pass is bounded by the caller
        return await self._execute("count_sessions", _count, bounded=False)

    async def _classify(self, client: redis.Redis, keys: List[Any], counts: SessionCounts) -> None:
        async with client.pipeline(transaction=False) as pipe:
            for key in keys:
                pipe.ttl(key)
            ttls = await pipe.execute()

        for ttl in ttls:
            counts.total += 1
            if ttl > 0:
                counts.active += 1
            elif ttl == KEY_MISSING:
                counts.expired += 1

    async def cleanup(self) -> CleanupReport:
        """Redis expires keys natively, so cleanup only reports."""
        counts = await self.count_sessions()
        logger.info(
            f"Session cleanup: found {counts.total} sessions, {counts.expired} expired",
            extra={"extra_data": {"total": counts.total, "expired": counts.expired}}
        )
        return CleanupReport(
            backend_kind=self.backend_kind,
            total_sessions=counts.total,
            expired_sessions=counts.expired,
        )

    async def close(self) -> None:
        """Make the store inert. The connection itself belongs to the manager."""
        self._closed = True
