"""
In-process fallback session store.

Used when Redis cannot be reached. Records live in a dict owned exclusively
by this process and are lost on restart. Expiry is enforced lazily on load
and swept by cleanup().
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Optional

from config.settings import StoreConfig
from errors.exceptions import StoreUnavailable
from session.store import (
    BackendKind,
    CleanupReport,
    SessionCounts,
    SessionRecord,
    SessionStore,
)

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_TTL = 43200


class InMemorySessionStore(SessionStore):
    """
    Dict-backed session store, guarded by an asyncio lock.

    Always healthy until closed. Not recommended for production: sessions
    are neither shared between processes nor persisted.

    Attributes:
        default_ttl: TTL in seconds used when save()/touch() get none
    """

    backend_kind = BackendKind.FALLBACK
    supports_expiry_introspection = True

    def __init__(
        self,
        config: Optional[StoreConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.default_ttl = config.ttl if config is not None else DEFAULT_FALLBACK_TTL
        self._clock = clock
        self._records: Dict[str, SessionRecord] = {}
        self._lock = asyncio.Lock()
        self._closed = False
        logger.warning("Using in-memory session store - sessions will not survive a restart")

    def _ensure_open(self, operation: str) -> None:
        if self._closed:
            raise StoreUnavailable("Session store has been shut down", details={"operation": operation})

    def _is_expired(self, record: SessionRecord, now: float) -> bool:
        return record.expires_at is not None and record.expires_at <= now

    async def load(self, session_id: str) -> Optional[SessionRecord]:
        self._ensure_open("load")
        async with self._lock:
            record = self._records.get(session_id)
            if record is None:
                return None
            if self._is_expired(record, self._clock()):
                del self._records[session_id]
                return None
            return record

    async def save(self, session_id: str, payload: bytes, ttl: Optional[int] = None) -> None:
        self._ensure_open("save")
        effective_ttl = self.default_ttl if ttl is None else int(ttl)
        async with self._lock:
            if effective_ttl <= 0:
                self._records.pop(session_id, None)
                return
            self._records[session_id] = SessionRecord(
                id=session_id,
                payload=bytes(payload),
                expires_at=self._clock() + effective_ttl,
            )

    async def destroy(self, session_id: str) -> None:
        self._ensure_open("destroy")
        async with self._lock:
            self._records.pop(session_id, None)

    async def touch(self, session_id: str, ttl: Optional[int] = None) -> bool:
        self._ensure_open("touch")
        effective_ttl = self.default_ttl if ttl is None else int(ttl)
        async with self._lock:
            record = self._records.get(session_id)
            now = self._clock()
            if record is None or self._is_expired(record, now):
                self._records.pop(session_id, None)
                return False
            if effective_ttl <= 0:
                del self._records[session_id]
                return False
            self._records[session_id] = SessionRecord(
                id=record.id,
                payload=record.payload,
                expires_at=now + effective_ttl,
            )
            return True

    def is_healthy(self) -> bool:
        return not self._closed

    async def count_sessions(self) -> SessionCounts:
        self._ensure_open("count_sessions")
        async with self._lock:
            now = self._clock()
            counts = SessionCounts(total=len(self._records))
            for record in self._records.values():
                if self._is_expired(record, now):
                    counts.expired += 1
                else:
                    counts.active += 1
            return counts

    async def cleanup(self) -> CleanupReport:
        """Remove every expired record."""
        self._ensure_open("cleanup")
        async with self._lock:
            now = self._clock()
            total = len(self._records)
            expired = [sid for sid, record in self._records.items() if self._is_expired(record, now)]
            for sid in expired:
                del self._records[sid]

        if expired:
            logger.info(f"Removed {len(expired)} expired in-memory sessions")
        return CleanupReport(
            backend_kind=self.backend_kind,
            total_sessions=total,
            expired_sessions=len(expired),
            removed_sessions=len(expired),
        )

    async def close(self) -> None:
        self._closed = True
        async with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        return len(self._records)
