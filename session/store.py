"""
Session store abstraction.

This module defines the contract shared by the Redis-backed store and the
in-process fallback store. Payloads are opaque bytes, keyed by an opaque
session id; TTLs are whole seconds.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class BackendKind(str, Enum):
    """Which implementation is serving sessions."""
    REMOTE = "remote"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class SessionRecord:
    """
    A stored session.

    Attributes:
        id: The opaque session identifier (without the key prefix)
        payload: The serialized session data
        expires_at: Unix timestamp at which the session expires, or None if
            the backend holds it without expiry
    """
    id: str
    payload: bytes
    expires_at: Optional[float] = None


@dataclass
class SessionCounts:
    """Aggregate session counts for a backend."""
    total: int = 0
    active: int = 0
    expired: int = 0
    memory_usage_bytes: Optional[int] = None


@dataclass
class CleanupReport:
    """Outcome of a cleanup pass."""
    backend_kind: BackendKind
    total_sessions: int = 0
    expired_sessions: int = 0
    removed_sessions: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "backend_kind": self.backend_kind.value,
            "total_sessions": self.total_sessions,
            "expired_sessions": self.expired_sessions,
            "removed_sessions": self.removed_sessions,
        }


class SessionStore(ABC):
    """
    Abstract base class for session storage implementations.

    All session operations are async. Implementations must be safe to call
    concurrently from many in-flight requests; last write wins for
    concurrent writes to the same session id.

    Class attributes:
        backend_kind: Which kind of backend this is.
        supports_expiry_introspection: True if the backend can classify its
            stored sessions as active or expired (used for statistics).
    """

    backend_kind: BackendKind
    supports_expiry_introspection: bool = False

    @abstractmethod
    async def load(self, session_id: str) -> Optional[SessionRecord]:
        """
        Retrieve a session by id.

        Returns:
            The session record, or None if it does not exist or has expired.
            The two cases are not distinguished.

        Raises:
            StoreUnavailable: If the store cannot serve the request.
        """

    @abstractmethod
    async def save(self, session_id: str, payload: bytes, ttl: Optional[int] = None) -> None:
        """
        Store a session, replacing any previous payload.

        Args:
            session_id: Unique identifier for the session.
            payload: Serialized session data.
            ttl: Lifetime in seconds; defaults to the configured TTL. A
                non-positive ttl destroys the session instead.

        Raises:
            StoreUnavailable: If the store cannot serve the request.
        """

    @abstractmethod
    async def destroy(self, session_id: str) -> None:
        """
        Delete a session. Deleting a missing session is not an error.

        Raises:
            StoreUnavailable: If the store cannot serve the request.
        """

    @abstractmethod
    async def touch(self, session_id: str, ttl: Optional[int] = None) -> bool:
        """
        Refresh a session's expiry without rewriting its payload.

        Returns:
            True if the session existed and was refreshed.

        Raises:
            StoreUnavailable: If the store cannot serve the request.
        """

    @abstractmethod
    def is_healthy(self) -> bool:
        """Whether the store can currently serve requests. Never raises."""

    async def ping(self) -> bool:
        """Round-trip liveness ping; local stores just report their health."""
        return self.is_healthy()

    async def count_sessions(self) -> SessionCounts:
        """
        Classify stored sessions as active or expired.

        Only available when ``supports_expiry_introspection`` is True.
        Cost grows with the number of stored sessions.
        """
        raise NotImplementedError(
            f"{type(self).__name__} does not support expiry introspection"
        )

    async def cleanup(self) -> CleanupReport:
        """Advisory maintenance pass; backends with native expiry only count."""
        return CleanupReport(backend_kind=self.backend_kind)

    async def close(self) -> None:
        """Release resources held by the store."""
