"""
Resilient session storage.

Sessions are persisted in Redis when it is reachable and in process memory
when it is not. Startup code calls initialize_session_store() once and passes
the returned ActiveStoreHandle to the components that need sessions.
"""

from session.store import (
    BackendKind,
    CleanupReport,
    SessionCounts,
    SessionRecord,
    SessionStore,
)
from session.connection import ConnectionManager, ConnectionState, create_redis_client
from session.redis_store import RedisSessionStore
from session.memory_store import InMemorySessionStore
from session.initializer import (
    ActiveStoreHandle,
    initialize_session_store,
    shutdown_session_store,
)

__all__ = [
    "ActiveStoreHandle",
    "BackendKind",
    "CleanupReport",
    "ConnectionManager",
    "ConnectionState",
    "InMemorySessionStore",
    "RedisSessionStore",
    "SessionCounts",
    "SessionRecord",
    "SessionStore",
    "create_redis_client",
    "initialize_session_store",
    "shutdown_session_store",
]
