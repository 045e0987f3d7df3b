"""
Connection lifecycle management for the Redis session store.

The ConnectionManager owns the single Redis client shared by all session
operations. It is an explicit state machine: every external event
(connect requested, handshake result, operation failure, disconnect) is a
method call that moves the manager to exactly one ConnectionState through
``_transition``, which logs the change and notifies listeners.

State machine:
- DISCONNECTED -> CONNECTING: connect() called
- CONNECTING -> CONNECTED: handshake and ping succeed
- CONNECTING -> RECONNECTING: handshake fails, a background retry is scheduled
- RECONNECTING -> CONNECTED: a retry succeeds
- RECONNECTING -> FAILED: max_reconnect_attempts exhausted
- CONNECTED -> RECONNECTING: an operation or the heartbeat hit a transport failure
- any -> DISCONNECTED: disconnect() or shutdown()

FAILED stops automatic retries; an explicit connect() starts over with a
fresh attempt counter.

While CONNECTED, a heartbeat task pings the server every
``heartbeat_interval`` seconds so a dropped connection is noticed even when
no session traffic is flowing.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, List, Optional

import redis.asyncio as redis
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    RedisError,
    TimeoutError as RedisTimeoutError,
)

from config.settings import StoreConfig
from errors.exceptions import ShutdownError, StoreConnectionError, StoreUnavailable
from resilience.backoff import BackoffPolicy

logger = logging.getLogger(__name__)

# Faults meaning the connection itself is gone, as opposed to a rejected command
TRANSPORT_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError, asyncio.TimeoutError)

ClientFactory = Callable[[StoreConfig], redis.Redis]
StateListener = Callable[["ConnectionState", "ConnectionState"], None]


async def _cancel_task(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


class ConnectionState(str, Enum):
    """Lifecycle state of the Redis connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


def create_redis_client(config: StoreConfig) -> redis.Redis:
    """
    Build an async Redis client from the store configuration.

    Responses are left as bytes since session payloads are opaque.
    """
    password = config.password.get_secret_value() if config.password else None
    return redis.Redis(
        host=config.host,
        port=config.port,
        db=config.db,
        password=password,
        socket_connect_timeout=config.connect_timeout,
        socket_timeout=config.operation_timeout,
        decode_responses=False,
    )


class ConnectionManager:
    """
    Owns the Redis connection, its health and its reconnection schedule.

    At most one reconnect task runs per manager, and only one handshake is
    in flight at a time (guarded by ``_connect_lock``). Session operations
    never take that lock: they read ``is_healthy()`` and ``client``.

    Attributes:
        config: The immutable store configuration
        backoff: Delay schedule for reconnect attempts
    """

    def __init__(
        self,
        config: StoreConfig,
        client_factory: Optional[ClientFactory] = None,
        backoff: Optional[BackoffPolicy] = None,
    ):
        self.config = config
        self.backoff = backoff or BackoffPolicy.from_config(config)
        self._client_factory = client_factory or create_redis_client
        self._client: Optional[redis.Redis] = None
        self._state = ConnectionState.DISCONNECTED
        self._reconnect_attempts = 0
        self._reconnect_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._listeners: List[StateListener] = []
        self._last_error: Optional[str] = None
        self._closed = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def client(self) -> redis.Redis:
        """
        The live Redis client.

        Raises:
            StoreUnavailable: If the connection is not healthy.
        """
        if not self.is_healthy():
            raise StoreUnavailable(details={"state": self._state.value})
        return self._client

    def add_listener(self, listener: StateListener) -> None:
        """Register a callback invoked with (previous, current) on every transition."""
        self._listeners.append(listener)

    def is_healthy(self) -> bool:
        """
        True iff connected and holding an open client.

        A silently dropped transport is caught by the next operation or
        heartbeat, which moves the manager to RECONNECTING.
        """
        return (
            not self._closed
            and self._state is ConnectionState.CONNECTED
            and self._client is not None
        )

    async def connect(self) -> None:
        """
        Establish the connection with a handshake and ping.

        Idempotent when already connected. An explicit call cancels any
        pending background retry and resets the attempt counter.

        Raises:
            StoreConnectionError: If the attempt fails. The manager is then
                RECONNECTING with a retry scheduled in the background.
        """
        if self._closed:
            raise StoreConnectionError("Connection manager has been shut down")
        if self._state is ConnectionState.CONNECTED:
            return

        await self._cancel_reconnect()

        async with self._connect_lock:
            if self._state is ConnectionState.CONNECTED:
                return
            if self._reconnect_in_progress():
                # A concurrent connect() already failed and handed off to the
                # retry loop; its attempt counter must keep running.
                raise StoreConnectionError(
                    f"Could not connect to Redis at {self.config.host}:{self.config.port}",
                    details={"last_error": self._last_error, "state": self._state.value}
                )

            self._reconnect_attempts = 0
            self._transition(ConnectionState.CONNECTING)
            logger.info(
                f"Connecting to Redis at {self.config.host}:{self.config.port}",
                extra={"extra_data": self.config.describe()}
            )

            if await self._attempt():
                self._transition(ConnectionState.CONNECTED)
                self._start_heartbeat()
                return

            self._transition(ConnectionState.RECONNECTING)
            self._schedule_reconnect()

        raise StoreConnectionError(
            f"Could not connect to Redis at {self.config.host}:{self.config.port}",
            details={"last_error": self._last_error}
        )

    async def report_failure(self, error: BaseException) -> None:
        """
        Signal that an operation hit a transport fault on the live connection.

        Moves CONNECTED -> RECONNECTING and schedules the reconnect task.
        Reports arriving in any other state are ignored, so a burst of
        failing requests triggers a single reconnect.
        """
        if self._closed or self._state is not ConnectionState.CONNECTED:
            return

        self._last_error = f"{type(error).__name__}: {error}"
        client, self._client = self._client, None
        self._transition(ConnectionState.RECONNECTING)
        self._schedule_reconnect()
        await self._cancel_heartbeat()

        if client is not None:
            await self._close_client(client)

    async def disconnect(self) -> None:
        """Close the connection and stop retrying. Always safe to call."""
        await self._teardown()

    async def shutdown(self) -> None:
        """
        Permanently stop the manager. Idempotent.

        Every step runs even if closing the client fails.

        Raises:
            ShutdownError: If the client could not be closed cleanly.
        """
        if self._closed:
            return
        self._closed = True

        error = await self._teardown()
        if error is not None:
            raise ShutdownError(details={"error": str(error)}) from error

    def connection_info(self) -> dict[str, Any]:
        """Diagnostic view of the connection; never includes the password."""
        return {
            "state": self._state.value,
            "is_connected": self.is_healthy(),
            "reconnect_attempts": self._reconnect_attempts,
            "max_reconnect_attempts": self.backoff.max_attempts,
            "last_error": self._last_error,
            "config": self.config.describe(),
        }

    async def _attempt(self) -> bool:
        """One handshake + ping. Keeps the client only on success."""
        client = None
        connected = False
        try:
            client = self._client_factory(self.config)
            await asyncio.wait_for(client.ping(), timeout=self.config.connect_timeout)
            connected = True
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            self._last_error = f"{type(e).__name__}: {e}"
            logger.warning(
                f"Redis connection attempt failed: {self._last_error}",
                extra={"extra_data": {
                    "host": self.config.host,
                    "port": self.config.port,
                    "reconnect_attempts": self._reconnect_attempts,
                    "error_type": type(e).__name__,
                }}
            )
            return False
        finally:
            if not connected and client is not None:
                await self._close_client(client)

        self._client = client
        self._last_error = None
        return True

    def _schedule_reconnect(self) -> None:
        if self._closed:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(
            self._reconnect_loop(), name="session-store-reconnect"
        )

    async def _reconnect_loop(self) -> None:
        while not self.backoff.exhausted(self._reconnect_attempts):
            self._reconnect_attempts += 1
            delay = self.backoff.delay_for(self._reconnect_attempts)
            logger.info(
                f"Reconnecting to Redis (attempt {self._reconnect_attempts}/"
                f"{self.backoff.max_attempts}) in {delay:.2f} seconds",
                extra={"extra_data": {
                    "attempt": self._reconnect_attempts,
                    "max_attempts": self.backoff.max_attempts,
                    "delay_seconds": delay,
                }}
            )
            await asyncio.sleep(delay)

            async with self._connect_lock:
                if self._closed or self._state is not ConnectionState.RECONNECTING:
                    return
                if await self._attempt():
                    attempts = self._reconnect_attempts
                    self._reconnect_attempts = 0
                    self._transition(ConnectionState.CONNECTED)
                    self._start_heartbeat()
                    logger.info(f"Reconnected to Redis after {attempts} attempt(s)")
                    return

        async with self._connect_lock:
            if self._state is ConnectionState.RECONNECTING:
                self._transition(ConnectionState.FAILED)
                logger.error(
                    f"Max Redis reconnection attempts reached ({self.backoff.max_attempts})",
                    extra={"extra_data": {"last_error": self._last_error}}
                )

    def _reconnect_in_progress(self) -> bool:
        return (
            self._state is ConnectionState.RECONNECTING
            and self._reconnect_task is not None
            and not self._reconnect_task.done()
        )

    def _start_heartbeat(self) -> None:
        if self._closed or self.config.heartbeat_interval <= 0:
            return
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            return
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(), name="session-store-heartbeat"
        )

    async def _heartbeat_loop(self) -> None:
        """Ping the idle connection; a transport fault is handled like a failed operation."""
        interval = self.config.heartbeat_interval
        while True:
            await asyncio.sleep(interval)
            client = self._client
            if self._closed or self._state is not ConnectionState.CONNECTED or client is None:
                return
            try:
                await asyncio.wait_for(client.ping(), timeout=self.config.connect_timeout)
            except TRANSPORT_ERRORS as e:
                logger.warning(
                    f"Redis heartbeat failed: {type(e).__name__}: {e}",
                    extra={"extra_data": {"error_type": type(e).__name__}}
                )
                await self.report_failure(e)
                return
            except RedisError as e:
                logger.warning(f"Redis heartbeat rejected: {e}")

    async def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        await _cancel_task(task)

    async def _cancel_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        await _cancel_task(task)

    async def _teardown(self) -> Optional[Exception]:
        await self._cancel_reconnect()
        await self._cancel_heartbeat()
        client, self._client = self._client, None
        self._transition(ConnectionState.DISCONNECTED)
        if client is None:
            return None
        return await self._close_client(client)

    async def _close_client(self, client: redis.Redis) -> Optional[Exception]:
        try:
            await client.aclose()
        except (RedisError, OSError) as e:
            logger.warning(f"Error closing Redis client: {e}")
            return e
        return None

    def _transition(self, new_state: ConnectionState) -> None:
        previous = self._state
        if previous is new_state:
            return
        self._state = new_state

        if new_state is ConnectionState.FAILED:
            level = logging.ERROR
        elif new_state is ConnectionState.RECONNECTING:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(
            level,
            f"Session store connection {previous.value} -> {new_state.value}",
            extra={"extra_data": {
                "previous_state": previous.value,
                "state": new_state.value,
                "reconnect_attempts": self._reconnect_attempts,
            }}
        )

        for listener in list(self._listeners):
            try:
                listener(previous, new_state)
            except Exception:
                logger.exception("Connection state listener failed")

    def __repr__(self) -> str:
        return (
            f"ConnectionManager(host={self.config.host!r}, port={self.config.port}, "
            f"state={self._state.value}, reconnect_attempts={self._reconnect_attempts})"
        )
