"""
Unit tests for the ConnectionManager state machine.

Redis is emulated with fakeredis; toggling ``FakeServer.connected`` simulates
an outage. Backoff delays are in the tens of milliseconds.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from errors.exceptions import ShutdownError, StoreConnectionError, StoreUnavailable
from session.connection import ConnectionManager, ConnectionState


async def wait_for_state(manager: ConnectionManager, state: ConnectionState, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while manager.state is not state:
        if loop.time() > deadline:
            raise AssertionError(f"manager stuck in {manager.state.value}, expected {state.value}")
        await asyncio.sleep(0.005)


def counting(factory):
    """Wrap a client factory, recording how many clients it builds."""
    calls = {"count": 0}

    def _factory(config):
        calls["count"] += 1
        return factory(config)

    _factory.calls = calls
    return _factory


class TestConnect:
    """Tests for the initial connection."""

    @pytest.mark.asyncio
    async def test_connect_success(self, store_config, fake_client_factory):
        manager = ConnectionManager(store_config, client_factory=fake_client_factory)

        await manager.connect()

        assert manager.state is ConnectionState.CONNECTED
        assert manager.is_healthy()
        assert manager.reconnect_attempts == 0
        assert await manager.client.ping()
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_connect_is_idempotent_when_connected(self, store_config, fake_client_factory):
        factory = counting(fake_client_factory)
        manager = ConnectionManager(store_config, client_factory=factory)

        await manager.connect()
        await manager.connect()

        assert factory.calls["count"] == 1
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_connect_failure_schedules_reconnect(self, store_config, unreachable_client_factory):
        manager = ConnectionManager(store_config, client_factory=unreachable_client_factory)

        with pytest.raises(StoreConnectionError) as exc_info:
            await manager.connect()

        assert manager.state is ConnectionState.RECONNECTING
        assert not manager.is_healthy()
        assert "ConnectionError" in exc_info.value.details["last_error"]
        assert manager.last_error is not None
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_client_unavailable_while_unhealthy(self, store_config):
        manager = ConnectionManager(store_config)

        with pytest.raises(StoreUnavailable):
            _ = manager.client


class TestReconnect:
    """Tests for the background reconnection schedule."""

    @pytest.mark.asyncio
    async def test_reaches_failed_after_max_attempts(self, config_factory, unreachable_client_factory):
        config = config_factory(max_reconnect_attempts=3, base_backoff_ms=10)
        manager = ConnectionManager(config, client_factory=unreachable_client_factory)

        with pytest.raises(StoreConnectionError):
            await manager.connect()
        await wait_for_state(manager, ConnectionState.FAILED)

        assert manager.reconnect_attempts == 3
        # initial attempt plus one per reconnect
        assert unreachable_client_factory.calls["count"] == 4
        assert not manager.is_healthy()

        # No further attempts once FAILED
        await asyncio.sleep(0.1)
        assert unreachable_client_factory.calls["count"] == 4
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_zero_max_attempts_fails_immediately(self, config_factory, unreachable_client_factory):
        config = config_factory(max_reconnect_attempts=0)
        manager = ConnectionManager(config, client_factory=unreachable_client_factory)

        with pytest.raises(StoreConnectionError):
            await manager.connect()
        await wait_for_state(manager, ConnectionState.FAILED)

        assert unreachable_client_factory.calls["count"] == 1
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_recovers_when_redis_returns(self, config_factory, fake_server, fake_client_factory):
        # Redis is down for 250ms; retries are due at 100ms and 300ms
        config = config_factory(max_reconnect_attempts=3, base_backoff_ms=100, max_backoff_ms=1000)
        factory = counting(fake_client_factory)
        manager = ConnectionManager(config, client_factory=factory)
        fake_server.connected = False

        async def restore():
            await asyncio.sleep(0.25)
            fake_server.connected = True

        restorer = asyncio.create_task(restore())
        with pytest.raises(StoreConnectionError):
            await manager.connect()
        await wait_for_state(manager, ConnectionState.CONNECTED, timeout=3.0)
        await restorer

        assert manager.is_healthy()
        assert manager.reconnect_attempts == 0
        assert factory.calls["count"] == 3
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_concurrent_connects_share_one_attempt_budget(self, config_factory):
        config = config_factory(max_reconnect_attempts=3, base_backoff_ms=10)
        handshakes = {"explicit": 0, "retry": 0}

        async def refuse():
            await asyncio.sleep(0.01)
            raise RedisConnectionError("Connection refused")

        def slow_unreachable(config):
            if asyncio.current_task().get_name() == "session-store-reconnect":
                handshakes["retry"] += 1
            else:
                handshakes["explicit"] += 1
            client = MagicMock()
            client.ping = AsyncMock(side_effect=refuse)
            client.aclose = AsyncMock(return_value=None)
            return client

        manager = ConnectionManager(config, client_factory=slow_unreachable)

        results = await asyncio.gather(manager.connect(), manager.connect(), return_exceptions=True)
        await wait_for_state(manager, ConnectionState.FAILED)

        assert all(isinstance(result, StoreConnectionError) for result in results)
        # the second caller joins the retry already running instead of restarting it
        assert handshakes == {"explicit": 1, "retry": 3}
        assert manager.reconnect_attempts == 3
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_explicit_connect_after_failed_starts_over(self, store_config, fake_server, fake_client_factory):
        manager = ConnectionManager(store_config, client_factory=fake_client_factory)
        fake_server.connected = False

        with pytest.raises(StoreConnectionError):
            await manager.connect()
        await wait_for_state(manager, ConnectionState.FAILED)

        fake_server.connected = True
        await manager.connect()

        assert manager.state is ConnectionState.CONNECTED
        assert manager.reconnect_attempts == 0
        await manager.shutdown()


class TestReportFailure:
    """Tests for operation-reported transport faults."""

    @pytest.mark.asyncio
    async def test_report_failure_triggers_reconnect(self, store_config, fake_client_factory):
        manager = ConnectionManager(store_config, client_factory=fake_client_factory)
        await manager.connect()

        await manager.report_failure(RedisConnectionError("reset by peer"))

        assert manager.state is ConnectionState.RECONNECTING
        assert not manager.is_healthy()
        assert "reset by peer" in manager.last_error

        await wait_for_state(manager, ConnectionState.CONNECTED)
        assert manager.reconnect_attempts == 0
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_burst_of_failures_starts_single_reconnect(self, store_config, fake_server, fake_client_factory):
        manager = ConnectionManager(store_config, client_factory=fake_client_factory)
        await manager.connect()
        fake_server.connected = False

        await asyncio.gather(*[
            manager.report_failure(RedisConnectionError("down")) for _ in range(10)
        ])

        tasks = [t for t in asyncio.all_tasks() if t.get_name() == "session-store-reconnect"]
        assert len(tasks) == 1
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_report_failure_ignored_when_not_connected(self, store_config):
        manager = ConnectionManager(store_config)

        await manager.report_failure(RedisConnectionError("down"))

        assert manager.state is ConnectionState.DISCONNECTED


class TestHeartbeat:
    """Tests for detecting a dropped connection without session traffic."""

    @pytest.mark.asyncio
    async def test_idle_drop_marks_manager_unhealthy(self, config_factory, fake_server, fake_client_factory):
        config = config_factory(heartbeat_interval=0.02, base_backoff_ms=50, max_backoff_ms=50)
        manager = ConnectionManager(config, client_factory=fake_client_factory)
        await manager.connect()
        assert manager.is_healthy()

        fake_server.connected = False
        await wait_for_state(manager, ConnectionState.RECONNECTING)

        assert not manager.is_healthy()
        assert "ConnectionError" in manager.last_error
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_heartbeat_resumes_after_reconnect(self, config_factory, fake_server, fake_client_factory):
        config = config_factory(heartbeat_interval=0.02, base_backoff_ms=20, max_backoff_ms=20)
        manager = ConnectionManager(config, client_factory=fake_client_factory)
        await manager.connect()

        fake_server.connected = False
        await wait_for_state(manager, ConnectionState.RECONNECTING)
        fake_server.connected = True
        await wait_for_state(manager, ConnectionState.CONNECTED)

        fake_server.connected = False
        await wait_for_state(manager, ConnectionState.RECONNECTING)
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_heartbeat_disabled_with_zero_interval(self, store_config, fake_client_factory):
        manager = ConnectionManager(store_config, client_factory=fake_client_factory)
        await manager.connect()

        tasks = [t for t in asyncio.all_tasks() if t.get_name() == "session-store-heartbeat"]
        assert tasks == []
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_stops_heartbeat(self, config_factory, fake_client_factory):
        manager = ConnectionManager(config_factory(heartbeat_interval=0.02), client_factory=fake_client_factory)
        await manager.connect()

        await manager.shutdown()

        tasks = [t for t in asyncio.all_tasks()
                 if t.get_name() == "session-store-heartbeat" and not t.done()]
        assert tasks == []


class TestListeners:
    """Tests for state change notification."""

    @pytest.mark.asyncio
    async def test_listeners_see_every_transition(self, store_config, fake_client_factory):
        manager = ConnectionManager(store_config, client_factory=fake_client_factory)
        transitions = []
        manager.add_listener(lambda previous, current: transitions.append((previous, current)))

        await manager.connect()
        await manager.disconnect()

        assert transitions == [
            (ConnectionState.DISCONNECTED, ConnectionState.CONNECTING),
            (ConnectionState.CONNECTING, ConnectionState.CONNECTED),
            (ConnectionState.CONNECTED, ConnectionState.DISCONNECTED),
        ]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_transition(self, store_config, fake_client_factory):
        manager = ConnectionManager(store_config, client_factory=fake_client_factory)
        manager.add_listener(MagicMock(side_effect=RuntimeError("listener bug")))

        await manager.connect()

        assert manager.state is ConnectionState.CONNECTED
        await manager.shutdown()


class TestShutdown:
    """Tests for disconnect() and shutdown()."""

    @pytest.mark.asyncio
    async def test_disconnect_without_connect_is_safe(self, store_config):
        manager = ConnectionManager(store_config)

        await manager.disconnect()
        await manager.disconnect()

        assert manager.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, store_config, fake_client_factory):
        manager = ConnectionManager(store_config, client_factory=fake_client_factory)
        await manager.connect()

        await manager.shutdown()
        await manager.shutdown()

        assert manager.closed
        assert manager.state is ConnectionState.DISCONNECTED
        assert not manager.is_healthy()

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending_reconnect(self, config_factory, unreachable_client_factory):
        config = config_factory(max_reconnect_attempts=10, base_backoff_ms=50, max_backoff_ms=50)
        manager = ConnectionManager(config, client_factory=unreachable_client_factory)

        with pytest.raises(StoreConnectionError):
            await manager.connect()
        await manager.shutdown()
        attempts = unreachable_client_factory.calls["count"]

        await asyncio.sleep(0.15)

        assert unreachable_client_factory.calls["count"] == attempts
        assert manager.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_connect_after_shutdown_raises(self, store_config, fake_client_factory):
        manager = ConnectionManager(store_config, client_factory=fake_client_factory)
        await manager.shutdown()

        with pytest.raises(StoreConnectionError):
            await manager.connect()

    @pytest.mark.asyncio
    async def test_shutdown_reports_close_failure(self, store_config):
        client = MagicMock()
        client.ping = AsyncMock(return_value=True)
        client.aclose = AsyncMock(side_effect=OSError("socket already closed"))
        manager = ConnectionManager(store_config, client_factory=lambda config: client)
        await manager.connect()

        with pytest.raises(ShutdownError):
            await manager.shutdown()

        assert manager.closed
        assert manager.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_connection_info_omits_password(self, config_factory, fake_client_factory):
        manager = ConnectionManager(config_factory(password="s3cret"), client_factory=fake_client_factory)
        await manager.connect()

        info = manager.connection_info()

        assert info["state"] == "connected"
        assert info["is_connected"] is True
        assert "s3cret" not in str(info)
        await manager.shutdown()
