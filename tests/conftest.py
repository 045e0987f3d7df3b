"""
Shared pytest fixtures and configuration for all tests.
"""
import os
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest
from hypothesis import settings, Verbosity, Phase
from redis.exceptions import ConnectionError as RedisConnectionError

from config.settings import StoreConfig

# Default profile: balanced for local development
settings.register_profile(
    "default",
    max_examples=100,
    verbosity=Verbosity.normal,
    deadline=None,  # Disable deadline for async tests
    print_blob=True,
)

# CI profile: more thorough testing for continuous integration
settings.register_profile(
    "ci",
    max_examples=200,
    verbosity=Verbosity.verbose,
    deadline=None,
    print_blob=True,
    derandomize=True,
)

# Debug profile: minimal examples for quick debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
    print_blob=True,
    phases=[Phase.explicit, Phase.reuse, Phase.generate],
)

# Fast profile: quick smoke tests
settings.register_profile(
    "fast",
    max_examples=20,
    verbosity=Verbosity.normal,
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "default"))


def make_config(**overrides) -> StoreConfig:
    """StoreConfig with fast timeouts and backoff, isolated from the environment."""
    values = {
        "host": "localhost",
        "port": 6379,
        "key_prefix": "test:sess:",
        "ttl": 60,
        "max_reconnect_attempts": 3,
        "base_backoff_ms": 10,
        "max_backoff_ms": 100,
        "connect_timeout": 0.5,
        "operation_timeout": 0.5,
        "heartbeat_interval": 0,
    }
    values.update(overrides)
    return StoreConfig(_env_file=None, **values)


@pytest.fixture
def config_factory():
    """Factory building test StoreConfig objects with overrides."""
    return make_config


@pytest.fixture
def store_config() -> StoreConfig:
    """Store configuration with millisecond-scale backoff for unit tests."""
    return make_config()


@pytest.fixture
def fake_server() -> fakeredis.FakeServer:
    """An in-process Redis server; set ``connected = False`` to simulate an outage."""
    return fakeredis.FakeServer()


@pytest.fixture
def fake_client_factory(fake_server):
    """Client factory producing async clients bound to ``fake_server``."""
    def _factory(config: StoreConfig):
        return fakeredis.FakeAsyncRedis(server=fake_server)
    return _factory


@pytest.fixture
def unreachable_client_factory():
    """Client factory whose clients fail the handshake, counting attempts."""
    calls = {"count": 0}

    def _factory(config: StoreConfig):
        calls["count"] += 1
        client = MagicMock()
        client.ping = AsyncMock(side_effect=RedisConnectionError("Connection refused"))
        client.aclose = AsyncMock(return_value=None)
        return client

    _factory.calls = calls
    return _factory
