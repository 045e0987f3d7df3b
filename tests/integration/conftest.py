"""
Integration test configuration and fixtures.

This module provides fixtures for integration testing against a real Redis
instance when one is configured, and the FastAPI application wired to a
session store handle of the test's choosing.
"""
import os
from dataclasses import dataclass, field

import pytest
from fastapi.testclient import TestClient

from config.settings import StoreConfig
from health.service import HealthMonitor
from session.initializer import ActiveStoreHandle
from session.memory_store import InMemorySessionStore

TEST_KEY_PREFIX = "it:sess:"


@dataclass
class TestRedisConfig:
    """
    Configuration for a test Redis instance.

    Environment Variables:
    - TEST_REDIS_HOST: Redis host for integration tests (unset: skip real-Redis tests)
    - TEST_REDIS_PORT: Redis port (default: 6379)
    - TEST_REDIS_DB: Database index reserved for tests (default: 15)
    """
    __test__ = False

    host: str = field(default_factory=lambda: os.getenv("TEST_REDIS_HOST", ""))
    port: int = field(default_factory=lambda: int(os.getenv("TEST_REDIS_PORT", "6379")))
    db: int = field(default_factory=lambda: int(os.getenv("TEST_REDIS_DB", "15")))

    @property
    def is_configured(self) -> bool:
        return bool(self.host)

    def to_store_config(self, **overrides) -> StoreConfig:
        values = {
            "host": self.host,
            "port": self.port,
            "db": self.db,
            "key_prefix": TEST_KEY_PREFIX,
            "ttl": 60,
            "max_reconnect_attempts": 2,
            "base_backoff_ms": 50,
            "max_backoff_ms": 200,
        }
        values.update(overrides)
        return StoreConfig(_env_file=None, **values)


@pytest.fixture(scope="session")
def redis_test_config() -> TestRedisConfig:
    config = TestRedisConfig()
    if not config.is_configured:
        pytest.skip("TEST_REDIS_HOST not set; skipping real Redis tests")
    return config


@pytest.fixture
def fallback_handle(store_config) -> ActiveStoreHandle:
    return ActiveStoreHandle(InMemorySessionStore(store_config), config=store_config)


@pytest.fixture
def api_client_for():
    """
    Build a TestClient whose dependencies resolve to the given handle.

    The application lifespan is not run, so no real Redis connection is made.
    """
    from main import app, get_health_monitor, get_session_store

    def _build(handle, monitor=None):
        monitor = monitor or HealthMonitor(handle, poll_interval=0)
        app.dependency_overrides[get_session_store] = lambda: handle
        app.dependency_overrides[get_health_monitor] = lambda: monitor
        return TestClient(app)

    yield _build
    app.dependency_overrides.clear()
