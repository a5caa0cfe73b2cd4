"""Shared fixtures."""

import pytest

from stackpilot.drivers import DriverRegistry, InMemoryDriver
from stackpilot.state import StateStore
from stackpilot.utils.retry import RetryStrategy

TEST_TYPES = ('Test::Network', 'Test::Server', 'Test::Bucket')


@pytest.fixture
def drivers():
    """One in-memory driver per test resource type."""
    return {type_tag: InMemoryDriver(type_tag) for type_tag in TEST_TYPES}


@pytest.fixture
def registry(drivers):
    """Registry with the in-memory drivers registered."""
    registry = DriverRegistry()
    for type_tag, driver in drivers.items():
        registry.register(type_tag, driver)
    return registry


@pytest.fixture
def state_store():
    """State store kept in memory only."""
    return StateStore()


@pytest.fixture
def fast_retry():
    """Retry strategy without backoff delays."""
    return RetryStrategy(max_attempts=3, base_delay=0, max_delay=0, jitter=False)
