"""Shared fixtures for the rate limiter tests."""

from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest


class FakeClock:
    """Controllable wall clock in epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_redis():
    """Create a mock Redis client for testing."""
    redis = MagicMock()
    redis.eval = AsyncMock(return_value=[1, "99", 0])
    redis.ping = AsyncMock(return_value=True)
    redis.aclose = AsyncMock()
    return redis


@pytest.fixture
def fake_redis():
    """In-process Redis that runs the Lua script for real.

    Each test gets its own server so buckets never leak between tests.
    """
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
