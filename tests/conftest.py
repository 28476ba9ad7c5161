"""Pytest configuration and fixtures."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import os

from typing import TYPE_CHECKING

import fakeredis.aioredis
import pytest
import pytest_asyncio

from authgate.adapters.memory import MemoryAdapter
from authgate.adapters.redis import RedisAdapter
from authgate.models import User
from tests.helpers import FakeClock


if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep settings tests independent of the environment and CWD files."""
    for key in list(os.environ):
        if key.startswith("AUTHGATE_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def clock() -> FakeClock:
    """A controllable clock starting at the current time."""
    return FakeClock()


@pytest.fixture
def memory_adapter() -> MemoryAdapter:
    """A fresh in-memory adapter."""
    return MemoryAdapter()


@pytest.fixture
def fake_redis() -> fakeredis.aioredis.FakeRedis:
    """Create a fake Redis client for testing."""
    return fakeredis.aioredis.FakeRedis(decode_responses=True)


@pytest_asyncio.fixture
async def redis_adapter(fake_redis: fakeredis.aioredis.FakeRedis) -> AsyncIterator[RedisAdapter]:
    """A Redis adapter backed by fakeredis."""
    adapter = RedisAdapter(redis_client=fake_redis, prefix="test")
    yield adapter
    await adapter.close()


@pytest_asyncio.fixture(params=["memory", "redis"])
async def adapter(request: pytest.FixtureRequest, fake_redis: fakeredis.aioredis.FakeRedis):
    """Each adapter implementation in turn."""
    if request.param == "memory":
        yield MemoryAdapter()
    else:
        yield RedisAdapter(redis_client=fake_redis, prefix="test")


@pytest_asyncio.fixture
async def stored_user(adapter) -> User:
    """A user already stored in ``adapter``."""
    return await adapter.create_user(User(email="alice@example.com", name="Alice"))
