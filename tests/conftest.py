"""
Shared fixtures for tabledb tests.
"""

import asyncio
import time
from typing import Awaitable, Callable

import pytest

from tabledb.config import TableDbSettings
from tabledb.engine.memory import MemoryEngine


@pytest.fixture
def engine():
    """Fresh in-memory engine."""
    return MemoryEngine()


@pytest.fixture
def settings():
    """Settings with a short reopen delay so reconnect tests stay fast."""
    return TableDbSettings(engine="memory", reopen_delay_ms=10, container_pool_size=4)


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    start = time.monotonic()
    while time.monotonic() - start < timeout:
        if predicate():
            return True
        await asyncio.sleep(0.005)
    return predicate()


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[bool]]:
    """Poll a predicate until it holds or a timeout expires."""
    return _wait_until
