"""Storage adapters for users, accounts, sessions, and verification tokens.

Use :func:`create_adapter` to build the backend named in the settings:
``memory`` for single-process deployments, ``redis`` when several
workers share sessions.
"""

from __future__ import annotations

import time

from typing import TYPE_CHECKING

from .base import Adapter, UnimplementedAdapter
from .memory import MemoryAdapter


if TYPE_CHECKING:
    from collections.abc import Callable

    from ..config import StorageSettings


def create_adapter(settings: StorageSettings, clock: Callable[[], float] = time.time) -> Adapter:
    """Create the storage adapter selected by *settings*.

    Parameters
    ----------
    settings : StorageSettings
        Storage configuration.
    clock : Callable[[], float], optional
        Time source for the adapter.

    Returns
    -------
    Adapter
        A memory or Redis adapter.
    """
    if settings.backend == "redis":
        from .redis import RedisAdapter

        return RedisAdapter(redis_url=settings.redis_url, prefix=settings.redis_prefix, clock=clock)
    return MemoryAdapter(clock=clock)


__all__ = [
    "Adapter",
    "MemoryAdapter",
    "UnimplementedAdapter",
    "create_adapter",
]
