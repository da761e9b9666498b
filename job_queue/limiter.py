"""
Concurrency Limiter — one in-flight unit of work per key.

Inbound events and timer firings for the same conversation are serialized
through ``with_lock(conversation_id, fn)``; different keys run in parallel.
Waiters for a key are served in arrival order (asyncio.Lock is FIFO).

The lock table lives in process memory only. It is a fast path: correctness
across restarts and workers comes from the session version guard and the
action idempotency key.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0          # running + queued callers


class ConcurrencyLimiter:

    def __init__(self):
        self._locks: dict[str, _KeyLock] = {}

    async def with_lock(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run fn while holding the lock for key."""
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.holders += 1
        if entry.holders > 1:
            logger.debug("limiter_queued", key=key, waiting=entry.holders - 1)
        try:
            async with entry.lock:
                return await fn()
        finally:
            entry.holders -= 1
            if entry.holders == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        entry = self._locks.get(key)
        return entry is not None and entry.lock.locked()

    def pending(self, key: str) -> int:
        """Callers currently running or queued for key."""
        entry = self._locks.get(key)
        return entry.holders if entry else 0

    @property
    def active_keys(self) -> list[str]:
        return list(self._locks)
