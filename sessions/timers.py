"""
Timer Engine — durable per-conversation deadlines.

A waiting session costs one persisted TimerHandle row plus one sleeping
asyncio task, never a blocked worker. On restart ``reload()`` re-arms every
pending handle from the store; handles whose deadline already passed fire
right away.

Firing protocol:
  1. take the limiter lock for the conversation (same key as inbound events)
  2. claim the handle: pending → firing (conditional write; a concurrent
     cancel that got there first wins and nothing happens)
  3. invoke the callback with the claimed handle
  4. mark it done: firing → fired

A crash or a callback error between 2 and 4 leaves the handle firing.
``reload()`` hands firing handles from the recovery window back to the
callback, which must be idempotent (session version guard + action
idempotency key). Fired handles are done and never replayed.

Invariant: at most one pending handle per conversation; ``schedule`` cancels
any existing one first.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

import structlog

from core.errors import TimerError
from database.store_base import BaseAutomationStore
from job_queue.limiter import ConcurrencyLimiter
from models.schemas import (
    SessionPhase, TimerHandle, TimerStatus, conversation_lock_key, utcnow,
)

logger = structlog.get_logger()

FireCallback = Callable[[TimerHandle], Awaitable[Any]]


class TimerEngine:

    def __init__(
        self,
        store: BaseAutomationStore,
        limiter: ConcurrencyLimiter,
        on_fire: Optional[FireCallback] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        recovery_window_seconds: int = 86400,
    ):
        self.store = store
        self.limiter = limiter
        self._default_callback = on_fire
        self._clock = clock
        self._sleep = sleep
        self._recovery_window = timedelta(seconds=recovery_window_seconds)
        self._tasks: dict[str, asyncio.Task] = {}
        self._callbacks: dict[str, FireCallback] = {}

    def set_default_callback(self, on_fire: FireCallback):
        """Callback for handles re-armed on reload (callbacks are not persisted)."""
        self._default_callback = on_fire

    @property
    def armed(self) -> list[str]:
        return list(self._tasks)

    # ── Public API ────────────────────────────────────────

    async def schedule(
        self,
        workspace_id: str,
        conversation_id: str,
        phase: SessionPhase,
        deadline: datetime,
        on_fire: Optional[FireCallback] = None,
    ) -> TimerHandle:
        """Persist and arm a deadline, replacing any pending one for the conversation."""
        for existing in await self.store.get_pending_timers(workspace_id, conversation_id):
            await self.cancel(existing.id)

        handle = TimerHandle(
            workspace_id=workspace_id,
            conversation_id=conversation_id,
            phase=phase,
            deadline=deadline,
        )
        await self.store.create_timer(handle)
        self._arm(handle, on_fire)
        logger.info("timer_scheduled",
                    timer_id=handle.id,
                    conversation_id=conversation_id,
                    phase=phase.value,
                    deadline=deadline.isoformat())
        return handle

    async def cancel(self, timer_id: str) -> bool:
        """Cancel a pending timer. False if it already fired or was cancelled."""
        cancelled = await self.store.update_timer_status(
            timer_id, TimerStatus.PENDING, TimerStatus.CANCELLED, self._clock(),
        )
        self._disarm(timer_id)
        logger.info("timer_cancelled" if cancelled else "timer_cancel_noop", timer_id=timer_id)
        return cancelled

    async def fire(self, timer_id: str) -> bool:
        """Fire a pending timer now, through the conversation's limiter lock."""
        handle = await self.store.get_timer(timer_id)
        if handle is None or not handle.is_pending:
            return False
        return await self.limiter.with_lock(
            self._lock_key(handle), lambda: self._fire_locked(handle),
        )

    async def fire_due(self) -> int:
        """Fire every pending timer whose deadline has passed. Returns how many fired."""
        now = self._clock()
        fired = 0
        for handle in await self.store.list_timers(TimerStatus.PENDING):
            if handle.deadline <= now and await self.fire(handle.id):
                fired += 1
        return fired

    async def reload(self) -> int:
        """Re-arm pending timers after a restart and replay interrupted firings."""
        pending = await self.store.list_timers(TimerStatus.PENDING)
        for handle in pending:
            if handle.id not in self._tasks:
                self._arm(handle)

        since = self._clock() - self._recovery_window
        interrupted = await self.store.list_timers(TimerStatus.FIRING, resolved_after=since)
        for handle in interrupted:
            await self.limiter.with_lock(
                self._lock_key(handle), lambda h=handle: self._invoke(h, self._require_callback()),
            )

        logger.info("timers_reloaded", pending=len(pending), replayed=len(interrupted))
        return len(pending)

    async def shutdown(self):
        """Stop waiting. Pending handles stay in the store for the next reload."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ── Internals ─────────────────────────────────────────

    @staticmethod
    def _lock_key(handle: TimerHandle) -> str:
        return conversation_lock_key(handle.workspace_id, handle.conversation_id)

    def _require_callback(self, on_fire: Optional[FireCallback] = None) -> FireCallback:
        callback = on_fire or self._default_callback
        if callback is None:
            raise TimerError("Timer engine has no fire callback configured")
        return callback

    def _arm(self, handle: TimerHandle, on_fire: Optional[FireCallback] = None):
        self._callbacks[handle.id] = self._require_callback(on_fire)
        # Measured now, not when the task first runs.
        delay = (handle.deadline - self._clock()).total_seconds()
        self._tasks[handle.id] = asyncio.create_task(self._wait_and_fire(handle, delay))

    def _disarm(self, timer_id: str):
        self._callbacks.pop(timer_id, None)
        task = self._tasks.pop(timer_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _wait_and_fire(self, handle: TimerHandle, delay: float):
        if delay > 0:
            await self._sleep(delay)
        # From here on the task is no longer cancellable through cancel().
        self._tasks.pop(handle.id, None)
        await self.fire(handle.id)

    async def _fire_locked(self, handle: TimerHandle) -> bool:
        resolved_at = self._clock()
        claimed = await self.store.update_timer_status(
            handle.id, TimerStatus.PENDING, TimerStatus.FIRING, resolved_at,
        )
        callback = self._callbacks.pop(handle.id, None)
        self._disarm(handle.id)
        if not claimed:
            logger.info("timer_fire_skipped", timer_id=handle.id, reason="not_pending")
            return False

        claimed_handle = handle.model_copy(update={"status": TimerStatus.FIRING, "resolved_at": resolved_at})
        logger.info("timer_fired",
                    timer_id=handle.id,
                    conversation_id=handle.conversation_id,
                    phase=handle.phase.value)
        await self._invoke(claimed_handle, self._require_callback(callback))
        return True

    async def _invoke(self, handle: TimerHandle, callback: FireCallback):
        try:
            await callback(handle)
        except Exception as e:
            # The handle stays firing; reload() replays it within the recovery window.
            logger.error("timer_callback_failed",
                         timer_id=handle.id,
                         conversation_id=handle.conversation_id,
                         error=str(e),
                         exc_info=True)
            return
        await self.store.update_timer_status(
            handle.id, TimerStatus.FIRING, TimerStatus.FIRED, self._clock(),
        )
