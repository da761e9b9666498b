"""
Orchestrator — The central coordinator for inbound events.

  Inbound event (webhook / bus / action emit)
      → ConcurrencyLimiter lock for the event's key (conversation when known)
      → SalesSessionFlow   (session start, customer replies)
      → AutomationRunner   (trigger match → conditions → ordered actions)

Timer firings take the same limiter lock (see TimerEngine), so a deadline and
a customer message for one conversation are never processed concurrently.
The lock is only a fast path: correctness across processes and restarts comes
from the session version guard and the action idempotency key.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from automations.runner import AutomationRunner
from core.errors import IllegalTransitionError, StaleSessionError
from job_queue.limiter import ConcurrencyLimiter
from models.schemas import InboundEvent
from sessions.flow import SalesSessionFlow

logger = structlog.get_logger()


class Orchestrator:
    """
    Generic event orchestrator. Business rules live in automations and the
    session state machine, not here.
    """

    def __init__(
        self,
        runner: AutomationRunner,
        flow: Optional[SalesSessionFlow] = None,
        limiter: Optional[ConcurrencyLimiter] = None,
        stale_retries: int = 3,
    ):
        self.runner = runner
        self.flow = flow
        self.limiter = limiter or ConcurrencyLimiter()
        self.stale_retries = stale_retries

    async def handle_event(self, event: InboundEvent) -> dict[str, Any]:
        """Process one inbound event under its conversation lock."""
        return await self.limiter.with_lock(event.lock_key, lambda: self._process(event))

    async def _process(self, event: InboundEvent) -> dict[str, Any]:
        session = None
        if self.flow is not None:
            try:
                session = await self._apply_to_session(event)
            except IllegalTransitionError as e:
                logger.warning("session_transition_rejected",
                               event_id=event.id,
                               conversation_id=event.conversation_id,
                               error=str(e))

        summaries = await self.runner.run(event)

        logger.info("event_handled",
                    event_id=event.id,
                    event_type=event.type,
                    workspace_id=event.workspace_id,
                    executions=len(summaries),
                    session_phase=session.phase.value if session else None)
        return {
            "event_id": event.id,
            "event_type": event.type,
            "session": session.model_dump(mode="json") if session else None,
            "executions": [s.model_dump(mode="json") for s in summaries],
        }

    async def _apply_to_session(self, event: InboundEvent):
        """Run the session flow, re-reading the session after a lost version race.

        Another writer (a second worker, or a timer in another process)
        committed first. The flow starts over from the fresh session; effects
        are keyed by the event id, so nothing already done is repeated. When
        every attempt loses, the error propagates and the bus redelivers.
        """
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.stale_retries),
            retry=retry_if_exception_type(StaleSessionError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info("session_write_lost_race",
                                event_id=event.id,
                                conversation_id=event.conversation_id,
                                attempt=attempt.retry_state.attempt_number)
                return await self.flow.on_event(event)
