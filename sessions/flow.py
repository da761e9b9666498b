"""
Sales Session Flow — drives a conversation through data collection, pack
offer and order creation on top of the SessionManager and TimerEngine.

Each step commits a session transition first and only then performs its side
effects. Side effects are derived from the committed session and keyed by the
id of whatever committed it (the customer message event or the timer handle),
so running them a second time after a crash or a redelivery is harmless:
messages and orders are deduplicated by the ActionExecutor's idempotency key,
and a phase timer is armed only when none is attached.

A failed order leaves the session in closing with a retry timer attached.
Its firing attempts the order again under the timer's own id, so every retry
gets a fresh idempotency key.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog

from automations.executor import ActionExecutor
from config.settings import TimerConfig
from core.errors import IllegalTransitionError, StaleSessionError
from job_queue.event_bus import EventBus
from models.schemas import (
    ActionOutcome, ConversationSession, CreateOrderAction, InboundEvent,
    SendMessageAction, SessionPhase, TimerHandle, TriggerType, utcnow,
)
from sessions.manager import SessionManager, SessionTrigger, merge_collected
from sessions.timers import TimerEngine
from utils.variables import build_event_context

logger = structlog.get_logger()

SESSION_START = "session.start"
_CUSTOMER_MESSAGES = {TriggerType.MESSAGE_RECEIVED.value, TriggerType.KEYWORD_MATCH.value}

CLOSED_NO_DATA = "no_data"
CLOSED_ORDER_CREATED = "order_created"


class SalesSessionFlow:

    def __init__(
        self,
        sessions: SessionManager,
        timers: TimerEngine,
        executor: ActionExecutor,
        config: TimerConfig,
        bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.sessions = sessions
        self.timers = timers
        self.executor = executor
        self.config = config
        self.bus = bus
        self._clock = clock
        timers.set_default_callback(self.handle_timer_fired)

    async def on_event(self, event: InboundEvent) -> Optional[ConversationSession]:
        """Route an inbound event to the session it concerns, if any."""
        if not event.conversation_id:
            return None
        if event.type == SESSION_START:
            return await self.start_session(event)
        if event.type in _CUSTOMER_MESSAGES:
            return await self.handle_customer_message(event)
        return None

    # ── Inbound ───────────────────────────────────────────

    async def start_session(self, event: InboundEvent) -> ConversationSession:
        session = await self.sessions.ensure(
            event.workspace_id, event.conversation_id, event.contact_id,
        )
        if session.phase != SessionPhase.IDLE:
            logger.info("session_already_started",
                        conversation_id=session.conversation_id,
                        phase=session.phase.value)
            return session

        result = await self.sessions.transition(
            event.workspace_id, event.conversation_id,
            SessionTrigger.SESSION_STARTED, session.version,
            contact_id=event.contact_id or session.contact_id,
            collected_fields=merge_collected({}, event.payload.get("fields") or {}),
        )
        return await self._collect(result.session, event.id, event)

    async def handle_customer_message(self, event: InboundEvent) -> Optional[ConversationSession]:
        session = await self.sessions.get(event.workspace_id, event.conversation_id)
        if session is None:
            return None
        if session.phase not in (SessionPhase.COLLECTING_DATA, SessionPhase.OFFERING_PACK):
            logger.debug("session_message_ignored",
                         conversation_id=session.conversation_id,
                         phase=session.phase.value)
            return session

        if session.active_timer_id:
            await self.timers.cancel(session.active_timer_id)

        if session.phase == SessionPhase.COLLECTING_DATA:
            session = await self.sessions.merge_fields(
                session.workspace_id, session.conversation_id,
                event.payload.get("fields") or {}, session.version,
                active_timer_id=None, last_timer_id=None,
            )
            return await self._collect(session, event.id, event)

        pack = event.payload.get("selected_pack")
        if pack and pack in session.offered_packs:
            result = await self.sessions.transition(
                session.workspace_id, session.conversation_id,
                SessionTrigger.PACK_SELECTED, session.version,
                selected_pack=pack, active_timer_id=None, last_timer_id=None,
            )
            return await self._after_transition(result.session, event.id, event)

        # Any other reply restarts the offer window.
        session = await self.sessions.update(
            session.workspace_id, session.conversation_id, session.version,
            active_timer_id=None, last_timer_id=None,
        )
        return await self._arm(session)

    # ── Timers ────────────────────────────────────────────

    async def handle_timer_fired(self, handle: TimerHandle):
        """Fire callback for phase timers. Also used to replay interrupted firings."""
        session = await self.sessions.get(handle.workspace_id, handle.conversation_id)
        if session is None:
            logger.warning("timer_without_session", timer_id=handle.id,
                           conversation_id=handle.conversation_id)
            return

        try:
            if session.active_timer_id == handle.id and session.phase == SessionPhase.CLOSING:
                await self._retry_order(session, handle)
                return
            if session.active_timer_id == handle.id and session.phase == handle.phase:
                session = await self._on_timeout(session, handle)
            elif session.last_timer_id == handle.id:
                # The transition committed before an interruption; finish its effects.
                session = await self._after_transition(session, handle.id, self._timeout_event(session, handle))
            else:
                logger.info("timer_superseded",
                            timer_id=handle.id,
                            conversation_id=handle.conversation_id,
                            phase=session.phase.value)
                return
        except StaleSessionError as e:
            logger.info("timer_lost_race", timer_id=handle.id,
                        conversation_id=handle.conversation_id, error=str(e))
            return
        except IllegalTransitionError as e:
            logger.warning("timer_transition_rejected", timer_id=handle.id,
                           conversation_id=handle.conversation_id, error=str(e))
            return

        # Order retry timers are internal; only phase deadlines are announced.
        if self.bus is not None and handle.phase != SessionPhase.CLOSING:
            await self.bus.publish(self._timeout_event(session, handle))

    async def _on_timeout(self, session: ConversationSession, handle: TimerHandle) -> ConversationSession:
        ws, conv = session.workspace_id, session.conversation_id
        bookkeeping = {"active_timer_id": None, "last_timer_id": handle.id}

        if session.phase == SessionPhase.COLLECTING_DATA:
            if self.sessions.is_complete(session):
                trigger = SessionTrigger.DATA_COMPLETE
                bookkeeping["offered_packs"] = list(self.config.pack_options)
            elif session.collected_fields:
                trigger = SessionTrigger.TIMEOUT_PARTIAL_DATA
            else:
                trigger = SessionTrigger.TIMEOUT_NO_DATA
                bookkeeping["closed_reason"] = CLOSED_NO_DATA
        else:
            trigger = SessionTrigger.OFFER_TIMEOUT
            bookkeeping["selected_pack"] = self.config.default_pack

        result = await self.sessions.transition(ws, conv, trigger, session.version, **bookkeeping)
        logger.info("session_timed_out",
                    conversation_id=conv,
                    timer_id=handle.id,
                    trigger=trigger.value,
                    phase=result.to_phase.value)
        return await self._after_transition(result.session, handle.id, self._timeout_event(result.session, handle))

    async def _retry_order(self, session: ConversationSession, handle: TimerHandle) -> ConversationSession:
        session = await self.sessions.update(
            session.workspace_id, session.conversation_id, session.version,
            active_timer_id=None, last_timer_id=handle.id,
        )
        logger.info("session_order_retry",
                    conversation_id=session.conversation_id,
                    timer_id=handle.id)
        return await self._persist_order(session, handle.id, self._timeout_event(session, handle))

    # ── Effects ───────────────────────────────────────────

    async def _collect(
        self, session: ConversationSession, source_id: str, event: InboundEvent,
    ) -> ConversationSession:
        """In collecting_data: offer once everything is known, else keep waiting."""
        if not self.sessions.is_complete(session):
            return await self._arm(session)
        result = await self.sessions.transition(
            session.workspace_id, session.conversation_id,
            SessionTrigger.DATA_COMPLETE, session.version,
            offered_packs=list(self.config.pack_options),
            active_timer_id=None,
        )
        return await self._after_transition(result.session, source_id, event)

    async def _after_transition(
        self, session: ConversationSession, source_id: str, event: InboundEvent,
    ) -> ConversationSession:
        phase, trigger = session.phase, session.last_trigger

        if phase == SessionPhase.COLLECTING_DATA:
            if trigger == SessionTrigger.TIMEOUT_PARTIAL_DATA.value:
                missing = ", ".join(session.missing_fields(self.sessions.required_fields))
                await self._say(session, event, source_id, 0,
                                self.config.reprompt_message.format(missing=missing))
            return await self._arm(session)

        if phase == SessionPhase.OFFERING_PACK:
            await self._say(session, event, source_id, 0,
                            self.config.offer_message.format(options=", ".join(session.offered_packs)))
            return await self._arm(session)

        if phase == SessionPhase.CLOSING:
            return await self._persist_order(session, source_id, event)

        if phase == SessionPhase.CLOSED:
            if session.closed_reason == CLOSED_NO_DATA:
                await self._say(session, event, source_id, 0, self.config.pending_message)
            elif session.order_id:
                await self._confirm_order(session, source_id, event)
        return session

    async def _persist_order(
        self, session: ConversationSession, source_id: str, event: InboundEvent,
    ) -> ConversationSession:
        pack = session.selected_pack or self.config.default_pack
        details = ", ".join(f"{k}: {v}" for k, v in sorted(session.collected_fields.items()))
        action = CreateOrderAction(
            ordinal=0,
            pipeline_id=self.config.pipeline_id,
            stage_id=self.config.stage_id,
            name=f"Pack {pack}",
            description=details,
            products=[{"pack": pack, "quantity": 1}],
        )
        outcome = await self.executor.execute(action, self._context(session, event), source_id)
        if not outcome.succeeded:
            logger.error("session_order_failed",
                         conversation_id=session.conversation_id,
                         pack=pack,
                         error=outcome.error,
                         error_kind=outcome.error_kind.value if outcome.error_kind else None,
                         retry_in=self.config.duration_for(SessionPhase.CLOSING.value))
            return await self._arm(session)

        order_id = (outcome.result or {}).get("order_id")
        result = await self.sessions.transition(
            session.workspace_id, session.conversation_id,
            SessionTrigger.ORDER_PERSISTED, session.version,
            order_id=order_id, closed_reason=CLOSED_ORDER_CREATED,
        )
        await self._confirm_order(result.session, source_id, event)
        return result.session

    async def _confirm_order(self, session: ConversationSession, source_id: str, event: InboundEvent):
        await self._say(session, event, source_id, 1,
                        self.config.order_confirmation_message.format(pack=session.selected_pack))

    async def _arm(self, session: ConversationSession) -> ConversationSession:
        """Attach a fresh timer for the current phase unless one is attached."""
        if session.active_timer_id:
            return session
        deadline = self._clock() + timedelta(seconds=self.config.duration_for(session.phase.value))
        handle = await self.timers.schedule(
            session.workspace_id, session.conversation_id, session.phase, deadline,
        )
        try:
            return await self.sessions.update(
                session.workspace_id, session.conversation_id, session.version,
                active_timer_id=handle.id,
            )
        except StaleSessionError:
            await self.timers.cancel(handle.id)
            raise

    async def _say(
        self, session: ConversationSession, event: InboundEvent,
        source_id: str, ordinal: int, text: str,
    ) -> ActionOutcome:
        action = SendMessageAction(ordinal=ordinal, text=text)
        outcome = await self.executor.execute(action, self._context(session, event), source_id)
        if not outcome.succeeded:
            logger.warning("session_message_failed",
                           conversation_id=session.conversation_id,
                           error=outcome.error)
        return outcome

    # ── Helpers ───────────────────────────────────────────

    @staticmethod
    def _context(session: ConversationSession, event: InboundEvent) -> dict[str, Any]:
        return build_event_context(event, {
            "session": {
                "phase": session.phase.value,
                "version": session.version,
                "selected_pack": session.selected_pack,
                **session.collected_fields,
            },
            "contact": {"id": session.contact_id} if session.contact_id else {},
        })

    @staticmethod
    def _timeout_event(session: ConversationSession, handle: TimerHandle) -> InboundEvent:
        # Same id on every replay so automations on session.timeout run once.
        return InboundEvent(
            id=handle.id,
            type=TriggerType.SESSION_TIMEOUT.value,
            workspace_id=handle.workspace_id,
            conversation_id=handle.conversation_id,
            contact_id=session.contact_id,
            payload={
                "timer_id": handle.id,
                "timed_out_phase": handle.phase.value,
                "phase": session.phase.value,
                "trigger": session.last_trigger,
            },
        )
