"""
Session Manager — per-conversation sales-session state machine.

    idle            --session_started-->        collecting_data
    collecting_data --data_complete-->          offering_pack
    collecting_data --timeout_no_data-->        closed         ("pending" message)
    collecting_data --timeout_partial_data-->   collecting_data (re-prompt, new timer)
    offering_pack   --pack_selected-->          closing
    offering_pack   --offer_timeout-->          closing        (default pack)
    closing         --order_persisted-->        closed

Every write is a compare-and-set on ``version``: read (phase, version),
compute the next state, write (phase, version + 1) only if the stored
version still matches. A lost race raises StaleSessionError; the caller
refetches and decides. This is what settles "customer reply arrives while
the timer fires": exactly one of the two transitions commits.

The manager is the only writer of conversation_sessions.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

import structlog

from core.errors import IllegalTransitionError, SessionNotFoundError, StaleSessionError
from database.store_base import BaseAutomationStore
from models.schemas import ConversationSession, SessionPhase, utcnow

logger = structlog.get_logger()


class SessionTrigger(str, Enum):
    SESSION_STARTED = "session_started"
    DATA_COMPLETE = "data_complete"
    TIMEOUT_NO_DATA = "timeout_no_data"
    TIMEOUT_PARTIAL_DATA = "timeout_partial_data"
    PACK_SELECTED = "pack_selected"
    OFFER_TIMEOUT = "offer_timeout"
    ORDER_PERSISTED = "order_persisted"


TRANSITIONS: dict[tuple[SessionPhase, SessionTrigger], SessionPhase] = {
    (SessionPhase.IDLE, SessionTrigger.SESSION_STARTED): SessionPhase.COLLECTING_DATA,
    (SessionPhase.COLLECTING_DATA, SessionTrigger.DATA_COMPLETE): SessionPhase.OFFERING_PACK,
    (SessionPhase.COLLECTING_DATA, SessionTrigger.TIMEOUT_NO_DATA): SessionPhase.CLOSED,
    (SessionPhase.COLLECTING_DATA, SessionTrigger.TIMEOUT_PARTIAL_DATA): SessionPhase.COLLECTING_DATA,
    (SessionPhase.OFFERING_PACK, SessionTrigger.PACK_SELECTED): SessionPhase.CLOSING,
    (SessionPhase.OFFERING_PACK, SessionTrigger.OFFER_TIMEOUT): SessionPhase.CLOSING,
    (SessionPhase.CLOSING, SessionTrigger.ORDER_PERSISTED): SessionPhase.CLOSED,
}

# Session fields a transition may set alongside the phase change.
_MUTABLE_FIELDS = {
    "collected_fields", "offered_packs", "selected_pack", "order_id",
    "active_timer_id", "last_timer_id", "closed_reason", "contact_id",
}


def merge_collected(existing: dict[str, str], fields: dict[str, Any]) -> dict[str, str]:
    """Overlay non-blank customer answers on the fields collected so far."""
    collected = dict(existing)
    for key, value in (fields or {}).items():
        if value is not None and str(value).strip():
            collected[key] = str(value).strip()
    return collected


def next_phase(phase: SessionPhase, trigger: SessionTrigger) -> SessionPhase:
    try:
        return TRANSITIONS[(phase, trigger)]
    except KeyError:
        raise IllegalTransitionError(phase.value, trigger.value) from None


class TransitionResult:
    """Outcome of a committed session write."""

    def __init__(
        self,
        session: ConversationSession,
        from_phase: SessionPhase,
        to_phase: SessionPhase,
        trigger: Optional[SessionTrigger] = None,
    ):
        self.session = session
        self.from_phase = from_phase
        self.to_phase = to_phase
        self.trigger = trigger

    def __repr__(self):
        label = self.trigger.value if self.trigger else "update"
        return f"<Transition {self.from_phase.value} → {self.to_phase.value} [{label}] v{self.session.version}>"


class SessionManager:

    def __init__(self, store: BaseAutomationStore, required_fields: list[str]):
        self.store = store
        self.required_fields = list(required_fields)

    async def get(self, workspace_id: str, conversation_id: str) -> Optional[ConversationSession]:
        return await self.store.get_session(workspace_id, conversation_id)

    async def require(self, workspace_id: str, conversation_id: str) -> ConversationSession:
        session = await self.get(workspace_id, conversation_id)
        if session is None:
            raise SessionNotFoundError(workspace_id, conversation_id)
        return session

    async def ensure(
        self, workspace_id: str, conversation_id: str, contact_id: Optional[str] = None,
    ) -> ConversationSession:
        """Return the session, creating it in ``idle`` when absent."""
        session = await self.get(workspace_id, conversation_id)
        if session is not None:
            return session
        created = ConversationSession(
            workspace_id=workspace_id,
            conversation_id=conversation_id,
            contact_id=contact_id,
        )
        if await self.store.create_session(created):
            logger.info("session_created", conversation_id=conversation_id,
                        workspace_id=workspace_id)
            return created
        # Someone else created it first.
        return await self.require(workspace_id, conversation_id)

    def is_complete(self, session: ConversationSession) -> bool:
        return not session.missing_fields(self.required_fields)

    async def transition(
        self,
        workspace_id: str,
        conversation_id: str,
        trigger: SessionTrigger,
        expected_version: int,
        **updates: Any,
    ) -> TransitionResult:
        """Apply one state-machine transition with a version guard."""
        session = await self.require(workspace_id, conversation_id)
        if session.version != expected_version:
            raise StaleSessionError(conversation_id, expected_version, session.version)

        to_phase = next_phase(session.phase, trigger)
        updated = self._apply(session, updates, phase=to_phase, last_trigger=trigger.value)
        await self._commit(updated, expected_version)

        logger.info("session_transitioned",
                    conversation_id=conversation_id,
                    from_phase=session.phase.value,
                    to_phase=to_phase.value,
                    trigger=trigger.value,
                    version=updated.version)
        return TransitionResult(updated, session.phase, to_phase, trigger)

    async def update(
        self,
        workspace_id: str,
        conversation_id: str,
        expected_version: int,
        **updates: Any,
    ) -> ConversationSession:
        """Version-guarded write that keeps the phase (field merges, timer bookkeeping)."""
        session = await self.require(workspace_id, conversation_id)
        if session.version != expected_version:
            raise StaleSessionError(conversation_id, expected_version, session.version)
        if session.phase == SessionPhase.CLOSED:
            raise IllegalTransitionError(session.phase.value, "update")

        updated = self._apply(session, updates)
        await self._commit(updated, expected_version)
        logger.debug("session_updated", conversation_id=conversation_id,
                     fields=sorted(updates), version=updated.version)
        return updated

    async def merge_fields(
        self,
        workspace_id: str,
        conversation_id: str,
        fields: dict[str, Any],
        expected_version: int,
        **updates: Any,
    ) -> ConversationSession:
        session = await self.require(workspace_id, conversation_id)
        return await self.update(
            workspace_id, conversation_id, expected_version,
            collected_fields=merge_collected(session.collected_fields, fields),
            **updates,
        )

    # ── internals ─────────────────────────────────────────

    @staticmethod
    def _apply(session: ConversationSession, updates: dict[str, Any], **extra: Any) -> ConversationSession:
        unknown = set(updates) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update session fields: {sorted(unknown)}")
        return session.model_copy(update={
            **updates,
            **extra,
            "version": session.version + 1,
            "updated_at": utcnow(),
        })

    async def _commit(self, updated: ConversationSession, expected_version: int):
        if not await self.store.update_session_if_version(updated, expected_version):
            current = await self.store.get_session(updated.workspace_id, updated.conversation_id)
            logger.info("session_write_rejected",
                        conversation_id=updated.conversation_id,
                        expected_version=expected_version,
                        actual_version=current.version if current else None)
            raise StaleSessionError(
                updated.conversation_id, expected_version,
                current.version if current else None,
            )
