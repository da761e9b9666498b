"""Tests for the conversation session state machine."""
import asyncio

import pytest

from core.errors import IllegalTransitionError, SessionNotFoundError, StaleSessionError
from models.schemas import SessionPhase
from sessions.manager import (
    SessionManager, SessionTrigger, TRANSITIONS, merge_collected, next_phase,
)

REQUIRED = ["name", "phone", "city"]


@pytest.fixture
def manager(store) -> SessionManager:
    return SessionManager(store, REQUIRED)


async def walk(manager, *triggers, **updates):
    """Drive a fresh session through the given triggers."""
    session = await manager.ensure("ws1", "conv_1", contact_id="ct_1")
    for trigger in triggers:
        result = await manager.transition("ws1", "conv_1", trigger, session.version, **updates)
        session = result.session
    return session


class TestTransitionTable:
    def test_happy_path(self):
        assert next_phase(SessionPhase.IDLE, SessionTrigger.SESSION_STARTED) == SessionPhase.COLLECTING_DATA
        assert next_phase(SessionPhase.COLLECTING_DATA, SessionTrigger.DATA_COMPLETE) == SessionPhase.OFFERING_PACK
        assert next_phase(SessionPhase.OFFERING_PACK, SessionTrigger.PACK_SELECTED) == SessionPhase.CLOSING
        assert next_phase(SessionPhase.CLOSING, SessionTrigger.ORDER_PERSISTED) == SessionPhase.CLOSED

    def test_partial_timeout_stays_collecting(self):
        assert next_phase(
            SessionPhase.COLLECTING_DATA, SessionTrigger.TIMEOUT_PARTIAL_DATA,
        ) == SessionPhase.COLLECTING_DATA

    def test_closed_is_terminal(self):
        assert not [key for key in TRANSITIONS if key[0] == SessionPhase.CLOSED]
        for trigger in SessionTrigger:
            with pytest.raises(IllegalTransitionError):
                next_phase(SessionPhase.CLOSED, trigger)

    def test_unlisted_pair_rejected(self):
        with pytest.raises(IllegalTransitionError) as exc:
            next_phase(SessionPhase.IDLE, SessionTrigger.PACK_SELECTED)
        assert exc.value.from_phase == "idle"
        assert exc.value.trigger == "pack_selected"


class TestMergeCollected:
    def test_blank_values_ignored(self):
        merged = merge_collected({"name": "Ana"}, {"name": "  ", "phone": " 300 ", "city": None})
        assert merged == {"name": "Ana", "phone": "300"}

    def test_does_not_mutate_input(self):
        existing = {"name": "Ana"}
        merge_collected(existing, {"city": "Cali"})
        assert existing == {"name": "Ana"}


class TestSessionManager:
    @pytest.mark.asyncio
    async def test_ensure_creates_idle_once(self, manager):
        first = await manager.ensure("ws1", "conv_1", contact_id="ct_1")
        second = await manager.ensure("ws1", "conv_1")
        assert first.phase == SessionPhase.IDLE
        assert first.version == 0
        assert second.contact_id == "ct_1"

    @pytest.mark.asyncio
    async def test_require_missing(self, manager):
        with pytest.raises(SessionNotFoundError):
            await manager.require("ws1", "nope")

    @pytest.mark.asyncio
    async def test_transition_bumps_version(self, manager):
        session = await walk(manager, SessionTrigger.SESSION_STARTED)
        assert session.phase == SessionPhase.COLLECTING_DATA
        assert session.version == 1
        assert session.last_trigger == "session_started"
        stored = await manager.get("ws1", "conv_1")
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_transition_carries_updates(self, manager):
        session = await walk(manager, SessionTrigger.SESSION_STARTED)
        result = await manager.transition(
            "ws1", "conv_1", SessionTrigger.TIMEOUT_NO_DATA, session.version,
            closed_reason="no_data",
        )
        assert result.from_phase == SessionPhase.COLLECTING_DATA
        assert result.to_phase == SessionPhase.CLOSED
        assert result.session.closed_reason == "no_data"

    @pytest.mark.asyncio
    async def test_stale_version_rejected(self, manager):
        await walk(manager, SessionTrigger.SESSION_STARTED)
        with pytest.raises(StaleSessionError) as exc:
            await manager.transition("ws1", "conv_1", SessionTrigger.DATA_COMPLETE, 0)
        assert exc.value.actual_version == 1
        assert (await manager.get("ws1", "conv_1")).phase == SessionPhase.COLLECTING_DATA

    @pytest.mark.asyncio
    async def test_closed_to_offering_rejected(self, manager):
        session = await walk(manager, SessionTrigger.SESSION_STARTED, SessionTrigger.TIMEOUT_NO_DATA)
        assert session.phase == SessionPhase.CLOSED
        with pytest.raises(IllegalTransitionError):
            await manager.transition("ws1", "conv_1", SessionTrigger.DATA_COMPLETE, session.version)
        stored = await manager.get("ws1", "conv_1")
        assert stored.phase == SessionPhase.CLOSED
        assert stored.version == session.version

    @pytest.mark.asyncio
    async def test_update_closed_rejected(self, manager):
        session = await walk(manager, SessionTrigger.SESSION_STARTED, SessionTrigger.TIMEOUT_NO_DATA)
        with pytest.raises(IllegalTransitionError):
            await manager.update("ws1", "conv_1", session.version, active_timer_id="t1")

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, manager):
        session = await walk(manager, SessionTrigger.SESSION_STARTED)
        with pytest.raises(ValueError):
            await manager.update("ws1", "conv_1", session.version, phase="closed")

    @pytest.mark.asyncio
    async def test_merge_fields_and_completeness(self, manager):
        session = await walk(manager, SessionTrigger.SESSION_STARTED)
        session = await manager.merge_fields("ws1", "conv_1", {"name": "Ana", "phone": "300"}, session.version)
        assert not manager.is_complete(session)
        assert session.missing_fields(REQUIRED) == ["city"]
        session = await manager.merge_fields("ws1", "conv_1", {"city": "Cali"}, session.version)
        assert manager.is_complete(session)
        assert session.phase == SessionPhase.COLLECTING_DATA

    @pytest.mark.asyncio
    async def test_concurrent_writers_exactly_one_wins(self, manager):
        session = await walk(manager, SessionTrigger.SESSION_STARTED)
        results = await asyncio.gather(
            manager.transition("ws1", "conv_1", SessionTrigger.DATA_COMPLETE, session.version),
            manager.transition("ws1", "conv_1", SessionTrigger.TIMEOUT_NO_DATA, session.version),
            return_exceptions=True,
        )
        stale = [r for r in results if isinstance(r, StaleSessionError)]
        committed = [r for r in results if not isinstance(r, Exception)]
        assert len(stale) == 1
        assert len(committed) == 1
        stored = await manager.get("ws1", "conv_1")
        assert stored.version == 2
        assert stored.phase == committed[0].to_phase
