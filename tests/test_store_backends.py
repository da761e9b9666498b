"""
Tests for all automation store backends.

Covers:
  - InMemoryAutomationStore
  - FileAutomationStore (JSON file persistence)
  - SqlAutomationStore (via SQLite for test portability)
  - Store factory

The same contract runs against every backend through the ``any_store``
fixture; backend-specific behavior gets its own class below.
"""
from datetime import timedelta

import pytest
import pytest_asyncio

from config.settings import DatabaseConfig
from models.schemas import (
    ActionLog, ActionOutcomeStatus, AutomationExecution, ConversationSession,
    ExecutionStatus, SessionPhase, TimerHandle, TimerStatus, utcnow,
)
from tests.conftest import make_automation


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(params=["memory", "file", "sql"])
async def any_store(request, tmp_path):
    if request.param == "memory":
        from database.store_memory import InMemoryAutomationStore
        yield InMemoryAutomationStore()

    elif request.param == "file":
        from database.store_file import FileAutomationStore
        yield FileAutomationStore(data_dir=str(tmp_path / "data"))

    else:
        from database.session import build_session_scope, init_db
        from database.store import SqlAutomationStore
        scope, engine = build_session_scope(f"sqlite:///{tmp_path / 'test.db'}")
        await init_db(engine)
        yield SqlAutomationStore(session_scope=scope)
        await engine.dispose()


def make_execution(**overrides) -> AutomationExecution:
    data = {
        "workspace_id": "ws1",
        "automation_id": "auto_high_value",
        "triggering_event_id": "evt_1",
    }
    data.update(overrides)
    return AutomationExecution(**data)


def make_log(execution_id, ordinal=0, outcome=ActionOutcomeStatus.SUCCESS, attempt=1) -> ActionLog:
    return ActionLog(
        execution_id=execution_id,
        workspace_id="ws1",
        ordinal=ordinal,
        action_type="send_message",
        attempt=attempt,
        outcome=outcome,
        result={"message_id": "m1"} if outcome == ActionOutcomeStatus.SUCCESS else None,
    )


# ──────────────────────────────────────────────────────────────
#  Shared contract
# ──────────────────────────────────────────────────────────────

class TestAutomations:
    @pytest.mark.asyncio
    async def test_save_and_get(self, any_store):
        await any_store.save_automation(make_automation())
        stored = await any_store.get_automation("ws1", "auto_high_value")
        assert stored.name == "High value thanks"
        assert stored.actions[0].template_name == "high_value_thanks"
        assert stored.conditions.conditions[0].value == 100000

    @pytest.mark.asyncio
    async def test_workspace_isolation(self, any_store):
        await any_store.save_automation(make_automation())
        assert await any_store.get_automation("ws2", "auto_high_value") is None
        assert await any_store.list_automations("ws2") == []

    @pytest.mark.asyncio
    async def test_enabled_by_trigger_in_position_order(self, any_store):
        await any_store.save_automation(make_automation(id="second", position=2))
        await any_store.save_automation(make_automation(id="first", position=1))
        await any_store.save_automation(make_automation(id="off", enabled=False))
        await any_store.save_automation(make_automation(id="tags", trigger_type="tag.assigned"))

        enabled = await any_store.list_enabled_automations("ws1", "stage.changed")
        assert [a.id for a in enabled] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_save_overwrites(self, any_store):
        await any_store.save_automation(make_automation())
        await any_store.save_automation(make_automation(name="Renamed", enabled=False))
        stored = await any_store.get_automation("ws1", "auto_high_value")
        assert stored.name == "Renamed"
        assert stored.enabled is False
        assert len(await any_store.list_automations("ws1")) == 1

    @pytest.mark.asyncio
    async def test_delete(self, any_store):
        await any_store.save_automation(make_automation())
        assert await any_store.delete_automation("ws1", "auto_high_value") is True
        assert await any_store.delete_automation("ws1", "auto_high_value") is False
        assert await any_store.get_automation("ws1", "auto_high_value") is None


class TestExecutions:
    @pytest.mark.asyncio
    async def test_find_by_event(self, any_store):
        created = await any_store.create_execution(make_execution())
        found = await any_store.find_execution("ws1", "auto_high_value", "evt_1")
        assert found.id == created.id
        assert found.status == ExecutionStatus.RUNNING
        assert not found.is_finished
        assert await any_store.find_execution("ws1", "auto_high_value", "evt_2") is None

    @pytest.mark.asyncio
    async def test_finish_only_once(self, any_store):
        execution = await any_store.create_execution(make_execution())
        assert await any_store.finish_execution(
            execution.id, ExecutionStatus.SUCCESS, utcnow(), duration_ms=12,
        ) is True
        assert await any_store.finish_execution(
            execution.id, ExecutionStatus.FAILED, utcnow(), error_message="late",
        ) is False

        stored = await any_store.get_execution("ws1", execution.id)
        assert stored.status == ExecutionStatus.SUCCESS
        assert stored.duration_ms == 12
        assert stored.error_message is None
        assert stored.is_finished

    @pytest.mark.asyncio
    async def test_get_attaches_logs(self, any_store):
        execution = await any_store.create_execution(make_execution())
        await any_store.append_action_log(make_log(execution.id, 0))
        await any_store.append_action_log(make_log(execution.id, 1, ActionOutcomeStatus.FAILED))

        stored = await any_store.get_execution("ws1", execution.id)
        assert [(log.ordinal, log.outcome) for log in stored.action_logs] == [
            (0, ActionOutcomeStatus.SUCCESS),
            (1, ActionOutcomeStatus.FAILED),
        ]
        assert await any_store.get_execution("ws2", execution.id) is None

    @pytest.mark.asyncio
    async def test_list_filters_and_pages(self, any_store):
        now = utcnow()
        for i in range(3):
            execution = await any_store.create_execution(make_execution(
                triggering_event_id=f"evt_{i}", started_at=now + timedelta(seconds=i),
            ))
            if i == 0:
                await any_store.finish_execution(execution.id, ExecutionStatus.FAILED, now)
        await any_store.create_execution(make_execution(automation_id="other", triggering_event_id="evt_x"))

        page = await any_store.list_executions("ws1", automation_id="auto_high_value", limit=2)
        assert page.total == 3
        assert [e.triggering_event_id for e in page.items] == ["evt_2", "evt_1"]

        failed = await any_store.list_executions("ws1", status=ExecutionStatus.FAILED)
        assert [e.triggering_event_id for e in failed.items] == ["evt_0"]

        rest = await any_store.list_executions("ws1", automation_id="auto_high_value", limit=2, offset=2)
        assert [e.triggering_event_id for e in rest.items] == ["evt_0"]


class TestActionLogs:
    @pytest.mark.asyncio
    async def test_retried_attempt_is_not_terminal(self, any_store):
        execution = await any_store.create_execution(make_execution())
        await any_store.append_action_log(make_log(execution.id, 0, ActionOutcomeStatus.RETRIED, attempt=1))
        assert await any_store.get_terminal_action_log(execution.id, 0) is None

        await any_store.append_action_log(make_log(execution.id, 0, ActionOutcomeStatus.SUCCESS, attempt=2))
        terminal = await any_store.get_terminal_action_log(execution.id, 0)
        assert terminal.attempt == 2
        assert terminal.result == {"message_id": "m1"}
        assert len(await any_store.list_action_logs(execution.id)) == 2

    @pytest.mark.asyncio
    async def test_keyed_by_ordinal(self, any_store):
        execution = await any_store.create_execution(make_execution())
        await any_store.append_action_log(make_log(execution.id, 0))
        assert await any_store.get_terminal_action_log(execution.id, 1) is None


class TestSessions:
    @pytest.mark.asyncio
    async def test_create_once(self, any_store):
        session = ConversationSession(workspace_id="ws1", conversation_id="conv_1")
        assert await any_store.create_session(session) is True
        assert await any_store.create_session(session) is False
        stored = await any_store.get_session("ws1", "conv_1")
        assert stored.phase == SessionPhase.IDLE
        assert await any_store.get_session("ws2", "conv_1") is None

    @pytest.mark.asyncio
    async def test_update_guarded_by_version(self, any_store):
        session = ConversationSession(workspace_id="ws1", conversation_id="conv_1")
        await any_store.create_session(session)

        moved = session.model_copy(update={
            "phase": SessionPhase.COLLECTING_DATA,
            "collected_fields": {"name": "Ana"},
            "version": 1,
        })
        assert await any_store.update_session_if_version(moved, 0) is True
        assert await any_store.update_session_if_version(moved, 0) is False

        stored = await any_store.get_session("ws1", "conv_1")
        assert stored.phase == SessionPhase.COLLECTING_DATA
        assert stored.collected_fields == {"name": "Ana"}
        assert stored.version == 1


class TestTimers:
    @pytest.mark.asyncio
    async def test_pending_lookup_and_status_guard(self, any_store):
        now = utcnow()
        handle = await any_store.create_timer(TimerHandle(
            workspace_id="ws1", conversation_id="conv_1",
            phase=SessionPhase.COLLECTING_DATA, deadline=now + timedelta(minutes=6),
        ))
        pending = await any_store.get_pending_timers("ws1", "conv_1")
        assert [t.id for t in pending] == [handle.id]

        assert await any_store.update_timer_status(
            handle.id, TimerStatus.PENDING, TimerStatus.FIRED, now,
        ) is True
        assert await any_store.update_timer_status(
            handle.id, TimerStatus.PENDING, TimerStatus.CANCELLED, now,
        ) is False

        stored = await any_store.get_timer(handle.id)
        assert stored.status == TimerStatus.FIRED
        assert stored.resolved_at is not None
        assert await any_store.get_pending_timers("ws1", "conv_1") == []

    @pytest.mark.asyncio
    async def test_list_by_status_and_resolution(self, any_store):
        now = utcnow()
        late = await any_store.create_timer(TimerHandle(
            workspace_id="ws1", conversation_id="conv_1",
            phase=SessionPhase.COLLECTING_DATA, deadline=now + timedelta(minutes=10),
        ))
        early = await any_store.create_timer(TimerHandle(
            workspace_id="ws1", conversation_id="conv_2",
            phase=SessionPhase.OFFERING_PACK, deadline=now + timedelta(minutes=5),
        ))
        old = await any_store.create_timer(TimerHandle(
            workspace_id="ws1", conversation_id="conv_3",
            phase=SessionPhase.COLLECTING_DATA, deadline=now - timedelta(days=3),
        ))
        await any_store.update_timer_status(old.id, TimerStatus.PENDING, TimerStatus.FIRED,
                                            now - timedelta(days=2))

        pending = await any_store.list_timers(TimerStatus.PENDING)
        assert [t.id for t in pending] == [early.id, late.id]

        recent = await any_store.list_timers(TimerStatus.FIRED, resolved_after=now - timedelta(days=1))
        assert recent == []
        assert [t.id for t in await any_store.list_timers(TimerStatus.FIRED)] == [old.id]


# ──────────────────────────────────────────────────────────────
#  Backend specifics
# ──────────────────────────────────────────────────────────────

class TestFileAutomationStore:
    @pytest.mark.asyncio
    async def test_data_survives_restart(self, tmp_path):
        from database.store_file import FileAutomationStore
        data_dir = str(tmp_path / "data")

        store = FileAutomationStore(data_dir=data_dir)
        await store.save_automation(make_automation())
        await store.create_session(ConversationSession(workspace_id="ws1", conversation_id="conv_1"))
        handle = await store.create_timer(TimerHandle(
            workspace_id="ws1", conversation_id="conv_1",
            phase=SessionPhase.COLLECTING_DATA, deadline=utcnow() + timedelta(minutes=6),
        ))

        reopened = FileAutomationStore(data_dir=data_dir)
        assert (await reopened.get_automation("ws1", "auto_high_value")) is not None
        assert (await reopened.get_session("ws1", "conv_1")).phase == SessionPhase.IDLE
        assert [t.id for t in await reopened.list_timers(TimerStatus.PENDING)] == [handle.id]

    @pytest.mark.asyncio
    async def test_writes_json_files(self, tmp_path):
        from database.store_file import FileAutomationStore
        store = FileAutomationStore(data_dir=str(tmp_path))
        await store.save_automation(make_automation())
        assert (tmp_path / "automations.json").exists()


class TestStoreFactory:
    def setup_method(self):
        from database.store_factory import reset_store
        reset_store()

    def teardown_method(self):
        from database.store_factory import reset_store
        reset_store()

    def test_memory_default(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryAutomationStore
        assert isinstance(create_store(DatabaseConfig()), InMemoryAutomationStore)

    def test_file_backend(self, tmp_path):
        from database.store_factory import create_store
        from database.store_file import FileAutomationStore
        store = create_store(DatabaseConfig(store_backend="file", store_file_dir=str(tmp_path)))
        assert isinstance(store, FileAutomationStore)

    def test_singleton(self):
        from database.store_factory import create_store, get_store
        assert create_store(DatabaseConfig()) is get_store()

    def test_unknown_backend(self):
        from database.store_factory import create_store
        with pytest.raises(ValueError):
            create_store(DatabaseConfig(store_backend="cassandra"))
