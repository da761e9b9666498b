"""Tests for the AutomationRunner: gating, ordering, halting, replay."""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from automations.executor import ActionExecutor
from automations.runner import AUTOMATION_RESUME, AutomationRunner, derive_status
from config.settings import AutomationConfig, RetryConfig
from core.errors import PermanentExternalError
from job_queue.event_bus import Streams
from models.schemas import (
    ActionOutcome, ActionOutcomeStatus, AutomationExecution, ExecutionStatus,
)
from tests.conftest import make_automation, make_event, no_sleep
from utils.variables import build_event_context


def outcome(status, ordinal=0):
    return ActionOutcome(ordinal=ordinal, action_type="send_message", status=status)


class TestDeriveStatus:
    def test_all_succeeded(self):
        assert derive_status([outcome(ActionOutcomeStatus.SUCCESS)], 1) == ExecutionStatus.SUCCESS

    def test_none_succeeded(self):
        assert derive_status([outcome(ActionOutcomeStatus.FAILED)], 2) == ExecutionStatus.FAILED

    def test_some_succeeded(self):
        outcomes = [outcome(ActionOutcomeStatus.SUCCESS), outcome(ActionOutcomeStatus.FAILED, 1)]
        assert derive_status(outcomes, 3) == ExecutionStatus.PARTIAL


class TestRunnerGating:
    @pytest.mark.asyncio
    async def test_matching_event_executes(self, runner, store, messaging):
        await store.save_automation(make_automation())
        summaries = await runner.run(make_event())

        assert len(summaries) == 1
        summary = summaries[0]
        assert summary.status == ExecutionStatus.SUCCESS
        assert summary.execution_id is not None
        assert messaging.sent[0]["template_name"] == "high_value_thanks"
        assert messaging.sent[0]["variables"] == {"name": "Ana"}

        execution = await store.get_execution("ws1", summary.execution_id)
        assert execution.status == ExecutionStatus.SUCCESS
        assert execution.finished_at is not None
        assert execution.triggering_event_id == "evt_1"
        assert len(execution.action_logs) == 1

    @pytest.mark.asyncio
    async def test_false_conditions_skip_without_execution_row(self, runner, store, datastore, messaging):
        datastore.orders["ord_1"]["total_value"] = 5000
        await store.save_automation(make_automation())
        summaries = await runner.run(make_event())

        assert summaries[0].status == ExecutionStatus.SKIPPED
        assert summaries[0].execution_id is None
        assert (await store.list_executions("ws1")).total == 0
        assert messaging.sent == []

    @pytest.mark.asyncio
    async def test_trigger_config_mismatch_skips(self, runner, store, messaging):
        await store.save_automation(make_automation())
        summaries = await runner.run(make_event(payload={"stage": "lost"}))
        assert summaries[0].status == ExecutionStatus.SKIPPED
        assert messaging.sent == []

    @pytest.mark.asyncio
    async def test_disabled_automation_not_considered(self, runner, store):
        await store.save_automation(make_automation(enabled=False))
        assert await runner.run(make_event()) == []
        assert (await store.list_executions("ws1")).total == 0

    @pytest.mark.asyncio
    async def test_other_workspace_not_considered(self, runner, store):
        await store.save_automation(make_automation(workspace_id="ws2"))
        assert await runner.run(make_event()) == []

    @pytest.mark.asyncio
    async def test_trigger_alias_on_event(self, runner, store):
        await store.save_automation(make_automation())
        summaries = await runner.run(make_event(type="order.stage_changed"))
        assert summaries[0].status == ExecutionStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_cascade_depth_limit(self, runner, store, messaging):
        await store.save_automation(make_automation())
        assert await runner.run(make_event(cascade_depth=3)) == []
        assert messaging.sent == []

    @pytest.mark.asyncio
    async def test_malformed_automation_skipped_others_run(self, runner, store, messaging):
        await store.save_automation(make_automation(id="broken", actions=[{"type": "send_fax"}]))
        await store.save_automation(make_automation(id="good"))
        summaries = {s.automation_id: s for s in await runner.run(make_event())}

        assert summaries["broken"].status == ExecutionStatus.SKIPPED
        assert "malformed" in summaries["broken"].error_message
        assert summaries["good"].status == ExecutionStatus.SUCCESS
        assert len(messaging.sent) == 1

    @pytest.mark.asyncio
    async def test_fanout_capped_per_workspace(self, store, executor, datastore):
        runner = AutomationRunner(
            store, executor, limits=AutomationConfig(max_automations_per_workspace=2), datastore=datastore,
        )
        for i in range(3):
            await store.save_automation(make_automation(id=f"a{i}"))
        assert len(await runner.run(make_event())) == 2


class TestRunnerOrdering:
    @pytest.mark.asyncio
    async def test_actions_run_in_ordinal_order(self, runner, store, datastore, messaging):
        await store.save_automation(make_automation(actions=[
            {"type": "add_tag", "tag_name": "vip", "ordinal": 1},
            {"type": "send_message", "text": "first", "ordinal": 0},
            {"type": "send_message", "text": "third: {{actions.1.tags}}", "ordinal": 2},
        ]))
        summary = (await runner.run(make_event()))[0]

        assert [o.ordinal for o in summary.outcomes] == [0, 1, 2]
        assert messaging.sent[0]["text"] == "first"
        assert messaging.sent[1]["text"] == 'third: ["vip"]'

    @pytest.mark.asyncio
    async def test_failure_halts_chain(self, runner, store, datastore, messaging):
        datastore.contacts.clear()
        await store.save_automation(make_automation(actions=[
            {"type": "send_message", "text": "one"},
            {"type": "add_tag", "tag_name": "vip"},
            {"type": "send_message", "text": "three"},
        ]))
        summary = (await runner.run(make_event()))[0]

        assert summary.status == ExecutionStatus.PARTIAL
        assert [m["text"] for m in messaging.sent] == ["one"]
        assert "action 1" in summary.error_message

        logs = await store.list_action_logs(summary.execution_id)
        assert [(log.ordinal, log.outcome) for log in logs] == [
            (0, ActionOutcomeStatus.SUCCESS),
            (1, ActionOutcomeStatus.FAILED),
            (2, ActionOutcomeStatus.SKIPPED),
        ]

    @pytest.mark.asyncio
    async def test_first_action_failure_is_failed(self, store, datastore):
        messaging = AsyncMock()
        messaging.send_template.side_effect = PermanentExternalError("template rejected")
        executor = ActionExecutor(store, messaging, datastore, retry=RetryConfig(1, 0, 0), sleep=no_sleep)
        runner = AutomationRunner(store, executor, datastore=datastore)
        await store.save_automation(make_automation())

        summary = (await runner.run(make_event()))[0]
        assert summary.status == ExecutionStatus.FAILED
        assert summary.outcomes[0].error_kind.value == "permanent_external_error"

    @pytest.mark.asyncio
    async def test_disabled_mid_execution_skips_rest(self, store, datastore):
        automation = make_automation(actions=[
            {"type": "send_message", "text": "one"},
            {"type": "send_message", "text": "two"},
        ])
        await store.save_automation(automation)

        messaging = AsyncMock()

        async def send_and_disable(workspace_id, conversation_id, text):
            stored = await store.get_automation("ws1", automation.id)
            stored.enabled = False
            await store.save_automation(stored)
            return {"id": "msg_1"}

        messaging.send_message.side_effect = send_and_disable
        executor = ActionExecutor(store, messaging, datastore, sleep=no_sleep)
        runner = AutomationRunner(store, executor, datastore=datastore)

        summary = (await runner.run(make_event()))[0]
        assert messaging.send_message.await_count == 1
        assert summary.status == ExecutionStatus.PARTIAL
        assert summary.error_message == "automation disabled during execution"


class TestRunnerReplay:
    @pytest.mark.asyncio
    async def test_redelivered_event_is_duplicate(self, runner, store, messaging):
        await store.save_automation(make_automation())
        first = (await runner.run(make_event()))[0]
        second = (await runner.run(make_event()))[0]

        assert second.duplicate is True
        assert second.execution_id == first.execution_id
        assert second.status == ExecutionStatus.SUCCESS
        assert all(o.cached for o in second.outcomes)
        assert len(messaging.sent) == 1
        assert (await store.list_executions("ws1")).total == 1

    @pytest.mark.asyncio
    async def test_interrupted_execution_resumes(self, runner, store, executor, messaging):
        automation = make_automation(actions=[
            {"type": "send_message", "text": "one"},
            {"type": "send_message", "text": "two"},
        ])
        await store.save_automation(automation)

        # Simulate a crash after the first action: running row + one terminal log.
        event = make_event()
        execution = await store.create_execution(AutomationExecution(
            workspace_id="ws1", automation_id=automation.id, triggering_event_id=event.id,
        ))
        await executor.execute(automation.actions[0], build_event_context(event), execution.id)
        assert len(messaging.sent) == 1

        summary = (await runner.run(event))[0]
        assert summary.execution_id == execution.id
        assert summary.status == ExecutionStatus.SUCCESS
        assert [m["text"] for m in messaging.sent] == ["one", "two"]
        assert summary.outcomes[0].cached is True


class TestDelayedActions:
    @pytest.fixture
    def delayed(self):
        return make_automation(actions=[
            {"type": "send_message", "text": "now"},
            {"type": "send_message", "text": "later", "delay": {"amount": 1, "unit": "hours"}},
            {"type": "send_message", "text": "last"},
        ])

    @pytest.mark.asyncio
    async def test_delay_parks_execution_and_schedules_resume(self, runner, store, bus, messaging, delayed, clock):
        await store.save_automation(delayed)
        summary = (await runner.run(make_event()))[0]

        assert summary.status == ExecutionStatus.RUNNING
        assert summary.outcomes[-1].status == ActionOutcomeStatus.WAITING
        assert [m["text"] for m in messaging.sent] == ["now"]

        execution = await store.get_execution("ws1", summary.execution_id)
        assert execution.is_finished is False

        resume = bus.published[-1]
        assert resume.type == AUTOMATION_RESUME
        assert resume.payload["execution_id"] == summary.execution_id
        assert resume.lock_key == make_event().lock_key
        assert await bus.queue_length(Streams.DELAYED) == 1
        assert bus._delayed[0][1].deliver_at == (clock() + timedelta(hours=1)).isoformat()

    @pytest.mark.asyncio
    async def test_resume_event_finishes_chain(self, runner, store, bus, messaging, delayed, clock):
        await store.save_automation(delayed)
        parked = (await runner.run(make_event()))[0]

        clock.advance(hours=1)
        summary = (await runner.run(bus.published[-1]))[0]

        assert summary.execution_id == parked.execution_id
        assert summary.status == ExecutionStatus.SUCCESS
        assert [m["text"] for m in messaging.sent] == ["now", "later", "last"]
        assert summary.outcomes[0].cached is True
        execution = await store.get_execution("ws1", parked.execution_id)
        assert execution.status == ExecutionStatus.SUCCESS
        assert execution.finished_at is not None

    @pytest.mark.asyncio
    async def test_early_resume_parks_again(self, runner, store, bus, messaging, delayed, clock):
        await store.save_automation(delayed)
        await runner.run(make_event())
        resume = bus.published[-1]

        clock.advance(minutes=30)
        summary = (await runner.run(resume))[0]

        assert summary.status == ExecutionStatus.RUNNING
        assert [m["text"] for m in messaging.sent] == ["now"]
        assert bus.published[-1].id == resume.id

    @pytest.mark.asyncio
    async def test_resume_of_finished_execution_ignored(self, runner, store, bus, messaging, delayed, clock):
        await store.save_automation(delayed)
        await runner.run(make_event())
        resume = bus.published[-1]
        clock.advance(hours=1)
        await runner.run(resume)

        assert await runner.run(resume) == []
        assert len(messaging.sent) == 3

    @pytest.mark.asyncio
    async def test_disabled_while_waiting_skips_rest(self, runner, store, bus, messaging, delayed, clock):
        await store.save_automation(delayed)
        await runner.run(make_event())
        await store.save_automation(delayed.model_copy(update={"enabled": False}))

        clock.advance(hours=1)
        summary = (await runner.run(bus.published[-1]))[0]

        assert summary.status == ExecutionStatus.PARTIAL
        assert summary.error_message == "automation disabled during execution"
        assert [m["text"] for m in messaging.sent] == ["now"]
