"""Shared test fixtures for the automation orchestrator."""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from automations.executor import ActionExecutor
from automations.runner import AutomationRunner
from backend.datastore import InMemoryCrmDataStore
from backend.messaging import InMemoryMessagingClient
from config.settings import AutomationConfig, RetryConfig, Settings, TimerConfig
from database.store_memory import InMemoryAutomationStore
from job_queue.event_bus import InMemoryEventBus
from models.schemas import Automation, InboundEvent


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


async def no_sleep(seconds: float):
    """Stand-in for asyncio.sleep that returns immediately."""
    await asyncio.sleep(0)


async def sleep_forever(seconds: float):
    """Stand-in for asyncio.sleep that only a cancel or fire_due() gets past."""
    await asyncio.Event().wait()


def make_automation(**overrides: Any) -> Automation:
    data = {
        "id": "auto_high_value",
        "workspace_id": "ws1",
        "name": "High value thanks",
        "trigger_type": "stage.changed",
        "trigger_config": {"stage_id": "won"},
        "conditions": {
            "logic": "AND",
            "conditions": [
                {"field": "order.total_value", "operator": "greater_than", "value": 100000},
            ],
        },
        "actions": [
            {"type": "send_template", "template_name": "high_value_thanks",
             "variables": {"name": "{{contact.name}}"}},
        ],
    }
    data.update(overrides)
    return Automation.model_validate(data)


def make_event(**overrides: Any) -> InboundEvent:
    data = {
        "id": "evt_1",
        "type": "stage.changed",
        "workspace_id": "ws1",
        "order_id": "ord_1",
        "contact_id": "ct_1",
        "payload": {"stage": "won", "pipeline_id": "sales"},
    }
    data.update(overrides)
    return InboundEvent(**data)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        automation=AutomationConfig(),
        retry=RetryConfig(max_attempts=3, base_delay_seconds=0.0, max_delay_seconds=0.0),
        timers=TimerConfig(preset="real"),
    )


@pytest.fixture
def store() -> InMemoryAutomationStore:
    return InMemoryAutomationStore()


@pytest.fixture
def messaging() -> InMemoryMessagingClient:
    return InMemoryMessagingClient()


@pytest.fixture
def datastore() -> InMemoryCrmDataStore:
    crm = InMemoryCrmDataStore()
    crm.orders["ord_1"] = {
        "id": "ord_1",
        "total_value": 150000,
        "stage_id": "won",
        "pipeline_id": "sales",
        "conversation_id": "conv_1",
        "products": [{"sku": "A1", "quantity": 2}],
    }
    crm.contacts["ct_1"] = {"id": "ct_1", "name": "Ana", "conversation_id": "conv_1"}
    return crm


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def executor(store, messaging, datastore, bus, settings, clock) -> ActionExecutor:
    return ActionExecutor(
        store, messaging, datastore,
        bus=bus,
        retry=settings.retry,
        limits=settings.automation,
        sleep=no_sleep,
        clock=clock,
    )


@pytest.fixture
def runner(store, executor, datastore, bus, settings) -> AutomationRunner:
    return AutomationRunner(store, executor, limits=settings.automation, datastore=datastore, bus=bus)
