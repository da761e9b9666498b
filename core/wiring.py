"""
Component wiring — builds the orchestrator graph from Settings.

Collaborators can be injected (tests pass in-memory fakes and a fake clock);
anything not injected is created from configuration.
"""
from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from automations.executor import ActionExecutor
from automations.registry import AutomationRegistry
from automations.runner import AutomationRunner
from backend.datastore import CrmDataStore, create_datastore
from backend.messaging import MessagingClient, create_messaging_client
from config.settings import Settings
from core.orchestrator import Orchestrator
from database.store_base import BaseAutomationStore
from database.store_factory import create_store
from job_queue.event_bus import EventBus, create_event_bus
from job_queue.limiter import ConcurrencyLimiter
from models.schemas import utcnow
from sessions.flow import SalesSessionFlow
from sessions.manager import SessionManager
from sessions.timers import TimerEngine


@dataclass
class Components:
    settings: Settings
    store: BaseAutomationStore
    bus: EventBus
    messaging: MessagingClient
    datastore: CrmDataStore
    limiter: ConcurrencyLimiter
    registry: AutomationRegistry
    executor: ActionExecutor
    runner: AutomationRunner
    sessions: SessionManager
    timers: TimerEngine
    flow: SalesSessionFlow
    orchestrator: Orchestrator

    async def close(self):
        """Stop timers and release the bus and collaborator connections."""
        await self.timers.shutdown()
        await self.bus.close()
        await self.messaging.close()
        await self.datastore.close()


def build_components(
    settings: Settings,
    store: Optional[BaseAutomationStore] = None,
    bus: Optional[EventBus] = None,
    messaging: Optional[MessagingClient] = None,
    datastore: Optional[CrmDataStore] = None,
    clock: Callable[[], datetime] = utcnow,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    timer_sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Components:
    store = store or create_store(settings.database)
    bus = bus or create_event_bus(asdict(settings.queue))
    messaging = messaging or create_messaging_client(settings.messaging)
    datastore = datastore or create_datastore(settings.datastore)
    limiter = ConcurrencyLimiter()

    executor = ActionExecutor(
        store, messaging, datastore,
        bus=bus,
        retry=settings.retry,
        limits=settings.automation,
        sleep=sleep,
        clock=clock,
    )
    runner = AutomationRunner(
        store, executor, limits=settings.automation, datastore=datastore, bus=bus,
    )
    sessions = SessionManager(store, settings.timers.required_fields)
    timers = TimerEngine(
        store, limiter,
        clock=clock,
        sleep=timer_sleep,
        recovery_window_seconds=settings.timers.recovery_window_seconds,
    )
    flow = SalesSessionFlow(sessions, timers, executor, settings.timers, bus=bus, clock=clock)

    return Components(
        settings=settings,
        store=store,
        bus=bus,
        messaging=messaging,
        datastore=datastore,
        limiter=limiter,
        registry=AutomationRegistry(store, settings.automation),
        executor=executor,
        runner=runner,
        sessions=sessions,
        timers=timers,
        flow=flow,
        orchestrator=Orchestrator(runner, flow, limiter),
    )
