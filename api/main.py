"""
FastAPI Application — event intake and read-only history.

Provides:
- Event intake for CRM webhooks (queued on the bus, or handled inline)
- Paginated automation execution history per workspace
- Conversation session inspection
- Queue and health diagnostics
"""
from __future__ import annotations

import structlog
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config.settings import get_settings
from core.errors import StaleSessionError
from core.wiring import build_components
from job_queue.consumer import EventConsumer, DelayedEventPromoter
from job_queue.event_bus import Streams
from models.schemas import ExecutionStatus, InboundEvent, utcnow

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()
components = build_components(_settings_boot)

event_consumer = EventConsumer(
    components.orchestrator, components.bus,
    consumer_group=_settings_boot.queue.consumer_group,
    concurrency=_settings_boot.queue.consumer_concurrency,
)
delayed_promoter = DelayedEventPromoter(
    components.bus,
    interval_seconds=_settings_boot.queue.delayed_promote_interval,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    if settings.database.store_backend == "sql":
        from database.session import init_db
        await init_db()

    await components.registry.load_from_config(settings.automations)

    await components.bus.connect()
    await event_consumer.start_background()
    await delayed_promoter.start_background()
    rearmed = await components.timers.reload()

    logger.info("orchestrator_started",
                store_backend=settings.database.store_backend,
                queue_backend=type(components.bus).__name__,
                timers_rearmed=rearmed,
                timer_preset=settings.timers.preset)
    yield

    await event_consumer.stop()
    await delayed_promoter.stop()
    await components.close()
    if settings.database.store_backend == "sql":
        from database.session import close_db
        await close_db()
    logger.info("orchestrator_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Automation Orchestrator API",
    description="CRM automation and conversation session orchestration",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class EventRequest(BaseModel):
    type: str
    workspace_id: str
    id: Optional[str] = None
    conversation_id: Optional[str] = None
    contact_id: Optional[str] = None
    order_id: Optional[str] = None
    payload: dict[str, Any] = {}
    inline: bool = False        # handle synchronously instead of queueing

    def to_event(self) -> InboundEvent:
        data = self.model_dump(exclude={"inline"}, exclude_none=True)
        return InboundEvent(**data)


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "store_backend": _settings_boot.database.store_backend,
        "queue_backend": type(components.bus).__name__,
        "armed_timers": len(components.timers.armed),
    }


@app.get("/api/v1/queue/stats")
async def queue_stats():
    return {
        "inbound_depth": await components.bus.queue_length(Streams.INBOUND),
        "delayed_depth": await components.bus.queue_length(Streams.DELAYED),
        "dlq_depth": await components.bus.queue_length(Streams.DLQ),
    }


# ══════════════════════════════════════════════════════════════
#  EVENTS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/events")
async def receive_event(req: EventRequest):
    event = req.to_event()
    if req.inline:
        try:
            return await components.orchestrator.handle_event(event)
        except StaleSessionError as e:
            raise HTTPException(409, str(e))
    await components.bus.publish(event)
    return {"event_id": event.id, "status": "queued"}


# ══════════════════════════════════════════════════════════════
#  HISTORY
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/workspaces/{workspace_id}/executions")
async def list_executions(
    workspace_id: str,
    automation_id: Optional[str] = None,
    status: Optional[ExecutionStatus] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    page = await components.store.list_executions(
        workspace_id, automation_id=automation_id, status=status,
        limit=limit, offset=offset,
    )
    return page.model_dump(mode="json")


@app.get("/api/v1/workspaces/{workspace_id}/executions/{execution_id}")
async def get_execution(workspace_id: str, execution_id: str):
    execution = await components.store.get_execution(workspace_id, execution_id)
    if execution is None:
        raise HTTPException(404, "Execution not found")
    return execution.model_dump(mode="json")


@app.get("/api/v1/workspaces/{workspace_id}/sessions/{conversation_id}")
async def get_session(workspace_id: str, conversation_id: str):
    session = await components.sessions.get(workspace_id, conversation_id)
    if session is None:
        raise HTTPException(404, "Session not found")
    return session.model_dump(mode="json")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
