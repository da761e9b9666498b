"""
FileAutomationStore — the in-memory store, mirrored to one JSON file per collection.

    {data_dir}/automations.json
    {data_dir}/executions.json
    {data_dir}/action_logs.json
    {data_dir}/sessions.json
    {data_dir}/timers.json

Every successful mutation rewrites its collection before the call returns
(write to .tmp, then rename over the old file). A timer claimed as fired is
therefore on disk before its callback runs, which is what lets
TimerEngine.reload() tell pending timers from replays after a crash.

One process per data_dir; there is no cross-process locking.
"""
from __future__ import annotations

import json
import structlog
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Optional

from database.store_memory import InMemoryAutomationStore
from models.schemas import (
    ActionLog, Automation, AutomationExecution, ConversationSession,
    ExecutionStatus, TimerHandle, TimerStatus,
)

logger = structlog.get_logger()

# collection name → attribute on InMemoryAutomationStore
_ATTRS = {
    "automations": "_automations",
    "executions": "_executions",
    "action_logs": "_action_logs",
    "sessions": "_sessions",
    "timers": "_timers",
}


class FileAutomationStore(InMemoryAutomationStore):

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._dir = Path(data_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        for collection in _ATTRS:
            self._restore(collection)
        self._reindex_executions()
        logger.info("file_store_initialized", data_dir=str(self._dir),
                    sessions=len(self._sessions), timers=len(self._timers))

    # ── Disk ──────────────────────────────────────────────

    def _path(self, collection: str) -> Path:
        return self._dir / f"{collection}.json"

    def _restore(self, collection: str) -> None:
        path = self._path(collection)
        if not path.exists():
            return
        try:
            records = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            # A torn write can only hit the .tmp file, so this is manual damage.
            logger.warning("file_store_load_error", collection=collection, error=str(e))
            return
        if not isinstance(records, dict):
            logger.warning("file_store_load_error", collection=collection,
                           error=f"expected object, got {type(records).__name__}")
            return
        if collection == "action_logs":
            records = defaultdict(list, records)
        setattr(self, _ATTRS[collection], records)

    def _reindex_executions(self) -> None:
        self._execution_index = {
            self._execution_key(e["workspace_id"], e["automation_id"], e["triggering_event_id"]): eid
            for eid, e in self._executions.items()
        }

    def _persist(self, collection: str) -> None:
        path = self._path(collection)
        staging = path.with_suffix(".tmp")
        records = dict(getattr(self, _ATTRS[collection]))
        staging.write_text(json.dumps(records, indent=2, default=str))
        staging.replace(path)

    # ── Writes ────────────────────────────────────────────

    async def save_automation(self, automation: Automation) -> Automation:
        result = await super().save_automation(automation)
        self._persist("automations")
        return result

    async def delete_automation(self, workspace_id: str, automation_id: str) -> bool:
        deleted = await super().delete_automation(workspace_id, automation_id)
        if deleted:
            self._persist("automations")
        return deleted

    async def create_execution(self, execution: AutomationExecution) -> AutomationExecution:
        result = await super().create_execution(execution)
        self._persist("executions")
        return result

    async def finish_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        finished_at: datetime,
        error_message: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> bool:
        finished = await super().finish_execution(
            execution_id, status, finished_at, error_message, duration_ms
        )
        if finished:
            self._persist("executions")
        return finished

    async def append_action_log(self, log: ActionLog) -> ActionLog:
        result = await super().append_action_log(log)
        self._persist("action_logs")
        return result

    async def create_session(self, session: ConversationSession) -> bool:
        created = await super().create_session(session)
        if created:
            self._persist("sessions")
        return created

    async def update_session_if_version(self, session: ConversationSession, expected_version: int) -> bool:
        updated = await super().update_session_if_version(session, expected_version)
        if updated:
            self._persist("sessions")
        return updated

    async def create_timer(self, handle: TimerHandle) -> TimerHandle:
        result = await super().create_timer(handle)
        self._persist("timers")
        return result

    async def update_timer_status(
        self,
        timer_id: str,
        expected: TimerStatus,
        new_status: TimerStatus,
        resolved_at: datetime,
    ) -> bool:
        updated = await super().update_timer_status(timer_id, expected, new_status, resolved_at)
        if updated:
            self._persist("timers")
        return updated
