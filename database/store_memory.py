"""
InMemoryAutomationStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlAutomationStore
  - Records kept as JSON-ready dicts, so FileAutomationStore can dump them as-is
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from datetime import datetime
from typing import Optional

from database.store_base import BaseAutomationStore
from models.schemas import (
    ActionLog, Automation, AutomationExecution, ConversationSession,
    ExecutionPage, ExecutionStatus, TimerHandle, TimerStatus, utcnow,
)

logger = structlog.get_logger()


def _dump(model) -> dict:
    return model.model_dump(mode="json")


class InMemoryAutomationStore(BaseAutomationStore):
    """
    Full-featured in-memory store with the same interface as SqlAutomationStore.
    Returns fresh model copies, so callers never mutate stored state.
    """

    def __init__(self):
        self._automations: dict[str, dict] = {}             # id → automation dict
        self._executions: dict[str, dict] = {}              # id → execution dict (no logs)
        self._action_logs: dict[str, list[dict]] = defaultdict(list)  # execution_id → [log dicts]
        self._sessions: dict[str, dict] = {}                # "ws:conversation" → session dict
        self._timers: dict[str, dict] = {}                  # id → timer dict

        # Indexes
        self._execution_index: dict[str, str] = {}          # "ws:automation:event" → execution_id
        logger.info("inmemory_store_initialized")

    @staticmethod
    def _session_key(workspace_id: str, conversation_id: str) -> str:
        return f"{workspace_id}:{conversation_id}"

    @staticmethod
    def _execution_key(workspace_id: str, automation_id: str, event_id: str) -> str:
        return f"{workspace_id}:{automation_id}:{event_id}"

    # ── Automations ───────────────────────────────────────

    async def save_automation(self, automation: Automation) -> Automation:
        data = _dump(automation)
        data["updated_at"] = utcnow().isoformat()
        self._automations[automation.id] = data
        return Automation.model_validate(data)

    async def get_automation(self, workspace_id: str, automation_id: str) -> Optional[Automation]:
        data = self._automations.get(automation_id)
        if not data or data["workspace_id"] != workspace_id:
            return None
        return Automation.model_validate(data)

    async def list_automations(self, workspace_id: str) -> list[Automation]:
        rows = [a for a in self._automations.values() if a["workspace_id"] == workspace_id]
        rows.sort(key=lambda a: (a.get("position", 0), a["created_at"]))
        return [Automation.model_validate(a) for a in rows]

    async def list_enabled_automations(self, workspace_id: str, trigger_type: str) -> list[Automation]:
        return [
            a for a in await self.list_automations(workspace_id)
            if a.enabled and a.trigger_type == trigger_type
        ]

    async def delete_automation(self, workspace_id: str, automation_id: str) -> bool:
        data = self._automations.get(automation_id)
        if not data or data["workspace_id"] != workspace_id:
            return False
        del self._automations[automation_id]
        return True

    # ── Executions ────────────────────────────────────────

    async def create_execution(self, execution: AutomationExecution) -> AutomationExecution:
        data = _dump(execution)
        data.pop("action_logs", None)
        self._executions[execution.id] = data
        key = self._execution_key(execution.workspace_id, execution.automation_id,
                                  execution.triggering_event_id)
        self._execution_index[key] = execution.id
        return AutomationExecution.model_validate(data)

    async def find_execution(
        self, workspace_id: str, automation_id: str, event_id: str,
    ) -> Optional[AutomationExecution]:
        execution_id = self._execution_index.get(
            self._execution_key(workspace_id, automation_id, event_id)
        )
        if not execution_id:
            return None
        return await self.get_execution(workspace_id, execution_id)

    async def get_execution(self, workspace_id: str, execution_id: str) -> Optional[AutomationExecution]:
        data = self._executions.get(execution_id)
        if not data or data["workspace_id"] != workspace_id:
            return None
        return AutomationExecution.model_validate(
            {**data, "action_logs": self._action_logs.get(execution_id, [])}
        )

    async def finish_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        finished_at: datetime,
        error_message: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> bool:
        data = self._executions.get(execution_id)
        if not data or data.get("finished_at"):
            return False
        data.update({
            "status": status.value,
            "finished_at": finished_at.isoformat(),
            "error_message": error_message,
            "duration_ms": duration_ms,
        })
        return True

    async def list_executions(
        self,
        workspace_id: str,
        automation_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> ExecutionPage:
        rows = [
            e for e in self._executions.values()
            if e["workspace_id"] == workspace_id
            and (automation_id is None or e["automation_id"] == automation_id)
            and (status is None or e["status"] == status.value)
        ]
        rows.sort(key=lambda e: e["started_at"], reverse=True)
        page = rows[offset:offset + limit]
        return ExecutionPage(
            items=[
                AutomationExecution.model_validate(
                    {**e, "action_logs": self._action_logs.get(e["id"], [])}
                )
                for e in page
            ],
            total=len(rows),
            limit=limit,
            offset=offset,
        )

    # ── Action logs ───────────────────────────────────────

    async def append_action_log(self, log: ActionLog) -> ActionLog:
        self._action_logs[log.execution_id].append(_dump(log))
        return log

    async def get_terminal_action_log(self, execution_id: str, ordinal: int) -> Optional[ActionLog]:
        for data in self._action_logs.get(execution_id, []):
            log = ActionLog.model_validate(data)
            if log.ordinal == ordinal and log.is_terminal:
                return log
        return None

    async def list_action_logs(self, execution_id: str) -> list[ActionLog]:
        return [ActionLog.model_validate(d) for d in self._action_logs.get(execution_id, [])]

    # ── Conversation sessions ─────────────────────────────

    async def get_session(self, workspace_id: str, conversation_id: str) -> Optional[ConversationSession]:
        data = self._sessions.get(self._session_key(workspace_id, conversation_id))
        return ConversationSession.model_validate(data) if data else None

    async def create_session(self, session: ConversationSession) -> bool:
        key = self._session_key(session.workspace_id, session.conversation_id)
        if key in self._sessions:
            return False
        self._sessions[key] = _dump(session)
        return True

    async def update_session_if_version(self, session: ConversationSession, expected_version: int) -> bool:
        key = self._session_key(session.workspace_id, session.conversation_id)
        current = self._sessions.get(key)
        if current is None or current["version"] != expected_version:
            return False
        self._sessions[key] = _dump(session)
        return True

    # ── Timers ────────────────────────────────────────────

    async def create_timer(self, handle: TimerHandle) -> TimerHandle:
        self._timers[handle.id] = _dump(handle)
        return handle

    async def get_timer(self, timer_id: str) -> Optional[TimerHandle]:
        data = self._timers.get(timer_id)
        return TimerHandle.model_validate(data) if data else None

    async def get_pending_timers(self, workspace_id: str, conversation_id: str) -> list[TimerHandle]:
        return [
            TimerHandle.model_validate(t) for t in self._timers.values()
            if t["workspace_id"] == workspace_id
            and t["conversation_id"] == conversation_id
            and t["status"] == TimerStatus.PENDING.value
        ]

    async def update_timer_status(
        self,
        timer_id: str,
        expected: TimerStatus,
        new_status: TimerStatus,
        resolved_at: datetime,
    ) -> bool:
        data = self._timers.get(timer_id)
        if not data or data["status"] != expected.value:
            return False
        data["status"] = new_status.value
        data["resolved_at"] = resolved_at.isoformat()
        return True

    async def list_timers(
        self,
        status: TimerStatus,
        resolved_after: Optional[datetime] = None,
    ) -> list[TimerHandle]:
        handles = [
            TimerHandle.model_validate(t) for t in self._timers.values()
            if t["status"] == status.value
        ]
        if resolved_after is not None:
            handles = [h for h in handles if h.resolved_at and h.resolved_at >= resolved_after]
        handles.sort(key=lambda h: h.deadline)
        return handles
