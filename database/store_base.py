"""
Abstract Automation Store — Interface for all storage backends.

Implementations:
  - SqlAutomationStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryAutomationStore (dict-based, single-process, no persistence)
  - FileAutomationStore     (JSON files on disk, single-process, durable)

The store is the single source of truth for automations, executions,
action logs, conversation sessions and timer handles. Every record is keyed
by workspace id. The optimistic guards live here as conditional writes:

  - update_session_if_version   — write only if the stored version matches
  - update_timer_status         — move a timer only out of the expected status
  - finish_execution            — finish only an execution not yet finished
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from models.schemas import (
    ActionLog, Automation, AutomationExecution, ConversationSession,
    ExecutionPage, ExecutionStatus, TimerHandle, TimerStatus,
)


class BaseAutomationStore(ABC):
    """Interface that all automation store backends must implement."""

    # ── Automations ───────────────────────────────────────────

    @abstractmethod
    async def save_automation(self, automation: Automation) -> Automation:
        ...

    @abstractmethod
    async def get_automation(self, workspace_id: str, automation_id: str) -> Optional[Automation]:
        ...

    @abstractmethod
    async def list_automations(self, workspace_id: str) -> list[Automation]:
        ...

    @abstractmethod
    async def list_enabled_automations(self, workspace_id: str, trigger_type: str) -> list[Automation]:
        """Enabled automations for a trigger type, ordered by position."""
        ...

    @abstractmethod
    async def delete_automation(self, workspace_id: str, automation_id: str) -> bool:
        ...

    # ── Executions ────────────────────────────────────────────

    @abstractmethod
    async def create_execution(self, execution: AutomationExecution) -> AutomationExecution:
        ...

    @abstractmethod
    async def find_execution(
        self, workspace_id: str, automation_id: str, event_id: str,
    ) -> Optional[AutomationExecution]:
        """The execution anchored to (automation, triggering event), if any."""
        ...

    @abstractmethod
    async def get_execution(self, workspace_id: str, execution_id: str) -> Optional[AutomationExecution]:
        """Execution with its action logs attached."""
        ...

    @abstractmethod
    async def finish_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        finished_at: datetime,
        error_message: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> bool:
        """Set the terminal status. Returns False if already finished."""
        ...

    @abstractmethod
    async def list_executions(
        self,
        workspace_id: str,
        automation_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> ExecutionPage:
        """Newest first."""
        ...

    # ── Action logs ───────────────────────────────────────────

    @abstractmethod
    async def append_action_log(self, log: ActionLog) -> ActionLog:
        ...

    @abstractmethod
    async def get_terminal_action_log(self, execution_id: str, ordinal: int) -> Optional[ActionLog]:
        """The terminal log for the idempotency key (execution_id, ordinal)."""
        ...

    @abstractmethod
    async def list_action_logs(self, execution_id: str) -> list[ActionLog]:
        ...

    # ── Conversation sessions ─────────────────────────────────

    @abstractmethod
    async def get_session(self, workspace_id: str, conversation_id: str) -> Optional[ConversationSession]:
        ...

    @abstractmethod
    async def create_session(self, session: ConversationSession) -> bool:
        """Insert if absent. Returns False when the conversation already has one."""
        ...

    @abstractmethod
    async def update_session_if_version(self, session: ConversationSession, expected_version: int) -> bool:
        """Write session only if the stored version equals expected_version."""
        ...

    # ── Timers ────────────────────────────────────────────────

    @abstractmethod
    async def create_timer(self, handle: TimerHandle) -> TimerHandle:
        ...

    @abstractmethod
    async def get_timer(self, timer_id: str) -> Optional[TimerHandle]:
        ...

    @abstractmethod
    async def get_pending_timers(self, workspace_id: str, conversation_id: str) -> list[TimerHandle]:
        ...

    @abstractmethod
    async def update_timer_status(
        self,
        timer_id: str,
        expected: TimerStatus,
        new_status: TimerStatus,
        resolved_at: datetime,
    ) -> bool:
        """Move a timer from expected to new_status. False if it was not in expected."""
        ...

    @abstractmethod
    async def list_timers(
        self,
        status: TimerStatus,
        resolved_after: Optional[datetime] = None,
    ) -> list[TimerHandle]:
        """Timers in a status across all workspaces, oldest deadline first."""
        ...
