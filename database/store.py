"""
SqlAutomationStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

The optimistic guards are single conditional UPDATE statements whose
rowcount tells the caller whether it won:

  UPDATE conversation_sessions SET ... WHERE ... AND version = :expected
  UPDATE timer_handles SET status = :new WHERE id = :id AND status = :expected
  UPDATE automation_executions SET ... WHERE id = :id AND finished_at IS NULL
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import (
    ActionLogRow, AutomationExecutionRow, AutomationRow,
    ConversationSessionRow, TimerHandleRow,
)
from database.session import SessionScope, get_session
from database.store_base import BaseAutomationStore
from models.schemas import (
    TERMINAL_OUTCOMES, ActionLog, Automation, AutomationExecution,
    ConversationSession, ExecutionPage, ExecutionStatus, TimerHandle,
    TimerStatus, utcnow,
)

logger = structlog.get_logger()


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _columns(row: Any) -> dict[str, Any]:
    data = {c.key: getattr(row, c.key) for c in row.__table__.columns}
    return {k: _aware(v) if isinstance(v, datetime) else v for k, v in data.items()}


class SqlAutomationStore(BaseAutomationStore):
    """
    Persistent automation store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, session_scope: SessionScope = get_session):
        self._session = session_scope

    # ── Automation operations ──────────────────────────────

    async def save_automation(self, automation: Automation) -> Automation:
        data = automation.model_dump(mode="json")
        async with self._session() as db:
            row = await db.get(AutomationRow, automation.id)
            if row is None:
                row = AutomationRow(id=automation.id, created_at=automation.created_at)
                db.add(row)
            row.workspace_id = automation.workspace_id
            row.name = automation.name
            row.description = automation.description
            row.enabled = automation.enabled
            row.trigger_type = automation.trigger_type
            row.trigger_config = data["trigger_config"]
            row.conditions = data["conditions"]
            row.actions = data["actions"]
            row.folder_id = automation.folder_id
            row.position = automation.position
            row.updated_at = utcnow()
            await db.flush()
            return self._row_to_automation(row)

    async def get_automation(self, workspace_id: str, automation_id: str) -> Optional[Automation]:
        async with self._session() as db:
            row = await db.get(AutomationRow, automation_id)
            if row is None or row.workspace_id != workspace_id:
                return None
            return self._row_to_automation(row)

    async def list_automations(self, workspace_id: str) -> list[Automation]:
        async with self._session() as db:
            stmt = (
                select(AutomationRow)
                .where(AutomationRow.workspace_id == workspace_id)
                .order_by(AutomationRow.position, AutomationRow.created_at)
            )
            result = await db.execute(stmt)
            return [self._row_to_automation(r) for r in result.scalars().all()]

    async def list_enabled_automations(self, workspace_id: str, trigger_type: str) -> list[Automation]:
        async with self._session() as db:
            stmt = (
                select(AutomationRow)
                .where(and_(
                    AutomationRow.workspace_id == workspace_id,
                    AutomationRow.trigger_type == trigger_type,
                    AutomationRow.enabled.is_(True),
                ))
                .order_by(AutomationRow.position, AutomationRow.created_at)
            )
            result = await db.execute(stmt)
            return [self._row_to_automation(r) for r in result.scalars().all()]

    async def delete_automation(self, workspace_id: str, automation_id: str) -> bool:
        async with self._session() as db:
            row = await db.get(AutomationRow, automation_id)
            if row is None or row.workspace_id != workspace_id:
                return False
            await db.delete(row)
            return True

    # ── Execution operations ───────────────────────────────

    async def create_execution(self, execution: AutomationExecution) -> AutomationExecution:
        async with self._session() as db:
            row = AutomationExecutionRow(
                id=execution.id,
                workspace_id=execution.workspace_id,
                automation_id=execution.automation_id,
                triggering_event_id=execution.triggering_event_id,
                trigger_event=execution.trigger_event,
                status=execution.status.value,
                cascade_depth=execution.cascade_depth,
                started_at=execution.started_at,
            )
            db.add(row)
            await db.flush()
            return self._row_to_execution(row)

    async def find_execution(
        self, workspace_id: str, automation_id: str, event_id: str,
    ) -> Optional[AutomationExecution]:
        async with self._session() as db:
            stmt = select(AutomationExecutionRow).where(and_(
                AutomationExecutionRow.workspace_id == workspace_id,
                AutomationExecutionRow.automation_id == automation_id,
                AutomationExecutionRow.triggering_event_id == event_id,
            ))
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            if row is None:
                return None
            logs = await self._logs_for(db, [row.id])
            return self._row_to_execution(row, logs.get(row.id, []))

    async def get_execution(self, workspace_id: str, execution_id: str) -> Optional[AutomationExecution]:
        async with self._session() as db:
            row = await db.get(AutomationExecutionRow, execution_id)
            if row is None or row.workspace_id != workspace_id:
                return None
            logs = await self._logs_for(db, [row.id])
            return self._row_to_execution(row, logs.get(row.id, []))

    async def finish_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        finished_at: datetime,
        error_message: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> bool:
        async with self._session() as db:
            stmt = (
                update(AutomationExecutionRow)
                .where(and_(
                    AutomationExecutionRow.id == execution_id,
                    AutomationExecutionRow.finished_at.is_(None),
                ))
                .values(
                    status=status.value,
                    finished_at=finished_at,
                    error_message=error_message,
                    duration_ms=duration_ms,
                )
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def list_executions(
        self,
        workspace_id: str,
        automation_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> ExecutionPage:
        filters = [AutomationExecutionRow.workspace_id == workspace_id]
        if automation_id is not None:
            filters.append(AutomationExecutionRow.automation_id == automation_id)
        if status is not None:
            filters.append(AutomationExecutionRow.status == status.value)

        async with self._session() as db:
            total = await db.scalar(
                select(func.count()).select_from(AutomationExecutionRow).where(and_(*filters))
            )
            stmt = (
                select(AutomationExecutionRow)
                .where(and_(*filters))
                .order_by(AutomationExecutionRow.started_at.desc())
                .limit(limit)
                .offset(offset)
            )
            rows = (await db.execute(stmt)).scalars().all()
            logs = await self._logs_for(db, [r.id for r in rows])
            return ExecutionPage(
                items=[self._row_to_execution(r, logs.get(r.id, [])) for r in rows],
                total=total or 0,
                limit=limit,
                offset=offset,
            )

    # ── Action log operations ──────────────────────────────

    async def append_action_log(self, log: ActionLog) -> ActionLog:
        async with self._session() as db:
            db.add(ActionLogRow(
                id=log.id,
                execution_id=log.execution_id,
                workspace_id=log.workspace_id,
                ordinal=log.ordinal,
                action_type=log.action_type,
                attempt=log.attempt,
                outcome=log.outcome.value,
                error=log.error,
                error_kind=log.error_kind.value if log.error_kind else None,
                result=log.result,
                duration_ms=log.duration_ms,
                created_at=log.created_at,
            ))
        return log

    async def get_terminal_action_log(self, execution_id: str, ordinal: int) -> Optional[ActionLog]:
        async with self._session() as db:
            stmt = (
                select(ActionLogRow)
                .where(and_(
                    ActionLogRow.execution_id == execution_id,
                    ActionLogRow.ordinal == ordinal,
                    ActionLogRow.outcome.in_([o.value for o in TERMINAL_OUTCOMES]),
                ))
                .order_by(ActionLogRow.attempt)
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return ActionLog.model_validate(_columns(row)) if row else None

    async def list_action_logs(self, execution_id: str) -> list[ActionLog]:
        async with self._session() as db:
            logs = await self._logs_for(db, [execution_id])
            return logs.get(execution_id, [])

    # ── Session operations ─────────────────────────────────

    async def get_session(self, workspace_id: str, conversation_id: str) -> Optional[ConversationSession]:
        async with self._session() as db:
            row = await db.get(ConversationSessionRow, (workspace_id, conversation_id))
            return ConversationSession.model_validate(_columns(row)) if row else None

    async def create_session(self, session: ConversationSession) -> bool:
        try:
            async with self._session() as db:
                db.add(ConversationSessionRow(**self._session_values(session)))
                await db.flush()
        except IntegrityError:
            return False
        return True

    async def update_session_if_version(self, session: ConversationSession, expected_version: int) -> bool:
        values = self._session_values(session)
        for key in ("workspace_id", "conversation_id", "created_at"):
            values.pop(key)
        async with self._session() as db:
            stmt = (
                update(ConversationSessionRow)
                .where(and_(
                    ConversationSessionRow.workspace_id == session.workspace_id,
                    ConversationSessionRow.conversation_id == session.conversation_id,
                    ConversationSessionRow.version == expected_version,
                ))
                .values(**values)
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    # ── Timer operations ───────────────────────────────────

    async def create_timer(self, handle: TimerHandle) -> TimerHandle:
        async with self._session() as db:
            db.add(TimerHandleRow(
                id=handle.id,
                workspace_id=handle.workspace_id,
                conversation_id=handle.conversation_id,
                phase=handle.phase.value,
                deadline=handle.deadline,
                status=handle.status.value,
                created_at=handle.created_at,
                resolved_at=handle.resolved_at,
            ))
        return handle

    async def get_timer(self, timer_id: str) -> Optional[TimerHandle]:
        async with self._session() as db:
            row = await db.get(TimerHandleRow, timer_id)
            return TimerHandle.model_validate(_columns(row)) if row else None

    async def get_pending_timers(self, workspace_id: str, conversation_id: str) -> list[TimerHandle]:
        async with self._session() as db:
            stmt = select(TimerHandleRow).where(and_(
                TimerHandleRow.workspace_id == workspace_id,
                TimerHandleRow.conversation_id == conversation_id,
                TimerHandleRow.status == TimerStatus.PENDING.value,
            ))
            result = await db.execute(stmt)
            return [TimerHandle.model_validate(_columns(r)) for r in result.scalars().all()]

    async def update_timer_status(
        self,
        timer_id: str,
        expected: TimerStatus,
        new_status: TimerStatus,
        resolved_at: datetime,
    ) -> bool:
        async with self._session() as db:
            stmt = (
                update(TimerHandleRow)
                .where(and_(
                    TimerHandleRow.id == timer_id,
                    TimerHandleRow.status == expected.value,
                ))
                .values(status=new_status.value, resolved_at=resolved_at)
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def list_timers(
        self,
        status: TimerStatus,
        resolved_after: Optional[datetime] = None,
    ) -> list[TimerHandle]:
        filters = [TimerHandleRow.status == status.value]
        if resolved_after is not None:
            filters.append(TimerHandleRow.resolved_at >= resolved_after)
        async with self._session() as db:
            stmt = select(TimerHandleRow).where(and_(*filters)).order_by(TimerHandleRow.deadline)
            result = await db.execute(stmt)
            return [TimerHandle.model_validate(_columns(r)) for r in result.scalars().all()]

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    async def _logs_for(db: AsyncSession, execution_ids: list[str]) -> dict[str, list[ActionLog]]:
        if not execution_ids:
            return {}
        stmt = (
            select(ActionLogRow)
            .where(ActionLogRow.execution_id.in_(execution_ids))
            .order_by(ActionLogRow.ordinal, ActionLogRow.attempt)
        )
        grouped: dict[str, list[ActionLog]] = {}
        for row in (await db.execute(stmt)).scalars().all():
            grouped.setdefault(row.execution_id, []).append(ActionLog.model_validate(_columns(row)))
        return grouped

    @staticmethod
    def _row_to_automation(row: AutomationRow) -> Automation:
        return Automation.model_validate(_columns(row))

    @staticmethod
    def _row_to_execution(row: AutomationExecutionRow, logs: list[ActionLog] = None) -> AutomationExecution:
        return AutomationExecution.model_validate({**_columns(row), "action_logs": logs or []})

    @staticmethod
    def _session_values(session: ConversationSession) -> dict[str, Any]:
        return {
            "workspace_id": session.workspace_id,
            "conversation_id": session.conversation_id,
            "contact_id": session.contact_id,
            "phase": session.phase.value,
            "collected_fields": dict(session.collected_fields),
            "offered_packs": list(session.offered_packs),
            "selected_pack": session.selected_pack,
            "order_id": session.order_id,
            "active_timer_id": session.active_timer_id,
            "last_timer_id": session.last_timer_id,
            "last_trigger": session.last_trigger,
            "closed_reason": session.closed_reason,
            "version": session.version,
            "created_at": session.created_at,
            "updated_at": session.updated_at,
        }
