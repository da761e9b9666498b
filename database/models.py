"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - Every table carries workspace_id for tenant isolation.
  - All timestamps are timezone-aware and written in UTC.
  - String primary keys (uuid) — no database-specific sequences.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, String, Integer, DateTime, Text, Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Automations
# ──────────────────────────────────────────────────────────────

class AutomationRow(Base):
    __tablename__ = "automations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    trigger_type: Mapped[str] = mapped_column(String(64), nullable=False)
    trigger_config: Mapped[Any] = mapped_column(JSON, default=dict)
    conditions: Mapped[Any] = mapped_column(JSON, nullable=True)
    actions: Mapped[Any] = mapped_column(JSON, default=list)
    folder_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    position: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_automations_ws_trigger", "workspace_id", "trigger_type", "enabled"),
    )


# ──────────────────────────────────────────────────────────────
#  Executions & Action Logs
# ──────────────────────────────────────────────────────────────

class AutomationExecutionRow(Base):
    __tablename__ = "automation_executions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    automation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    triggering_event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    trigger_event: Mapped[Any] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(16), default="running")
    cascade_depth: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("workspace_id", "automation_id", "triggering_event_id",
                         name="uq_execution_event"),
        Index("ix_executions_ws_started", "workspace_id", "started_at"),
    )


class ActionLogRow(Base):
    __tablename__ = "action_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    execution_id: Mapped[str] = mapped_column(String(64), nullable=False)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    ordinal: Mapped[int] = mapped_column(Integer, nullable=False)
    action_type: Mapped[str] = mapped_column(String(64), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_kind: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    result: Mapped[Any] = mapped_column(JSON, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("execution_id", "ordinal", "attempt", name="uq_action_attempt"),
        Index("ix_action_logs_execution", "execution_id", "ordinal"),
    )


# ──────────────────────────────────────────────────────────────
#  Conversation Sessions & Timers
# ──────────────────────────────────────────────────────────────

class ConversationSessionRow(Base):
    __tablename__ = "conversation_sessions"

    workspace_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    contact_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    phase: Mapped[str] = mapped_column(String(32), default="idle")
    collected_fields: Mapped[Any] = mapped_column(JSON, default=dict)
    offered_packs: Mapped[Any] = mapped_column(JSON, default=list)
    selected_pack: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    active_timer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    last_timer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    last_trigger: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    closed_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class TimerHandleRow(Base):
    __tablename__ = "timer_handles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    conversation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    phase: Mapped[str] = mapped_column(String(32), nullable=False)
    deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_timers_status_deadline", "status", "deadline"),
        Index("ix_timers_conversation", "workspace_id", "conversation_id", "status"),
    )
