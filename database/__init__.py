"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, survives restarts)

Quick start:
  from config.settings import DatabaseConfig
  from database import create_store, get_store
  store = create_store(DatabaseConfig(store_backend="memory"))
  session = await store.get_session("ws1", "conv-1")
"""
from database.models import (
    Base, AutomationRow, AutomationExecutionRow, ActionLogRow,
    ConversationSessionRow, TimerHandleRow,
)
from database.session import get_engine, get_session, build_session_scope, init_db, close_db
from database.store_base import BaseAutomationStore
from database.store import SqlAutomationStore
from database.store_memory import InMemoryAutomationStore
from database.store_file import FileAutomationStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "AutomationRow", "AutomationExecutionRow", "ActionLogRow",
    "ConversationSessionRow", "TimerHandleRow",
    # Session management
    "get_engine", "get_session", "build_session_scope", "init_db", "close_db",
    # Store interface
    "BaseAutomationStore",
    # Store backends
    "SqlAutomationStore", "InMemoryAutomationStore", "FileAutomationStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
