"""
Store Factory — pick the automation store backend named in settings.

    database:
      store_backend: sql | memory | file
      url: sqlite:///./orchestrator.db      # sql backend only
      store_file_dir: ./data                # file backend only

"memory" loses everything on restart, so pending session timers do not
survive it; use "file" or "sql" wherever timers must outlive the process.
"""
from __future__ import annotations

import structlog
from typing import Callable, Optional

from config.settings import DatabaseConfig
from database.store_base import BaseAutomationStore

logger = structlog.get_logger()

_instance: Optional[BaseAutomationStore] = None


def _sql_store(config: DatabaseConfig) -> BaseAutomationStore:
    from database.store import SqlAutomationStore
    return SqlAutomationStore()


def _file_store(config: DatabaseConfig) -> BaseAutomationStore:
    from database.store_file import FileAutomationStore
    return FileAutomationStore(data_dir=config.store_file_dir)


def _memory_store(config: DatabaseConfig) -> BaseAutomationStore:
    from database.store_memory import InMemoryAutomationStore
    return InMemoryAutomationStore()


_BACKENDS: dict[str, Callable[[DatabaseConfig], BaseAutomationStore]] = {
    "sql": _sql_store,
    "file": _file_store,
    "memory": _memory_store,
}


def create_store(config: Optional[DatabaseConfig] = None) -> BaseAutomationStore:
    """Build the configured store once; later calls return the same instance."""
    global _instance
    if _instance is not None:
        return _instance

    config = config or DatabaseConfig()
    builder = _BACKENDS.get(config.store_backend)
    if builder is None:
        raise ValueError(
            f"Unknown store backend '{config.store_backend}', expected one of {sorted(_BACKENDS)}"
        )
    _instance = builder(config)
    logger.info("store_created", backend=config.store_backend)
    return _instance


def get_store() -> BaseAutomationStore:
    global _instance
    if _instance is None:
        _instance = create_store()
    return _instance


def reset_store() -> None:
    """Forget the singleton (tests)."""
    global _instance
    _instance = None
