"""
Store Factory — one process-wide store chosen by `database.store_backend`.

    database:
      store_backend: sql | memory | file
      url: sqlite:///./flow_engine.db      # sql backend; call init_db() at startup
      store_file_dir: ./data               # file backend

The SQL backend shares the engine managed by database.session.
"""
from __future__ import annotations

import structlog
from dataclasses import asdict
from typing import Callable, Optional, Union

from config.settings import DatabaseConfig
from database.store_base import BaseExecutionStore, StoreError

logger = structlog.get_logger()

_instance: Optional[BaseExecutionStore] = None


def _memory(config: DatabaseConfig) -> BaseExecutionStore:
    from database.store_memory import InMemoryExecutionStore
    return InMemoryExecutionStore()


def _file(config: DatabaseConfig) -> BaseExecutionStore:
    from database.store_file import FileExecutionStore
    return FileExecutionStore(data_dir=config.store_file_dir)


def _sql(config: DatabaseConfig) -> BaseExecutionStore:
    from database.store import SqlExecutionStore
    return SqlExecutionStore()


BACKENDS: dict[str, Callable[[DatabaseConfig], BaseExecutionStore]] = {
    "memory": _memory,
    "file": _file,
    "sql": _sql,
}


def _as_config(config: Union[DatabaseConfig, dict, None]) -> DatabaseConfig:
    if isinstance(config, DatabaseConfig):
        return config
    known = asdict(DatabaseConfig())
    return DatabaseConfig(**{k: v for k, v in (config or {}).items() if k in known})


def create_store(config: Union[DatabaseConfig, dict, None] = None) -> BaseExecutionStore:
    """Create the store on first call; later calls return the same instance."""
    global _instance
    if _instance is not None:
        return _instance

    config = _as_config(config)
    builder = BACKENDS.get(config.store_backend)
    if builder is None:
        raise StoreError(f"Unknown store backend {config.store_backend!r}; "
                         f"expected one of {', '.join(BACKENDS)}")
    _instance = builder(config)
    logger.info("store_created", backend=config.store_backend,
                store=type(_instance).__name__)
    return _instance


def get_store() -> BaseExecutionStore:
    return _instance or create_store()


def reset_store() -> None:
    """Forget the process store (for testing)."""
    global _instance
    _instance = None
