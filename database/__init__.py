"""
Database layer — Multi-backend persistence for flows, executions and the
execution log.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  flow = await store.get_active_flow("vendas")
"""
from database.models import Base, ExecutionLogRow, ExecutionRow, FlowRow
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import (
    BaseExecutionStore, StoreError, DuplicateExecutionError,
    StaleExecutionError, ExecutionFrozenError,
)
from database.store import SqlExecutionStore
from database.store_memory import InMemoryExecutionStore
from database.store_file import FileExecutionStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "FlowRow", "ExecutionRow", "ExecutionLogRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface and errors
    "BaseExecutionStore", "StoreError", "DuplicateExecutionError",
    "StaleExecutionError", "ExecutionFrozenError",
    # Store backends
    "SqlExecutionStore", "InMemoryExecutionStore", "FileExecutionStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
