"""
InMemoryExecutionStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlExecutionStore
  - Execution creation and saves serialized through one asyncio.Lock
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import asyncio
import structlog
from collections import defaultdict
from datetime import datetime, timezone
from typing import Optional

from database.store_base import (
    BaseExecutionStore, DuplicateExecutionError, ExecutionFrozenError, StaleExecutionError,
)
from models.schemas import (
    ExecutionLogEntry, ExecutionState, ExecutionStatus, FlowDefinition,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryExecutionStore(BaseExecutionStore):
    """
    Full-featured in-memory store with the same interface as SqlExecutionStore.
    Returns copies so callers never mutate stored state directly.
    """

    def __init__(self):
        self._flows: dict[str, FlowDefinition] = {}                 # id → flow
        self._executions: dict[str, ExecutionState] = {}            # id → execution
        self._logs: dict[str, list[ExecutionLogEntry]] = defaultdict(list)  # execution_id → entries

        # Indexes
        self._active_index: dict[str, str] = {}                     # conversation_id → execution_id
        self._lock = asyncio.Lock()
        logger.info("inmemory_store_initialized")

    # ── Flow definitions ──────────────────────────────────

    async def _write_flow(self, flow: FlowDefinition) -> FlowDefinition:
        stored = flow.model_copy(deep=True)
        stored.updated_at = _utcnow()
        if stored.is_active:
            for other in self._flows.values():
                if other.id != stored.id and other.department_code == stored.department_code:
                    other.is_active = False
        self._flows[stored.id] = stored
        self._on_change("flows")
        return stored.model_copy(deep=True)

    async def get_flow(self, flow_id: str) -> Optional[FlowDefinition]:
        flow = self._flows.get(flow_id)
        return flow.model_copy(deep=True) if flow else None

    async def get_active_flow(self, department_code: str) -> Optional[FlowDefinition]:
        active = [
            f for f in self._flows.values()
            if f.department_code == department_code and f.is_active
        ]
        if not active:
            return None
        active.sort(key=lambda f: f.updated_at, reverse=True)
        return active[0].model_copy(deep=True)

    async def list_flows(self, department_code: str = "") -> list[FlowDefinition]:
        return [
            f.model_copy(deep=True) for f in self._flows.values()
            if not department_code or f.department_code == department_code
        ]

    # ── Executions ────────────────────────────────────────

    async def get_execution(self, execution_id: str) -> Optional[ExecutionState]:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def find_active_execution(self, conversation_id: str) -> Optional[ExecutionState]:
        eid = self._active_index.get(conversation_id)
        if not eid:
            return None
        return await self.get_execution(eid)

    async def create_execution(self, execution: ExecutionState) -> ExecutionState:
        async with self._lock:
            if execution.conversation_id in self._active_index:
                raise DuplicateExecutionError(execution.conversation_id)
            stored = execution.model_copy(deep=True)
            self._executions[stored.id] = stored
            if not stored.is_terminal:
                self._active_index[stored.conversation_id] = stored.id
            self._on_change("executions")
        logger.info("execution_created",
                    execution_id=stored.id,
                    conversation_id=stored.conversation_id,
                    flow_id=stored.flow_id)
        return stored.model_copy(deep=True)

    async def save_execution(self, execution: ExecutionState) -> ExecutionState:
        async with self._lock:
            current = self._executions.get(execution.id)
            if current is None:
                raise StaleExecutionError(execution.id, execution.version)
            if current.is_terminal:
                raise ExecutionFrozenError(execution.id)
            if current.version != execution.version:
                raise StaleExecutionError(execution.id, execution.version)

            stored = execution.model_copy(deep=True)
            stored.version = current.version + 1
            stored.updated_at = _utcnow()
            self._executions[stored.id] = stored
            if stored.is_terminal:
                self._active_index.pop(stored.conversation_id, None)
            self._on_change("executions")
        return stored.model_copy(deep=True)

    async def list_executions(
        self, conversation_id: str = "", status: Optional[ExecutionStatus] = None,
        limit: int = 100,
    ) -> list[ExecutionState]:
        rows = [
            e for e in self._executions.values()
            if (not conversation_id or e.conversation_id == conversation_id)
            and (status is None or e.status == status)
        ]
        rows.sort(key=lambda e: e.started_at, reverse=True)
        return [e.model_copy(deep=True) for e in rows[:limit]]

    # ── Execution log ─────────────────────────────────────

    async def append_logs(self, entries: list[ExecutionLogEntry]) -> None:
        if not entries:
            return
        for entry in entries:
            self._logs[entry.execution_id].append(entry)
        self._on_change("logs")

    async def get_logs(self, execution_id: str) -> list[ExecutionLogEntry]:
        return list(self._logs.get(execution_id, []))

    # ── Persistence hook ──────────────────────────────────

    def _on_change(self, collection: str) -> None:
        """Called after every mutation. No-op in memory."""

    def stats(self) -> dict[str, int]:
        return {
            "flows": len(self._flows),
            "executions": len(self._executions),
            "active_executions": len(self._active_index),
            "log_entries": sum(len(v) for v in self._logs.values()),
        }
