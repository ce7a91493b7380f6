"""
Abstract Execution Store — Interface for all storage backends.

One store holds three collections:
  - flow definitions   (read-only to the interpreter; written by import)
  - execution states   (one non-terminal execution per conversation)
  - execution log      (append-only audit trail)

Implementations:
  - SqlExecutionStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryExecutionStore (dict-based, single-process, no persistence)
  - FileExecutionStore     (JSON files on disk, single-process, durable)
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from core.errors import FlowValidationError
from models.schemas import (
    ExecutionLogEntry, ExecutionState, ExecutionStatus, FlowDefinition,
)


class StoreError(Exception):
    """Base class for store failures."""


class DuplicateExecutionError(StoreError):
    """A non-terminal execution already exists for the conversation."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"conversation {conversation_id} already has an active execution")


class StaleExecutionError(StoreError):
    """The stored version moved on since the execution was read."""

    def __init__(self, execution_id: str, expected_version: int):
        self.execution_id = execution_id
        self.expected_version = expected_version
        super().__init__(f"execution {execution_id} is not at version {expected_version}")


class ExecutionFrozenError(StoreError):
    """The stored execution is completed or escalated and cannot change."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"execution {execution_id} is terminal")


class BaseExecutionStore(ABC):
    """Interface that all execution store backends must implement."""

    # ── Flow definitions ──────────────────────────────────────

    async def save_flow(self, flow: FlowDefinition) -> FlowDefinition:
        """
        Validate and store a definition. Activating a flow deactivates the
        other flows of the same department.
        """
        errors = flow.validate_graph()
        if errors:
            raise FlowValidationError(errors)
        return await self._write_flow(flow)

    @abstractmethod
    async def _write_flow(self, flow: FlowDefinition) -> FlowDefinition:
        ...

    @abstractmethod
    async def get_flow(self, flow_id: str) -> Optional[FlowDefinition]:
        ...

    @abstractmethod
    async def get_active_flow(self, department_code: str) -> Optional[FlowDefinition]:
        ...

    @abstractmethod
    async def list_flows(self, department_code: str = "") -> list[FlowDefinition]:
        ...

    # ── Executions ────────────────────────────────────────────

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Optional[ExecutionState]:
        ...

    @abstractmethod
    async def find_active_execution(self, conversation_id: str) -> Optional[ExecutionState]:
        """The non-terminal execution of a conversation, if any."""
        ...

    @abstractmethod
    async def create_execution(self, execution: ExecutionState) -> ExecutionState:
        """
        Insert a new execution. Raises DuplicateExecutionError when the
        conversation already has a non-terminal one.
        """
        ...

    @abstractmethod
    async def save_execution(self, execution: ExecutionState) -> ExecutionState:
        """
        Compare-and-set on `version`. On success the stored and returned
        execution carry version + 1. Raises StaleExecutionError or
        ExecutionFrozenError.
        """
        ...

    @abstractmethod
    async def list_executions(
        self, conversation_id: str = "", status: Optional[ExecutionStatus] = None,
        limit: int = 100,
    ) -> list[ExecutionState]:
        ...

    # ── Execution log ─────────────────────────────────────────

    @abstractmethod
    async def append_logs(self, entries: list[ExecutionLogEntry]) -> None:
        ...

    @abstractmethod
    async def get_logs(self, execution_id: str) -> list[ExecutionLogEntry]:
        """Entries of one execution in insertion order."""
        ...

    async def close(self) -> None:
        """Release the store at shutdown. Pending writes are persisted first."""
