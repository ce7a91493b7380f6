"""
Execution Lifecycle — status transitions for a flow execution.

Every status change of an ExecutionState goes through here so the rules
live in one table instead of being scattered across node handlers:

  running ──► running | waiting_response | waiting_input | paused
          └─► completed | escalated                         (terminal)
  waiting_response | waiting_input | paused ──► running     (resume)

Terminal executions are frozen: any further transition is rejected.

Usage:
    lifecycle = ExecutionLifecycle()
    lifecycle.transition(execution, ExecutionStatus.WAITING_INPUT, node_id="ask_budget")
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional

from models.schemas import ExecutionState, ExecutionStatus, TERMINAL_STATUSES

logger = structlog.get_logger()


class InvalidTransitionError(Exception):
    """Raised when a status change is not allowed from the current status."""

    def __init__(self, execution_id: str, from_status: ExecutionStatus, to_status: ExecutionStatus):
        self.execution_id = execution_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"execution {execution_id}: {from_status.value} → {to_status.value} not allowed"
        )


_PAUSE_STATUSES = {
    ExecutionStatus.WAITING_RESPONSE,
    ExecutionStatus.WAITING_INPUT,
    ExecutionStatus.PAUSED,
}

ALLOWED_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.RUNNING: frozenset({ExecutionStatus.RUNNING, *_PAUSE_STATUSES, *TERMINAL_STATUSES}),
    ExecutionStatus.WAITING_RESPONSE: frozenset({ExecutionStatus.RUNNING}),
    ExecutionStatus.WAITING_INPUT: frozenset({ExecutionStatus.RUNNING}),
    ExecutionStatus.PAUSED: frozenset({ExecutionStatus.RUNNING}),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.ESCALATED: frozenset(),
}


class ExecutionLifecycle:
    """Applies status transitions to an ExecutionState in place."""

    def can_transition(self, from_status: ExecutionStatus, to_status: ExecutionStatus) -> bool:
        return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())

    def transition(
        self,
        execution: ExecutionState,
        to_status: ExecutionStatus,
        node_id: Optional[str] = None,
    ) -> ExecutionState:
        """
        Move `execution` to `to_status`, optionally re-anchoring it at `node_id`.
        Terminal statuses stamp `completed_at`.
        """
        from_status = execution.status
        if not self.can_transition(from_status, to_status):
            logger.error("invalid_execution_transition",
                         execution_id=execution.id,
                         from_status=from_status.value,
                         to_status=to_status.value)
            raise InvalidTransitionError(execution.id, from_status, to_status)

        now = datetime.now(timezone.utc)
        execution.status = to_status
        if node_id is not None:
            execution.current_node_id = node_id
        execution.updated_at = now
        if to_status in TERMINAL_STATUSES:
            execution.completed_at = now

        if from_status != to_status:
            logger.info("execution_transition",
                        execution_id=execution.id,
                        transition=f"{from_status.value} → {to_status.value}",
                        node_id=execution.current_node_id)
        return execution

    def resume(self, execution: ExecutionState) -> ExecutionStatus:
        """
        Put a paused/waiting execution back to running.
        Returns the status it was resumed from.
        """
        previous = execution.status
        if previous in _PAUSE_STATUSES:
            self.transition(execution, ExecutionStatus.RUNNING)
        return previous
