"""
SqlExecutionStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Concurrency guarantees come from the database, not from process locks:
  - a unique `active_key` column rejects a second non-terminal execution
    for the same conversation (IntegrityError → DuplicateExecutionError)
  - saves are `UPDATE ... WHERE version = :expected`; zero rows updated
    means someone else saved first (StaleExecutionError)
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError

from database.models import ExecutionLogRow, ExecutionRow, FlowRow
from database.session import get_session
from database.store_base import (
    BaseExecutionStore, DuplicateExecutionError, ExecutionFrozenError, StaleExecutionError,
)
from models.schemas import (
    ExecutionLogEntry, ExecutionState, ExecutionStatus, FlowDefinition, TERMINAL_STATUSES,
)

logger = structlog.get_logger()

_TERMINAL_VALUES = [s.value for s in TERMINAL_STATUSES]


def _active_key(execution: ExecutionState) -> Optional[str]:
    return None if execution.is_terminal else execution.conversation_id


class SqlExecutionStore(BaseExecutionStore):
    """
    Persistent execution store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Flow operations ────────────────────────────────────

    async def _write_flow(self, flow: FlowDefinition) -> FlowDefinition:
        data = flow.model_dump(mode="json")
        now = datetime.now(timezone.utc)
        async with get_session() as db:
            if flow.is_active:
                await db.execute(
                    update(FlowRow)
                    .where(and_(
                        FlowRow.department_code == flow.department_code,
                        FlowRow.id != flow.id,
                    ))
                    .values(is_active=False)
                )
            row = await db.get(FlowRow, flow.id)
            if row is None:
                row = FlowRow(id=flow.id, created_at=flow.created_at)
                db.add(row)
            row.name = flow.name
            row.description = flow.description
            row.department_code = flow.department_code
            row.nodes = data["nodes"]
            row.edges = data["edges"]
            row.is_active = flow.is_active
            row.updated_at = now
            await db.flush()
            return self._row_to_flow(row)

    async def get_flow(self, flow_id: str) -> Optional[FlowDefinition]:
        async with get_session() as db:
            row = await db.get(FlowRow, flow_id)
            return self._row_to_flow(row) if row else None

    async def get_active_flow(self, department_code: str) -> Optional[FlowDefinition]:
        async with get_session() as db:
            stmt = (
                select(FlowRow)
                .where(and_(
                    FlowRow.department_code == department_code,
                    FlowRow.is_active.is_(True),
                ))
                .order_by(FlowRow.updated_at.desc())
                .limit(1)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_flow(row) if row else None

    async def list_flows(self, department_code: str = "") -> list[FlowDefinition]:
        async with get_session() as db:
            stmt = select(FlowRow).order_by(FlowRow.created_at)
            if department_code:
                stmt = stmt.where(FlowRow.department_code == department_code)
            result = await db.execute(stmt)
            return [self._row_to_flow(r) for r in result.scalars().all()]

    # ── Execution operations ───────────────────────────────

    async def get_execution(self, execution_id: str) -> Optional[ExecutionState]:
        async with get_session() as db:
            row = await db.get(ExecutionRow, execution_id)
            return self._row_to_execution(row) if row else None

    async def find_active_execution(self, conversation_id: str) -> Optional[ExecutionState]:
        async with get_session() as db:
            stmt = select(ExecutionRow).where(ExecutionRow.active_key == conversation_id)
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_execution(row) if row else None

    async def create_execution(self, execution: ExecutionState) -> ExecutionState:
        try:
            async with get_session() as db:
                row = ExecutionRow(
                    id=execution.id,
                    conversation_id=execution.conversation_id,
                    flow_id=execution.flow_id,
                    phone_identity=execution.phone_identity,
                    department_code=execution.department_code,
                    current_node_id=execution.current_node_id,
                    status=execution.status.value,
                    variables=execution.model_dump(mode="json")["variables"],
                    context=execution.model_dump(mode="json")["context"],
                    version=execution.version,
                    active_key=_active_key(execution),
                    started_at=execution.started_at,
                    updated_at=execution.updated_at,
                    completed_at=execution.completed_at,
                )
                db.add(row)
                await db.flush()
        except IntegrityError as e:
            logger.info("execution_create_conflict",
                        conversation_id=execution.conversation_id, error=str(e.orig))
            raise DuplicateExecutionError(execution.conversation_id) from e

        logger.info("execution_created",
                    execution_id=execution.id,
                    conversation_id=execution.conversation_id,
                    flow_id=execution.flow_id)
        return execution.model_copy(deep=True)

    async def save_execution(self, execution: ExecutionState) -> ExecutionState:
        data = execution.model_dump(mode="json")
        now = datetime.now(timezone.utc)
        async with get_session() as db:
            current = await db.get(ExecutionRow, execution.id)
            if current is None:
                raise StaleExecutionError(execution.id, execution.version)
            if current.status in _TERMINAL_VALUES:
                raise ExecutionFrozenError(execution.id)

            stmt = (
                update(ExecutionRow)
                .where(and_(
                    ExecutionRow.id == execution.id,
                    ExecutionRow.version == execution.version,
                ))
                .values(
                    current_node_id=execution.current_node_id,
                    status=execution.status.value,
                    variables=data["variables"],
                    context=data["context"],
                    version=execution.version + 1,
                    active_key=_active_key(execution),
                    updated_at=now,
                    completed_at=execution.completed_at,
                )
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            if result.rowcount != 1:
                raise StaleExecutionError(execution.id, execution.version)

        saved = execution.model_copy(deep=True)
        saved.version = execution.version + 1
        saved.updated_at = now
        return saved

    async def list_executions(
        self, conversation_id: str = "", status: Optional[ExecutionStatus] = None,
        limit: int = 100,
    ) -> list[ExecutionState]:
        async with get_session() as db:
            stmt = select(ExecutionRow).order_by(ExecutionRow.started_at.desc()).limit(limit)
            if conversation_id:
                stmt = stmt.where(ExecutionRow.conversation_id == conversation_id)
            if status is not None:
                stmt = stmt.where(ExecutionRow.status == status.value)
            result = await db.execute(stmt)
            return [self._row_to_execution(r) for r in result.scalars().all()]

    # ── Execution log operations ───────────────────────────

    async def append_logs(self, entries: list[ExecutionLogEntry]) -> None:
        if not entries:
            return
        async with get_session() as db:
            offsets: dict[str, int] = {}
            for entry in entries:
                if entry.execution_id not in offsets:
                    count = await db.execute(
                        select(func.count())
                        .select_from(ExecutionLogRow)
                        .where(ExecutionLogRow.execution_id == entry.execution_id)
                    )
                    offsets[entry.execution_id] = count.scalar_one()
                data = entry.model_dump(mode="json")
                db.add(ExecutionLogRow(
                    id=entry.id,
                    execution_id=entry.execution_id,
                    position=offsets[entry.execution_id],
                    node_id=entry.node_id,
                    node_type=entry.node_type,
                    action_taken=entry.action_taken,
                    input_data=data["input_data"],
                    output_data=data["output_data"],
                    duration_ms=entry.duration_ms,
                    created_at=entry.created_at,
                ))
                offsets[entry.execution_id] += 1

    async def get_logs(self, execution_id: str) -> list[ExecutionLogEntry]:
        async with get_session() as db:
            stmt = (
                select(ExecutionLogRow)
                .where(ExecutionLogRow.execution_id == execution_id)
                .order_by(ExecutionLogRow.position)
            )
            result = await db.execute(stmt)
            return [ExecutionLogEntry.model_validate(r.to_dict()) for r in result.scalars().all()]

    # ── Row converters ─────────────────────────────────────

    @staticmethod
    def _row_to_flow(row: FlowRow) -> FlowDefinition:
        return FlowDefinition.model_validate(row.to_dict())

    @staticmethod
    def _row_to_execution(row: ExecutionRow) -> ExecutionState:
        return ExecutionState.model_validate(row.to_dict())
