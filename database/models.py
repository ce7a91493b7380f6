"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - String primary keys (uuid hex) — no database-specific sequences.
  - "One non-terminal execution per conversation" is a plain unique index
    on `active_key` (conversation id while running/waiting, NULL once
    terminal) instead of a PG partial index. NULLs never collide.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Index, Integer, JSON, String, Text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Flow definitions
# ──────────────────────────────────────────────────────────────

class FlowRow(Base):
    __tablename__ = "flows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    department_code: Mapped[str] = mapped_column(String(64), default="")

    nodes: Mapped[Any] = mapped_column(JSON, default=list)
    edges: Mapped[Any] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_flows_department_active", "department_code", "is_active"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "name": self.name, "description": self.description,
            "department_code": self.department_code,
            "nodes": self.nodes or [], "edges": self.edges or [],
            "is_active": self.is_active,
            "created_at": self.created_at, "updated_at": self.updated_at,
        }


# ──────────────────────────────────────────────────────────────
#  Executions
# ──────────────────────────────────────────────────────────────

class ExecutionRow(Base):
    __tablename__ = "flow_executions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    flow_id: Mapped[str] = mapped_column(String(64), ForeignKey("flows.id"), nullable=False)
    phone_identity: Mapped[str] = mapped_column(String(32), default="")
    department_code: Mapped[str] = mapped_column(String(64), default="")

    current_node_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="running")
    variables: Mapped[Any] = mapped_column(JSON, default=dict)
    context: Mapped[Any] = mapped_column(JSON, default=dict)

    version: Mapped[int] = mapped_column(Integer, default=0)
    active_key: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_executions_conversation", "conversation_id"),
        Index("ix_executions_status", "status"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "conversation_id": self.conversation_id,
            "flow_id": self.flow_id, "phone_identity": self.phone_identity,
            "department_code": self.department_code,
            "current_node_id": self.current_node_id, "status": self.status,
            "variables": self.variables or {}, "context": self.context or {},
            "version": self.version,
            "started_at": self.started_at, "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }


# ──────────────────────────────────────────────────────────────
#  Execution log
# ──────────────────────────────────────────────────────────────

class ExecutionLogRow(Base):
    __tablename__ = "flow_execution_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    execution_id: Mapped[str] = mapped_column(String(64), ForeignKey("flow_executions.id"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0)
    node_id: Mapped[str] = mapped_column(String(128), nullable=False)
    node_type: Mapped[str] = mapped_column(String(32), nullable=False)
    action_taken: Mapped[str] = mapped_column(String(128), default="")

    input_data: Mapped[Any] = mapped_column(JSON, nullable=True)
    output_data: Mapped[Any] = mapped_column(JSON, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_execution_logs_execution_pos", "execution_id", "position"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "execution_id": self.execution_id,
            "node_id": self.node_id, "node_type": self.node_type,
            "action_taken": self.action_taken,
            "input_data": self.input_data, "output_data": self.output_data,
            "duration_ms": self.duration_ms, "created_at": self.created_at,
        }
