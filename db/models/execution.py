"""Execution history tables: logs, step logs and errors."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import ExecutionStatus
from db.base import Base, TimestampMixin


class ExecutionLogModel(TimestampMixin, Base):
    """One execution of one flow version.

    Attributes:
        id: Execution id
        flow_name / flow_version: The definition the run is pinned to
        status: Current execution status
        started_at: Used for newest-first listing
        data: The ExecutionLog document without its steps
    """

    __tablename__ = "execution_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    flow_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    flow_version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=ExecutionStatus.PENDING.value, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (Index("ix_execution_logs_flow_started", "flow_name", "started_at"),)

    def __repr__(self) -> str:
        return f"<ExecutionLogModel(id={self.id}, flow={self.flow_name}, status={self.status})>"


class ExecutionStepModel(Base):
    """Immutable record of one node attempt; ``id`` preserves append order."""

    __tablename__ = "execution_step_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    execution_id: Mapped[str] = mapped_column(
        ForeignKey("execution_logs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    node_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)


class ExecutionErrorModel(Base):
    __tablename__ = "execution_errors"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    execution_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    code: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
