"""Schedule state table for cron-triggered flows."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import ScheduleStatus
from db.base import Base, TimestampMixin


class ScheduleStateModel(TimestampMixin, Base):
    """Schedule state for one cron trigger.

    Attributes:
        id: Schedule id
        flow_name: Flow the schedule triggers
        status: active | paused | disabled | expired
        next_run_at: Next fire time (UTC)
        data: The ScheduleState document
    """

    __tablename__ = "schedule_states"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    flow_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default=ScheduleStatus.ACTIVE.value, index=True)
    next_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    def __repr__(self) -> str:
        return f"<ScheduleStateModel(id={self.id}, flow={self.flow_name}, status={self.status})>"
