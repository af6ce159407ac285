"""Flow definition table: one row per flow version."""

from typing import Any

from sqlalchemy import JSON, Boolean, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import FlowStatus
from db.base import Base, SoftDeleteMixin, TimestampMixin


class FlowDefinitionModel(SoftDeleteMixin, TimestampMixin, Base):
    """A versioned flow graph.

    Attributes:
        name: Machine name shared by all versions
        version: Version number, unique per name
        status: draft | active | obsolete | invalid
        enabled: Whether the flow may be triggered
        definition: The full FlowDefinition document
    """

    __tablename__ = "flow_definitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=FlowStatus.DRAFT.value, index=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    definition: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (UniqueConstraint("name", "version", name="uq_flow_definitions_name_version"),)

    def __repr__(self) -> str:
        return f"<FlowDefinitionModel(name={self.name}, version={self.version}, status={self.status})>"
