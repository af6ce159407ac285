"""Database models for the flow automation engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.checkpoint import CheckpointModel
from db.models.execution import ExecutionErrorModel, ExecutionLogModel, ExecutionStepModel
from db.models.flow import FlowDefinitionModel
from db.models.schedule import ScheduleStateModel

__all__ = [
    "CheckpointModel",
    "ExecutionErrorModel",
    "ExecutionLogModel",
    "ExecutionStepModel",
    "FlowDefinitionModel",
    "ScheduleStateModel",
]
