"""Persistence contracts for flows, execution history, checkpoints and schedules.

Backends:
- ``automation.inmemory``: process-local, for tests and embedded use
- ``db.repositories``: SQLAlchemy async, any database SQLAlchemy supports

Every method may raise ``core.exceptions.StorageError``.
"""

from datetime import datetime
from typing import Optional, Protocol, Sequence

from automation.models import (
    Checkpoint,
    ExecutionError,
    ExecutionLog,
    ExecutionStepLog,
    FlowDefinition,
    ScheduleState,
)
from core.constants import ExecutionStatus, ScheduleStatus


class FlowStore(Protocol):
    """Versioned flow definitions, keyed by (name, version)."""

    async def save(self, flow: FlowDefinition) -> None:
        """Insert or replace one version of a flow."""

    async def get(self, name: str, version: Optional[int] = None) -> Optional[FlowDefinition]:
        """Return a specific version, or the latest one when ``version`` is None."""

    async def get_active(self, name: str) -> Optional[FlowDefinition]:
        """Return the version currently marked active, if any."""

    async def list_versions(self, name: str) -> list[FlowDefinition]:
        """All versions of a flow, oldest first."""

    async def list_latest(self) -> list[FlowDefinition]:
        """The latest version of every flow, ordered by name."""

    async def delete(self, name: str) -> bool:
        """Remove every version of a flow. Returns False when it did not exist."""


class ExecutionStore(Protocol):
    """Execution logs, step logs, execution errors and checkpoints.

    ``suspend`` and ``consume_checkpoint`` must be atomic: a crash must never
    leave a paused log without its checkpoint or a checkpoint behind a log
    that already moved on.
    """

    # Execution logs

    async def create_log(self, log: ExecutionLog) -> None:
        """Persist a new execution log (with any steps already on it)."""

    async def append_step(self, execution_id: str, step: ExecutionStepLog) -> None:
        """Append one immutable step record."""

    async def update_log(self, log: ExecutionLog) -> None:
        """Persist the mutable fields: status, completion time, duration, variables, output, error."""

    async def get_log(self, execution_id: str) -> Optional[ExecutionLog]:
        """Return a log with its full step trail."""

    async def list_logs(
        self,
        flow_name: Optional[str] = None,
        statuses: Optional[Sequence[ExecutionStatus]] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[ExecutionLog], int]:
        """Newest first. Returns (page, total matching)."""

    # Execution errors

    async def record_error(self, error: ExecutionError) -> None:
        """Persist a new error record."""

    async def resolve_errors(self, error_ids: Sequence[str], resolved_at: datetime) -> None:
        """Set ``resolved_at`` on earlier errors once a retry succeeded."""

    async def list_errors(self, execution_id: str) -> list[ExecutionError]:
        """Errors of one execution in recording order."""

    # Checkpoints

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Upsert keyed by execution id."""

    async def load_checkpoint(self, execution_id: str) -> Optional[Checkpoint]:
        """Return the live checkpoint of an execution."""

    async def delete_checkpoint(self, execution_id: str) -> None:
        """Idempotent delete."""

    async def list_checkpoints(self) -> list[Checkpoint]:
        """Every live checkpoint."""

    async def list_expired_checkpoints(self, now: datetime) -> list[Checkpoint]:
        """Checkpoints whose ``expires_at`` is at or before ``now``."""

    async def suspend(self, log: ExecutionLog, checkpoint: Checkpoint) -> None:
        """Atomically upsert the checkpoint and persist the log's paused status."""

    async def consume_checkpoint(self, log: ExecutionLog) -> Optional[Checkpoint]:
        """Atomically delete the execution's checkpoint and persist the log's new status.

        Returns the consumed checkpoint, or None when there was none (nothing is written).
        """


class ScheduleStore(Protocol):
    """Persistent cron schedule state."""

    async def save(self, state: ScheduleState) -> None:
        """Insert or replace."""

    async def get(self, schedule_id: str) -> Optional[ScheduleState]:
        """Return one schedule."""

    async def delete(self, schedule_id: str) -> bool:
        """Remove a schedule. Returns False when it did not exist."""

    async def list_schedules(
        self, status: Optional[ScheduleStatus] = None, flow_name: Optional[str] = None
    ) -> list[ScheduleState]:
        """Schedules filtered by status and/or flow, oldest first."""
