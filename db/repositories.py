"""
SQLAlchemy implementations of the flow, execution and schedule stores.

Each public method runs in its own transaction. ``suspend`` and
``consume_checkpoint`` write the checkpoint row and the log status in the
same transaction, so a reader never sees one without the other.

Documents are stored as JSON next to the few columns needed for filtering
and ordering; timestamps are normalised to UTC before they are written.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional, Sequence

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from automation.models import (
    Checkpoint,
    ExecutionError,
    ExecutionLog,
    ExecutionStepLog,
    FlowDefinition,
    ScheduleState,
)
from automation.storage import ExecutionStore, FlowStore, ScheduleStore
from core.constants import ExecutionStatus, FlowStatus, ScheduleStatus
from core.exceptions import StorageError
from core.utils import ensure_utc
from db.models import (
    CheckpointModel,
    ExecutionErrorModel,
    ExecutionLogModel,
    ExecutionStepModel,
    FlowDefinitionModel,
    ScheduleStateModel,
)

logger = structlog.get_logger(__name__)


class _Repository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session, session.begin():
                yield session
        except SQLAlchemyError as exc:
            logger.error("storage_error", store=type(self).__name__, error=str(exc))
            raise StorageError(f"Storage unavailable: {exc}") from exc


# ─── Flows ───────────────────────────────────────────────────────────────


class SqlAlchemyFlowStore(_Repository, FlowStore):
    """Flow versions in ``flow_definitions``; delete is a soft delete of every version."""

    async def save(self, flow: FlowDefinition) -> None:
        async with self._transaction() as session:
            result = await session.execute(
                select(FlowDefinitionModel).where(
                    FlowDefinitionModel.name == flow.name,
                    FlowDefinitionModel.version == flow.version,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = FlowDefinitionModel(name=flow.name, version=flow.version)
                session.add(row)
            elif row.is_deleted:
                row.restore()
            row.status = flow.status.value
            row.enabled = flow.enabled
            row.definition = flow.model_dump(mode="json")

    async def get(self, name: str, version: Optional[int] = None) -> Optional[FlowDefinition]:
        query = select(FlowDefinitionModel).where(
            FlowDefinitionModel.name == name,
            FlowDefinitionModel.is_deleted == False,  # noqa: E712
        )
        if version is not None:
            query = query.where(FlowDefinitionModel.version == version)
        query = query.order_by(FlowDefinitionModel.version.desc()).limit(1)
        async with self._transaction() as session:
            row = (await session.execute(query)).scalar_one_or_none()
            return FlowDefinition.model_validate(row.definition) if row else None

    async def get_active(self, name: str) -> Optional[FlowDefinition]:
        query = (
            select(FlowDefinitionModel)
            .where(
                FlowDefinitionModel.name == name,
                FlowDefinitionModel.status == FlowStatus.ACTIVE.value,
                FlowDefinitionModel.is_deleted == False,  # noqa: E712
            )
            .order_by(FlowDefinitionModel.version.desc())
            .limit(1)
        )
        async with self._transaction() as session:
            row = (await session.execute(query)).scalar_one_or_none()
            return FlowDefinition.model_validate(row.definition) if row else None

    async def list_versions(self, name: str) -> list[FlowDefinition]:
        query = (
            select(FlowDefinitionModel)
            .where(
                FlowDefinitionModel.name == name,
                FlowDefinitionModel.is_deleted == False,  # noqa: E712
            )
            .order_by(FlowDefinitionModel.version)
        )
        async with self._transaction() as session:
            rows = (await session.execute(query)).scalars().all()
            return [FlowDefinition.model_validate(row.definition) for row in rows]

    async def list_latest(self) -> list[FlowDefinition]:
        latest = (
            select(FlowDefinitionModel.name, func.max(FlowDefinitionModel.version).label("version"))
            .where(FlowDefinitionModel.is_deleted == False)  # noqa: E712
            .group_by(FlowDefinitionModel.name)
            .subquery()
        )
        query = (
            select(FlowDefinitionModel)
            .join(
                latest,
                (FlowDefinitionModel.name == latest.c.name) & (FlowDefinitionModel.version == latest.c.version),
            )
            .order_by(FlowDefinitionModel.name)
        )
        async with self._transaction() as session:
            rows = (await session.execute(query)).scalars().all()
            return [FlowDefinition.model_validate(row.definition) for row in rows]

    async def delete(self, name: str) -> bool:
        async with self._transaction() as session:
            rows = (
                await session.execute(
                    select(FlowDefinitionModel).where(
                        FlowDefinitionModel.name == name,
                        FlowDefinitionModel.is_deleted == False,  # noqa: E712
                    )
                )
            ).scalars().all()
            for row in rows:
                row.soft_delete()
            return bool(rows)


# ─── Executions ──────────────────────────────────────────────────────────


def _log_data(log: ExecutionLog) -> dict:
    return log.model_dump(mode="json", exclude={"steps"})


class SqlAlchemyExecutionStore(_Repository, ExecutionStore):
    """Execution logs, step logs, errors and checkpoints."""

    # Execution logs

    async def create_log(self, log: ExecutionLog) -> None:
        async with self._transaction() as session:
            session.add(self._new_log_row(log))
            for step in log.steps:
                session.add(self._step_row(log.id, step))

    async def append_step(self, execution_id: str, step: ExecutionStepLog) -> None:
        async with self._transaction() as session:
            session.add(self._step_row(execution_id, step))

    async def update_log(self, log: ExecutionLog) -> None:
        async with self._transaction() as session:
            await self._write_log(session, log)

    async def get_log(self, execution_id: str) -> Optional[ExecutionLog]:
        async with self._transaction() as session:
            row = await session.get(ExecutionLogModel, execution_id)
            if row is None:
                return None
            steps = await self._load_steps(session, [execution_id])
            return self._to_log(row, steps.get(execution_id, []))

    async def list_logs(
        self,
        flow_name: Optional[str] = None,
        statuses: Optional[Sequence[ExecutionStatus]] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[ExecutionLog], int]:
        conditions = []
        if flow_name is not None:
            conditions.append(ExecutionLogModel.flow_name == flow_name)
        if statuses:
            conditions.append(ExecutionLogModel.status.in_([s.value for s in statuses]))

        async with self._transaction() as session:
            total = (
                await session.execute(select(func.count()).select_from(ExecutionLogModel).where(*conditions))
            ).scalar_one()
            rows = (
                await session.execute(
                    select(ExecutionLogModel)
                    .where(*conditions)
                    .order_by(ExecutionLogModel.started_at.desc(), ExecutionLogModel.id.desc())
                    .offset(offset)
                    .limit(limit)
                )
            ).scalars().all()
            steps = await self._load_steps(session, [row.id for row in rows])
            return [self._to_log(row, steps.get(row.id, [])) for row in rows], total

    @staticmethod
    def _new_log_row(log: ExecutionLog) -> ExecutionLogModel:
        return ExecutionLogModel(
            id=log.id,
            flow_name=log.flow_name,
            flow_version=log.flow_version,
            status=log.status.value,
            started_at=ensure_utc(log.started_at),
            data=_log_data(log),
        )

    @staticmethod
    def _step_row(execution_id: str, step: ExecutionStepLog) -> ExecutionStepModel:
        return ExecutionStepModel(
            execution_id=execution_id,
            node_id=step.node_id,
            status=step.status.value,
            data=step.model_dump(mode="json"),
        )

    async def _write_log(self, session: AsyncSession, log: ExecutionLog) -> None:
        row = await session.get(ExecutionLogModel, log.id)
        if row is None:
            session.add(self._new_log_row(log))
            return
        row.status = log.status.value
        row.data = _log_data(log)

    @staticmethod
    async def _load_steps(session: AsyncSession, execution_ids: list[str]) -> dict[str, list[dict]]:
        if not execution_ids:
            return {}
        rows = (
            await session.execute(
                select(ExecutionStepModel)
                .where(ExecutionStepModel.execution_id.in_(execution_ids))
                .order_by(ExecutionStepModel.id)
            )
        ).scalars().all()
        steps: dict[str, list[dict]] = {}
        for row in rows:
            steps.setdefault(row.execution_id, []).append(row.data)
        return steps

    @staticmethod
    def _to_log(row: ExecutionLogModel, steps: list[dict]) -> ExecutionLog:
        return ExecutionLog.model_validate({**row.data, "steps": steps})

    # Execution errors

    async def record_error(self, error: ExecutionError) -> None:
        async with self._transaction() as session:
            session.add(
                ExecutionErrorModel(
                    id=error.id,
                    execution_id=error.execution_id,
                    severity=error.severity.value,
                    code=error.code,
                    created_at=ensure_utc(error.timestamp),
                    resolved_at=ensure_utc(error.resolved_at) if error.resolved_at else None,
                    data=error.model_dump(mode="json"),
                )
            )

    async def resolve_errors(self, error_ids: Sequence[str], resolved_at: datetime) -> None:
        if not error_ids:
            return
        resolved_at = ensure_utc(resolved_at)
        async with self._transaction() as session:
            rows = (
                await session.execute(
                    select(ExecutionErrorModel).where(
                        ExecutionErrorModel.id.in_(list(error_ids)),
                        ExecutionErrorModel.resolved_at.is_(None),
                    )
                )
            ).scalars().all()
            for row in rows:
                row.resolved_at = resolved_at
                row.data = {**row.data, "resolved_at": resolved_at.isoformat()}

    async def list_errors(self, execution_id: str) -> list[ExecutionError]:
        async with self._transaction() as session:
            rows = (
                await session.execute(
                    select(ExecutionErrorModel)
                    .where(ExecutionErrorModel.execution_id == execution_id)
                    .order_by(ExecutionErrorModel.seq)
                )
            ).scalars().all()
            return [ExecutionError.model_validate(row.data) for row in rows]

    # Checkpoints

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        async with self._transaction() as session:
            await self._write_checkpoint(session, checkpoint)

    async def load_checkpoint(self, execution_id: str) -> Optional[Checkpoint]:
        async with self._transaction() as session:
            row = await self._checkpoint_row(session, execution_id)
            return Checkpoint.model_validate(row.data) if row else None

    async def delete_checkpoint(self, execution_id: str) -> None:
        async with self._transaction() as session:
            await session.execute(delete(CheckpointModel).where(CheckpointModel.execution_id == execution_id))

    async def list_checkpoints(self) -> list[Checkpoint]:
        async with self._transaction() as session:
            rows = (await session.execute(select(CheckpointModel).order_by(CheckpointModel.created_at))).scalars().all()
            return [Checkpoint.model_validate(row.data) for row in rows]

    async def list_expired_checkpoints(self, now: datetime) -> list[Checkpoint]:
        async with self._transaction() as session:
            rows = (
                await session.execute(
                    select(CheckpointModel)
                    .where(
                        CheckpointModel.expires_at.is_not(None),
                        CheckpointModel.expires_at <= ensure_utc(now),
                    )
                    .order_by(CheckpointModel.expires_at)
                )
            ).scalars().all()
            return [Checkpoint.model_validate(row.data) for row in rows]

    async def suspend(self, log: ExecutionLog, checkpoint: Checkpoint) -> None:
        async with self._transaction() as session:
            await self._write_checkpoint(session, checkpoint)
            await self._write_log(session, log)

    async def consume_checkpoint(self, log: ExecutionLog) -> Optional[Checkpoint]:
        async with self._transaction() as session:
            row = await self._checkpoint_row(session, log.id)
            if row is None:
                return None
            checkpoint = Checkpoint.model_validate(row.data)
            await session.delete(row)
            await self._write_log(session, log)
            return checkpoint

    @staticmethod
    async def _checkpoint_row(session: AsyncSession, execution_id: str) -> Optional[CheckpointModel]:
        result = await session.execute(select(CheckpointModel).where(CheckpointModel.execution_id == execution_id))
        return result.scalar_one_or_none()

    async def _write_checkpoint(self, session: AsyncSession, checkpoint: Checkpoint) -> None:
        row = await self._checkpoint_row(session, checkpoint.execution_id)
        if row is None:
            row = CheckpointModel(id=checkpoint.id, execution_id=checkpoint.execution_id)
            session.add(row)
        row.flow_name = checkpoint.flow_name
        row.reason = checkpoint.reason.value
        row.expires_at = ensure_utc(checkpoint.expires_at) if checkpoint.expires_at else None
        row.data = checkpoint.model_dump(mode="json")


# ─── Schedules ───────────────────────────────────────────────────────────


class SqlAlchemyScheduleStore(_Repository, ScheduleStore):
    async def save(self, state: ScheduleState) -> None:
        async with self._transaction() as session:
            row = await session.get(ScheduleStateModel, state.id)
            if row is None:
                row = ScheduleStateModel(id=state.id)
                session.add(row)
            row.flow_name = state.flow_name
            row.status = state.status.value
            row.next_run_at = ensure_utc(state.next_run_at) if state.next_run_at else None
            row.data = state.model_dump(mode="json")

    async def get(self, schedule_id: str) -> Optional[ScheduleState]:
        async with self._transaction() as session:
            row = await session.get(ScheduleStateModel, schedule_id)
            return ScheduleState.model_validate(row.data) if row else None

    async def delete(self, schedule_id: str) -> bool:
        async with self._transaction() as session:
            result = await session.execute(delete(ScheduleStateModel).where(ScheduleStateModel.id == schedule_id))
            return result.rowcount > 0

    async def list_schedules(
        self, status: Optional[ScheduleStatus] = None, flow_name: Optional[str] = None
    ) -> list[ScheduleState]:
        query = select(ScheduleStateModel)
        if status is not None:
            query = query.where(ScheduleStateModel.status == status.value)
        if flow_name is not None:
            query = query.where(ScheduleStateModel.flow_name == flow_name)
        async with self._transaction() as session:
            rows = (await session.execute(query.order_by(ScheduleStateModel.created_at))).scalars().all()
            return [ScheduleState.model_validate(row.data) for row in rows]
