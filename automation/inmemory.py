"""In-memory implementations of the storage contracts.

Useful for tests or when no database is configured. Data is not persisted
across process restarts. Records are copied on the way in and out so callers
never share mutable state with the store.
"""

from datetime import datetime
from typing import Optional, Sequence

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


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


class InMemoryFlowStore(FlowStore):
    def __init__(self) -> None:
        self._flows: dict[str, dict[int, FlowDefinition]] = {}

    async def save(self, flow: FlowDefinition) -> None:
        self._flows.setdefault(flow.name, {})[flow.version] = _copy(flow)

    async def get(self, name: str, version: Optional[int] = None) -> Optional[FlowDefinition]:
        versions = self._flows.get(name)
        if not versions:
            return None
        if version is None:
            version = max(versions)
        return _copy(versions.get(version))

    async def get_active(self, name: str) -> Optional[FlowDefinition]:
        for flow in reversed(await self.list_versions(name)):
            if flow.status == FlowStatus.ACTIVE:
                return flow
        return None

    async def list_versions(self, name: str) -> list[FlowDefinition]:
        versions = self._flows.get(name, {})
        return [_copy(versions[v]) for v in sorted(versions)]

    async def list_latest(self) -> list[FlowDefinition]:
        return [_copy(v[max(v)]) for _, v in sorted(self._flows.items()) if v]

    async def delete(self, name: str) -> bool:
        return self._flows.pop(name, None) is not None


class InMemoryExecutionStore(ExecutionStore):
    def __init__(self) -> None:
        self._logs: dict[str, ExecutionLog] = {}
        self._errors: dict[str, list[ExecutionError]] = {}
        self._checkpoints: dict[str, Checkpoint] = {}

    # ─── Execution logs ───────────────────────────────────────────────

    async def create_log(self, log: ExecutionLog) -> None:
        self._logs[log.id] = _copy(log)

    async def append_step(self, execution_id: str, step: ExecutionStepLog) -> None:
        log = self._logs.get(execution_id)
        if log is not None:
            log.steps.append(_copy(step))

    async def update_log(self, log: ExecutionLog) -> None:
        stored = self._logs.get(log.id)
        if stored is None:
            self._logs[log.id] = _copy(log)
            return
        stored.status = log.status
        stored.completed_at = log.completed_at
        stored.duration_ms = log.duration_ms
        stored.variables = dict(log.variables)
        stored.output = dict(log.output)
        stored.error = _copy(log.error)

    async def get_log(self, execution_id: str) -> Optional[ExecutionLog]:
        return _copy(self._logs.get(execution_id))

    async def list_logs(
        self,
        flow_name: Optional[str] = None,
        statuses: Optional[Sequence[ExecutionStatus]] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[ExecutionLog], int]:
        matches = [
            log
            for log in self._logs.values()
            if (flow_name is None or log.flow_name == flow_name)
            and (not statuses or log.status in statuses)
        ]
        matches.sort(key=lambda log: (log.started_at, log.id), reverse=True)
        return [_copy(log) for log in matches[offset:offset + limit]], len(matches)

    # ─── Errors ───────────────────────────────────────────────────────

    async def record_error(self, error: ExecutionError) -> None:
        self._errors.setdefault(error.execution_id, []).append(_copy(error))

    async def resolve_errors(self, error_ids: Sequence[str], resolved_at: datetime) -> None:
        wanted = set(error_ids)
        for errors in self._errors.values():
            for error in errors:
                if error.id in wanted and error.resolved_at is None:
                    error.resolved_at = resolved_at

    async def list_errors(self, execution_id: str) -> list[ExecutionError]:
        return [_copy(e) for e in self._errors.get(execution_id, [])]

    # ─── Checkpoints ──────────────────────────────────────────────────

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        self._checkpoints[checkpoint.execution_id] = _copy(checkpoint)

    async def load_checkpoint(self, execution_id: str) -> Optional[Checkpoint]:
        return _copy(self._checkpoints.get(execution_id))

    async def delete_checkpoint(self, execution_id: str) -> None:
        self._checkpoints.pop(execution_id, None)

    async def list_checkpoints(self) -> list[Checkpoint]:
        return [_copy(cp) for cp in self._checkpoints.values()]

    async def list_expired_checkpoints(self, now: datetime) -> list[Checkpoint]:
        return [
            _copy(cp)
            for cp in self._checkpoints.values()
            if cp.expires_at is not None and cp.expires_at <= now
        ]

    # No await between the two writes, so nothing can observe a half-done state
    async def suspend(self, log: ExecutionLog, checkpoint: Checkpoint) -> None:
        self._checkpoints[checkpoint.execution_id] = _copy(checkpoint)
        await self.update_log(log)

    async def consume_checkpoint(self, log: ExecutionLog) -> Optional[Checkpoint]:
        checkpoint = self._checkpoints.pop(log.id, None)
        if checkpoint is None:
            return None
        await self.update_log(log)
        return checkpoint


class InMemoryScheduleStore(ScheduleStore):
    def __init__(self) -> None:
        self._schedules: dict[str, ScheduleState] = {}

    async def save(self, state: ScheduleState) -> None:
        self._schedules[state.id] = _copy(state)

    async def get(self, schedule_id: str) -> Optional[ScheduleState]:
        return _copy(self._schedules.get(schedule_id))

    async def delete(self, schedule_id: str) -> bool:
        return self._schedules.pop(schedule_id, None) is not None

    async def list_schedules(
        self, status: Optional[ScheduleStatus] = None, flow_name: Optional[str] = None
    ) -> list[ScheduleState]:
        matches = [
            s
            for s in self._schedules.values()
            if (status is None or s.status == status)
            and (flow_name is None or s.flow_name == flow_name)
        ]
        matches.sort(key=lambda s: s.created_at)
        return [_copy(s) for s in matches]
