"""
Execution Recovery Service.

Reconciles execution history with checkpoints after a restart or crash.

Recovery flow:
1. Paused logs without a checkpoint are failed with ``orphaned_pause``
2. Checkpoints whose log is missing or no longer paused are deleted; a
   non-terminal log behind one is failed with ``orphaned_pause``
3. Logs left pending, running or retrying by a dead process are failed with
   ``execution_interrupted``
4. Healthy paused runs re-occupy their concurrency slot

Paused runs are never re-executed here: they continue through ``resume`` or
the engine's sweep, and the replay guard stops completed nodes from running
again.
"""

from datetime import datetime, timezone
from typing import List, Optional

import structlog

from automation.concurrency import lock_key_for
from automation.context import TriggerContext
from automation.models import ExecutionLog, StepError
from automation.recorder import ErrorRecorder, ExecutionRecorder
from core.constants import ErrorCode, ErrorSeverity, ExecutionStatus

logger = structlog.get_logger(__name__)

_PAGE_SIZE = 200
_INTERRUPTED_STATUSES = [ExecutionStatus.PENDING, ExecutionStatus.RUNNING, ExecutionStatus.RETRYING]


class RecoveryResult:
    """Outcome of reconciling one execution."""

    def __init__(self, execution_id: str, action: str, code: Optional[str] = None):
        self.execution_id = execution_id
        self.action = action
        self.code = code
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "action": self.action,
            "code": self.code,
            "timestamp": self.timestamp.isoformat(),
        }


class RecoveryService:
    """
    Startup reconciliation between ExecutionLogs and Checkpoints.

    Runs before the engine accepts work, so nothing it touches is active.
    """

    def __init__(self, engine):
        self.engine = engine
        self._flows = engine.flow_store
        self._store = engine.execution_store
        self._recorder = ExecutionRecorder(self._store)
        self._errors = ErrorRecorder(self._store)

    async def reconcile(self) -> List[RecoveryResult]:
        logger.info("recovery_scan_started")
        results: List[RecoveryResult] = []

        checkpoints = {cp.execution_id: cp for cp in await self._store.list_checkpoints()}
        paused = await self._list_all([ExecutionStatus.PAUSED])
        paused_ids = {log.id for log in paused}

        for log in paused:
            if self.engine.is_active(log.id):
                continue
            if log.id not in checkpoints:
                await self._fail(log, ErrorCode.ORPHANED_PAUSE, "Paused execution has no checkpoint")
                results.append(RecoveryResult(log.id, "failed", ErrorCode.ORPHANED_PAUSE))
            else:
                await self._restore_slot(log)
                results.append(RecoveryResult(log.id, "slot_restored"))

        for execution_id in checkpoints.keys() - paused_ids:
            results.append(await self._drop_stray_checkpoint(execution_id))

        for log in await self._list_all(_INTERRUPTED_STATUSES):
            if self.engine.is_active(log.id):
                continue
            await self._fail(
                log,
                ErrorCode.EXECUTION_INTERRUPTED,
                f"Execution was left '{log.status.value}' by a stopped process",
            )
            results.append(RecoveryResult(log.id, "failed", ErrorCode.EXECUTION_INTERRUPTED))

        logger.info(
            "recovery_scan_complete",
            total=len(results),
            failed=sum(1 for r in results if r.action == "failed"),
            restored=sum(1 for r in results if r.action == "slot_restored"),
        )
        return results

    async def _list_all(self, statuses) -> List[ExecutionLog]:
        logs: List[ExecutionLog] = []
        offset = 0
        while True:
            page, total = await self._store.list_logs(statuses=statuses, offset=offset, limit=_PAGE_SIZE)
            logs.extend(page)
            offset += len(page)
            if not page or offset >= total:
                return logs

    async def _drop_stray_checkpoint(self, execution_id: str) -> RecoveryResult:
        log = await self._store.get_log(execution_id)
        await self._store.delete_checkpoint(execution_id)
        logger.warning(
            "stray_checkpoint_deleted",
            execution_id=execution_id,
            log_status=log.status.value if log else None,
        )
        if log is not None and not log.status.is_terminal and not self.engine.is_active(log.id):
            await self._fail(log, ErrorCode.ORPHANED_PAUSE, "Checkpoint found for an execution that is not paused")
            return RecoveryResult(execution_id, "failed", ErrorCode.ORPHANED_PAUSE)
        return RecoveryResult(execution_id, "checkpoint_deleted", ErrorCode.ORPHANED_PAUSE)

    async def _fail(self, log: ExecutionLog, code: str, message: str) -> None:
        await self._errors.record(log.id, code=code, message=message, severity=ErrorSeverity.CRITICAL)
        log.error = StepError(code=code, message=message)
        await self._recorder.transition(log, ExecutionStatus.FAILED)
        await self.engine.notify_completion(log)

    async def _restore_slot(self, log: ExecutionLog) -> None:
        flow = await self._flows.get(log.flow_name, log.flow_version)
        if flow is None:
            # Resume will fail it as a corrupted snapshot
            return
        lock_key = lock_key_for(flow.name, flow.concurrency, TriggerContext.from_log(log))
        await self.engine.controller.restore(lock_key, log.id, flow.concurrency.max_concurrent)
