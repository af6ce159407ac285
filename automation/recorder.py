"""Execution history recording.

``ExecutionRecorder`` owns the ExecutionLog lifecycle: it creates the log,
appends immutable step records and persists status changes (validated by
the state machine). ``ErrorRecorder`` writes ExecutionError records and
marks them resolved when a later retry succeeds.
"""

import traceback
from datetime import datetime
from typing import Any, Optional

import structlog

from automation.models import ExecutionError, ExecutionLog, ExecutionStepLog, StepError
from automation.state_machine import check_transition
from automation.storage import ExecutionStore
from core.constants import ErrorSeverity, ExecutionStatus, StepStatus
from core.utils import duration_ms, utc_now

logger = structlog.get_logger(__name__)


class ExecutionRecorder:
    """Writes ExecutionLog and ExecutionStepLog records."""

    def __init__(self, store: ExecutionStore):
        self._store = store

    async def start(self, log: ExecutionLog) -> ExecutionLog:
        await self._store.create_log(log)
        logger.info(
            "execution_created",
            execution_id=log.id,
            flow_name=log.flow_name,
            flow_version=log.flow_version,
            trigger=log.trigger.type.value,
        )
        return log

    async def transition(self, log: ExecutionLog, status: ExecutionStatus, persist: bool = True) -> None:
        """Move ``log`` to ``status``. Terminal statuses also stamp completion time and duration."""
        check_transition(log.status, status, log.id)
        previous = log.status
        log.status = status
        if status.is_terminal:
            log.completed_at = utc_now()
            log.duration_ms = duration_ms(log.started_at, log.completed_at)
        if persist:
            await self._store.update_log(log)
        logger.debug(
            "execution_status_changed",
            execution_id=log.id,
            previous=previous.value,
            status=status.value,
        )

    async def record_step(
        self,
        log: ExecutionLog,
        node,
        status: StepStatus,
        started_at: datetime,
        output: Optional[dict[str, Any]] = None,
        input: Optional[dict[str, Any]] = None,
        error: Optional[StepError] = None,
        retry_attempt: int = 0,
    ) -> ExecutionStepLog:
        completed_at = utc_now()
        step = ExecutionStepLog(
            node_id=node.id,
            node_type=node.action.value,
            node_label=node.label,
            status=status,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=duration_ms(started_at, completed_at),
            input=input,
            output=output,
            error=error,
            retry_attempt=retry_attempt,
        )
        log.steps.append(step)
        await self._store.append_step(log.id, step)
        return step

    async def save(self, log: ExecutionLog) -> None:
        await self._store.update_log(log)


class ErrorRecorder:
    """Writes ExecutionError records."""

    def __init__(self, store: ExecutionStore):
        self._store = store

    async def record(
        self,
        execution_id: str,
        code: str,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        node_id: Optional[str] = None,
        retryable: bool = False,
        stack: Optional[str] = None,
        context: Optional[dict] = None,
    ) -> ExecutionError:
        error = ExecutionError(
            execution_id=execution_id,
            node_id=node_id,
            severity=severity,
            code=code,
            message=message,
            stack=stack,
            context=context or {},
            retryable=retryable,
        )
        await self._store.record_error(error)
        log_method = logger.error if severity == ErrorSeverity.CRITICAL else logger.warning
        log_method(
            "execution_error_recorded",
            execution_id=execution_id,
            node_id=node_id,
            code=code,
            severity=severity.value,
            message=message,
        )
        return error

    async def record_exception(
        self,
        execution_id: str,
        exc: Exception,
        code: str,
        severity: ErrorSeverity = ErrorSeverity.CRITICAL,
        node_id: Optional[str] = None,
    ) -> ExecutionError:
        """Record an unexpected exception with its traceback."""
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return await self.record(
            execution_id,
            code=code,
            message=str(exc) or type(exc).__name__,
            severity=severity,
            node_id=node_id,
            stack=stack,
        )

    async def resolve(self, error_ids: list[str]) -> None:
        if error_ids:
            await self._store.resolve_errors(error_ids, utc_now())

    async def list_for(self, execution_id: str) -> list[ExecutionError]:
        return await self._store.list_errors(execution_id)
