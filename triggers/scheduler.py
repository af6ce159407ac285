"""
Cron scheduler for flow executions.

Every ``SCHEDULER_TICK_SECONDS`` the scheduler looks for active schedules
whose ``next_run_at`` has passed, computes their next fire time with
croniter in the schedule's timezone and dispatches an execution with
trigger type ``schedule``. Run outcomes come back through the engine's
completion listener and drive the consecutive-failure counter.

A schedule that missed several fire times (process down, long tick) fires
once and then continues from the next future occurrence.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from croniter import croniter

from app.config import get_settings
from automation.context import TriggerContext
from automation.models import ExecutionLog, ScheduleState
from automation.storage import ScheduleStore
from core.constants import ExecutionStatus, ScheduleStatus, TriggerType
from core.exceptions import AutomationException, NotFoundError, ValidationError
from core.utils import ensure_utc, new_id, utc_now

logger = structlog.get_logger(__name__)

_FAILED_STATUSES = {ExecutionStatus.FAILED, ExecutionStatus.TIMED_OUT}


def _compute_next_run(cron_expression: str, tz: str, after: datetime) -> datetime:
    """Next occurrence strictly after ``after``, evaluated in ``tz``, returned in UTC."""
    tz_obj = ZoneInfo(tz)
    cron = croniter(cron_expression, ensure_utc(after).astimezone(tz_obj))
    next_local = cron.get_next(datetime)
    return next_local.astimezone(timezone.utc)


class Scheduler:
    """Owns ScheduleState records and turns due ones into executions."""

    type = TriggerType.SCHEDULE

    def __init__(self, engine, store: ScheduleStore, settings=None):
        self.engine = engine
        self.store = store
        self.settings = settings or get_settings()
        self._lock = asyncio.Lock()
        self._dispatched: set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        engine.add_completion_listener(self._on_execution_finished)

    # ─── Schedule management ──────────────────────────────────────────

    async def register(self, state: ScheduleState, now: Optional[datetime] = None) -> ScheduleState:
        """
        Validate and store a schedule, computing its first fire time.

        Raises:
            ValidationError: Invalid cron expression or timezone
        """
        self._validate(state)
        now = now or utc_now()
        async with self._lock:
            if state.status == ScheduleStatus.ACTIVE:
                state.next_run_at = self._first_run(state, now)
            state.updated_at = now
            await self.store.save(state)
        logger.info(
            "schedule_registered",
            schedule_id=state.id,
            flow_name=state.flow_name,
            cron=state.cron_expression,
            timezone=state.timezone,
            next_run_at=state.next_run_at.isoformat() if state.next_run_at else None,
        )
        return state

    async def unregister(self, schedule_id: str) -> bool:
        async with self._lock:
            deleted = await self.store.delete(schedule_id)
        logger.info("schedule_unregistered", schedule_id=schedule_id, deleted=deleted)
        return deleted

    async def pause(self, schedule_id: str) -> ScheduleState:
        return await self._set_status(schedule_id, ScheduleStatus.PAUSED)

    async def disable(self, schedule_id: str) -> ScheduleState:
        return await self._set_status(schedule_id, ScheduleStatus.DISABLED)

    async def resume(self, schedule_id: str, now: Optional[datetime] = None) -> ScheduleState:
        """Reactivate a paused or disabled schedule from ``now``; expired schedules stay expired."""
        now = now or utc_now()
        async with self._lock:
            state = await self._get(schedule_id)
            if state.status == ScheduleStatus.EXPIRED:
                raise ValidationError(f"Schedule '{schedule_id}' has expired")
            state.status = ScheduleStatus.ACTIVE
            state.consecutive_failures = 0
            state.next_run_at = self._first_run(state, now)
            state.updated_at = now
            await self.store.save(state)
        logger.info("schedule_resumed", schedule_id=schedule_id, next_run_at=state.next_run_at.isoformat())
        return state

    async def _set_status(self, schedule_id: str, status: ScheduleStatus) -> ScheduleState:
        async with self._lock:
            state = await self._get(schedule_id)
            state.status = status
            state.updated_at = utc_now()
            await self.store.save(state)
        logger.info("schedule_status_changed", schedule_id=schedule_id, status=status.value)
        return state

    async def _get(self, schedule_id: str) -> ScheduleState:
        state = await self.store.get(schedule_id)
        if state is None:
            raise NotFoundError(f"Schedule '{schedule_id}' not found")
        return state

    @staticmethod
    def _validate(state: ScheduleState) -> None:
        if not croniter.is_valid(state.cron_expression):
            raise ValidationError(f"Invalid cron expression: '{state.cron_expression}'")
        try:
            ZoneInfo(state.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValidationError(f"Unknown timezone: '{state.timezone}'") from exc

    @staticmethod
    def _first_run(state: ScheduleState, now: datetime) -> datetime:
        after = now
        if state.start_date and ensure_utc(state.start_date) > now:
            after = ensure_utc(state.start_date)
        return _compute_next_run(state.cron_expression, state.timezone, after)

    # ─── Ticking ──────────────────────────────────────────────────────

    async def tick(self, now: Optional[datetime] = None) -> list[str]:
        """Fire every due schedule once. Returns the dispatched execution ids."""
        now = now or utc_now()
        dispatched = []
        async with self._lock:
            for state in await self.store.list_schedules(status=ScheduleStatus.ACTIVE):
                if self._expire_if_over(state, now):
                    await self.store.save(state)
                    continue
                if state.next_run_at is None or ensure_utc(state.next_run_at) > now:
                    continue

                execution_id = new_id()
                state.next_run_at = _compute_next_run(state.cron_expression, state.timezone, now)
                state.last_run_at = now
                state.last_execution_id = execution_id
                state.total_runs += 1
                state.updated_at = now
                if state.max_runs is not None and state.total_runs >= state.max_runs:
                    self._expire(state, "max_runs_reached")
                elif state.end_date and state.next_run_at > ensure_utc(state.end_date):
                    self._expire(state, "end_date_reached")
                await self.store.save(state)

                self._dispatch(state, execution_id)
                dispatched.append(execution_id)
        return dispatched

    def _expire_if_over(self, state: ScheduleState, now: datetime) -> bool:
        if state.end_date and now > ensure_utc(state.end_date):
            self._expire(state, "end_date_reached")
            return True
        if state.max_runs is not None and state.total_runs >= state.max_runs:
            self._expire(state, "max_runs_reached")
            return True
        return False

    @staticmethod
    def _expire(state: ScheduleState, reason: str) -> None:
        state.status = ScheduleStatus.EXPIRED
        state.next_run_at = None
        state.updated_at = utc_now()
        logger.info("schedule_expired", schedule_id=state.id, reason=reason, total_runs=state.total_runs)

    def _dispatch(self, state: ScheduleState, execution_id: str) -> None:
        context = TriggerContext(type=TriggerType.SCHEDULE, metadata={"schedule_id": state.id})
        task = asyncio.create_task(self._run(state.id, state.flow_name, context, execution_id))
        self._dispatched.add(task)
        task.add_done_callback(self._dispatched.discard)
        logger.info(
            "schedule_fired",
            schedule_id=state.id,
            flow_name=state.flow_name,
            execution_id=execution_id,
            next_run_at=state.next_run_at.isoformat() if state.next_run_at else None,
        )

    async def _run(self, schedule_id: str, flow_name: str, context: TriggerContext, execution_id: str) -> None:
        try:
            await self.engine.execute(flow_name, context, execution_id=execution_id)
        except AutomationException as exc:
            # Rejected before any log existed
            logger.warning(
                "scheduled_execution_rejected",
                schedule_id=schedule_id,
                flow_name=flow_name,
                code=exc.code,
                error=exc.message,
            )
            await self._record_outcome(schedule_id, ExecutionStatus.FAILED)

    async def drain(self) -> None:
        """Wait for every dispatched execution to finish or suspend."""
        while self._dispatched:
            await asyncio.gather(*list(self._dispatched), return_exceptions=True)

    # ─── Outcomes ─────────────────────────────────────────────────────

    async def _on_execution_finished(self, log: ExecutionLog) -> None:
        if log.trigger.type != TriggerType.SCHEDULE:
            return
        schedule_id = log.trigger.metadata.get("schedule_id")
        if schedule_id:
            await self._record_outcome(schedule_id, log.status)

    async def _record_outcome(self, schedule_id: str, status: ExecutionStatus) -> None:
        async with self._lock:
            state = await self.store.get(schedule_id)
            if state is None:
                return
            state.last_run_status = status
            if status in _FAILED_STATUSES:
                state.consecutive_failures += 1
            else:
                state.consecutive_failures = 0
            if (
                state.status != ScheduleStatus.EXPIRED
                and state.consecutive_failures >= self.settings.SCHEDULER_MAX_CONSECUTIVE_FAILURES
            ):
                self._expire(state, "consecutive_failures")
            state.updated_at = utc_now()
            await self.store.save(state)
        logger.debug(
            "schedule_outcome_recorded",
            schedule_id=schedule_id,
            status=status.value,
            consecutive_failures=state.consecutive_failures,
        )

    # ─── Loop ─────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._loop())
            logger.info("scheduler_started", tick_seconds=self.settings.SCHEDULER_TICK_SECONDS)

    async def stop(self) -> None:
        task, self._loop_task = self._loop_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("scheduler_stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("scheduler_tick_failed")
            await asyncio.sleep(self.settings.SCHEDULER_TICK_SECONDS)
