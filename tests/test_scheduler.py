"""Tests for the cron scheduler."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from automation.context import TriggerContext
from automation.models import ExecutionLog, ScheduleState
from automation.recovery import RecoveryService
from core.constants import ExecutionStatus, ScheduleStatus, TriggerType
from core.exceptions import NotFoundError, ValidationError
from core.utils import utc_now
from flow_builders import chain, node
from nodes.collaborators import HttpResponse
from triggers.scheduler import Scheduler

T0 = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def scheduler(engine, schedule_store, settings):
    return Scheduler(engine, schedule_store, settings)


@pytest.mark.unit
class TestRegistration:
    @pytest.mark.asyncio
    async def test_next_run_in_utc(self, scheduler):
        state = await scheduler.register(ScheduleState(flow_name="nightly", cron_expression="0 9 * * *"), now=T0)
        assert state.next_run_at == datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_next_run_in_local_timezone(self, scheduler):
        state = await scheduler.register(
            ScheduleState(flow_name="nightly", cron_expression="0 9 * * *", timezone="America/New_York"),
            now=T0,
        )
        # 09:00 EST
        assert state.next_run_at == datetime(2026, 3, 1, 14, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_start_date_delays_first_run(self, scheduler):
        state = await scheduler.register(
            ScheduleState(flow_name="nightly", cron_expression="0 9 * * *", start_date=T0 + timedelta(days=3)),
            now=T0,
        )
        assert state.next_run_at == datetime(2026, 3, 4, 9, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_invalid_cron(self, scheduler, schedule_store):
        with pytest.raises(ValidationError):
            await scheduler.register(ScheduleState(flow_name="nightly", cron_expression="every day"), now=T0)
        assert await schedule_store.list_schedules() == []

    @pytest.mark.asyncio
    async def test_invalid_timezone(self, scheduler):
        with pytest.raises(ValidationError):
            await scheduler.register(
                ScheduleState(flow_name="nightly", cron_expression="0 9 * * *", timezone="Mars/Olympus"),
                now=T0,
            )

    def test_end_date_before_start_date(self):
        with pytest.raises(ValueError):
            ScheduleState(flow_name="nightly", cron_expression="0 9 * * *", start_date=T0, end_date=T0 - timedelta(days=1))

    @pytest.mark.asyncio
    async def test_unknown_schedule(self, scheduler):
        with pytest.raises(NotFoundError):
            await scheduler.pause("missing")
        assert await scheduler.unregister("missing") is False


@pytest.mark.unit
class TestTicking:
    @pytest.mark.asyncio
    async def test_due_schedule_dispatches_execution(self, scheduler, install, schedule_store, engine):
        await install(chain("nightly"))
        state = await scheduler.register(
            ScheduleState(flow_name="nightly", cron_expression="0 9 * * *", max_runs=1), now=T0
        )

        assert await scheduler.tick(T0) == []
        fire_at = state.next_run_at + timedelta(seconds=5)
        dispatched = await scheduler.tick(fire_at)
        await scheduler.drain()

        assert len(dispatched) == 1
        log = await engine.get_execution(dispatched[0])
        assert log.status == ExecutionStatus.COMPLETED
        assert log.trigger.type == TriggerType.SCHEDULE
        assert log.trigger.metadata == {"schedule_id": state.id}

        stored = await schedule_store.get(state.id)
        assert stored.status == ScheduleStatus.EXPIRED
        assert stored.total_runs == 1
        assert stored.last_run_at == fire_at
        assert stored.last_execution_id == dispatched[0]
        assert stored.last_run_status == ExecutionStatus.COMPLETED
        assert stored.next_run_at is None

    @pytest.mark.asyncio
    async def test_missed_fires_run_once(self, scheduler, install, schedule_store):
        await install(chain("every_five"))
        state = await scheduler.register(ScheduleState(flow_name="every_five", cron_expression="*/5 * * * *"), now=T0)

        late = T0 + timedelta(hours=1, seconds=30)
        assert len(await scheduler.tick(late)) == 1
        assert await scheduler.tick(late) == []
        await scheduler.drain()

        stored = await schedule_store.get(state.id)
        assert stored.total_runs == 1
        assert stored.next_run_at == T0 + timedelta(hours=1, minutes=5)

    @pytest.mark.asyncio
    async def test_end_date_expires_schedule(self, scheduler, install, schedule_store):
        await install(chain("every_ten"))
        state = await scheduler.register(
            ScheduleState(flow_name="every_ten", cron_expression="*/10 * * * *", end_date=T0 + timedelta(minutes=15)),
            now=T0,
        )

        assert len(await scheduler.tick(T0 + timedelta(minutes=10))) == 1
        await scheduler.drain()

        stored = await schedule_store.get(state.id)
        assert stored.status == ScheduleStatus.EXPIRED
        assert await scheduler.tick(T0 + timedelta(minutes=20)) == []

    @pytest.mark.asyncio
    async def test_consecutive_failures_expire_schedule(self, scheduler, install, schedule_store, http):
        http.default = HttpResponse(500)
        await install(chain("fragile", node("call", "http_request", config={"url": "https://api.test"})))
        state = await scheduler.register(ScheduleState(flow_name="fragile", cron_expression="* * * * *"), now=T0)

        for _ in range(3):
            current = await schedule_store.get(state.id)
            assert current.status == ScheduleStatus.ACTIVE
            await scheduler.tick(current.next_run_at)
            await scheduler.drain()

        stored = await schedule_store.get(state.id)
        assert stored.consecutive_failures == 3
        assert stored.last_run_status == ExecutionStatus.FAILED
        assert stored.status == ScheduleStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, scheduler, install, schedule_store, http):
        http.script(HttpResponse(500))
        await install(chain("fragile", node("call", "http_request", config={"url": "https://api.test"})))
        state = await scheduler.register(ScheduleState(flow_name="fragile", cron_expression="* * * * *"), now=T0)

        for _ in range(2):
            current = await schedule_store.get(state.id)
            await scheduler.tick(current.next_run_at)
            await scheduler.drain()

        stored = await schedule_store.get(state.id)
        assert stored.consecutive_failures == 0
        assert stored.total_runs == 2

    @pytest.mark.asyncio
    async def test_rejected_dispatch_counts_as_failure(self, scheduler, schedule_store):
        state = await scheduler.register(ScheduleState(flow_name="ghost", cron_expression="0 9 * * *"), now=T0)

        assert len(await scheduler.tick(state.next_run_at)) == 1
        await scheduler.drain()

        stored = await schedule_store.get(state.id)
        assert stored.consecutive_failures == 1
        assert stored.last_run_status == ExecutionStatus.FAILED


@pytest.mark.unit
class TestScheduleLifecycle:
    @pytest.mark.asyncio
    async def test_paused_schedule_does_not_fire(self, scheduler, install, schedule_store):
        await install(chain("nightly"))
        state = await scheduler.register(ScheduleState(flow_name="nightly", cron_expression="0 9 * * *"), now=T0)
        await scheduler.pause(state.id)

        assert await scheduler.tick(T0 + timedelta(days=2)) == []

        later = T0 + timedelta(days=2)
        resumed = await scheduler.resume(state.id, now=later)
        assert resumed.status == ScheduleStatus.ACTIVE
        assert resumed.next_run_at == datetime(2026, 3, 3, 9, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_disable_and_unregister(self, scheduler, schedule_store):
        state = await scheduler.register(ScheduleState(flow_name="nightly", cron_expression="0 9 * * *"), now=T0)

        disabled = await scheduler.disable(state.id)
        assert disabled.status == ScheduleStatus.DISABLED

        assert await scheduler.unregister(state.id) is True
        assert await schedule_store.get(state.id) is None

    @pytest.mark.asyncio
    async def test_expired_schedule_cannot_resume(self, scheduler, install):
        await install(chain("nightly"))
        state = await scheduler.register(
            ScheduleState(flow_name="nightly", cron_expression="0 9 * * *", max_runs=1), now=T0
        )
        await scheduler.tick(state.next_run_at)
        await scheduler.drain()

        with pytest.raises(ValidationError):
            await scheduler.resume(state.id)

    @pytest.mark.asyncio
    async def test_background_loop_fires_due_schedule(self, scheduler, install, schedule_store):
        await install(chain("nightly"))
        state = await scheduler.register(ScheduleState(flow_name="nightly", cron_expression="0 9 * * *"))
        state.next_run_at = utc_now() - timedelta(seconds=1)
        await schedule_store.save(state)

        scheduler.start()
        try:
            for _ in range(200):
                if (await schedule_store.get(state.id)).total_runs:
                    break
                await asyncio.sleep(0.01)
        finally:
            await scheduler.stop()
        await scheduler.drain()

        stored = await schedule_store.get(state.id)
        assert stored.total_runs == 1
        assert stored.last_run_status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_run_failed_by_recovery_counts_against_schedule(
        self, scheduler, engine, schedule_store, execution_store
    ):
        state = await scheduler.register(ScheduleState(flow_name="nightly", cron_expression="0 9 * * *"), now=T0)
        interrupted = ExecutionLog(
            flow_name="nightly",
            flow_version=1,
            status=ExecutionStatus.RUNNING,
            trigger=TriggerContext(type=TriggerType.SCHEDULE, metadata={"schedule_id": state.id}).to_trigger(),
        )
        await execution_store.create_log(interrupted)

        await RecoveryService(engine).reconcile()

        stored = await schedule_store.get(state.id)
        assert stored.last_run_status == ExecutionStatus.FAILED
        assert stored.consecutive_failures == 1
