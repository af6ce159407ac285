"""Tests for suspension, resume, timers, wait timeouts and boundary events."""

import asyncio
from datetime import timedelta

import pytest

from automation.context import TriggerContext
from automation.models import ResumePayload
from core.constants import (
    CheckpointReason,
    ErrorCode,
    ExecutionStatus,
    FlowStatus,
    StepStatus,
    WaitEventType,
)
from core.exceptions import (
    CheckpointNotFoundError,
    FlowNotFoundError,
    InvalidStateTransitionError,
    ValidationError,
)
from core.utils import utc_now
from flow_builders import approve_order_flow, chain, edge, flow, node


async def _wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def _guarded_flow(host):
    """start -> host -> end, with a 30ms boundary on host leading to an escalation."""
    return flow(
        "guarded",
        [
            node("start", "start"),
            host,
            node("escalate", "boundary_event", config={"attached_to": host.id, "duration_ms": 30}),
            node("escalated", "assignment", config={"assignments": [{"variable": "escalated", "value": True}]}),
            node("end", "end"),
        ],
        [
            edge("start", host.id),
            edge(host.id, "end"),
            edge("escalate", "escalated"),
            edge("escalated", "end"),
        ],
    )


@pytest.mark.unit
class TestResumeValidation:
    @pytest.mark.asyncio
    async def test_resume_finished_run(self, engine, install):
        await install(approve_order_flow())
        log = await engine.execute("approve_order", TriggerContext(params={"amount": 1}))

        with pytest.raises(InvalidStateTransitionError):
            await engine.resume(log.id)

    @pytest.mark.asyncio
    async def test_resume_twice(self, engine, install):
        await install(approve_order_flow())
        log = await engine.execute("approve_order", TriggerContext(params={"amount": 5000}))
        await engine.resume(log.id, ResumePayload(event_type=WaitEventType.APPROVAL))

        with pytest.raises(InvalidStateTransitionError):
            await engine.resume(log.id, ResumePayload(event_type=WaitEventType.APPROVAL))

    @pytest.mark.asyncio
    async def test_resume_wrong_node_keeps_checkpoint(self, engine, install, execution_store):
        await install(approve_order_flow())
        log = await engine.execute("approve_order", TriggerContext(params={"amount": 5000}))

        with pytest.raises(ValidationError):
            await engine.resume(log.id, ResumePayload(node_id="check_amount"))

        stored = await engine.get_execution(log.id)
        assert stored.status == ExecutionStatus.PAUSED
        assert await execution_store.load_checkpoint(log.id) is not None

        resumed = await engine.resume(log.id, ResumePayload(event_type=WaitEventType.APPROVAL))
        assert resumed.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_orphaned_pause(self, engine, install, execution_store):
        await install(approve_order_flow())
        log = await engine.execute("approve_order", TriggerContext(params={"amount": 5000}))
        await execution_store.delete_checkpoint(log.id)

        with pytest.raises(CheckpointNotFoundError):
            await engine.resume(log.id)

        stored = await engine.get_execution(log.id)
        assert stored.status == ExecutionStatus.FAILED
        assert stored.error.code == ErrorCode.ORPHANED_PAUSE

    @pytest.mark.asyncio
    async def test_flow_version_deleted(self, engine, install, flow_store, execution_store):
        await install(approve_order_flow())
        log = await engine.execute("approve_order", TriggerContext(params={"amount": 5000}))
        await flow_store.delete("approve_order")

        with pytest.raises(FlowNotFoundError):
            await engine.resume(log.id)

        stored = await engine.get_execution(log.id)
        assert stored.status == ExecutionStatus.FAILED
        assert stored.error.code == ErrorCode.CORRUPTED_SNAPSHOT
        assert await execution_store.load_checkpoint(log.id) is None


@pytest.mark.unit
class TestVersionPinning:
    @pytest.mark.asyncio
    async def test_resume_uses_started_version(self, engine, install, flow_store):
        v1 = approve_order_flow()
        await install(v1)
        log = await engine.execute("approve_order", TriggerContext(params={"amount": 5000}))

        # v2 drops the approval step entirely
        v2 = flow(
            "approve_order",
            [node("start", "start"), node("end", "end")],
            [edge("start", "end")],
            version=2,
        )
        await flow_store.save(v1.model_copy(update={"status": FlowStatus.OBSOLETE}))
        await flow_store.save(v2)

        resumed = await engine.resume(log.id, ResumePayload(event_type=WaitEventType.APPROVAL))

        assert resumed.status == ExecutionStatus.COMPLETED
        assert resumed.flow_version == 1
        assert [s.node_id for s in resumed.steps] == ["start", "check_amount", "await_approval", "end"]

        fresh = await engine.execute("approve_order", TriggerContext(params={"amount": 5000}))
        assert fresh.flow_version == 2
        assert fresh.status == ExecutionStatus.COMPLETED


@pytest.mark.unit
class TestManualPause:
    @pytest.mark.asyncio
    async def test_pause_and_resume_skips_completed_nodes(self, engine, install, http, execution_store):
        http.gate = asyncio.Event()
        await install(
            chain(
                "two_calls",
                node("first", "http_request", config={"url": "https://api.test/1"}),
                node("second", "http_request", config={"url": "https://api.test/2"}),
            )
        )

        task = asyncio.create_task(engine.execute("two_calls", execution_id="run-1"))
        await _wait_for(lambda: len(http.calls) == 1)
        assert await engine.pause("run-1") is True
        http.gate.set()
        log = await task

        assert log.status == ExecutionStatus.PAUSED
        checkpoint = await execution_store.load_checkpoint("run-1")
        assert checkpoint.reason == CheckpointReason.MANUAL_PAUSE
        assert checkpoint.current_node_id == "second"
        assert checkpoint.completed_node_ids == ["start", "first"]

        resumed = await engine.resume("run-1")

        assert resumed.status == ExecutionStatus.COMPLETED
        assert [s.node_id for s in resumed.steps] == ["start", "first", "second", "end"]
        assert [c["url"] for c in http.calls] == ["https://api.test/1", "https://api.test/2"]

    @pytest.mark.asyncio
    async def test_pause_inactive_run(self, engine):
        assert await engine.pause("not-running") is False


@pytest.mark.unit
class TestTimersAndDeadlines:
    @pytest.mark.asyncio
    async def test_timer_wait_resumes_when_due(self, engine, install):
        await install(chain("delayed", node("sleep", "wait", config={"event_type": "timer", "duration_ms": 1000})))
        log = await engine.execute("delayed")
        assert log.status == ExecutionStatus.PAUSED

        assert await engine.process_due(utc_now()) == []
        touched = await engine.process_due(utc_now() + timedelta(seconds=2))

        assert touched == [log.id]
        stored = await engine.get_execution(log.id)
        assert stored.status == ExecutionStatus.COMPLETED
        sleep_step = [s for s in stored.steps if s.node_id == "sleep"][0]
        assert sleep_step.output["event_type"] == WaitEventType.TIMER.value

    @pytest.mark.asyncio
    async def test_wait_timeout_fails_node(self, engine, install):
        await install(chain("expiring", node("hold", "wait", config={"event_type": "signal", "timeout_ms": 1000})))
        log = await engine.execute("expiring")

        await engine.process_due(utc_now() + timedelta(seconds=2))

        stored = await engine.get_execution(log.id)
        assert stored.status == ExecutionStatus.FAILED
        assert stored.error.code == ErrorCode.WAIT_TIMEOUT
        hold = [s for s in stored.steps if s.node_id == "hold"]
        assert hold[0].status == StepStatus.FAILURE

    @pytest.mark.asyncio
    async def test_wait_timeout_can_continue(self, engine, install):
        await install(
            chain(
                "lenient",
                node(
                    "hold",
                    "wait",
                    config={"event_type": "signal", "timeout_ms": 1000, "timeout_behavior": "continue"},
                ),
            )
        )
        log = await engine.execute("lenient")

        await engine.process_due(utc_now() + timedelta(seconds=2))

        stored = await engine.get_execution(log.id)
        assert stored.status == ExecutionStatus.COMPLETED
        hold = [s for s in stored.steps if s.node_id == "hold"][0]
        assert hold.output["event_type"] == WaitEventType.TIMEOUT.value

    @pytest.mark.asyncio
    async def test_sweep_loop_fires_timers(self, engine, install):
        await install(chain("quick_timer", node("sleep", "wait", config={"event_type": "timer", "duration_ms": 20})))
        log = await engine.execute("quick_timer")

        engine.start()
        try:
            async def completed():
                return (await engine.get_execution(log.id)).status == ExecutionStatus.COMPLETED

            for _ in range(200):
                if await completed():
                    break
                await asyncio.sleep(0.01)
            assert await completed()
        finally:
            await engine.stop()


@pytest.mark.unit
class TestBoundaryEvents:
    @pytest.mark.asyncio
    async def test_boundary_interrupts_running_node(self, engine, install, http):
        http.gate = asyncio.Event()
        await install(_guarded_flow(node("call", "http_request", config={"url": "https://api.test"})))

        log = await engine.execute("guarded")

        assert log.status == ExecutionStatus.COMPLETED
        call = [s for s in log.steps if s.node_id == "call"][0]
        assert call.status == StepStatus.SKIPPED
        assert call.error.code == ErrorCode.BOUNDARY_EVENT_FIRED
        assert [s.node_id for s in log.steps][-3:] == ["escalate", "escalated", "end"]
        assert log.variables["escalated"] is True

    @pytest.mark.asyncio
    async def test_host_finishing_first_wins(self, engine, install):
        await install(_guarded_flow(node("call", "http_request", config={"url": "https://api.test"})))

        log = await engine.execute("guarded")

        assert log.status == ExecutionStatus.COMPLETED
        assert [s.node_id for s in log.steps] == ["start", "call", "end"]
        assert "escalated" not in log.variables

    @pytest.mark.asyncio
    async def test_boundary_on_waiting_node(self, engine, install, execution_store):
        await install(_guarded_flow(node("hold", "wait", config={"event_type": "signal"})))

        log = await engine.execute("guarded")
        assert log.status == ExecutionStatus.PAUSED
        checkpoint = await execution_store.load_checkpoint(log.id)
        assert list(checkpoint.suspended_nodes[0].boundary_deadlines) == ["escalate"]

        touched = await engine.process_due(utc_now() + timedelta(seconds=1))

        assert touched == [log.id]
        stored = await engine.get_execution(log.id)
        assert stored.status == ExecutionStatus.COMPLETED
        hold = [s for s in stored.steps if s.node_id == "hold"][0]
        assert hold.status == StepStatus.SKIPPED
        assert stored.variables["escalated"] is True

    @pytest.mark.asyncio
    async def test_signal_before_boundary(self, engine, install):
        await install(_guarded_flow(node("hold", "wait", config={"event_type": "signal"})))
        log = await engine.execute("guarded")

        resumed = await engine.resume(log.id, ResumePayload(event_type=WaitEventType.SIGNAL))
        assert resumed.status == ExecutionStatus.COMPLETED

        assert await engine.fire_boundary(log.id, "escalate") is None
        assert await engine.process_due(utc_now() + timedelta(seconds=1)) == []
