"""Tests for startup reconciliation of execution logs and checkpoints."""

import pytest

from automation.context import TriggerContext
from automation.engine import AutomationEngine
from automation.models import Checkpoint, ConcurrencyPolicy, ExecutionLog, ResumePayload
from automation.recovery import RecoveryService
from core.constants import CheckpointReason, ConflictPolicy, ErrorCode, ExecutionStatus, WaitEventType
from core.exceptions import ConcurrencyLimitError
from flow_builders import approve_order_flow, chain


@pytest.fixture
def restarted(flow_store, execution_store, settings):
    """A second engine over the same stores, as after a process restart."""
    return AutomationEngine(flow_store, execution_store, settings=settings)


def _actions(results):
    return {(r.execution_id, r.action, r.code) for r in results}


@pytest.mark.unit
class TestRecovery:
    @pytest.mark.asyncio
    async def test_nothing_to_do(self, restarted):
        assert await RecoveryService(restarted).reconcile() == []

    @pytest.mark.asyncio
    async def test_paused_run_keeps_slot_after_restart(self, engine, restarted, install):
        definition = approve_order_flow()
        definition.concurrency = ConcurrencyPolicy(on_conflict=ConflictPolicy.REJECT)
        await install(definition)
        paused = await engine.execute("approve_order", TriggerContext(params={"amount": 5000}))

        results = await RecoveryService(restarted).reconcile()

        assert _actions(results) == {(paused.id, "slot_restored", None)}
        assert restarted.controller.in_flight("approve_order") == [paused.id]
        with pytest.raises(ConcurrencyLimitError):
            await restarted.execute("approve_order", TriggerContext(params={"amount": 1}))

        resumed = await restarted.resume(paused.id, ResumePayload(event_type=WaitEventType.APPROVAL))
        assert resumed.status == ExecutionStatus.COMPLETED
        assert restarted.controller.in_flight("approve_order") == []

    @pytest.mark.asyncio
    async def test_paused_without_checkpoint_is_failed(self, engine, restarted, install, execution_store):
        await install(approve_order_flow())
        paused = await engine.execute("approve_order", TriggerContext(params={"amount": 5000}))
        await execution_store.delete_checkpoint(paused.id)

        results = await RecoveryService(restarted).reconcile()

        assert _actions(results) == {(paused.id, "failed", ErrorCode.ORPHANED_PAUSE)}
        log = await execution_store.get_log(paused.id)
        assert log.status == ExecutionStatus.FAILED
        assert log.error.code == ErrorCode.ORPHANED_PAUSE
        assert log.completed_at is not None

    @pytest.mark.asyncio
    async def test_interrupted_runs_are_failed(self, restarted, execution_store):
        running = ExecutionLog(flow_name="sync", flow_version=1, status=ExecutionStatus.RUNNING)
        retrying = ExecutionLog(flow_name="sync", flow_version=1, status=ExecutionStatus.RETRYING)
        await execution_store.create_log(running)
        await execution_store.create_log(retrying)

        results = await RecoveryService(restarted).reconcile()

        assert _actions(results) == {
            (running.id, "failed", ErrorCode.EXECUTION_INTERRUPTED),
            (retrying.id, "failed", ErrorCode.EXECUTION_INTERRUPTED),
        }
        errors = await execution_store.list_errors(running.id)
        assert [e.code for e in errors] == [ErrorCode.EXECUTION_INTERRUPTED]

    @pytest.mark.asyncio
    async def test_stray_checkpoints_are_deleted(self, engine, restarted, install, execution_store):
        await install(chain("sync"))
        finished = await engine.execute("sync")
        stray = Checkpoint(
            execution_id=finished.id,
            flow_name="sync",
            flow_version=1,
            current_node_id="end",
            reason=CheckpointReason.WAIT,
        )
        unknown = stray.model_copy(update={"execution_id": "gone"})
        await execution_store.save_checkpoint(stray)
        await execution_store.save_checkpoint(unknown)

        results = await RecoveryService(restarted).reconcile()

        assert _actions(results) == {
            (finished.id, "checkpoint_deleted", ErrorCode.ORPHANED_PAUSE),
            ("gone", "checkpoint_deleted", ErrorCode.ORPHANED_PAUSE),
        }
        assert await execution_store.list_checkpoints() == []
        assert (await execution_store.get_log(finished.id)).status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_checkpoint_behind_running_log(self, restarted, execution_store):
        running = ExecutionLog(flow_name="sync", flow_version=1, status=ExecutionStatus.RUNNING)
        await execution_store.create_log(running)
        await execution_store.save_checkpoint(
            Checkpoint(
                execution_id=running.id,
                flow_name="sync",
                flow_version=1,
                current_node_id="start",
                reason=CheckpointReason.WAIT,
            )
        )

        results = await RecoveryService(restarted).reconcile()

        assert _actions(results) == {(running.id, "failed", ErrorCode.ORPHANED_PAUSE)}
        assert await execution_store.load_checkpoint(running.id) is None

    @pytest.mark.asyncio
    async def test_result_serialises(self, engine, restarted, install, execution_store):
        await install(approve_order_flow())
        paused = await engine.execute("approve_order", TriggerContext(params={"amount": 5000}))
        await execution_store.delete_checkpoint(paused.id)

        [result] = await RecoveryService(restarted).reconcile()

        data = result.to_dict()
        assert data["execution_id"] == paused.id
        assert data["action"] == "failed"
        assert data["code"] == "orphaned_pause"
        assert "timestamp" in data
