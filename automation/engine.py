"""Automation Execution Engine: walks a flow graph from start to end.

Responsibilities:

- Admission through the Concurrency Controller before anything is recorded
- Walking nodes with decisions, parallel branches and join barriers
- Retrying failed nodes per their resolved RetryStrategy
- Fault edges and the flow's error-handling strategy
- Boundary-event timers racing their host node
- Suspending runs (wait, screen, approval, incomplete join, manual pause)
  into one atomic checkpoint, and resuming them against the flow version
  they started with
- Wall-clock budgets, cooperative cancellation and pausing
- A sweep loop that fires due timers, boundary deadlines and wait timeouts

    engine = AutomationEngine(flow_store, execution_store)
    log = await engine.execute("approve_order", TriggerContext(params={"amount": 500}))
    log = await engine.resume(log.id, ResumePayload(variables={"approved": True}))
"""

import asyncio
import copy
import inspect
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from app.config import get_settings
from automation.checkpoint import CheckpointManager, SnapshotError
from automation.concurrency import ConcurrencyController, lock_key_for
from automation.context import RunFailure, RunState, TriggerContext
from automation.expressions import ExpressionEvaluator
from automation.graph import FlowGraph
from automation.models import (
    Checkpoint,
    ExecutionLog,
    FlowDefinition,
    FlowNode,
    ResumePayload,
    StepError,
    SuspendedNode,
)
from automation.recorder import ErrorRecorder, ExecutionRecorder
from automation.retry_strategies import resolve_retry_strategy
from automation.storage import ExecutionStore, FlowStore
from core.constants import (
    CheckpointReason,
    EdgeType,
    ErrorCode,
    ErrorSeverity,
    ErrorStrategy,
    ExecutionStatus,
    NodeAction,
    StepStatus,
    TimeoutBehavior,
    WaitEventType,
)
from core.exceptions import (
    AutomationException,
    CheckpointNotFoundError,
    ExecutionNotFoundError,
    FlowDisabledError,
    FlowModelError,
    FlowNotFoundError,
    InvalidStateTransitionError,
    NodeExecutionError,
    ValidationError,
)
from core.logging_config import execution_logging
from core.utils import new_id, utc_now
from nodes.base_node import NodeContext, NodeExecutor, NodeResult, NodeServices
from nodes.registry import NodeRegistry
from triggers.base import FlowTrigger

logger = structlog.get_logger(__name__)

CompletionListener = Callable[[ExecutionLog], Union[Awaitable[None], None]]

# (target node id, edge id it was reached through)
_Next = tuple[str, Optional[str]]


class _BoundaryFired(Exception):
    def __init__(self, boundary: FlowNode):
        self.boundary = boundary
        super().__init__(boundary.id)


def _boundary_duration(boundary: FlowNode) -> Optional[float]:
    duration_ms = boundary.config.get("duration_ms")
    return int(duration_ms) / 1000 if duration_ms else None


def _trigger_key(trigger_type) -> str:
    return trigger_type.value if isinstance(trigger_type, Enum) else str(trigger_type)


class AutomationEngine:
    """Runs flows to completion or suspension and records their history."""

    def __init__(
        self,
        flow_store: FlowStore,
        execution_store: ExecutionStore,
        registry: Optional[NodeRegistry] = None,
        controller: Optional[ConcurrencyController] = None,
        services: Optional[NodeServices] = None,
        settings=None,
    ):
        self._flows = flow_store
        self._store = execution_store
        self._registry = registry or NodeRegistry()
        self._controller = controller or ConcurrencyController()
        self._controller.set_canceller(self._cancel_for_admission)
        self._services = services or NodeServices()
        self._services.engine = self
        self._settings = settings or get_settings()
        self._recorder = ExecutionRecorder(execution_store)
        self._errors = ErrorRecorder(execution_store)
        self._checkpoints = CheckpointManager()
        self._active: dict[str, RunState] = {}
        # Holding a slot but not yet registered as active
        self._cancel_on_start: set[str] = set()
        self._execution_locks: dict[str, asyncio.Lock] = {}
        self._listeners: list[CompletionListener] = []
        self._triggers: dict[str, FlowTrigger] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    # ─── Registration ─────────────────────────────────────────────────

    @property
    def registry(self) -> NodeRegistry:
        return self._registry

    @property
    def controller(self) -> ConcurrencyController:
        return self._controller

    @property
    def flow_store(self) -> FlowStore:
        return self._flows

    @property
    def execution_store(self) -> ExecutionStore:
        return self._store

    def is_active(self, execution_id: str) -> bool:
        return execution_id in self._active

    def register_node_executor(self, executor: NodeExecutor) -> None:
        self._registry.register(executor)

    def unregister_node_executor(self, action) -> bool:
        return self._registry.unregister(action)

    @property
    def registered_node_types(self) -> list[str]:
        return self._registry.available_types

    def register_trigger(self, trigger: FlowTrigger) -> None:
        """Add a trigger; it starts and stops with the engine. Replaces a trigger of the same type."""
        trigger_type = _trigger_key(trigger.type)
        if trigger_type in self._triggers:
            logger.warning("trigger_replaced", trigger_type=trigger_type)
        self._triggers[trigger_type] = trigger
        if self.is_running:
            trigger.start()
        logger.info("trigger_registered", trigger_type=trigger_type)

    async def unregister_trigger(self, trigger_type: str) -> bool:
        """Stop and remove the trigger of ``trigger_type``."""
        trigger = self._triggers.pop(_trigger_key(trigger_type), None)
        if trigger is None:
            return False
        await trigger.stop()
        logger.info("trigger_unregistered", trigger_type=_trigger_key(trigger_type))
        return True

    @property
    def registered_trigger_types(self) -> list[str]:
        return list(self._triggers)

    def add_completion_listener(self, listener: CompletionListener) -> None:
        """Called with a copy of the log whenever an execution reaches a terminal status."""
        self._listeners.append(listener)

    def remove_completion_listener(self, listener: CompletionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def notify_completion(self, log: ExecutionLog) -> None:
        """Hand a log that was made terminal outside a run (e.g. by recovery) to the completion listeners."""
        await self._notify(log)

    # ─── Public API ───────────────────────────────────────────────────

    async def execute(
        self,
        flow_name: str,
        context: Optional[TriggerContext] = None,
        execution_id: Optional[str] = None,
    ) -> ExecutionLog:
        """
        Start a run of the active version of ``flow_name``.

        Returns once the run is terminal or suspended.

        Raises:
            FlowNotFoundError: No such flow
            FlowDisabledError: Flow disabled or without an active version
            ConcurrencyLimitError: Admission rejected or queue wait timed out
        """
        context = context or TriggerContext()
        flow = await self._load_executable_flow(flow_name)
        execution_id = execution_id or new_id()
        lock_key = lock_key_for(flow.name, flow.concurrency, context)

        try:
            await self._controller.try_admit(flow.name, flow.concurrency, lock_key, execution_id)
        except BaseException:
            self._cancel_on_start.discard(execution_id)
            raise

        try:
            log = ExecutionLog(
                id=execution_id,
                flow_name=flow.name,
                flow_version=flow.version,
                trigger=context.to_trigger(),
                run_as=flow.run_as,
                tenant_id=context.tenant_id,
            )
            run = RunState(
                log=log,
                flow=flow,
                graph=FlowGraph(flow),
                context=context,
                lock_key=lock_key,
                variables=self._initial_variables(flow, context),
            )
            log.variables = copy.deepcopy(run.variables)
            self._active[execution_id] = run
            if execution_id in self._cancel_on_start:
                self._cancel_on_start.discard(execution_id)
                run.cancel_requested = True
            await self._recorder.start(log)
        except BaseException:
            self._active.pop(execution_id, None)
            self._cancel_on_start.discard(execution_id)
            await self._controller.release(lock_key, execution_id)
            raise

        await self._recorder.transition(log, ExecutionStatus.RUNNING)

        start = run.graph.start_node()
        if start is None:
            await self._fail_run(
                run,
                ErrorCode.MISSING_START_NODE,
                f"Flow '{flow.name}' v{flow.version} has no unique start node",
            )
            await self._settle(run)
            return log

        await self._drive(run, [(start.id, None)])
        return log

    async def resume(self, execution_id: str, payload: Optional[ResumePayload] = None) -> ExecutionLog:
        """
        Continue a paused run.

        Raises:
            ExecutionNotFoundError: Unknown execution
            InvalidStateTransitionError: The execution is not paused
            CheckpointNotFoundError: Paused without a checkpoint (the run is failed as orphaned)
            ValidationError: ``payload.node_id`` is not waiting for a signal
        """
        payload = payload or ResumePayload()
        async with self._execution_lock(execution_id):
            run, checkpoint = await self._claim_checkpoint(execution_id)
            node_id = payload.node_id or checkpoint.current_node_id
            entry = run.suspended.get(node_id)
            if entry is None:
                await self._release_claim(run, checkpoint)
                raise ValidationError(f"Node '{node_id}' of execution '{execution_id}' is not waiting for a signal")

            run.variables.update(payload.variables)
            logger.info(
                "execution_resumed",
                execution_id=execution_id,
                node_id=node_id,
                event_type=payload.event_type.value,
                resumed_by=payload.resumed_by,
            )

            if entry.reason == CheckpointReason.MANUAL_PAUSE:
                entries = self._release_manual_pauses(run)
            else:
                run.suspended.pop(node_id)
                entries = await self._complete_suspended(run, run.graph.node(node_id), entry, payload, checkpoint)

        await self._drive(run, entries)
        return run.log

    async def fire_boundary(self, execution_id: str, boundary_node_id: str) -> Optional[ExecutionLog]:
        """Interrupt a suspended host node with its boundary event. Returns None when nothing fired."""
        async with self._execution_lock(execution_id):
            log = await self._store.get_log(execution_id)
            if log is None or log.status != ExecutionStatus.PAUSED:
                return None
            checkpoint = await self._store.load_checkpoint(execution_id)
            if checkpoint is None:
                return None
            host_entry = next(
                (s for s in checkpoint.suspended_nodes if boundary_node_id in s.boundary_deadlines),
                None,
            )
            if host_entry is None:
                return None

            run, checkpoint = await self._claim_checkpoint(execution_id)
            run.suspended.pop(host_entry.node_id, None)
            host = run.graph.node(host_entry.node_id)
            boundary = run.graph.node(boundary_node_id)
            entries = await self._take_boundary(run, host, boundary, checkpoint.created_at, attempt=0)

        await self._drive(run, entries)
        return run.log

    async def cancel(self, execution_id: str) -> bool:
        """
        Cancel a run.

        Active runs stop cooperatively at their next node boundary; paused runs
        are cancelled immediately and their checkpoint removed.
        """
        run = self._active.get(execution_id)
        if run is not None:
            run.cancel_requested = True
            logger.info("execution_cancel_requested", execution_id=execution_id)
            return True

        async with self._execution_lock(execution_id):
            log = await self._store.get_log(execution_id)
            if log is None:
                raise ExecutionNotFoundError(execution_id)
            if log.status != ExecutionStatus.PAUSED:
                return False
            await self._recorder.transition(log, ExecutionStatus.CANCELLED, persist=False)
            await self._store.consume_checkpoint(log)
            await self._store.update_log(log)
            await self._release_for_log(log)

        logger.info("execution_cancelled", execution_id=execution_id, was_paused=True)
        await self._notify(log)
        return True

    async def _cancel_for_admission(self, execution_id: str) -> bool:
        """Canceller for ``cancel_existing``; the victim may hold a slot it has not started using."""
        if execution_id not in self._active and await self._store.get_log(execution_id) is None:
            self._cancel_on_start.add(execution_id)
            logger.info("execution_cancel_deferred", execution_id=execution_id)
            return True
        return await self.cancel(execution_id)

    async def pause(self, execution_id: str) -> bool:
        """Ask an active run to suspend at its next node boundary (reason ``manual_pause``)."""
        run = self._active.get(execution_id)
        if run is None:
            return False
        run.pause_requested = True
        logger.info("execution_pause_requested", execution_id=execution_id)
        return True

    async def get_execution(self, execution_id: str) -> ExecutionLog:
        log = await self._store.get_log(execution_id)
        if log is None:
            raise ExecutionNotFoundError(execution_id)
        return log

    def get_running_executions(self) -> dict[str, dict]:
        """Runs currently loaded in this process."""
        return {
            execution_id: {
                "flow_name": run.flow.name,
                "flow_version": run.flow.version,
                "status": run.log.status.value,
                "started_at": run.log.started_at.isoformat(),
                "completed_nodes": len(run.completed),
                "lock_key": run.lock_key,
            }
            for execution_id, run in self._active.items()
        }

    # ─── Sweep ────────────────────────────────────────────────────────

    async def process_due(self, now=None) -> list[str]:
        """Fire due timers, boundary deadlines and wait timeouts. Returns touched execution ids."""
        now = now or utc_now()
        touched = []
        for checkpoint in await self._store.list_expired_checkpoints(now):
            try:
                if await self._process_expired(checkpoint, now):
                    touched.append(checkpoint.execution_id)
            except AutomationException as exc:
                # Resumed or cancelled concurrently, or failed as orphaned
                logger.warning(
                    "sweep_skipped",
                    execution_id=checkpoint.execution_id,
                    code=exc.code,
                    reason=exc.message,
                )
        return touched

    async def _process_expired(self, checkpoint: Checkpoint, now) -> bool:
        for entry in checkpoint.suspended_nodes:
            due = sorted(
                (deadline, boundary_id)
                for boundary_id, deadline in entry.boundary_deadlines.items()
                if deadline <= now
            )
            if due:
                return await self.fire_boundary(checkpoint.execution_id, due[0][1]) is not None
            if entry.expires_at is None or entry.expires_at > now:
                continue
            if entry.resume_event == WaitEventType.TIMER:
                payload = ResumePayload(event_type=WaitEventType.TIMER, node_id=entry.node_id)
                await self.resume(checkpoint.execution_id, payload)
            elif entry.timeout_behavior == TimeoutBehavior.CONTINUE:
                payload = ResumePayload(event_type=WaitEventType.TIMEOUT, node_id=entry.node_id)
                await self.resume(checkpoint.execution_id, payload)
            else:
                await self._expire_wait(checkpoint.execution_id, entry.node_id)
            return True
        return False

    async def _expire_wait(self, execution_id: str, node_id: str) -> None:
        async with self._execution_lock(execution_id):
            run, checkpoint = await self._claim_checkpoint(execution_id)
            run.suspended.pop(node_id, None)
            node = run.graph.node(node_id)
            exc = NodeExecutionError(
                f"Node '{node_id}' was not resumed before its deadline",
                code=ErrorCode.WAIT_TIMEOUT,
            )
            await self._record_node_error(run, node, exc, checkpoint.created_at, attempt=0)
            entries = await self._on_node_failed(run, node, exc, attempts=1)
        await self._drive(run, entries)

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def start(self) -> None:
        """Start the background sweep loop and every registered trigger."""
        if self.is_running:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("engine_sweep_started", interval=self._settings.ENGINE_SWEEP_INTERVAL_SECONDS)
        for trigger in list(self._triggers.values()):
            trigger.start()

    async def stop(self) -> None:
        for trigger in list(self._triggers.values()):
            await trigger.stop()
        task, self._sweep_task = self._sweep_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("engine_sweep_stopped")

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await self.process_due(utc_now())
            except Exception:
                logger.exception("engine_sweep_failed")
            await asyncio.sleep(self._settings.ENGINE_SWEEP_INTERVAL_SECONDS)

    # ─── Setup helpers ────────────────────────────────────────────────

    async def _load_executable_flow(self, flow_name: str) -> FlowDefinition:
        if await self._flows.get(flow_name) is None:
            raise FlowNotFoundError(flow_name)
        flow = await self._flows.get_active(flow_name)
        if flow is None:
            raise FlowDisabledError(flow_name, "no active version")
        if not flow.enabled:
            raise FlowDisabledError(flow_name)
        return flow

    @staticmethod
    def _initial_variables(flow: FlowDefinition, context: TriggerContext) -> dict[str, Any]:
        variables: dict[str, Any] = {}
        for variable in flow.variables:
            if variable.default is not None:
                variables[variable.name] = copy.deepcopy(variable.default)
        variables.update(copy.deepcopy(context.params))
        if context.record is not None:
            variables["$record"] = copy.deepcopy(context.record)
        return variables

    def _budget_seconds(self, flow: FlowDefinition) -> float:
        if flow.timeout_ms:
            return flow.timeout_ms / 1000
        return self._settings.EXECUTION_TIMEOUT_SECONDS

    def _execution_lock(self, execution_id: str) -> asyncio.Lock:
        lock = self._execution_locks.get(execution_id)
        if lock is None:
            lock = self._execution_locks[execution_id] = asyncio.Lock()
        return lock

    def _node_context(self, run: RunState) -> NodeContext:
        return NodeContext(
            execution_id=run.execution_id,
            flow=run.flow,
            graph=run.graph,
            variables=run.variables,
            trigger=run.context,
            services=self._services,
            settings=self._settings,
        )

    # ─── Walking ──────────────────────────────────────────────────────

    async def _drive(self, run: RunState, entries: list[_Next]) -> None:
        with execution_logging(run.execution_id, run.flow.name):
            await self._drive_segment(run, entries)

    async def _drive_segment(self, run: RunState, entries: list[_Next]) -> None:
        """Walk from ``entries`` under the wall-clock budget, then settle the run."""
        try:
            await asyncio.wait_for(self._walk_all(run, entries), timeout=self._budget_seconds(run.flow))
        except asyncio.TimeoutError:
            logger.warning("execution_timed_out", execution_id=run.execution_id, budget=self._budget_seconds(run.flow))
            run.failure = RunFailure(ErrorCode.EXECUTION_TIMEOUT, "Execution exceeded its wall-clock budget")
            await self._errors.record(
                run.execution_id,
                code=ErrorCode.EXECUTION_TIMEOUT,
                message=run.failure.message,
                severity=ErrorSeverity.CRITICAL,
            )
            await self._finish(run, ExecutionStatus.TIMED_OUT)
            return
        except BaseException:
            logger.exception("execution_internal_error", execution_id=run.execution_id)
            self._active.pop(run.execution_id, None)
            await self._controller.release(run.lock_key, run.execution_id)
            raise
        await self._settle(run)

    async def _walk_all(self, run: RunState, entries: list[_Next]) -> None:
        if len(entries) == 1:
            await self._walk(run, *entries[0])
        elif entries:
            await self._gather_branches([self._walk(run, target, edge_id) for target, edge_id in entries])

    @staticmethod
    async def _gather_branches(coros) -> None:
        tasks = [asyncio.ensure_future(c) for c in coros]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _walk(self, run: RunState, node_id: str, via_edge_id: Optional[str] = None) -> None:
        """Follow one branch until it ends, suspends, forks or the run stops."""
        while True:
            if run.should_stop:
                return
            if run.pause_requested:
                run.suspended[node_id] = SuspendedNode(
                    node_id=node_id,
                    reason=CheckpointReason.MANUAL_PAUSE,
                    via_edge_id=via_edge_id,
                    executed=False,
                )
                return

            node = run.graph.node(node_id)
            if node.action == NodeAction.JOIN_GATEWAY and not self._arrive(run, node, via_edge_id):
                return

            executor = self._registry.get(node.action)
            if run.is_completed(node_id) and not (executor and executor.reentrant):
                logger.debug("node_already_completed", execution_id=run.execution_id, node_id=node_id)
                return

            next_nodes = await self._step(run, node, executor, via_edge_id)
            if not next_nodes:
                return
            if len(next_nodes) == 1:
                node_id, via_edge_id = next_nodes[0]
                continue
            await self._gather_branches([self._walk(run, target, edge_id) for target, edge_id in next_nodes])
            return

    def _arrive(self, run: RunState, node: FlowNode, via_edge_id: Optional[str]) -> bool:
        """Register a branch at a join. True for exactly one arrival: the one completing the barrier."""
        if node.id in run.joins_claimed or run.is_completed(node.id):
            return False
        expected = {edge.id for edge in run.graph.incoming(node.id)}
        arrived = run.join_arrivals.setdefault(node.id, set())
        if via_edge_id:
            arrived.add(via_edge_id)
        if not expected <= arrived:
            logger.debug(
                "join_waiting",
                execution_id=run.execution_id,
                join_id=node.id,
                arrived=len(arrived),
                expected=len(expected),
            )
            return False
        run.joins_claimed.add(node.id)
        run.join_arrivals.pop(node.id, None)
        return True

    async def _step(
        self,
        run: RunState,
        node: FlowNode,
        executor: Optional[NodeExecutor],
        via_edge_id: Optional[str],
    ) -> list[_Next]:
        """Execute one node (with retries) and return where its branch goes next."""
        if executor is None:
            exc = FlowModelError(
                f"No executor registered for node type '{node.action.value}'",
                code=ErrorCode.UNKNOWN_NODE_TYPE,
            )
            await self._record_model_error(run, node, exc, utc_now())
            return []

        strategy = resolve_retry_strategy(node, run.flow, self._settings)
        timeout = node.timeout_ms / 1000 if node.timeout_ms else self._settings.DEFAULT_NODE_TIMEOUT_SECONDS
        attempt = 0
        while True:
            started_at = utc_now()
            try:
                result = await self._invoke(run, node, executor, timeout)
            except _BoundaryFired as fired:
                return await self._take_boundary(run, node, fired.boundary, started_at, attempt)
            except FlowModelError as exc:
                await self._record_model_error(run, node, exc, started_at, attempt)
                return []
            except NodeExecutionError as exc:
                await self._record_node_error(run, node, exc, started_at, attempt)
                if executor.supports_retry and strategy.should_retry(attempt, exc) and not run.should_stop:
                    await self._wait_before_retry(run, node, strategy.compute_delay(attempt + 1), attempt)
                    attempt += 1
                    if not run.should_stop:
                        continue
                    return []
                return await self._on_node_failed(run, node, exc, attempts=attempt + 1)
            break

        await self._errors.resolve(run.open_errors.pop(node.id, []))
        self._apply_result(run, node, result)

        if result.suspend is not None:
            suspension = result.suspend
            run.suspended[node.id] = SuspendedNode(
                node_id=node.id,
                reason=suspension.reason,
                via_edge_id=via_edge_id,
                executed=True,
                expires_at=suspension.expires_at,
                timeout_behavior=suspension.timeout_behavior,
                resume_event=suspension.resume_event,
                boundary_deadlines=self._arm_boundaries(run, node, executor),
            )
            logger.info(
                "node_suspended",
                execution_id=run.execution_id,
                node_id=node.id,
                reason=suspension.reason.value,
            )
            return []

        await self._recorder.record_step(
            run.log,
            node,
            StepStatus.SUCCESS,
            started_at,
            output=result.output,
            input=result.input,
            retry_attempt=attempt,
        )
        run.mark_completed(node.id)
        if node.action == NodeAction.END:
            return []
        return await self._select_next(run, node, result)

    async def _invoke(self, run: RunState, node: FlowNode, executor: NodeExecutor, timeout: float) -> NodeResult:
        """Run the executor, racing it against the shortest timer boundary attached to the node."""
        context = self._node_context(run)
        boundaries = []
        if executor.can_attach_boundary_event:
            boundaries = [b for b in run.graph.boundaries_for(node.id) if _boundary_duration(b)]
        if not boundaries:
            return await executor.run(node, context, timeout=timeout)

        boundary = min(boundaries, key=_boundary_duration)
        host = asyncio.ensure_future(executor.run(node, context, timeout=timeout))
        timer = asyncio.ensure_future(asyncio.sleep(_boundary_duration(boundary)))
        try:
            done, _ = await asyncio.wait({host, timer}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            host.cancel()
            timer.cancel()
            raise

        # Host completion wins a tie
        if host in done:
            timer.cancel()
            return host.result()

        host.cancel()
        await asyncio.gather(host, return_exceptions=True)
        raise _BoundaryFired(boundary)

    def _apply_result(self, run: RunState, node: FlowNode, result: NodeResult) -> None:
        if result.forget_nodes:
            run.forget_completed(result.forget_nodes)
        run.variables.update(result.variables)
        if result.output:
            run.variables[node.id] = result.output

    async def _select_next(self, run: RunState, node: FlowNode, result: NodeResult) -> list[_Next]:
        """Successors of a finished node. Outgoing edges that all miss, with no default, fail the run."""
        if result.next_edges is not None:
            return [(edge.target, edge.id) for edge in result.next_edges]
        edges = run.graph.outgoing(node.id)
        matching = [
            edge
            for edge in edges
            if not edge.is_default and ExpressionEvaluator.evaluate_condition(edge.condition, run.variables)
        ]
        if not matching:
            matching = [edge for edge in edges if edge.is_default][:1]
        if edges and not matching:
            await self._fail_run(
                run,
                ErrorCode.NO_MATCHING_EDGE,
                f"No outgoing edge of '{node.id}' matched and none is marked default",
                node_id=node.id,
            )
        return [(edge.target, edge.id) for edge in matching]

    def _arm_boundaries(self, run: RunState, node: FlowNode, executor: NodeExecutor) -> dict:
        if not executor.can_attach_boundary_event:
            return {}
        now = utc_now()
        return {
            boundary.id: now + timedelta(seconds=_boundary_duration(boundary))
            for boundary in run.graph.boundaries_for(node.id)
            if _boundary_duration(boundary)
        }

    async def _wait_before_retry(self, run: RunState, node: FlowNode, delay: float, attempt: int) -> None:
        run.retrying_branches += 1
        if run.retrying_branches == 1 and run.log.status == ExecutionStatus.RUNNING:
            await self._recorder.transition(run.log, ExecutionStatus.RETRYING)
        logger.info(
            "node_retry_scheduled",
            execution_id=run.execution_id,
            node_id=node.id,
            attempt=attempt + 1,
            delay=delay,
        )
        try:
            await asyncio.sleep(delay)
        finally:
            run.retrying_branches -= 1
            if run.retrying_branches == 0 and run.log.status == ExecutionStatus.RETRYING:
                await self._recorder.transition(run.log, ExecutionStatus.RUNNING)

    # ─── Failures ─────────────────────────────────────────────────────

    async def _record_node_error(
        self, run: RunState, node: FlowNode, exc: NodeExecutionError, started_at, attempt: int
    ) -> None:
        await self._recorder.record_step(
            run.log,
            node,
            StepStatus.FAILURE,
            started_at,
            error=StepError(code=exc.code, message=exc.message, stack=exc.stack),
            retry_attempt=attempt,
        )
        error = await self._errors.record(
            run.execution_id,
            code=exc.code,
            message=exc.message,
            severity=ErrorSeverity.ERROR,
            node_id=node.id,
            retryable=exc.retryable,
            stack=exc.stack,
            context={"attempt": attempt, **exc.context},
        )
        run.open_errors.setdefault(node.id, []).append(error.id)

    async def _record_model_error(
        self, run: RunState, node: FlowNode, exc: FlowModelError, started_at, attempt: int = 0
    ) -> None:
        await self._recorder.record_step(
            run.log,
            node,
            StepStatus.FAILURE,
            started_at,
            error=StepError(code=exc.code, message=exc.message),
            retry_attempt=attempt,
        )
        await self._fail_run(run, exc.code, exc.message, node_id=node.id, context=exc.context)

    async def _on_node_failed(
        self, run: RunState, node: FlowNode, exc: NodeExecutionError, attempts: int
    ) -> list[_Next]:
        """A node gave up: follow its fault edges, apply the flow's continue strategy, or fail the run."""
        run.variables["$error"] = {"node_id": node.id, "code": exc.code, "message": exc.message}
        run.mark_completed(node.id)

        fault_edges = run.graph.outgoing(node.id, EdgeType.FAULT)
        if fault_edges:
            logger.info("node_failure_routed", execution_id=run.execution_id, node_id=node.id, via="fault_edge")
            return [(edge.target, edge.id) for edge in fault_edges]

        handling = run.flow.error_handling
        if handling is not None and handling.strategy == ErrorStrategy.CONTINUE:
            logger.info("node_failure_routed", execution_id=run.execution_id, node_id=node.id, via="continue")
            if handling.fallback_node_id:
                return [(handling.fallback_node_id, None)]
            return await self._select_next(run, node, NodeResult())

        await self._fail_run(
            run,
            exc.code,
            exc.message,
            node_id=node.id,
            stack=exc.stack,
            context={"attempts": attempts},
        )
        return []

    async def _fail_run(
        self,
        run: RunState,
        code: str,
        message: str,
        node_id: Optional[str] = None,
        stack: Optional[str] = None,
        context: Optional[dict] = None,
    ) -> None:
        if run.failure is not None:
            return
        run.failure = RunFailure(code=code, message=message, node_id=node_id, stack=stack)
        await self._errors.record(
            run.execution_id,
            code=code,
            message=message,
            severity=ErrorSeverity.CRITICAL,
            node_id=node_id,
            stack=stack,
            context=context,
        )

    # ─── Boundary events ──────────────────────────────────────────────

    async def _take_boundary(
        self, run: RunState, host: FlowNode, boundary: FlowNode, started_at, attempt: int
    ) -> list[_Next]:
        logger.info(
            "boundary_event_fired",
            execution_id=run.execution_id,
            host_id=host.id,
            boundary_id=boundary.id,
        )
        await self._recorder.record_step(
            run.log,
            host,
            StepStatus.SKIPPED,
            started_at,
            error=StepError(
                code=ErrorCode.BOUNDARY_EVENT_FIRED,
                message=f"Interrupted by boundary event '{boundary.id}'",
            ),
            retry_attempt=attempt,
        )
        run.mark_completed(host.id)

        executor = self._registry.get(boundary.action)
        result = await executor.run(boundary, self._node_context(run))
        self._apply_result(run, boundary, result)
        await self._recorder.record_step(run.log, boundary, StepStatus.SUCCESS, utc_now(), output=result.output)
        run.mark_completed(boundary.id)
        return await self._select_next(run, boundary, result)

    # ─── Suspension & resume ──────────────────────────────────────────

    async def _claim_checkpoint(self, execution_id: str) -> tuple[RunState, Checkpoint]:
        """Consume a paused run's checkpoint and load it as active run state. Caller holds the execution lock."""
        log = await self._store.get_log(execution_id)
        if log is None:
            raise ExecutionNotFoundError(execution_id)
        if log.status != ExecutionStatus.PAUSED:
            raise InvalidStateTransitionError(log.status.value, ExecutionStatus.RUNNING.value, execution_id)

        checkpoint = await self._store.load_checkpoint(execution_id)
        if checkpoint is None:
            await self._fail_orphan(log, ErrorCode.ORPHANED_PAUSE, "Paused execution has no checkpoint")
            raise CheckpointNotFoundError(execution_id)

        flow = await self._flows.get(log.flow_name, log.flow_version)
        if flow is None:
            await self._fail_orphan(
                log,
                ErrorCode.CORRUPTED_SNAPSHOT,
                f"Flow '{log.flow_name}' v{log.flow_version} no longer exists",
                delete_checkpoint=True,
            )
            raise FlowNotFoundError(log.flow_name)

        lock_key = lock_key_for(flow.name, flow.concurrency, TriggerContext.from_log(log))
        try:
            run = self._checkpoints.restore(checkpoint, log, flow, lock_key)
        except SnapshotError as exc:
            await self._fail_orphan(log, exc.code, exc.message, delete_checkpoint=True)
            raise

        await self._recorder.transition(log, ExecutionStatus.RUNNING, persist=False)
        if await self._store.consume_checkpoint(log) is None:
            raise CheckpointNotFoundError(execution_id)
        self._active[execution_id] = run
        return run, checkpoint

    async def _release_claim(self, run: RunState, checkpoint: Checkpoint) -> None:
        """Put back a checkpoint claimed by a resume that turned out to be invalid."""
        self._active.pop(run.execution_id, None)
        await self._recorder.transition(run.log, ExecutionStatus.PAUSED, persist=False)
        await self._store.suspend(run.log, checkpoint)

    def _release_manual_pauses(self, run: RunState) -> list[_Next]:
        entries = []
        for node_id, entry in list(run.suspended.items()):
            if entry.reason == CheckpointReason.MANUAL_PAUSE:
                run.suspended.pop(node_id)
                entries.append((node_id, entry.via_edge_id))
        return entries

    async def _complete_suspended(
        self,
        run: RunState,
        node: FlowNode,
        entry: SuspendedNode,
        payload: ResumePayload,
        checkpoint: Checkpoint,
    ) -> list[_Next]:
        """Log a suspended node as done now that its signal arrived, and pick its successors."""
        executor = self._registry.get(node.action)
        output = executor.on_resume(node, payload) if executor else {}
        result = NodeResult(output=output)
        self._apply_result(run, node, result)
        await self._recorder.record_step(run.log, node, StepStatus.SUCCESS, checkpoint.created_at, output=output)
        run.mark_completed(node.id)
        return await self._select_next(run, node, result)

    async def _fail_orphan(
        self, log: ExecutionLog, code: str, message: str, delete_checkpoint: bool = False
    ) -> None:
        """Force a paused run whose snapshot is unusable into ``failed``."""
        await self._errors.record(log.id, code=code, message=message, severity=ErrorSeverity.CRITICAL)
        log.error = StepError(code=code, message=message)
        await self._recorder.transition(log, ExecutionStatus.FAILED, persist=False)
        if delete_checkpoint:
            await self._store.consume_checkpoint(log)
        await self._store.update_log(log)
        await self._release_for_log(log)
        await self._notify(log)

    async def _release_for_log(self, log: ExecutionLog) -> None:
        flow = await self._flows.get(log.flow_name, log.flow_version)
        lock_key = (
            lock_key_for(flow.name, flow.concurrency, TriggerContext.from_log(log)) if flow else log.flow_name
        )
        await self._controller.release(lock_key, log.id)

    # ─── Settling ─────────────────────────────────────────────────────

    async def _settle(self, run: RunState) -> None:
        if run.failure is not None:
            await self._finish(run, ExecutionStatus.FAILED)
        elif run.cancel_requested:
            await self._finish(run, ExecutionStatus.CANCELLED)
        elif run.suspended or run.pending_joins:
            await self._suspend(run)
        else:
            await self._finish(run, ExecutionStatus.COMPLETED)

    async def _suspend(self, run: RunState) -> None:
        checkpoint = self._checkpoints.snapshot(run)
        run.log.variables = copy.deepcopy(checkpoint.variables)
        await self._recorder.transition(run.log, ExecutionStatus.PAUSED, persist=False)
        await self._store.suspend(run.log, checkpoint)
        self._active.pop(run.execution_id, None)
        logger.info(
            "execution_paused",
            execution_id=run.execution_id,
            reason=checkpoint.reason.value,
            current_node_id=checkpoint.current_node_id,
        )

    async def _finish(self, run: RunState, status: ExecutionStatus) -> None:
        log = run.log
        log.variables = self._checkpoints.serialize_variables(run.variables)
        if status == ExecutionStatus.COMPLETED:
            log.output = {
                variable.name: copy.deepcopy(run.variables.get(variable.name))
                for variable in run.flow.variables
                if variable.is_output
            }
        if run.failure is not None:
            log.error = StepError(code=run.failure.code, message=run.failure.message, stack=run.failure.stack)
        elif status == ExecutionStatus.CANCELLED:
            log.error = StepError(code=ErrorCode.EXECUTION_CANCELLED, message="Execution was cancelled")
        await self._recorder.transition(log, status)
        self._active.pop(run.execution_id, None)
        await self._controller.release(run.lock_key, run.execution_id)
        logger.info(
            "execution_finished",
            execution_id=run.execution_id,
            flow_name=run.flow.name,
            status=status.value,
            duration_ms=log.duration_ms,
            steps=len(log.steps),
        )
        await self._notify(log)

    async def _notify(self, log: ExecutionLog) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(log.model_copy(deep=True))
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("completion_listener_failed", execution_id=log.id)
