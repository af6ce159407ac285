"""Control-flow nodes: start/end, gateways, waits, screens, assignments, loops and subflows."""

import asyncio
import copy
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import structlog

from automation.context import TriggerContext
from automation.expressions import ExpressionError, ExpressionEvaluator
from automation.models import FlowNode, ResumePayload
from core.constants import (
    CheckpointReason,
    EdgeType,
    ErrorCode,
    ExecutionStatus,
    NodeAction,
    TimeoutBehavior,
    TriggerType,
    WaitEventType,
)
from core.exceptions import AutomationException, FlowModelError, NodeExecutionError
from core.utils import ensure_utc, new_id, utc_now
from nodes.base_node import NodeContext, NodeExecutor, NodeResult, Suspension

logger = structlog.get_logger(__name__)


class StartNode(NodeExecutor):
    action = NodeAction.START
    display_name = "Start"
    description = "Entry point of the flow"

    async def execute(self, node: FlowNode, context: NodeContext) -> NodeResult:
        return NodeResult()


class EndNode(NodeExecutor):
    action = NodeAction.END
    display_name = "End"
    description = "Terminates the branch that reaches it"

    async def execute(self, node: FlowNode, context: NodeContext) -> NodeResult:
        return NodeResult(next_edges=[])


class DecisionNode(NodeExecutor):
    """Exclusive branch: the first outgoing edge (declaration order) whose condition holds.

    Edges without a condition always hold. The ``is_default`` edge is taken
    only when nothing else matched; with no match and no default the flow is
    malformed.
    """

    action = NodeAction.DECISION
    display_name = "Decision"
    description = "Route to the first edge whose condition is true"

    async def execute(self, node: FlowNode, context: NodeContext) -> NodeResult:
        default_edge = None
        for edge in context.graph.outgoing(node.id):
            if edge.is_default:
                default_edge = default_edge or edge
                continue
            if context.condition(edge.condition):
                return NodeResult(output={"edge_id": edge.id, "label": edge.label}, next_edges=[edge])

        if default_edge is not None:
            return NodeResult(
                output={"edge_id": default_edge.id, "label": default_edge.label, "default": True},
                next_edges=[default_edge],
            )
        raise FlowModelError(
            f"Decision '{node.id}' has no edge matching the current variables and no default edge",
            code=ErrorCode.NO_MATCHING_EDGE,
        )


class ParallelGatewayNode(NodeExecutor):
    action = NodeAction.PARALLEL_GATEWAY
    display_name = "Parallel Gateway"
    description = "Start every outgoing branch concurrently"

    async def execute(self, node: FlowNode, context: NodeContext) -> NodeResult:
        edges = context.graph.outgoing(node.id)
        return NodeResult(output={"branches": [e.id for e in edges]}, next_edges=edges)


class JoinGatewayNode(NodeExecutor):
    """Runs once, after every incoming branch arrived. The barrier itself lives in the engine."""

    action = NodeAction.JOIN_GATEWAY
    display_name = "Join Gateway"
    description = "Wait for all incoming branches, then continue once"

    async def execute(self, node: FlowNode, context: NodeContext) -> NodeResult:
        return NodeResult(output={"joined": [e.id for e in context.graph.incoming(node.id)]})


def _deadline(config: Dict[str, Any], key_ms: str, key_at: str) -> Optional[datetime]:
    if config.get(key_at):
        value = config[key_at]
        when = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
        return ensure_utc(when)
    if config.get(key_ms):
        return utc_now() + timedelta(milliseconds=int(config[key_ms]))
    return None


class WaitNode(NodeExecutor):
    """Suspend the branch until a signal, a timer or an approval.

    Config:
        event_type: timer | signal | webhook | manual | condition | approval (default: signal)
        duration_ms / until: Timer delay, or absolute ISO timestamp (timer events)
        condition: Expression; for condition waits the node passes straight
            through when it already holds
        signal_name: Name the resume signal is expected to carry
        timeout_ms: Deadline for non-timer waits (default: WAIT_DEFAULT_TIMEOUT_MS, 0 disables)
        timeout_behavior: fail | continue (default: fail)
    """

    action = NodeAction.WAIT
    display_name = "Wait"
    description = "Pause until an external event, a timer or an approval"
    can_attach_boundary_event = True
    supports_pause = True

    async def execute(self, node: FlowNode, context: NodeContext) -> NodeResult:
        config = context.render(node.config)
        event_type = WaitEventType(config.get("event_type", WaitEventType.SIGNAL.value))

        if event_type == WaitEventType.CONDITION and context.condition(node.config.get("condition")):
            return NodeResult(output={"event_type": event_type.value, "immediate": True})

        reason = CheckpointReason.APPROVAL if event_type == WaitEventType.APPROVAL else CheckpointReason.WAIT
        if event_type == WaitEventType.TIMER:
            expires_at = _deadline(config, "duration_ms", "until")
            if expires_at is None:
                raise FlowModelError(f"Timer wait '{node.id}' needs duration_ms or until")
            # Timer elapsing is the resume signal, not a failure
            return NodeResult(
                output={"event_type": event_type.value},
                suspend=Suspension(
                    reason=reason,
                    expires_at=expires_at,
                    timeout_behavior=TimeoutBehavior.CONTINUE,
                    resume_event=WaitEventType.TIMER,
                ),
            )

        timeout_ms = config.get("timeout_ms", context.settings.WAIT_DEFAULT_TIMEOUT_MS)
        expires_at = utc_now() + timedelta(milliseconds=int(timeout_ms)) if timeout_ms else None
        return NodeResult(
            output={"event_type": event_type.value, "signal_name": config.get("signal_name")},
            suspend=Suspension(
                reason=reason,
                expires_at=expires_at,
                timeout_behavior=TimeoutBehavior(config.get("timeout_behavior", TimeoutBehavior.FAIL.value)),
                resume_event=event_type,
            ),
        )


class ScreenNode(NodeExecutor):
    """Collect human input.

    Config:
        fields: Field descriptors shown to the user
        timeout_ms: Optional deadline
        timeout_behavior: fail | continue (default: fail)
    """

    action = NodeAction.SCREEN
    display_name = "Screen"
    description = "Pause until a user submits the screen"
    can_attach_boundary_event = True
    supports_pause = True

    async def execute(self, node: FlowNode, context: NodeContext) -> NodeResult:
        config = context.render(node.config)
        return NodeResult(
            output={"fields": config.get("fields", [])},
            suspend=Suspension(
                reason=CheckpointReason.SCREEN_INPUT,
                expires_at=_deadline(config, "timeout_ms", "until"),
                timeout_behavior=TimeoutBehavior(config.get("timeout_behavior", TimeoutBehavior.FAIL.value)),
                resume_event=WaitEventType.SCREEN,
            ),
        )

    def on_resume(self, node: FlowNode, payload: ResumePayload) -> Dict[str, Any]:
        output = super().on_resume(node, payload)
        output["submitted"] = dict(payload.variables)
        return output


class BoundaryEventNode(NodeExecutor):
    """Attached to a host node; executed only when its timer beats the host.

    Config:
        attached_to: Host node id
        duration_ms: Timer duration
        event_type: Informational (default: timer)
    """

    action = NodeAction.BOUNDARY_EVENT
    display_name = "Boundary Event"
    description = "Interrupt a running or waiting node when its timer fires"

    async def execute(self, node: FlowNode, context: NodeContext) -> NodeResult:
        return NodeResult(
            output={
                "attached_to": node.config.get("attached_to"),
                "event_type": node.config.get("event_type", "timer"),
            }
        )


class AssignmentNode(NodeExecutor):
    """Set flow variables.

    Config:
        assignments: list of {variable, value | expression, operator}
            operator: set (default), add, subtract, append, remove
    """

    action = NodeAction.ASSIGNMENT
    display_name = "Assignment"
    description = "Set or update flow variables"

    async def execute(self, node: FlowNode, context: NodeContext) -> NodeResult:
        updates: Dict[str, Any] = {}
        view = dict(context.variables)
        for assignment in node.config.get("assignments", []):
            name = assignment.get("variable")
            if not name:
                raise FlowModelError(f"Assignment in '{node.id}' is missing 'variable'")
            if "expression" in assignment:
                try:
                    value = ExpressionEvaluator.evaluate(assignment["expression"], view)
                except ExpressionError as exc:
                    raise NodeExecutionError(str(exc), code=ErrorCode.NODE_ERROR) from exc
            else:
                value = ExpressionEvaluator.resolve_config(assignment.get("value"), view)

            operator = assignment.get("operator", "set")
            current = view.get(name)
            if operator == "set":
                result = value
            elif operator == "add":
                result = (current or 0) + value
            elif operator == "subtract":
                result = (current or 0) - value
            elif operator == "append":
                result = list(current or []) + [value]
            elif operator == "remove":
                result = [item for item in (current or []) if item != value]
            else:
                raise FlowModelError(f"Unknown assignment operator '{operator}' in '{node.id}'")
            updates[name] = result
            view[name] = result
        return NodeResult(output={"assigned": sorted(updates)}, variables=updates)


class LoopNode(NodeExecutor):
    """Iterate over a collection.

    Each visit either starts the next iteration (following the body edge) or,
    once the collection is exhausted, follows the remaining edges. The body
    must lead back to the loop node. Iteration state lives in the variable
    named after the node id, so it survives checkpoints.

    Config:
        collection: Expression or literal list (required)
        item_variable: Variable for the current element (default: item)
        index_variable: Variable for the current index (default: index)
        body_edge: Id of the edge into the body (default: first edge labelled "body")
    """

    action = NodeAction.LOOP
    display_name = "Loop"
    description = "Run the body once per collection element"
    reentrant = True

    async def execute(self, node: FlowNode, context: NodeContext) -> NodeResult:
        edges = context.graph.outgoing(node.id)
        body_edge_id = node.config.get("body_edge")
        body = next(
            (e for e in edges if e.id == body_edge_id or (body_edge_id is None and (e.label or "").lower() == "body")),
            None,
        )
        if body is None:
            raise FlowModelError(f"Loop '{node.id}' has no body edge")
        exits = [e for e in edges if e.id != body.id]

        state = context.variables.get(node.id)
        if not isinstance(state, dict) or "items" not in state or state.get("done"):
            collection = node.config.get("collection")
            if isinstance(collection, str):
                try:
                    collection = ExpressionEvaluator.evaluate(collection, context.variables)
                except ExpressionError as exc:
                    raise NodeExecutionError(str(exc), code=ErrorCode.NODE_ERROR) from exc
            if not isinstance(collection, (list, tuple)):
                raise NodeExecutionError(
                    f"Loop '{node.id}' collection is not a list", code=ErrorCode.NODE_ERROR
                )
            state = {"items": list(collection), "index": -1}

        next_index = state["index"] + 1
        item_var = node.config.get("item_variable", "item")
        index_var = node.config.get("index_variable", "index")
        if next_index >= len(state["items"]):
            done = {"items": state["items"], "index": len(state["items"]), "done": True}
            return NodeResult(output=done, next_edges=exits)

        output = {"items": state["items"], "index": next_index}
        return NodeResult(
            output=output,
            variables={item_var: copy.deepcopy(state["items"][next_index]), index_var: next_index},
            next_edges=[body],
            forget_nodes=self._body_nodes(node, body.target, context),
        )

    @staticmethod
    def _body_nodes(node: FlowNode, first: str, context: NodeContext) -> list[str]:
        body: list[str] = []
        queue = deque([first])
        while queue:
            current = queue.popleft()
            if current == node.id or current in body:
                continue
            body.append(current)
            for edge in context.graph.outgoing(current):
                queue.append(edge.target)
            for edge in context.graph.outgoing(current, EdgeType.FAULT):
                queue.append(edge.target)
        return body


class SubflowNode(NodeExecutor):
    """Run another flow.

    Config:
        flow_name: Flow to run (required)
        params: Input parameters for the child (templated)
        wait: Wait for the child to finish (default: true)
        output_variable: Variable that receives the child's output variables
    """

    action = NodeAction.SUBFLOW
    display_name = "Subflow"
    description = "Execute another flow as a step"
    can_attach_boundary_event = True

    async def execute(self, node: FlowNode, context: NodeContext) -> NodeResult:
        config = context.render(node.config)
        flow_name = config.get("flow_name")
        if not flow_name:
            raise FlowModelError(f"Subflow '{node.id}' is missing flow_name")
        engine = context.services.engine
        if engine is None:
            raise NodeExecutionError("Subflows need an engine", code=ErrorCode.SUBFLOW_FAILED)

        child_context = TriggerContext(
            type=TriggerType.SUBFLOW,
            record_id=context.trigger.record_id,
            record=context.variables.get("$record"),
            object=context.trigger.object,
            user_id=context.trigger.user_id,
            params=dict(config.get("params") or {}),
            metadata={"parent_execution_id": context.execution_id, "parent_node_id": node.id},
            tenant_id=context.trigger.tenant_id,
        )

        if not config.get("wait", True):
            child_id = new_id()
            asyncio.ensure_future(engine.execute(flow_name, child_context, execution_id=child_id))
            return NodeResult(output={"execution_id": child_id, "status": ExecutionStatus.PENDING.value})

        try:
            child = await engine.execute(flow_name, child_context)
        except AutomationException as exc:
            raise NodeExecutionError(
                f"Subflow '{flow_name}' could not start: {exc.message}",
                code=ErrorCode.SUBFLOW_FAILED,
                retryable=exc.code == ErrorCode.CONCURRENT_EXECUTION_LIMIT,
            ) from exc

        if child.status != ExecutionStatus.COMPLETED:
            raise NodeExecutionError(
                f"Subflow '{flow_name}' ended with status {child.status.value}",
                code=ErrorCode.SUBFLOW_FAILED,
                context={"child_execution_id": child.id},
            )
        variables = {}
        if config.get("output_variable"):
            variables[config["output_variable"]] = dict(child.output)
        return NodeResult(
            output={"execution_id": child.id, "status": child.status.value, "output": dict(child.output)},
            variables=variables,
        )


CONTROL_NODE_TYPES = {
    NodeAction.START: StartNode,
    NodeAction.END: EndNode,
    NodeAction.DECISION: DecisionNode,
    NodeAction.PARALLEL_GATEWAY: ParallelGatewayNode,
    NodeAction.JOIN_GATEWAY: JoinGatewayNode,
    NodeAction.WAIT: WaitNode,
    NodeAction.SCREEN: ScreenNode,
    NodeAction.BOUNDARY_EVENT: BoundaryEventNode,
    NodeAction.ASSIGNMENT: AssignmentNode,
    NodeAction.LOOP: LoopNode,
    NodeAction.SUBFLOW: SubflowNode,
}
