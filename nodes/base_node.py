"""
Base node executor interface.

Every node action (decision, http_request, create_record, wait, ...) is
handled by a ``NodeExecutor`` subclass registered in the ``NodeRegistry``.
Executors receive the node definition and a ``NodeContext`` and return a
``NodeResult``; failures are raised as ``NodeExecutionError`` so the engine
can decide between retrying, routing a fault edge or failing the run.
"""

import asyncio
import time
import traceback
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from automation.context import TriggerContext
from automation.expressions import ExpressionEvaluator
from automation.graph import FlowGraph
from automation.models import FlowDefinition, FlowEdge, FlowNode, ResumePayload
from core.constants import CheckpointReason, ErrorCode, NodeAction, TimeoutBehavior, WaitEventType
from core.exceptions import NodeExecutionError

logger = structlog.get_logger(__name__)


@dataclass
class Suspension:
    """Returned by executors that park their branch until a resume signal."""

    reason: CheckpointReason
    expires_at: Optional[datetime] = None
    timeout_behavior: TimeoutBehavior = TimeoutBehavior.FAIL
    resume_event: Optional[WaitEventType] = None


@dataclass
class NodeResult:
    """Standardized result from node execution.

    ``next_edges`` overrides edge selection (decisions, gateways, loops);
    when None the engine follows every outgoing edge whose condition holds.
    """

    output: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    input: Optional[Dict[str, Any]] = None
    next_edges: Optional[list[FlowEdge]] = None
    suspend: Optional[Suspension] = None
    forget_nodes: list[str] = field(default_factory=list)
    duration_ms: float = 0


@dataclass
class NodeServices:
    """External collaborators available to executors."""

    record_store: Any = None
    http: Any = None
    sandbox: Any = None
    connectors: Any = None
    engine: Any = None


@dataclass
class NodeContext:
    """What an executor can see of the running execution."""

    execution_id: str
    flow: FlowDefinition
    graph: FlowGraph
    variables: Dict[str, Any]
    trigger: TriggerContext
    services: NodeServices
    settings: Any

    def render(self, value: Any) -> Any:
        return ExpressionEvaluator.resolve_config(value, self.variables)

    def condition(self, expression: Optional[str]) -> bool:
        return ExpressionEvaluator.evaluate_condition(expression, self.variables)


class NodeExecutor(ABC):
    """
    Abstract base class for all node executors.

    Subclasses must implement:
    - execute(node, context) -> NodeResult
    - action (class attribute)
    - display_name (class attribute)
    """

    action: NodeAction
    display_name: str = "Base Node"
    description: str = "Abstract node executor"

    # Capabilities
    can_attach_boundary_event: bool = False
    supports_pause: bool = False
    supports_retry: bool = True
    reentrant: bool = False

    @abstractmethod
    async def execute(self, node: FlowNode, context: NodeContext) -> NodeResult:
        """
        Execute the node.

        Args:
            node: Node definition (config is unrendered)
            context: Execution context with working memory and collaborators

        Returns:
            NodeResult with output, variable updates and routing hints

        Raises:
            NodeExecutionError: If the node failed
        """

    def on_resume(self, node: FlowNode, payload: ResumePayload) -> Dict[str, Any]:
        """Output recorded for a suspended node when its resume signal arrives."""
        output: Dict[str, Any] = {"event_type": payload.event_type.value}
        if payload.signal_name:
            output["signal_name"] = payload.signal_name
        if payload.resumed_by:
            output["resumed_by"] = payload.resumed_by
        if payload.variables:
            output["variables"] = dict(payload.variables)
        if payload.webhook_payload is not None:
            output["webhook_payload"] = payload.webhook_payload
        return output

    async def run(self, node: FlowNode, context: NodeContext, timeout: Optional[float] = None) -> NodeResult:
        """
        Run the executor with timing, timeout and error normalisation.

        This is the entry point called by the engine.
        """
        start = time.monotonic()
        logger.debug(
            "node_starting",
            execution_id=context.execution_id,
            node_id=node.id,
            action=self.action.value,
        )
        try:
            if timeout:
                result = await asyncio.wait_for(self.execute(node, context), timeout)
            else:
                result = await self.execute(node, context)
        except asyncio.TimeoutError as exc:
            raise NodeExecutionError(
                f"Node '{node.id}' timed out after {timeout}s",
                code=ErrorCode.NODE_TIMEOUT,
                retryable=True,
            ) from exc
        except NodeExecutionError as exc:
            logger.info(
                "node_failed",
                execution_id=context.execution_id,
                node_id=node.id,
                code=exc.code,
                retryable=exc.retryable,
                duration_ms=round((time.monotonic() - start) * 1000, 2),
            )
            raise
        except Exception as exc:
            logger.error(
                "node_crashed",
                execution_id=context.execution_id,
                node_id=node.id,
                error=str(exc),
            )
            raise NodeExecutionError(
                str(exc) or type(exc).__name__,
                code=ErrorCode.NODE_ERROR,
                stack=traceback.format_exc(),
            ) from exc

        result.duration_ms = (time.monotonic() - start) * 1000
        logger.debug(
            "node_completed",
            execution_id=context.execution_id,
            node_id=node.id,
            suspended=result.suspend is not None,
            duration_ms=round(result.duration_ms, 2),
        )
        return result

    @classmethod
    def describe(cls) -> Dict[str, Any]:
        return {
            "action": cls.action.value,
            "display_name": cls.display_name,
            "description": cls.description,
            "can_attach_boundary_event": cls.can_attach_boundary_event,
            "supports_pause": cls.supports_pause,
            "supports_retry": cls.supports_retry,
            "config_schema": cls.get_config_schema(),
        }

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        """
        Return JSON schema for node configuration.

        Override in subclasses to define expected config shape.
        """
        return {"type": "object", "properties": {}}
