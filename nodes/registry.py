"""
Node Executor Registry: the mapping from node actions to executors.

Built-in executors are registered on construction; hosts can add, replace
or remove executors at runtime.
"""

from typing import Dict, Optional, Union

import structlog

from core.constants import NodeAction
from nodes.base_node import NodeExecutor
from nodes.implementations.control import CONTROL_NODE_TYPES
from nodes.implementations.http_node import HTTP_NODE_TYPES
from nodes.implementations.records import RECORD_NODE_TYPES
from nodes.implementations.script_node import SCRIPT_NODE_TYPES

logger = structlog.get_logger(__name__)


class NodeRegistry:
    """Central registry for node executors, keyed by action."""

    def __init__(self, register_builtins: bool = True):
        self._executors: Dict[NodeAction, NodeExecutor] = {}
        if register_builtins:
            self._register_builtin_executors()

    def _register_builtin_executors(self):
        """Register all built-in node executors."""
        for node_types in (CONTROL_NODE_TYPES, RECORD_NODE_TYPES, HTTP_NODE_TYPES, SCRIPT_NODE_TYPES):
            for action, executor_class in node_types.items():
                self._executors[action] = executor_class()

    def register(self, executor: NodeExecutor) -> None:
        """Register an executor; replaces (with a warning) any executor for the same action."""
        action = NodeAction(executor.action)
        if action in self._executors:
            logger.warning(
                "node_executor_replaced",
                action=action.value,
                previous=type(self._executors[action]).__name__,
                replacement=type(executor).__name__,
            )
        self._executors[action] = executor

    def unregister(self, action: Union[NodeAction, str]) -> bool:
        return self._executors.pop(NodeAction(action), None) is not None

    def get(self, action: Union[NodeAction, str]) -> Optional[NodeExecutor]:
        """Get the executor for an action."""
        try:
            return self._executors.get(NodeAction(action))
        except ValueError:
            return None

    def can_host_boundary(self, action: Union[NodeAction, str]) -> bool:
        executor = self.get(action)
        return bool(executor and executor.can_attach_boundary_event)

    def list_all(self) -> list:
        """List all registered executors with metadata."""
        return [executor.describe() for executor in self._executors.values()]

    @property
    def available_types(self) -> list:
        return [action.value for action in self._executors]
