"""Indexed view over a flow definition's nodes and edges.

Nodes and edges stay in flat lists on the definition; ``FlowGraph`` builds
id-keyed lookups so the engine never follows object references. Validation
happens here once, at publish time.
"""

from collections import deque
from typing import Optional

from automation.models import FlowDefinition, FlowEdge, FlowNode
from core.constants import EdgeType, NodeAction


class FlowGraph:
    """Read-only lookups over a single flow version."""

    def __init__(self, flow: FlowDefinition):
        self.flow = flow
        self._nodes: dict[str, FlowNode] = {}
        self._edges: dict[str, FlowEdge] = {}
        self._outgoing: dict[str, list[FlowEdge]] = {}
        self._incoming: dict[str, list[FlowEdge]] = {}
        self._boundaries: dict[str, list[FlowNode]] = {}

        for node in flow.nodes:
            self._nodes[node.id] = node
            self._outgoing.setdefault(node.id, [])
            self._incoming.setdefault(node.id, [])

        # Declaration order is preserved; decisions rely on it
        for edge in flow.edges:
            self._edges[edge.id] = edge
            self._outgoing.setdefault(edge.source, []).append(edge)
            self._incoming.setdefault(edge.target, []).append(edge)

        for node in flow.nodes:
            if node.action == NodeAction.BOUNDARY_EVENT:
                host = node.config.get("attached_to")
                if host:
                    self._boundaries.setdefault(host, []).append(node)

    # ─── Lookups ──────────────────────────────────────────────────────

    def node(self, node_id: str) -> FlowNode:
        return self._nodes[node_id]

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def edge(self, edge_id: str) -> FlowEdge:
        return self._edges[edge_id]

    @property
    def nodes(self) -> list[FlowNode]:
        return list(self.flow.nodes)

    def outgoing(self, node_id: str, edge_type: EdgeType = EdgeType.NORMAL) -> list[FlowEdge]:
        return [e for e in self._outgoing.get(node_id, []) if e.type == edge_type]

    def incoming(self, node_id: str, edge_type: EdgeType = EdgeType.NORMAL) -> list[FlowEdge]:
        return [e for e in self._incoming.get(node_id, []) if e.type == edge_type]

    def boundaries_for(self, node_id: str) -> list[FlowNode]:
        """Boundary event nodes attached to ``node_id``."""
        return list(self._boundaries.get(node_id, []))

    def start_node(self) -> Optional[FlowNode]:
        starts = [n for n in self.flow.nodes if n.action == NodeAction.START]
        return starts[0] if len(starts) == 1 else None

    # ─── Validation ───────────────────────────────────────────────────

    def validate(self, can_host_boundary=None) -> list[str]:
        """
        Check the structural invariants a flow must satisfy before it can be activated.

        Args:
            can_host_boundary: Optional callable ``(action) -> bool`` telling whether
                nodes of that action may carry boundary events.

        Returns:
            List of human-readable problems; empty when the graph is valid.
        """
        errors: list[str] = []

        if not self.flow.nodes:
            return ["Flow has no nodes"]

        seen: set[str] = set()
        for node in self.flow.nodes:
            if node.id in seen:
                errors.append(f"Duplicate node id '{node.id}'")
            seen.add(node.id)

        for edge in self.flow.edges:
            if edge.source not in self._nodes:
                errors.append(f"Edge '{edge.id}' references unknown source '{edge.source}'")
            if edge.target not in self._nodes:
                errors.append(f"Edge '{edge.id}' references unknown target '{edge.target}'")
        if errors:
            return errors

        starts = [n for n in self.flow.nodes if n.action == NodeAction.START]
        if len(starts) != 1:
            errors.append(f"Flow must have exactly one start node, found {len(starts)}")
        for start in starts:
            if self.incoming(start.id):
                errors.append(f"Start node '{start.id}' must not have incoming edges")

        for node in self.flow.nodes:
            if node.action == NodeAction.DECISION:
                defaults = [e for e in self.outgoing(node.id) if e.is_default]
                if len(defaults) > 1:
                    errors.append(f"Decision '{node.id}' has more than one default edge")
            if node.action == NodeAction.BOUNDARY_EVENT:
                errors.extend(self._validate_boundary(node, can_host_boundary))

        if len(starts) == 1:
            reachable = self._reachable_from(starts[0].id)
            for node in self.flow.nodes:
                if node.id not in reachable:
                    errors.append(f"Node '{node.id}' is not reachable from the start node")

        for node in self.flow.nodes:
            if node.action == NodeAction.PARALLEL_GATEWAY:
                for edge in self.outgoing(node.id):
                    if not self._branch_reaches_join(edge.target):
                        errors.append(
                            f"Branch '{edge.id}' of parallel gateway '{node.id}' never reaches a join"
                        )

        if self.flow.error_handling and self.flow.error_handling.fallback_node_id:
            if self.flow.error_handling.fallback_node_id not in self._nodes:
                errors.append(
                    f"Fallback node '{self.flow.error_handling.fallback_node_id}' does not exist"
                )

        return errors

    def _validate_boundary(self, node: FlowNode, can_host_boundary) -> list[str]:
        host_id = node.config.get("attached_to")
        if not host_id:
            return [f"Boundary event '{node.id}' is not attached to a node"]
        if host_id not in self._nodes:
            return [f"Boundary event '{node.id}' is attached to unknown node '{host_id}'"]
        host = self._nodes[host_id]
        if can_host_boundary is not None and not can_host_boundary(host.action):
            return [f"Node '{host_id}' ({host.action.value}) cannot host boundary events"]
        if self.incoming(node.id):
            return [f"Boundary event '{node.id}' must not have incoming edges"]
        return []

    def _successors(self, node_id: str) -> list[str]:
        targets = [e.target for e in self._outgoing.get(node_id, [])]
        targets.extend(b.id for b in self._boundaries.get(node_id, []))
        return targets

    def _reachable_from(self, node_id: str) -> set[str]:
        reachable = {node_id}
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for target in self._successors(current):
                if target not in reachable:
                    reachable.add(target)
                    queue.append(target)
        return reachable

    def _branch_reaches_join(self, node_id: str) -> bool:
        """True when every path from ``node_id`` hits a join before an end node."""
        visited: set[str] = set()
        stack = [node_id]
        while stack:
            current = stack.pop()
            if current in visited:
                continue
            visited.add(current)
            node = self._nodes[current]
            if node.action == NodeAction.JOIN_GATEWAY:
                continue
            if node.action == NodeAction.END:
                return False
            targets = [e.target for e in self.outgoing(current)]
            if not targets:
                return False
            stack.extend(targets)
        return True
