"""Terse constructors for flow definitions used across the tests."""

from automation.models import FlowDefinition, FlowEdge, FlowNode, FlowVariable
from core.constants import FlowStatus, NodeAction


def node(node_id: str, action, **kwargs) -> FlowNode:
    return FlowNode(id=node_id, action=NodeAction(action), **kwargs)


def edge(source: str, target: str, edge_id: str = None, **kwargs) -> FlowEdge:
    return FlowEdge(id=edge_id or f"{source}__{target}", source=source, target=target, **kwargs)


def variable(name: str, **kwargs) -> FlowVariable:
    return FlowVariable(name=name, **kwargs)


def flow(name: str, nodes, edges, **kwargs) -> FlowDefinition:
    kwargs.setdefault("status", FlowStatus.ACTIVE)
    return FlowDefinition(name=name, nodes=list(nodes), edges=list(edges), **kwargs)


def chain(name: str, *middle, **kwargs) -> FlowDefinition:
    """start -> middle... -> end"""
    nodes = [node("start", "start"), *middle, node("end", "end")]
    edges = [edge(a.id, b.id) for a, b in zip(nodes, nodes[1:])]
    return flow(name, nodes, edges, **kwargs)


def approve_order_flow() -> FlowDefinition:
    """start -> decision(amount > 1000?) -> yes: wait(approval) -> end / no: end"""
    return flow(
        "approve_order",
        [
            node("start", "start"),
            node("check_amount", "decision"),
            node("await_approval", "wait", config={"event_type": "approval"}),
            node("end", "end"),
        ],
        [
            edge("start", "check_amount"),
            edge("check_amount", "await_approval", "yes", condition="amount > 1000"),
            edge("check_amount", "end", "no", is_default=True),
            edge("await_approval", "end"),
        ],
        variables=[variable("amount", type="number", is_input=True)],
    )
