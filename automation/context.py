"""Trigger input and per-execution working state."""

from dataclasses import dataclass, field
from typing import Any, Optional

from automation.graph import FlowGraph
from automation.models import ExecutionLog, ExecutionTrigger, FlowDefinition, SuspendedNode
from core.constants import TriggerType


@dataclass
class TriggerContext:
    """What started a run: a record change, a schedule tick, an API call, ...

    ``params`` seeds the flow's input variables; ``record`` is exposed to
    expressions as ``$record``.
    """

    type: TriggerType = TriggerType.MANUAL
    record_id: Optional[str] = None
    record: Optional[dict[str, Any]] = None
    object: Optional[str] = None
    user_id: Optional[str] = None
    params: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    tenant_id: Optional[str] = None

    def to_trigger(self) -> ExecutionTrigger:
        return ExecutionTrigger(
            type=self.type,
            record_id=self.record_id,
            object=self.object,
            user_id=self.user_id,
            metadata=dict(self.metadata),
        )

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "record_id": self.record_id,
            "record": self.record,
            "object": self.object,
            "user_id": self.user_id,
            "params": self.params,
            "metadata": self.metadata,
            "tenant_id": self.tenant_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TriggerContext":
        return cls(
            type=TriggerType(data.get("type", TriggerType.MANUAL.value)),
            record_id=data.get("record_id"),
            record=data.get("record"),
            object=data.get("object"),
            user_id=data.get("user_id"),
            params=data.get("params") or {},
            metadata=data.get("metadata") or {},
            tenant_id=data.get("tenant_id"),
        )

    @classmethod
    def from_log(cls, log: ExecutionLog) -> "TriggerContext":
        """Rebuild a trigger context for a resumed run from its persisted log."""
        trigger = log.trigger
        return cls(
            type=trigger.type,
            record_id=trigger.record_id,
            object=trigger.object,
            user_id=trigger.user_id,
            metadata=dict(trigger.metadata),
            tenant_id=log.tenant_id,
        )


@dataclass
class RunFailure:
    """The failure that ended a run; set by the first branch that gives up."""

    code: str
    message: str
    node_id: Optional[str] = None
    stack: Optional[str] = None


@dataclass
class RunState:
    """Mutable state of one execution while it is loaded in this process.

    Everything needed to resume lives either here or in the ExecutionLog;
    ``CheckpointManager`` turns it into a Checkpoint and back.
    """

    log: ExecutionLog
    flow: FlowDefinition
    graph: FlowGraph
    context: TriggerContext
    lock_key: str
    variables: dict[str, Any] = field(default_factory=dict)
    completed: list[str] = field(default_factory=list)
    suspended: dict[str, SuspendedNode] = field(default_factory=dict)
    join_arrivals: dict[str, set[str]] = field(default_factory=dict)
    joins_claimed: set[str] = field(default_factory=set)
    open_errors: dict[str, list[str]] = field(default_factory=dict)
    retrying_branches: int = 0
    cancel_requested: bool = False
    pause_requested: bool = False
    failure: Optional[RunFailure] = None

    @property
    def execution_id(self) -> str:
        return self.log.id

    def is_completed(self, node_id: str) -> bool:
        return node_id in self.completed

    def mark_completed(self, node_id: str) -> None:
        if node_id not in self.completed:
            self.completed.append(node_id)

    def forget_completed(self, node_ids) -> None:
        """Drop nodes from the replay guard so a loop body can run again."""
        drop = set(node_ids)
        self.completed = [n for n in self.completed if n not in drop]
        # Joins inside the body reopen their barrier
        self.joins_claimed -= drop
        for node_id in drop:
            self.join_arrivals.pop(node_id, None)

    @property
    def should_stop(self) -> bool:
        return self.cancel_requested or self.failure is not None

    @property
    def pending_joins(self) -> dict[str, set[str]]:
        return {
            join_id: arrived
            for join_id, arrived in self.join_arrivals.items()
            if join_id not in self.joins_claimed and arrived
        }
