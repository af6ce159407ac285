"""
Checkpoint snapshots of paused executions.

When every live branch of a run is parked (wait, screen, approval, an
incomplete join, a manual pause), the engine asks ``CheckpointManager`` for a
snapshot of the run state and hands it to the store together with the log's
``paused`` status in one atomic call. Resume goes the other way: the
checkpoint is consumed and turned back into a ``RunState`` pinned to the
flow version the run started with.
"""

import json
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from automation.context import RunState, TriggerContext
from automation.graph import FlowGraph
from automation.models import Checkpoint, ExecutionLog, FlowDefinition
from core.constants import CheckpointReason, ErrorCode
from core.exceptions import AutomationException

logger = structlog.get_logger(__name__)


class SnapshotError(AutomationException):
    """A checkpoint no longer matches the flow version it was taken against."""

    default_code = ErrorCode.CORRUPTED_SNAPSHOT

    def __init__(self, execution_id: str, detail: str):
        self.execution_id = execution_id
        super().__init__(f"Checkpoint of execution '{execution_id}' cannot be restored: {detail}")


class CheckpointManager:
    """Builds checkpoints from run state and restores run state from checkpoints."""

    def snapshot(self, run: RunState) -> Checkpoint:
        if not run.suspended and not run.pending_joins:
            raise ValueError(f"Execution {run.execution_id} has nothing suspended")

        suspended = list(run.suspended.values())
        if suspended:
            current_node_id = suspended[0].node_id
            reason = suspended[0].reason
        else:
            current_node_id = next(iter(run.pending_joins))
            reason = CheckpointReason.PARALLEL_JOIN

        checkpoint = Checkpoint(
            execution_id=run.execution_id,
            flow_name=run.flow.name,
            flow_version=run.flow.version,
            current_node_id=current_node_id,
            variables=self.serialize_variables(run.variables),
            completed_node_ids=list(run.completed),
            reason=reason,
            expires_at=self._earliest_deadline(run),
            suspended_nodes=[s.model_copy(deep=True) for s in suspended],
            join_arrivals={
                join_id: sorted(arrived) for join_id, arrived in run.pending_joins.items()
            },
        )
        logger.info(
            "checkpoint_created",
            execution_id=run.execution_id,
            current_node_id=current_node_id,
            reason=reason.value,
            suspended=[s.node_id for s in suspended],
            expires_at=checkpoint.expires_at.isoformat() if checkpoint.expires_at else None,
        )
        return checkpoint

    def restore(
        self,
        checkpoint: Checkpoint,
        log: ExecutionLog,
        flow: FlowDefinition,
        lock_key: str,
    ) -> RunState:
        """
        Rebuild run state from a checkpoint.

        Raises:
            SnapshotError: If the checkpoint references nodes the pinned flow version lacks
        """
        if flow.version != checkpoint.flow_version:
            raise SnapshotError(
                checkpoint.execution_id,
                f"flow version {flow.version} does not match checkpoint version {checkpoint.flow_version}",
            )
        graph = FlowGraph(flow)
        referenced = [checkpoint.current_node_id, *checkpoint.completed_node_ids]
        referenced.extend(s.node_id for s in checkpoint.suspended_nodes)
        referenced.extend(checkpoint.join_arrivals)
        missing = [node_id for node_id in referenced if not graph.has_node(node_id)]
        if missing:
            raise SnapshotError(checkpoint.execution_id, f"unknown nodes {sorted(set(missing))}")
        if not isinstance(checkpoint.variables, dict):
            raise SnapshotError(checkpoint.execution_id, "variables are not a mapping")

        return RunState(
            log=log,
            flow=flow,
            graph=graph,
            context=TriggerContext.from_log(log),
            lock_key=lock_key,
            variables=dict(checkpoint.variables),
            completed=list(checkpoint.completed_node_ids),
            suspended={s.node_id: s.model_copy(deep=True) for s in checkpoint.suspended_nodes},
            join_arrivals={j: set(edges) for j, edges in checkpoint.join_arrivals.items()},
        )

    @staticmethod
    def _earliest_deadline(run: RunState) -> Optional[datetime]:
        deadlines = [s.next_deadline for s in run.suspended.values() if s.next_deadline]
        return min(deadlines) if deadlines else None

    @staticmethod
    def serialize_variables(data: Dict[str, Any]) -> Dict[str, Any]:
        """Ensure all values are JSON-serializable."""
        result = {}
        for key, value in data.items():
            try:
                json.dumps(value)
                result[key] = value
            except (TypeError, ValueError):
                logger.warning("checkpoint_variable_stringified", variable=key, type=type(value).__name__)
                result[key] = str(value)
        return result
