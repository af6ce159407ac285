"""Pydantic models for flow definitions, execution history, checkpoints and schedules.

These are the records the engine reads and writes. Stores persist them with
``model_dump(mode="json")`` and rebuild them with ``model_validate``.
"""

import re
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from core.constants import (
    CheckpointReason,
    ConflictPolicy,
    EdgeType,
    ErrorSeverity,
    ErrorStrategy,
    ExecutionStatus,
    FlowStatus,
    LockScope,
    NodeAction,
    RunAs,
    ScheduleStatus,
    StepStatus,
    TimeoutBehavior,
    TriggerType,
    VariableType,
    WaitEventType,
)
from core.utils import new_id, utc_now

FLOW_NAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_]*$")


# ─── Flow definition ──────────────────────────────────────────────────────


class NodeRetryConfig(BaseModel):
    """Per-node retry override. Takes precedence over the flow's error handling."""

    max_retries: int = Field(0, ge=0, le=10)
    policy: str = Field("exponential", description="fixed, exponential, linear, none or a preset name")
    base_delay: float = Field(1.0, ge=0)
    max_delay: float = Field(60.0, ge=0)
    jitter: bool = False


class FlowNode(BaseModel):
    id: str = Field(..., min_length=1)
    action: NodeAction
    label: Optional[str] = None
    config: dict[str, Any] = Field(default_factory=dict, description="Action-specific parameters")
    retry: Optional[NodeRetryConfig] = None
    timeout_ms: Optional[int] = Field(None, gt=0)
    position: Optional[dict[str, float]] = None


class FlowEdge(BaseModel):
    id: str = Field(..., min_length=1)
    source: str
    target: str
    condition: Optional[str] = Field(None, description="Expression evaluated against flow variables")
    label: Optional[str] = None
    is_default: bool = False
    type: EdgeType = EdgeType.NORMAL


class FlowVariable(BaseModel):
    name: str
    type: VariableType = VariableType.TEXT
    is_input: bool = False
    is_output: bool = False
    default: Any = None


class FlowErrorHandling(BaseModel):
    """Flow-level reaction to a node that failed after its own retries."""

    strategy: ErrorStrategy = ErrorStrategy.FAIL
    max_retries: int = Field(0, ge=0, le=10)
    retry_delay_ms: int = Field(1000, ge=0)
    fallback_node_id: Optional[str] = None


class ConcurrencyPolicy(BaseModel):
    max_concurrent: int = Field(1, ge=1)
    on_conflict: ConflictPolicy = ConflictPolicy.QUEUE
    lock_scope: LockScope = LockScope.GLOBAL
    queue_timeout_ms: Optional[int] = Field(None, gt=0)


class FlowDefinition(BaseModel):
    """A versioned, declarative process graph."""

    name: str = Field(..., description="Machine name (snake_case), unique across flows")
    label: str = ""
    description: Optional[str] = None
    version: int = Field(1, ge=1)
    status: FlowStatus = FlowStatus.DRAFT
    enabled: bool = True
    run_as: RunAs = RunAs.USER
    nodes: list[FlowNode] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)
    variables: list[FlowVariable] = Field(default_factory=list)
    error_handling: Optional[FlowErrorHandling] = None
    concurrency: ConcurrencyPolicy = Field(default_factory=ConcurrencyPolicy)
    timeout_ms: Optional[int] = Field(None, gt=0, description="Overrides the global wall-clock budget")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None

    @field_validator("name")
    @classmethod
    def _snake_case_name(cls, value: str) -> str:
        if not FLOW_NAME_PATTERN.match(value):
            raise ValueError("Flow name must be lowercase snake_case")
        return value

    @property
    def is_executable(self) -> bool:
        return self.enabled and self.status == FlowStatus.ACTIVE


# ─── Execution history ───────────────────────────────────────────────────


class ExecutionTrigger(BaseModel):
    type: TriggerType = TriggerType.MANUAL
    record_id: Optional[str] = None
    object: Optional[str] = None
    user_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class StepError(BaseModel):
    code: str
    message: str
    stack: Optional[str] = None


class ExecutionStepLog(BaseModel):
    """One attempt at one node. Immutable once written."""

    node_id: str
    node_type: str
    node_label: Optional[str] = None
    status: StepStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    input: Optional[dict[str, Any]] = None
    output: Optional[dict[str, Any]] = None
    error: Optional[StepError] = None
    retry_attempt: int = 0


class ExecutionLog(BaseModel):
    id: str = Field(default_factory=new_id)
    flow_name: str
    flow_version: int
    status: ExecutionStatus = ExecutionStatus.PENDING
    trigger: ExecutionTrigger = Field(default_factory=ExecutionTrigger)
    steps: list[ExecutionStepLog] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] = Field(default_factory=dict)
    error: Optional[StepError] = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    run_as: RunAs = RunAs.USER
    tenant_id: Optional[str] = None


class ExecutionError(BaseModel):
    id: str = Field(default_factory=new_id)
    execution_id: str
    node_id: Optional[str] = None
    severity: ErrorSeverity = ErrorSeverity.ERROR
    code: str
    message: str
    stack: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)
    retryable: bool = False
    resolved_at: Optional[datetime] = None


# ─── Checkpoints ─────────────────────────────────────────────────────────


class SuspendedNode(BaseModel):
    """A branch parked at one node, waiting for a resume signal."""

    node_id: str
    reason: CheckpointReason
    via_edge_id: Optional[str] = None
    executed: bool = Field(
        True, description="False when the node has not run yet (manual pause before it)"
    )
    expires_at: Optional[datetime] = None
    timeout_behavior: TimeoutBehavior = TimeoutBehavior.FAIL
    resume_event: Optional[WaitEventType] = None
    boundary_deadlines: dict[str, datetime] = Field(default_factory=dict)

    @property
    def next_deadline(self) -> Optional[datetime]:
        candidates = list(self.boundary_deadlines.values())
        if self.expires_at is not None:
            candidates.append(self.expires_at)
        return min(candidates) if candidates else None


class Checkpoint(BaseModel):
    """Durable snapshot of a paused execution. One live checkpoint per execution."""

    id: str = Field(default_factory=new_id)
    execution_id: str
    flow_name: str
    flow_version: int
    current_node_id: str
    variables: dict[str, Any] = Field(default_factory=dict)
    completed_node_ids: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: Optional[datetime] = None
    reason: CheckpointReason
    suspended_nodes: list[SuspendedNode] = Field(default_factory=list)
    join_arrivals: dict[str, list[str]] = Field(default_factory=dict)

    def suspended(self, node_id: str) -> Optional[SuspendedNode]:
        for entry in self.suspended_nodes:
            if entry.node_id == node_id:
                return entry
        return None


class ResumePayload(BaseModel):
    """Signal that wakes a paused execution."""

    event_type: WaitEventType = WaitEventType.MANUAL
    node_id: Optional[str] = Field(None, description="Defaults to the checkpoint's current node")
    variables: dict[str, Any] = Field(default_factory=dict)
    signal_name: Optional[str] = None
    resumed_by: Optional[str] = None
    webhook_payload: Optional[dict[str, Any]] = None


# ─── Schedules ───────────────────────────────────────────────────────────


class ScheduleState(BaseModel):
    id: str = Field(default_factory=new_id)
    flow_name: str
    cron_expression: str
    timezone: str = "UTC"
    status: ScheduleStatus = ScheduleStatus.ACTIVE
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_execution_id: Optional[str] = None
    last_run_status: Optional[ExecutionStatus] = None
    total_runs: int = Field(0, ge=0)
    consecutive_failures: int = Field(0, ge=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    max_runs: Optional[int] = Field(None, ge=1)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None
    created_by: Optional[str] = None

    @model_validator(mode="after")
    def _check_window(self) -> "ScheduleState":
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self
