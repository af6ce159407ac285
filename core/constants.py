"""Constants and enums for the flow automation engine."""

from enum import Enum


class ExecutionStatus(str, Enum):
    """Execution run status."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    RETRYING = "retrying"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.TIMED_OUT,
    }
)


class StepStatus(str, Enum):
    """Outcome of a single node execution."""

    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class FlowStatus(str, Enum):
    """Flow definition lifecycle status."""

    DRAFT = "draft"
    ACTIVE = "active"
    OBSOLETE = "obsolete"
    INVALID = "invalid"


class RunAs(str, Enum):
    SYSTEM = "system"
    USER = "user"


class NodeAction(str, Enum):
    """Node types a flow graph may contain."""

    START = "start"
    END = "end"
    DECISION = "decision"
    PARALLEL_GATEWAY = "parallel_gateway"
    JOIN_GATEWAY = "join_gateway"
    WAIT = "wait"
    BOUNDARY_EVENT = "boundary_event"
    ASSIGNMENT = "assignment"
    CREATE_RECORD = "create_record"
    UPDATE_RECORD = "update_record"
    DELETE_RECORD = "delete_record"
    GET_RECORD = "get_record"
    HTTP_REQUEST = "http_request"
    SCRIPT = "script"
    SCREEN = "screen"
    LOOP = "loop"
    SUBFLOW = "subflow"
    CONNECTOR_ACTION = "connector_action"


class EdgeType(str, Enum):
    NORMAL = "normal"
    FAULT = "fault"


class VariableType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    LIST = "list"


class ErrorStrategy(str, Enum):
    """Flow-level reaction to a node failure."""

    FAIL = "fail"
    RETRY = "retry"
    CONTINUE = "continue"


class CheckpointReason(str, Enum):
    """Why an execution was suspended."""

    WAIT = "wait"
    SCREEN_INPUT = "screen_input"
    APPROVAL = "approval"
    ERROR = "error"
    MANUAL_PAUSE = "manual_pause"
    PARALLEL_JOIN = "parallel_join"
    BOUNDARY_EVENT = "boundary_event"


class WaitEventType(str, Enum):
    """Signals that can resume a suspended node."""

    TIMER = "timer"
    SIGNAL = "signal"
    WEBHOOK = "webhook"
    MANUAL = "manual"
    CONDITION = "condition"
    SCREEN = "screen"
    APPROVAL = "approval"
    TIMEOUT = "timeout"


class TimeoutBehavior(str, Enum):
    """What happens when a suspended node's deadline passes."""

    FAIL = "fail"
    CONTINUE = "continue"


class ErrorSeverity(str, Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ConflictPolicy(str, Enum):
    """Concurrency controller reaction when all slots are taken."""

    QUEUE = "queue"
    REJECT = "reject"
    CANCEL_EXISTING = "cancel_existing"


class LockScope(str, Enum):
    GLOBAL = "global"
    PER_RECORD = "per_record"
    PER_USER = "per_user"


class ScheduleStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    DISABLED = "disabled"
    EXPIRED = "expired"


class TriggerType(str, Enum):
    """What started an execution."""

    MANUAL = "manual"
    SCHEDULE = "schedule"
    RECORD_CHANGE = "record_change"
    API = "api"
    WEBHOOK = "webhook"
    SUBFLOW = "subflow"


class ErrorCode:
    """Machine-readable error codes carried on exceptions and ExecutionError records."""

    INTERNAL_ERROR = "internal_error"
    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"
    FLOW_NOT_FOUND = "flow_not_found"
    FLOW_DISABLED = "flow_disabled"
    EXECUTION_NOT_FOUND = "execution_not_found"
    INVALID_FLOW = "invalid_flow"
    INVALID_STATE_TRANSITION = "invalid_state_transition"
    STORAGE_UNAVAILABLE = "storage_unavailable"

    # Admission
    CONCURRENT_EXECUTION_LIMIT = "concurrent_execution_limit"

    # Modeling
    NO_MATCHING_EDGE = "no_matching_edge"
    UNKNOWN_NODE_TYPE = "unknown_node_type"
    MISSING_START_NODE = "missing_start_node"

    # Node failures
    NODE_ERROR = "node_error"
    NODE_TIMEOUT = "node_timeout"
    HTTP_ERROR = "http_error"
    HTTP_TRANSPORT_ERROR = "http_transport_error"
    SCRIPT_ERROR = "script_error"
    RECORD_ERROR = "record_error"
    RECORD_NOT_FOUND = "record_not_found"
    CONNECTOR_ERROR = "connector_error"
    SUBFLOW_FAILED = "subflow_failed"
    WAIT_TIMEOUT = "wait_timeout"
    BOUNDARY_EVENT_FIRED = "boundary_event_fired"

    # Run level
    EXECUTION_TIMEOUT = "execution_timeout"
    EXECUTION_CANCELLED = "execution_cancelled"

    # Consistency
    ORPHANED_PAUSE = "orphaned_pause"
    EXECUTION_INTERRUPTED = "execution_interrupted"
    CORRUPTED_SNAPSHOT = "corrupted_snapshot"
