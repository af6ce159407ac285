"""Custom exceptions for the flow automation engine."""

from typing import Optional

from core.constants import ErrorCode


class AutomationException(Exception):
    """Base exception for the flow automation engine."""

    default_code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, status_code: int = 500, code: Optional[str] = None):
        """Initialize exception with message, status code and error code.

        Args:
            message: Exception message
            status_code: HTTP status code a REST layer should map this to
            code: Machine-readable error code
        """
        self.message = message
        self.status_code = status_code
        self.code = code or self.default_code
        super().__init__(self.message)


class NotFoundError(AutomationException):
    """Resource not found exception."""

    default_code = ErrorCode.NOT_FOUND

    def __init__(self, message: str = "Resource not found", code: Optional[str] = None):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404, code)


class FlowNotFoundError(NotFoundError):
    default_code = ErrorCode.FLOW_NOT_FOUND

    def __init__(self, flow_name: str):
        self.flow_name = flow_name
        super().__init__(f"Flow '{flow_name}' not found")


class ExecutionNotFoundError(NotFoundError):
    default_code = ErrorCode.EXECUTION_NOT_FOUND

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution '{execution_id}' not found")


class CheckpointNotFoundError(NotFoundError):
    default_code = ErrorCode.ORPHANED_PAUSE

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"No checkpoint stored for paused execution '{execution_id}'")


class ValidationError(AutomationException):
    """Validation error exception."""

    default_code = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str = "Validation failed", code: Optional[str] = None):
        """Initialize ValidationError with 422 status code."""
        super().__init__(message, 422, code)


class FlowValidationError(ValidationError):
    """Raised when a flow graph fails publish-time validation."""

    default_code = ErrorCode.INVALID_FLOW

    def __init__(self, flow_name: str, errors: list[str]):
        self.flow_name = flow_name
        self.errors = list(errors)
        super().__init__(f"Flow '{flow_name}' is invalid: " + "; ".join(self.errors))


class ConflictError(AutomationException):
    """Resource conflict exception."""

    default_code = ErrorCode.CONFLICT

    def __init__(self, message: str = "Resource conflict", code: Optional[str] = None):
        """Initialize ConflictError with 409 status code."""
        super().__init__(message, 409, code)


class FlowDisabledError(ConflictError):
    default_code = ErrorCode.FLOW_DISABLED

    def __init__(self, flow_name: str, reason: str = "disabled"):
        self.flow_name = flow_name
        super().__init__(f"Flow '{flow_name}' cannot be executed: {reason}")


class ConcurrencyLimitError(ConflictError):
    """Admission refused by the concurrency controller (rejected or queue timeout)."""

    default_code = ErrorCode.CONCURRENT_EXECUTION_LIMIT

    def __init__(self, lock_key: str, message: Optional[str] = None):
        self.lock_key = lock_key
        super().__init__(message or f"Concurrent execution limit reached for '{lock_key}'")


class InvalidStateTransitionError(ConflictError):
    default_code = ErrorCode.INVALID_STATE_TRANSITION

    def __init__(self, current: str, target: str, execution_id: Optional[str] = None):
        self.current = current
        self.target = target
        self.execution_id = execution_id
        super().__init__(f"Cannot move execution from '{current}' to '{target}'")


class StorageError(AutomationException):
    """A persistence backend failed. Distinct from a run ending in 'failed'."""

    default_code = ErrorCode.STORAGE_UNAVAILABLE

    def __init__(self, message: str = "Storage unavailable"):
        super().__init__(message, 503)


class NodeExecutionError(AutomationException):
    """A node failed while executing.

    ``retryable`` decides whether the engine's retry loop may try the node again.
    """

    default_code = ErrorCode.NODE_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        retryable: bool = False,
        stack: Optional[str] = None,
        context: Optional[dict] = None,
    ):
        self.retryable = retryable
        self.stack = stack
        self.context = context or {}
        super().__init__(message, 500, code)


class FlowModelError(NodeExecutionError):
    """The flow definition itself is wrong (no matching edge, unknown node type, ...).

    Never retried, always fails the run with a critical error.
    """

    default_code = ErrorCode.INVALID_FLOW

    def __init__(self, message: str, code: Optional[str] = None, context: Optional[dict] = None):
        super().__init__(message, code=code, retryable=False, context=context)
