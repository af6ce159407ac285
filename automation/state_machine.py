"""Allowed execution status transitions."""

from core.constants import ExecutionStatus
from core.exceptions import InvalidStateTransitionError

S = ExecutionStatus

ALLOWED_TRANSITIONS: dict[ExecutionStatus, frozenset] = {
    S.PENDING: frozenset({S.RUNNING, S.CANCELLED, S.FAILED}),
    S.RUNNING: frozenset({S.PAUSED, S.RETRYING, S.COMPLETED, S.FAILED, S.CANCELLED, S.TIMED_OUT}),
    S.RETRYING: frozenset({S.RUNNING, S.FAILED, S.CANCELLED, S.TIMED_OUT}),
    S.PAUSED: frozenset({S.RUNNING, S.CANCELLED, S.FAILED}),
    S.COMPLETED: frozenset(),
    S.FAILED: frozenset(),
    S.CANCELLED: frozenset(),
    S.TIMED_OUT: frozenset(),
}


def can_transition(current: ExecutionStatus, target: ExecutionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def check_transition(current: ExecutionStatus, target: ExecutionStatus, execution_id: str = None) -> None:
    """
    Validate a status change.

    Raises:
        InvalidStateTransitionError: If the change is not allowed
    """
    if not can_transition(current, target):
        raise InvalidStateTransitionError(current.value, target.value, execution_id)
