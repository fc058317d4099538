from __future__ import annotations

from turnflow.errors import InvalidTransitionError
from turnflow.types import ExecutionStatus

S = ExecutionStatus

_SUSPENDED = {S.AWAITING_ACTION, S.AWAITING_APPROVAL, S.AWAITING_FOLLOWUP}

ALLOWED_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    S.IDLE: {S.PROCESSING, S.FAILED},
    S.FAILED: {S.PROCESSING},
    S.PROCESSING: {
        S.IDLE,
        S.AWAITING_ACTION,
        S.AWAITING_FOLLOWUP,
        S.AWAITING_APPROVAL,
        S.FAILED,
    },
    S.AWAITING_ACTION: {
        S.AWAITING_ACTION,
        S.AWAITING_APPROVAL,
        S.AWAITING_FOLLOWUP,
        S.PROCESSING,
        S.IDLE,
        S.FAILED,
    },
    S.AWAITING_APPROVAL: {
        S.AWAITING_APPROVAL,
        S.AWAITING_ACTION,
        S.AWAITING_FOLLOWUP,
        S.PROCESSING,
        S.IDLE,
        S.FAILED,
    },
    S.AWAITING_FOLLOWUP: {S.PROCESSING, S.AWAITING_APPROVAL, S.IDLE, S.FAILED},
}


def can_start_turn(status: ExecutionStatus) -> bool:
    return status in {S.IDLE, S.FAILED}


def is_suspended(status: ExecutionStatus) -> bool:
    return status in _SUSPENDED


def check_transition(current: ExecutionStatus, target: ExecutionStatus) -> None:
    if target not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Illegal transition {current.value} -> {target.value}")
