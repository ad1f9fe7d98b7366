from __future__ import annotations

from collections.abc import Iterable
from enum import StrEnum

from app.process.errors import InvalidTransitionError


class ProcessDefinitionStatus(StrEnum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class ProcessExecutionStatus(StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    ESCALATED = "ESCALATED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"


class ProcessStepStatus(StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ProcessApprovalStatus(StrEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ProcessEventType(StrEnum):
    EXECUTION_STARTED = "EXECUTION_STARTED"
    STEP_STARTED = "STEP_STARTED"
    STEP_COMPLETED = "STEP_COMPLETED"
    STEP_FAILED = "STEP_FAILED"
    EXECUTION_COMPLETED = "EXECUTION_COMPLETED"
    APPROVAL_REQUESTED = "APPROVAL_REQUESTED"
    APPROVAL_ASSIGNED = "APPROVAL_ASSIGNED"
    APPROVAL_GRANTED = "APPROVAL_GRANTED"
    APPROVAL_REJECTED = "APPROVAL_REJECTED"
    ESCALATION_TRIGGERED = "ESCALATION_TRIGGERED"
    ESCALATION_RESOLVED = "ESCALATION_RESOLVED"
    ROLLBACK_COMPLETED = "ROLLBACK_COMPLETED"


_E = ProcessExecutionStatus
_S = ProcessStepStatus
_A = ProcessApprovalStatus
_D = ProcessDefinitionStatus

VALID_DEFINITION_TRANSITIONS: dict[str, set[str]] = {
    _D.DRAFT: {_D.ACTIVE, _D.ARCHIVED},
    _D.ACTIVE: {_D.ARCHIVED},
    _D.ARCHIVED: {_D.ACTIVE},
}

# ESCALATED appears as its own target so a second escalation can be recorded.
VALID_EXECUTION_TRANSITIONS: dict[str, set[str]] = {
    _E.PENDING: {_E.IN_PROGRESS, _E.FAILED, _E.ESCALATED, _E.ROLLED_BACK},
    _E.IN_PROGRESS: {_E.AWAITING_APPROVAL, _E.COMPLETED, _E.FAILED, _E.ESCALATED, _E.ROLLED_BACK},
    _E.AWAITING_APPROVAL: {_E.IN_PROGRESS, _E.COMPLETED, _E.FAILED, _E.ESCALATED, _E.ROLLED_BACK},
    _E.ESCALATED: {
        _E.IN_PROGRESS,
        _E.AWAITING_APPROVAL,
        _E.COMPLETED,
        _E.FAILED,
        _E.ESCALATED,
        _E.ROLLED_BACK,
    },
    _E.FAILED: {_E.ESCALATED, _E.ROLLED_BACK},
    _E.COMPLETED: {_E.ESCALATED, _E.ROLLED_BACK},
    _E.ROLLED_BACK: set(),
}

VALID_STEP_TRANSITIONS: dict[str, set[str]] = {
    _S.PENDING: {_S.IN_PROGRESS},
    _S.IN_PROGRESS: {_S.COMPLETED, _S.FAILED},
    _S.COMPLETED: set(),
    _S.FAILED: set(),
}

VALID_APPROVAL_TRANSITIONS: dict[str, set[str]] = {
    _A.PENDING: {_A.APPROVED, _A.REJECTED},
    _A.APPROVED: set(),
    _A.REJECTED: set(),
}

TERMINAL_EXECUTION_STATUSES = frozenset({_E.COMPLETED, _E.FAILED, _E.ROLLED_BACK})
ACTIVE_EXECUTION_STATUSES = frozenset({_E.IN_PROGRESS, _E.AWAITING_APPROVAL, _E.ESCALATED})
OPEN_STEP_STATUSES = frozenset({_S.PENDING, _S.IN_PROGRESS})


def _assert(table: dict[str, set[str]], subject: str, current: str, target: str) -> None:
    if target not in table.get(current, set()):
        raise InvalidTransitionError(subject, str(current), str(target))


def assert_definition_transition(current: str, target: str) -> None:
    _assert(VALID_DEFINITION_TRANSITIONS, "definition", current, target)


def assert_execution_transition(current: str, target: str, *, allow_escalate_terminal: bool = True) -> None:
    if (
        target == _E.ESCALATED
        and current in {_E.COMPLETED, _E.FAILED}
        and not allow_escalate_terminal
    ):
        raise InvalidTransitionError("execution", str(current), str(target))
    _assert(VALID_EXECUTION_TRANSITIONS, "execution", current, target)


def assert_step_transition(current: str, target: str) -> None:
    _assert(VALID_STEP_TRANSITIONS, "step", current, target)


def assert_approval_transition(current: str, target: str) -> None:
    _assert(VALID_APPROVAL_TRANSITIONS, "approval", current, target)


def derive_execution_status(step_statuses: Iterable[str]) -> ProcessExecutionStatus:
    """Execution status implied by the aggregate state of its steps."""
    statuses = list(step_statuses)
    if any(status == _S.FAILED for status in statuses):
        return _E.FAILED
    if any(status in OPEN_STEP_STATUSES for status in statuses):
        return _E.IN_PROGRESS
    return _E.COMPLETED
