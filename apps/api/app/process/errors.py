from __future__ import annotations

from typing import Any


class ProcessError(Exception):
    status_code: int = 400
    code: str = "process_error"

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ProcessNotFoundError(ProcessError):
    status_code = 404
    code = "process_not_found"


class ProcessConfigurationError(ProcessError):
    status_code = 422
    code = "process_configuration_invalid"


class InvalidTransitionError(ProcessError):
    status_code = 409
    code = "process_invalid_transition"

    def __init__(self, subject: str, current: str, target: str) -> None:
        super().__init__(
            f"invalid {subject} transition: {current} -> {target}",
            details={"subject": subject, "from": current, "to": target},
        )
        self.subject = subject
        self.current = current
        self.target = target


class StepOrderError(ProcessError):
    status_code = 409
    code = "process_step_order_violation"


class ApprovalPendingError(ProcessError):
    status_code = 409
    code = "process_approval_pending"


class DuplicateApprovalError(ProcessError):
    status_code = 409
    code = "process_approval_duplicate"


class StaleExecutionError(ProcessError):
    status_code = 409
    code = "process_execution_stale"


class AuditLogImmutableError(ProcessError):
    status_code = 409
    code = "process_audit_immutable"


class ProcessConflictError(ProcessError):
    status_code = 409
    code = "process_conflict"
