from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.process.audit import ProcessAuditWriter, audit_writer, snapshot
from app.process.errors import DuplicateApprovalError, InvalidTransitionError
from app.process.models import ProcessApproval, ProcessExecution, ProcessExecutionStep, utcnow
from app.process.outbox import queue_domain_event
from app.process.states import ProcessApprovalStatus, ProcessEventType, assert_approval_transition
from app.process.step_config import ApprovalStepConfig, parse_step_config


@dataclass(slots=True)
class ApprovalGate:
    audit: ProcessAuditWriter = field(default_factory=lambda: audit_writer)

    @staticmethod
    def requires_approval(step: ProcessExecutionStep) -> bool:
        return isinstance(parse_step_config(step.step_config or {}), ApprovalStepConfig)

    def open_approval(self, session: Session, step: ProcessExecutionStep) -> ProcessApproval | None:
        return session.scalar(
            select(ProcessApproval).where(
                ProcessApproval.execution_step_id == step.id,
                ProcessApproval.status == ProcessApprovalStatus.PENDING,
            )
        )

    def request(
        self,
        session: Session,
        execution: ProcessExecution,
        step: ProcessExecutionStep | None,
        *,
        requested_by: int,
        execution_state_before: str | None = None,
        now: datetime | None = None,
    ) -> ProcessApproval:
        now = now or utcnow()
        approver_id: int | None = None
        notes: str | None = None
        sla_hours: float = get_settings().process_default_approval_sla_hours

        if step is not None:
            if self.open_approval(session, step) is not None:
                raise DuplicateApprovalError(
                    f"step '{step.step_name}' already has a pending approval",
                    details={"step_id": str(step.id)},
                )
            config = parse_step_config(step.step_config or {})
            if isinstance(config, ApprovalStepConfig):
                approver_id = config.approver_id
                notes = config.approval_notes
                if config.approval_sla_hours is not None:
                    sla_hours = config.approval_sla_hours

        approval = ProcessApproval(
            execution_id=execution.id,
            execution_step_id=step.id if step is not None else None,
            team_id=execution.team_id,
            requested_by_id=requested_by,
            approver_id=approver_id,
            status=ProcessApprovalStatus.PENDING,
            approval_notes=notes,
            due_at=now + timedelta(hours=sla_hours),
        )
        session.add(approval)
        session.flush()

        self.audit.append(
            session,
            execution,
            step=step,
            actor_id=requested_by,
            event_type=ProcessEventType.APPROVAL_REQUESTED,
            description="Approval requested",
            state_before=snapshot(None, execution_status=execution_state_before),
            state_after=snapshot(approval.status, execution_status=execution.status),
            event_data={
                "approval_id": str(approval.id),
                "approver_id": approver_id,
                "due_at": approval.due_at.isoformat() if approval.due_at else None,
            },
        )
        queue_domain_event(
            session,
            {
                "event_type": "process.approval.requested",
                "execution_id": str(execution.id),
                "approval_id": str(approval.id),
                "step_id": str(step.id) if step is not None else None,
                "approver_id": approver_id,
                "team_id": execution.team_id,
            },
        )
        return approval

    def approve(
        self,
        session: Session,
        execution: ProcessExecution,
        approval: ProcessApproval,
        step: ProcessExecutionStep | None,
        approver_id: int,
        notes: str | None = None,
    ) -> ProcessApproval:
        before = approval.status
        assert_approval_transition(before, ProcessApprovalStatus.APPROVED)
        self._decide(approval, ProcessApprovalStatus.APPROVED, approver_id, notes)
        session.flush()

        self.audit.append(
            session,
            execution,
            step=step,
            actor_id=approver_id,
            event_type=ProcessEventType.APPROVAL_GRANTED,
            description="Approval granted",
            state_before=snapshot(before),
            state_after=snapshot(approval.status),
            event_data={"approval_id": str(approval.id), "notes": notes},
        )
        return approval

    def reject(
        self,
        session: Session,
        execution: ProcessExecution,
        approval: ProcessApproval,
        step: ProcessExecutionStep | None,
        approver_id: int,
        notes: str | None = None,
        *,
        execution_status_before: str | None = None,
    ) -> ProcessApproval:
        before = approval.status
        assert_approval_transition(before, ProcessApprovalStatus.REJECTED)
        self._decide(approval, ProcessApprovalStatus.REJECTED, approver_id, notes)
        session.flush()

        self.audit.append(
            session,
            execution,
            step=step,
            actor_id=approver_id,
            event_type=ProcessEventType.APPROVAL_REJECTED,
            description="Approval rejected",
            state_before=snapshot(before, execution_status=execution_status_before),
            state_after=snapshot(approval.status, execution_status=execution.status),
            event_data={"approval_id": str(approval.id), "notes": notes},
        )
        return approval

    def assign(
        self,
        session: Session,
        execution: ProcessExecution,
        approval: ProcessApproval,
        approver_id: int,
        assigned_by: int,
    ) -> ProcessApproval:
        if approval.status != ProcessApprovalStatus.PENDING:
            raise InvalidTransitionError("approval", approval.status, "ASSIGNED")
        previous_approver = approval.approver_id
        approval.approver_id = approver_id
        session.flush()

        self.audit.append(
            session,
            execution,
            step=approval.execution_step,
            actor_id=assigned_by,
            event_type=ProcessEventType.APPROVAL_ASSIGNED,
            description="Approval assigned",
            state_before=snapshot(approval.status, approver_id=previous_approver),
            state_after=snapshot(approval.status, approver_id=approver_id),
            event_data={
                "approval_id": str(approval.id),
                "previous_approver_id": previous_approver,
                "approver_id": approver_id,
            },
        )
        queue_domain_event(
            session,
            {
                "event_type": "process.approval.assigned",
                "execution_id": str(execution.id),
                "approval_id": str(approval.id),
                "approver_id": approver_id,
                "team_id": execution.team_id,
            },
        )
        return approval

    @staticmethod
    def _decide(approval: ProcessApproval, outcome: str, approver_id: int, notes: str | None) -> None:
        approval.status = outcome
        approval.approver_id = approver_id
        approval.decision_notes = notes
        approval.decided_at = utcnow()


approval_gate = ApprovalGate()
