from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.process.audit import ProcessAuditWriter, audit_writer, snapshot
from app.process.errors import InvalidTransitionError
from app.process.models import ProcessEscalation, ProcessExecution, ProcessExecutionStep, utcnow
from app.process.outbox import queue_domain_event
from app.process.states import ProcessEventType, ProcessExecutionStatus, assert_execution_transition


@dataclass(slots=True)
class EscalationManager:
    audit: ProcessAuditWriter = field(default_factory=lambda: audit_writer)

    def escalate(
        self,
        session: Session,
        execution: ProcessExecution,
        escalated_to: int,
        escalated_by: int,
        reason: str,
        step: ProcessExecutionStep | None = None,
        notes: str | None = None,
        *,
        allow_terminal: bool = True,
    ) -> ProcessEscalation:
        before = execution.status
        assert_execution_transition(before, ProcessExecutionStatus.ESCALATED, allow_escalate_terminal=allow_terminal)

        escalation = ProcessEscalation(
            execution_id=execution.id,
            execution_step_id=step.id if step is not None else None,
            team_id=execution.team_id,
            escalated_to_id=escalated_to,
            escalated_by_id=escalated_by,
            escalation_reason=reason,
            escalation_notes=notes,
            previous_status=before,
            is_resolved=False,
        )
        session.add(escalation)
        execution.status = ProcessExecutionStatus.ESCALATED
        session.flush()

        self.audit.append(
            session,
            execution,
            step=step,
            actor_id=escalated_by,
            event_type=ProcessEventType.ESCALATION_TRIGGERED,
            description="Process escalated",
            state_before=snapshot(before),
            state_after=snapshot(execution.status),
            event_data={
                "escalation_id": str(escalation.id),
                "escalated_to_id": escalated_to,
                "reason": reason,
                "notes": notes,
            },
        )
        queue_domain_event(
            session,
            {
                "event_type": "process.escalation.triggered",
                "execution_id": str(execution.id),
                "escalation_id": str(escalation.id),
                "step_id": str(step.id) if step is not None else None,
                "escalated_to_id": escalated_to,
                "reason": reason,
                "team_id": execution.team_id,
            },
        )
        return escalation

    def resolve(
        self,
        session: Session,
        execution: ProcessExecution,
        escalation: ProcessEscalation,
        resolved_by: int,
        notes: str | None = None,
        *,
        resume: bool = False,
    ) -> ProcessEscalation:
        if escalation.is_resolved:
            raise InvalidTransitionError("escalation", "RESOLVED", "RESOLVED")

        before = execution.status
        if resume:
            if before != ProcessExecutionStatus.ESCALATED:
                raise InvalidTransitionError("execution", before, escalation.previous_status)
            assert_execution_transition(before, escalation.previous_status)
            execution.status = escalation.previous_status

        escalation.is_resolved = True
        escalation.resolved_at = utcnow()
        escalation.resolved_by_id = resolved_by
        escalation.resolution_notes = notes
        session.flush()

        self.audit.append(
            session,
            execution,
            step=None,
            actor_id=resolved_by,
            event_type=ProcessEventType.ESCALATION_RESOLVED,
            description="Escalation resolved",
            state_before=snapshot(before),
            state_after=snapshot(execution.status),
            event_data={"escalation_id": str(escalation.id), "notes": notes, "resumed": resume},
        )
        return escalation

    def history(self, session: Session, execution: ProcessExecution) -> list[ProcessEscalation]:
        stmt = (
            select(ProcessEscalation)
            .where(ProcessEscalation.execution_id == execution.id)
            .order_by(ProcessEscalation.created_at.asc())
        )
        return list(session.scalars(stmt).all())


escalation_manager = EscalationManager()
