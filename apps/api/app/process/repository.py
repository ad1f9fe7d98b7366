from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.process.errors import ProcessNotFoundError
from app.process.models import (
    ProcessApproval,
    ProcessDefinition,
    ProcessEscalation,
    ProcessExecution,
    ProcessExecutionStep,
)


@dataclass(slots=True)
class ProcessRepository:
    def get_definition(self, session: Session, definition_id: uuid.UUID) -> ProcessDefinition:
        definition = session.get(ProcessDefinition, definition_id)
        if definition is None:
            raise ProcessNotFoundError("process definition not found", details={"definition_id": str(definition_id)})
        return definition

    def get_execution(self, session: Session, execution_id: uuid.UUID) -> ProcessExecution:
        execution = session.get(ProcessExecution, execution_id)
        if execution is None:
            raise ProcessNotFoundError("process execution not found", details={"execution_id": str(execution_id)})
        return execution

    def get_step(self, session: Session, execution_id: uuid.UUID, step_id: uuid.UUID) -> ProcessExecutionStep:
        step = session.scalar(
            select(ProcessExecutionStep).where(
                ProcessExecutionStep.id == step_id,
                ProcessExecutionStep.execution_id == execution_id,
            )
        )
        if step is None:
            raise ProcessNotFoundError("process step not found", details={"step_id": str(step_id)})
        return step

    def get_approval(self, session: Session, approval_id: uuid.UUID) -> ProcessApproval:
        approval = session.get(ProcessApproval, approval_id)
        if approval is None:
            raise ProcessNotFoundError("process approval not found", details={"approval_id": str(approval_id)})
        return approval

    def get_escalation(self, session: Session, escalation_id: uuid.UUID) -> ProcessEscalation:
        escalation = session.get(ProcessEscalation, escalation_id)
        if escalation is None:
            raise ProcessNotFoundError("process escalation not found", details={"escalation_id": str(escalation_id)})
        return escalation

    def list_approvals(
        self,
        session: Session,
        *,
        execution_id: uuid.UUID | None = None,
        approver_id: int | None = None,
        status: str | None = None,
    ) -> list[ProcessApproval]:
        stmt = select(ProcessApproval)
        if execution_id is not None:
            stmt = stmt.where(ProcessApproval.execution_id == execution_id)
        if approver_id is not None:
            stmt = stmt.where(ProcessApproval.approver_id == approver_id)
        if status is not None:
            stmt = stmt.where(ProcessApproval.status == status)
        return list(session.scalars(stmt.order_by(ProcessApproval.created_at.asc())).all())

    def list_executions(
        self,
        session: Session,
        *,
        definition_id: uuid.UUID | None = None,
        status: str | None = None,
        team_id: int | None = None,
        limit: int = 50,
    ) -> list[ProcessExecution]:
        stmt = select(ProcessExecution)
        if definition_id is not None:
            stmt = stmt.where(ProcessExecution.process_definition_id == definition_id)
        if status is not None:
            stmt = stmt.where(ProcessExecution.status == status)
        if team_id is not None:
            stmt = stmt.where(ProcessExecution.team_id == team_id)
        stmt = stmt.order_by(ProcessExecution.created_at.desc()).limit(limit)
        return list(session.scalars(stmt).all())


process_repository = ProcessRepository()
