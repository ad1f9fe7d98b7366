from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user
from app.core.database import get_db
from app.core.rbac import require_permissions
from app.process.analytics import analytics_service
from app.process.audit import audit_writer
from app.process.definitions import definition_service
from app.process.engine import process_engine
from app.process.errors import ProcessError
from app.process.escalations import escalation_manager
from app.process.repository import process_repository
from app.process.schemas import (
    ApprovalDecisionRequest,
    AssignApproverRequest,
    CompleteStepRequest,
    EscalateRequest,
    FailStepRequest,
    ProcessAnalyticsRead,
    ProcessApprovalRead,
    ProcessAuditLogRead,
    ProcessDefinitionCreate,
    ProcessDefinitionRead,
    ProcessDefinitionUpdate,
    ProcessEscalationRead,
    ProcessExecutionRead,
    ProcessStepRead,
    RequestApprovalRequest,
    ResolveEscalationRequest,
    RollbackRequest,
    StartExecutionRequest,
    VersionedRequest,
)


router = APIRouter(prefix="/api/process", tags=["process"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failure(request: Request, exc: ProcessError | HTTPException, code: str) -> JSONResponse:
    if isinstance(exc, ProcessError):
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def actor_id(user: AuthUser) -> int:
    try:
        return int(user.sub)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="caller identity must be numeric")


@router.post("/definitions", response_model=ProcessDefinitionRead, status_code=status.HTTP_201_CREATED)
def create_definition(
    request: Request,
    payload: ProcessDefinitionCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ProcessDefinitionRead | JSONResponse:
    try:
        require_permissions(user, "process.definitions.manage")
        if payload.team_id is None and user.team_id is not None:
            payload = payload.model_copy(update={"team_id": user.team_id})
        definition = definition_service.create(db, payload, creator_id=actor_id(user))
        return ProcessDefinitionRead.model_validate(definition)
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_definition_create_failed")


@router.get("/definitions", response_model=list[ProcessDefinitionRead])
def list_definitions(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[ProcessDefinitionRead] | JSONResponse:
    try:
        require_permissions(user, "process.read")
        rows = definition_service.list_definitions(db, team_id=user.team_id, status=status_filter)
        return [ProcessDefinitionRead.model_validate(row) for row in rows]
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_definition_list_failed")


@router.get("/definitions/{definition_id}", response_model=ProcessDefinitionRead)
def get_definition(
    request: Request,
    definition_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ProcessDefinitionRead | JSONResponse:
    try:
        require_permissions(user, "process.read")
        return ProcessDefinitionRead.model_validate(definition_service.get(db, definition_id))
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_definition_get_failed")


@router.patch("/definitions/{definition_id}", response_model=ProcessDefinitionRead)
def update_definition(
    request: Request,
    definition_id: uuid.UUID,
    payload: ProcessDefinitionUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ProcessDefinitionRead | JSONResponse:
    try:
        require_permissions(user, "process.definitions.manage")
        return ProcessDefinitionRead.model_validate(definition_service.update(db, definition_id, payload))
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_definition_update_failed")


@router.post("/definitions/{definition_id}/activate", response_model=ProcessDefinitionRead)
def activate_definition(
    request: Request,
    definition_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ProcessDefinitionRead | JSONResponse:
    try:
        require_permissions(user, "process.definitions.manage")
        return ProcessDefinitionRead.model_validate(definition_service.activate(db, definition_id))
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_definition_activate_failed")


@router.post("/definitions/{definition_id}/archive", response_model=ProcessDefinitionRead)
def archive_definition(
    request: Request,
    definition_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ProcessDefinitionRead | JSONResponse:
    try:
        require_permissions(user, "process.definitions.manage")
        return ProcessDefinitionRead.model_validate(definition_service.archive(db, definition_id))
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_definition_archive_failed")


@router.post("/definitions/{definition_id}/analytics/rollup", response_model=ProcessAnalyticsRead)
def rollup_definition_analytics(
    request: Request,
    definition_id: uuid.UUID,
    metric_date: date = Query(),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ProcessAnalyticsRead | JSONResponse:
    try:
        require_permissions(user, "process.definitions.manage")
        definition = definition_service.get(db, definition_id)
        return ProcessAnalyticsRead.model_validate(analytics_service.rollup(db, definition, metric_date))
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_analytics_rollup_failed")


@router.post("/executions", response_model=ProcessExecutionRead, status_code=status.HTTP_201_CREATED)
def start_execution(
    request: Request,
    payload: StartExecutionRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ProcessExecutionRead | JSONResponse:
    try:
        require_permissions(user, "process.execute")
        definition = definition_service.get(db, payload.definition_id)
        execution = process_engine.start_execution(db, definition, actor_id(user), payload.context_data)
        return ProcessExecutionRead.model_validate(execution)
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_execution_start_failed")


@router.get("/executions", response_model=list[ProcessExecutionRead])
def list_executions(
    request: Request,
    definition_id: uuid.UUID | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[ProcessExecutionRead] | JSONResponse:
    try:
        require_permissions(user, "process.read")
        rows = process_repository.list_executions(
            db,
            definition_id=definition_id,
            status=status_filter,
            team_id=user.team_id,
            limit=limit,
        )
        return [ProcessExecutionRead.model_validate(row) for row in rows]
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_execution_list_failed")


@router.get("/executions/{execution_id}", response_model=ProcessExecutionRead)
def get_execution(
    request: Request,
    execution_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ProcessExecutionRead | JSONResponse:
    try:
        require_permissions(user, "process.read")
        return ProcessExecutionRead.model_validate(process_repository.get_execution(db, execution_id))
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_execution_get_failed")


@router.post("/executions/{execution_id}/next", response_model=ProcessExecutionRead)
def execute_next_step(
    request: Request,
    execution_id: uuid.UUID,
    payload: VersionedRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ProcessExecutionRead | JSONResponse:
    try:
        require_permissions(user, "process.execute")
        execution = process_repository.get_execution(db, execution_id)
        process_engine.execute_next_step(db, execution, expected_version=payload.row_version)
        return ProcessExecutionRead.model_validate(execution)
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_execution_advance_failed")


@router.post("/executions/{execution_id}/steps/{step_id}/execute", response_model=ProcessStepRead)
def execute_step(
    request: Request,
    execution_id: uuid.UUID,
    step_id: uuid.UUID,
    payload: VersionedRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ProcessStepRead | JSONResponse:
    try:
        require_permissions(user, "process.execute")
        execution = process_repository.get_execution(db, execution_id)
        step = process_repository.get_step(db, execution_id, step_id)
        process_engine.execute_step(db, execution, step, expected_version=payload.row_version)
        return ProcessStepRead.model_validate(step)
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_step_execute_failed")


@router.post("/executions/{execution_id}/steps/{step_id}/complete", response_model=ProcessStepRead)
def complete_step(
    request: Request,
    execution_id: uuid.UUID,
    step_id: uuid.UUID,
    payload: CompleteStepRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ProcessStepRead | JSONResponse:
    try:
        require_permissions(user, "process.execute")
        execution = process_repository.get_execution(db, execution_id)
        step = process_repository.get_step(db, execution_id, step_id)
        process_engine.complete_step(db, execution, step, payload.output_data, expected_version=payload.row_version)
        return ProcessStepRead.model_validate(step)
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_step_complete_failed")


@router.post("/executions/{execution_id}/steps/{step_id}/fail", response_model=ProcessStepRead)
def fail_step(
    request: Request,
    execution_id: uuid.UUID,
    step_id: uuid.UUID,
    payload: FailStepRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ProcessStepRead | JSONResponse:
    try:
        require_permissions(user, "process.execute")
        execution = process_repository.get_execution(db, execution_id)
        step = process_repository.get_step(db, execution_id, step_id)
        process_engine.fail_step(db, execution, step, payload.error_message, expected_version=payload.row_version)
        return ProcessStepRead.model_validate(step)
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_step_fail_failed")


@router.post(
    "/executions/{execution_id}/approvals",
    response_model=ProcessApprovalRead,
    status_code=status.HTTP_201_CREATED,
)
def request_approval(
    request: Request,
    execution_id: uuid.UUID,
    payload: RequestApprovalRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ProcessApprovalRead | JSONResponse:
    try:
        require_permissions(user, "process.execute")
        execution = process_repository.get_execution(db, execution_id)
        step = process_repository.get_step(db, execution_id, payload.step_id) if payload.step_id else None
        approval = process_engine.request_approval(db, execution, step, requested_by=actor_id(user))
        return ProcessApprovalRead.model_validate(approval)
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_approval_request_failed")


@router.get("/executions/{execution_id}/approvals", response_model=list[ProcessApprovalRead])
def list_approvals(
    request: Request,
    execution_id: uuid.UUID,
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[ProcessApprovalRead] | JSONResponse:
    try:
        require_permissions(user, "process.read")
        process_repository.get_execution(db, execution_id)
        rows = process_repository.list_approvals(db, execution_id=execution_id, status=status_filter)
        return [ProcessApprovalRead.model_validate(row) for row in rows]
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_approval_list_failed")


@router.post("/approvals/{approval_id}/approve", response_model=ProcessApprovalRead)
def approve(
    request: Request,
    approval_id: uuid.UUID,
    payload: ApprovalDecisionRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ProcessApprovalRead | JSONResponse:
    try:
        require_permissions(user, "process.approve")
        approval = process_repository.get_approval(db, approval_id)
        process_engine.approve_step(db, approval, actor_id(user), payload.notes)
        return ProcessApprovalRead.model_validate(approval)
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_approval_approve_failed")


@router.post("/approvals/{approval_id}/reject", response_model=ProcessApprovalRead)
def reject(
    request: Request,
    approval_id: uuid.UUID,
    payload: ApprovalDecisionRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ProcessApprovalRead | JSONResponse:
    try:
        require_permissions(user, "process.approve")
        approval = process_repository.get_approval(db, approval_id)
        process_engine.reject_step(db, approval, actor_id(user), payload.notes)
        return ProcessApprovalRead.model_validate(approval)
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_approval_reject_failed")


@router.post("/approvals/{approval_id}/assign", response_model=ProcessApprovalRead)
def assign_approver(
    request: Request,
    approval_id: uuid.UUID,
    payload: AssignApproverRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ProcessApprovalRead | JSONResponse:
    try:
        require_permissions(user, "process.approve")
        approval = process_repository.get_approval(db, approval_id)
        process_engine.assign_approver(db, approval, payload.approver_id, actor_id(user))
        return ProcessApprovalRead.model_validate(approval)
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_approval_assign_failed")


@router.post(
    "/executions/{execution_id}/escalations",
    response_model=ProcessEscalationRead,
    status_code=status.HTTP_201_CREATED,
)
def escalate(
    request: Request,
    execution_id: uuid.UUID,
    payload: EscalateRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ProcessEscalationRead | JSONResponse:
    try:
        require_permissions(user, "process.escalate")
        execution = process_repository.get_execution(db, execution_id)
        step = process_repository.get_step(db, execution_id, payload.step_id) if payload.step_id else None
        escalation = process_engine.escalate(
            db,
            execution,
            payload.escalated_to_id,
            actor_id(user),
            payload.reason,
            step=step,
            notes=payload.notes,
            expected_version=payload.row_version,
        )
        return ProcessEscalationRead.model_validate(escalation)
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_escalation_create_failed")


@router.get("/executions/{execution_id}/escalations", response_model=list[ProcessEscalationRead])
def list_escalations(
    request: Request,
    execution_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[ProcessEscalationRead] | JSONResponse:
    try:
        require_permissions(user, "process.read")
        execution = process_repository.get_execution(db, execution_id)
        return [ProcessEscalationRead.model_validate(row) for row in escalation_manager.history(db, execution)]
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_escalation_list_failed")


@router.post("/escalations/{escalation_id}/resolve", response_model=ProcessEscalationRead)
def resolve_escalation(
    request: Request,
    escalation_id: uuid.UUID,
    payload: ResolveEscalationRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ProcessEscalationRead | JSONResponse:
    try:
        require_permissions(user, "process.escalate")
        escalation = process_repository.get_escalation(db, escalation_id)
        process_engine.resolve_escalation(db, escalation, actor_id(user), payload.notes, resume=payload.resume)
        return ProcessEscalationRead.model_validate(escalation)
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_escalation_resolve_failed")


@router.post("/executions/{execution_id}/rollback", response_model=ProcessExecutionRead)
def rollback(
    request: Request,
    execution_id: uuid.UUID,
    payload: RollbackRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ProcessExecutionRead | JSONResponse:
    try:
        require_permissions(user, "process.execute")
        execution = process_repository.get_execution(db, execution_id)
        process_engine.rollback(
            db,
            execution,
            actor_id(user),
            payload.rollback_data,
            expected_version=payload.row_version,
        )
        return ProcessExecutionRead.model_validate(execution)
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_execution_rollback_failed")


@router.get("/executions/{execution_id}/audit", response_model=list[ProcessAuditLogRead])
def audit_trail(
    request: Request,
    execution_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[ProcessAuditLogRead] | JSONResponse:
    try:
        require_permissions(user, "process.read")
        process_repository.get_execution(db, execution_id)
        return [ProcessAuditLogRead.model_validate(row) for row in audit_writer.trail(db, execution_id)]
    except (ProcessError, HTTPException) as exc:
        return _failure(request, exc, "process_audit_list_failed")
