from __future__ import annotations

from datetime import date, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ProcessDefinitionCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    slug: str = Field(min_length=1, max_length=255, pattern=r"^[a-z0-9][a-z0-9_-]*$")
    description: str | None = None
    team_id: int | None = None
    steps: list[dict[str, Any]] = Field(min_length=1)
    sla_config: dict[str, Any] | None = None
    escalation_rules: dict[str, Any] | None = None
    metadata_json: dict[str, Any] | None = None


class ProcessDefinitionUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    steps: list[dict[str, Any]] | None = Field(default=None, min_length=1)
    sla_config: dict[str, Any] | None = None
    escalation_rules: dict[str, Any] | None = None
    metadata_json: dict[str, Any] | None = None


class ProcessDefinitionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    team_id: int | None
    creator_id: int | None
    name: str
    slug: str
    description: str | None
    status: str
    version: int
    steps: list[dict[str, Any]]
    sla_config: dict[str, Any] | None
    escalation_rules: dict[str, Any] | None
    metadata_json: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime


class ProcessStepRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    execution_id: UUID
    assigned_to_id: int | None
    step_key: str
    step_name: str
    step_order: int
    status: str
    step_config: dict[str, Any]
    output_data: dict[str, Any] | None
    started_at: datetime | None
    completed_at: datetime | None
    due_at: datetime | None
    error_message: str | None


class ProcessExecutionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    team_id: int | None
    process_definition_id: UUID
    initiated_by_id: int
    status: str
    process_version: int
    context_data: dict[str, Any]
    execution_state: dict[str, Any]
    started_at: datetime | None
    completed_at: datetime | None
    sla_due_at: datetime | None
    error_message: str | None
    rollback_data: dict[str, Any] | None
    row_version: int
    steps: list[ProcessStepRead] = Field(default_factory=list)


class ProcessApprovalRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    execution_id: UUID
    execution_step_id: UUID | None
    requested_by_id: int
    approver_id: int | None
    status: str
    approval_notes: str | None
    decision_notes: str | None
    due_at: datetime | None
    decided_at: datetime | None


class ProcessEscalationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    execution_id: UUID
    execution_step_id: UUID | None
    escalated_to_id: int
    escalated_by_id: int
    escalation_reason: str
    escalation_notes: str | None
    previous_status: str
    is_resolved: bool
    resolved_at: datetime | None
    resolved_by_id: int | None
    resolution_notes: str | None
    created_at: datetime


class ProcessAuditLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    execution_id: UUID
    execution_step_id: UUID | None
    sequence_no: int
    user_id: int | None
    event_type: str
    event_description: str
    event_data: dict[str, Any] | None
    state_before: dict[str, Any] | None
    state_after: dict[str, Any] | None
    ip_address: str | None
    user_agent: str | None
    correlation_id: str | None
    created_at: datetime


class ProcessAnalyticsRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    process_definition_id: UUID
    metric_date: date
    executions_started: int
    executions_completed: int
    executions_failed: int
    escalations_count: int
    sla_breaches: int
    avg_completion_seconds: float | None
    min_completion_seconds: float | None
    max_completion_seconds: float | None


class StartExecutionRequest(BaseModel):
    definition_id: UUID
    context_data: dict[str, Any] = Field(default_factory=dict)


class VersionedRequest(BaseModel):
    row_version: int | None = Field(default=None, ge=1)


class CompleteStepRequest(VersionedRequest):
    output_data: dict[str, Any] = Field(default_factory=dict)


class FailStepRequest(VersionedRequest):
    error_message: str = Field(min_length=1, max_length=2000)


class ApprovalDecisionRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=4000)


class AssignApproverRequest(BaseModel):
    approver_id: int


class RequestApprovalRequest(BaseModel):
    step_id: UUID | None = None


class EscalateRequest(VersionedRequest):
    escalated_to_id: int
    reason: str = Field(min_length=1, max_length=2000)
    step_id: UUID | None = None
    notes: str | None = Field(default=None, max_length=4000)


class ResolveEscalationRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=4000)
    resume: bool = False


class RollbackRequest(VersionedRequest):
    rollback_data: dict[str, Any] = Field(default_factory=dict)
