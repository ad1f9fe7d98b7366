from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base
from app.process.errors import AuditLogImmutableError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcessDefinition(Base):
    __tablename__ = "process_definition"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    team_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    creator_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="DRAFT", server_default="DRAFT")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    steps: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    sla_config: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    escalation_rules: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    executions: Mapped[list[ProcessExecution]] = relationship(
        "app.process.models.ProcessExecution",
        back_populates="definition",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint("slug", name="uq_process_definition_slug"),
        Index("ix_process_definition_team_status", "team_id", "status"),
    )


class ProcessExecution(Base):
    __tablename__ = "process_execution"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    team_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    process_definition_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("process_definition.id", ondelete="RESTRICT"), nullable=False
    )
    initiated_by_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING", server_default="PENDING")
    process_version: Mapped[int] = mapped_column(Integer, nullable=False)
    context_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    execution_state: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sla_due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    rollback_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    definition: Mapped[ProcessDefinition] = relationship(
        "app.process.models.ProcessDefinition",
        back_populates="executions",
    )
    steps: Mapped[list[ProcessExecutionStep]] = relationship(
        "app.process.models.ProcessExecutionStep",
        back_populates="execution",
        order_by="ProcessExecutionStep.step_order",
        passive_deletes=True,
    )

    # UPDATE statements carry "WHERE row_version = :loaded" and bump it.
    __mapper_args__ = {"version_id_col": row_version}

    __table_args__ = (
        Index("ix_process_execution_definition_status", "process_definition_id", "status"),
        Index("ix_process_execution_team_status", "team_id", "status"),
        Index("ix_process_execution_sla_due", "status", "sla_due_at"),
    )

    @property
    def current_step(self) -> int:
        state = self.execution_state or {}
        return int(state.get("current_step", 0))


class ProcessExecutionStep(Base):
    __tablename__ = "process_execution_step"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    execution_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("process_execution.id", ondelete="CASCADE"), nullable=False
    )
    team_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    assigned_to_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    step_key: Mapped[str] = mapped_column(String(128), nullable=False)
    step_name: Mapped[str] = mapped_column(String(255), nullable=False)
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING", server_default="PENDING")
    step_config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    output_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    execution: Mapped[ProcessExecution] = relationship("app.process.models.ProcessExecution", back_populates="steps")

    __table_args__ = (
        UniqueConstraint("execution_id", "step_order", name="uq_process_execution_step_order"),
        Index("ix_process_execution_step_status", "execution_id", "status"),
        Index("ix_process_execution_step_assignee", "assigned_to_id", "status"),
    )


class ProcessApproval(Base):
    __tablename__ = "process_approval"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    execution_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("process_execution.id", ondelete="CASCADE"), nullable=False
    )
    execution_step_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("process_execution_step.id", ondelete="SET NULL"), nullable=True
    )
    team_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    requested_by_id: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING", server_default="PENDING")
    approval_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    decision_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    execution: Mapped[ProcessExecution] = relationship("app.process.models.ProcessExecution")
    execution_step: Mapped[ProcessExecutionStep | None] = relationship("app.process.models.ProcessExecutionStep")

    __table_args__ = (
        Index(
            "uq_process_approval_open_step",
            "execution_step_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
        Index("ix_process_approval_approver_status", "approver_id", "status"),
        Index("ix_process_approval_execution", "execution_id", "status"),
    )


class ProcessEscalation(Base):
    __tablename__ = "process_escalation"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    execution_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("process_execution.id", ondelete="CASCADE"), nullable=False
    )
    execution_step_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("process_execution_step.id", ondelete="SET NULL"), nullable=True
    )
    team_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    escalated_to_id: Mapped[int] = mapped_column(Integer, nullable=False)
    escalated_by_id: Mapped[int] = mapped_column(Integer, nullable=False)
    escalation_reason: Mapped[str] = mapped_column(Text, nullable=False)
    escalation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    previous_status: Mapped[str] = mapped_column(String(32), nullable=False)
    is_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    execution: Mapped[ProcessExecution] = relationship("app.process.models.ProcessExecution")

    __table_args__ = (
        Index("ix_process_escalation_execution", "execution_id", "is_resolved"),
        Index("ix_process_escalation_assignee", "escalated_to_id", "is_resolved"),
    )


class ProcessAuditLog(Base):
    __tablename__ = "process_audit_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    execution_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("process_execution.id", ondelete="CASCADE"), nullable=False
    )
    execution_step_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("process_execution_step.id", ondelete="SET NULL"), nullable=True
    )
    sequence_no: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    event_description: Mapped[str] = mapped_column(Text, nullable=False)
    event_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    state_before: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    state_after: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("execution_id", "sequence_no", name="uq_process_audit_log_sequence"),
        Index("ix_process_audit_log_event_type", "event_type", "created_at"),
        Index("ix_process_audit_log_user", "user_id", "created_at"),
    )


class ProcessAnalytics(Base):
    __tablename__ = "process_analytics"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    process_definition_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("process_definition.id", ondelete="CASCADE"), nullable=False
    )
    team_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    metric_date: Mapped[date] = mapped_column(Date(), nullable=False)
    executions_started: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    executions_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    executions_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    escalations_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    sla_breaches: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    avg_completion_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    min_completion_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_completion_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("process_definition_id", "metric_date", name="uq_process_analytics_definition_date"),
    )


@event.listens_for(ProcessAuditLog, "before_update")
def _reject_audit_update(mapper, connection, target: ProcessAuditLog) -> None:  # type: ignore[no-untyped-def]
    raise AuditLogImmutableError("process audit log rows cannot be updated", details={"audit_id": str(target.id)})


@event.listens_for(ProcessAuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target: ProcessAuditLog) -> None:  # type: ignore[no-untyped-def]
    raise AuditLogImmutableError("process audit log rows cannot be deleted", details={"audit_id": str(target.id)})
