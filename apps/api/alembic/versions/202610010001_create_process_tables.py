"""create process execution tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "process_definition",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Integer(), nullable=True),
        sa.Column("creator_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="DRAFT"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("steps", sa.JSON(), nullable=False),
        sa.Column("sla_config", sa.JSON(), nullable=True),
        sa.Column("escalation_rules", sa.JSON(), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("slug", name="uq_process_definition_slug"),
    )
    op.create_index("ix_process_definition_team_status", "process_definition", ["team_id", "status"], unique=False)

    op.create_table(
        "process_execution",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Integer(), nullable=True),
        sa.Column("process_definition_id", sa.Uuid(), nullable=False),
        sa.Column("initiated_by_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="PENDING"),
        sa.Column("process_version", sa.Integer(), nullable=False),
        sa.Column("context_data", sa.JSON(), nullable=False),
        sa.Column("execution_state", sa.JSON(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sla_due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("rollback_data", sa.JSON(), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["process_definition_id"], ["process_definition.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_process_execution_definition_status",
        "process_execution",
        ["process_definition_id", "status"],
        unique=False,
    )
    op.create_index("ix_process_execution_team_status", "process_execution", ["team_id", "status"], unique=False)
    op.create_index("ix_process_execution_sla_due", "process_execution", ["status", "sla_due_at"], unique=False)

    op.create_table(
        "process_execution_step",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("execution_id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Integer(), nullable=True),
        sa.Column("assigned_to_id", sa.Integer(), nullable=True),
        sa.Column("step_key", sa.String(length=128), nullable=False),
        sa.Column("step_name", sa.String(length=255), nullable=False),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="PENDING"),
        sa.Column("step_config", sa.JSON(), nullable=False),
        sa.Column("output_data", sa.JSON(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["execution_id"], ["process_execution.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("execution_id", "step_order", name="uq_process_execution_step_order"),
    )
    op.create_index(
        "ix_process_execution_step_status",
        "process_execution_step",
        ["execution_id", "status"],
        unique=False,
    )
    op.create_index(
        "ix_process_execution_step_assignee",
        "process_execution_step",
        ["assigned_to_id", "status"],
        unique=False,
    )

    op.create_table(
        "process_approval",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("execution_id", sa.Uuid(), nullable=False),
        sa.Column("execution_step_id", sa.Uuid(), nullable=True),
        sa.Column("team_id", sa.Integer(), nullable=True),
        sa.Column("requested_by_id", sa.Integer(), nullable=False),
        sa.Column("approver_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="PENDING"),
        sa.Column("approval_notes", sa.Text(), nullable=True),
        sa.Column("decision_notes", sa.Text(), nullable=True),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["execution_id"], ["process_execution.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["execution_step_id"], ["process_execution_step.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_process_approval_open_step",
        "process_approval",
        ["execution_step_id"],
        unique=True,
        postgresql_where=sa.text("status = 'PENDING'"),
    )
    op.create_index(
        "ix_process_approval_approver_status",
        "process_approval",
        ["approver_id", "status"],
        unique=False,
    )
    op.create_index("ix_process_approval_execution", "process_approval", ["execution_id", "status"], unique=False)

    op.create_table(
        "process_escalation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("execution_id", sa.Uuid(), nullable=False),
        sa.Column("execution_step_id", sa.Uuid(), nullable=True),
        sa.Column("team_id", sa.Integer(), nullable=True),
        sa.Column("escalated_to_id", sa.Integer(), nullable=False),
        sa.Column("escalated_by_id", sa.Integer(), nullable=False),
        sa.Column("escalation_reason", sa.Text(), nullable=False),
        sa.Column("escalation_notes", sa.Text(), nullable=True),
        sa.Column("previous_status", sa.String(length=32), nullable=False),
        sa.Column("is_resolved", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by_id", sa.Integer(), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["execution_id"], ["process_execution.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["execution_step_id"], ["process_execution_step.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_process_escalation_execution",
        "process_escalation",
        ["execution_id", "is_resolved"],
        unique=False,
    )
    op.create_index(
        "ix_process_escalation_assignee",
        "process_escalation",
        ["escalated_to_id", "is_resolved"],
        unique=False,
    )

    op.create_table(
        "process_audit_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("execution_id", sa.Uuid(), nullable=False),
        sa.Column("execution_step_id", sa.Uuid(), nullable=True),
        sa.Column("sequence_no", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("event_description", sa.Text(), nullable=False),
        sa.Column("event_data", sa.JSON(), nullable=True),
        sa.Column("state_before", sa.JSON(), nullable=True),
        sa.Column("state_after", sa.JSON(), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["execution_id"], ["process_execution.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["execution_step_id"], ["process_execution_step.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("execution_id", "sequence_no", name="uq_process_audit_log_sequence"),
    )
    op.create_index(
        "ix_process_audit_log_event_type",
        "process_audit_log",
        ["event_type", "created_at"],
        unique=False,
    )
    op.create_index("ix_process_audit_log_user", "process_audit_log", ["user_id", "created_at"], unique=False)

    op.create_table(
        "process_analytics",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("process_definition_id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Integer(), nullable=True),
        sa.Column("metric_date", sa.Date(), nullable=False),
        sa.Column("executions_started", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("executions_completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("executions_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("escalations_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sla_breaches", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("avg_completion_seconds", sa.Float(), nullable=True),
        sa.Column("min_completion_seconds", sa.Float(), nullable=True),
        sa.Column("max_completion_seconds", sa.Float(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["process_definition_id"], ["process_definition.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("process_definition_id", "metric_date", name="uq_process_analytics_definition_date"),
    )

    # Audit rows are append-only at the database level too.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION process_audit_log_immutable() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'process_audit_log rows are immutable';
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_process_audit_log_immutable
        BEFORE UPDATE OR DELETE ON process_audit_log
        FOR EACH ROW EXECUTE FUNCTION process_audit_log_immutable();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_process_audit_log_immutable ON process_audit_log")
    op.execute("DROP FUNCTION IF EXISTS process_audit_log_immutable()")
    op.drop_table("process_analytics")
    op.drop_index("ix_process_audit_log_user", table_name="process_audit_log")
    op.drop_index("ix_process_audit_log_event_type", table_name="process_audit_log")
    op.drop_table("process_audit_log")
    op.drop_index("ix_process_escalation_assignee", table_name="process_escalation")
    op.drop_index("ix_process_escalation_execution", table_name="process_escalation")
    op.drop_table("process_escalation")
    op.drop_index("ix_process_approval_execution", table_name="process_approval")
    op.drop_index("ix_process_approval_approver_status", table_name="process_approval")
    op.drop_index("uq_process_approval_open_step", table_name="process_approval")
    op.drop_table("process_approval")
    op.drop_index("ix_process_execution_step_assignee", table_name="process_execution_step")
    op.drop_index("ix_process_execution_step_status", table_name="process_execution_step")
    op.drop_table("process_execution_step")
    op.drop_index("ix_process_execution_sla_due", table_name="process_execution")
    op.drop_index("ix_process_execution_team_status", table_name="process_execution")
    op.drop_index("ix_process_execution_definition_status", table_name="process_execution")
    op.drop_table("process_execution")
    op.drop_index("ix_process_definition_team_status", table_name="process_definition")
    op.drop_table("process_definition")
