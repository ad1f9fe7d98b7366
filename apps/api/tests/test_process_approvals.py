from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.config import get_settings
from app.core.database import Base
from app.process.audit import audit_writer
from app.process.definitions import definition_service
from app.process.engine import process_engine
from app.process.errors import DuplicateApprovalError, InvalidTransitionError
from app.process.models import ProcessApproval, ProcessDefinition, ProcessExecution
from app.process.schemas import ProcessDefinitionCreate


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


def _active_definition(session: Session, steps: list[dict[str, Any]]) -> ProcessDefinition:
    payload = ProcessDefinitionCreate(name="Quote Approval", slug=f"quote-{uuid.uuid4().hex[:8]}", steps=steps)
    definition = definition_service.create(session, payload, creator_id=1)
    return definition_service.activate(session, definition.id)


def _approvals(session: Session, execution: ProcessExecution) -> list[ProcessApproval]:
    return list(
        session.scalars(
            select(ProcessApproval)
            .where(ProcessApproval.execution_id == execution.id)
            .order_by(ProcessApproval.created_at.asc())
        ).all()
    )


def _hours_until(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - datetime.now(timezone.utc)).total_seconds() / 3600


def test_gated_step_uses_configured_approver_and_sla(db_session: Session) -> None:
    definition = _active_definition(
        db_session,
        [
            {
                "name": "Discount",
                "requires_approval": True,
                "approver_id": 31,
                "approval_sla_hours": 4,
                "approval_notes": "Discounts above 20%",
            }
        ],
    )
    execution = process_engine.start_execution(db_session, definition, 7)
    step = process_engine.execute_next_step(db_session, execution)
    assert step is not None

    (approval,) = _approvals(db_session, execution)
    assert approval.execution_step_id == step.id
    assert approval.approver_id == 31
    assert approval.requested_by_id == 7
    assert approval.approval_notes == "Discounts above 20%"
    assert approval.due_at is not None
    assert _hours_until(approval.due_at) == pytest.approx(4, abs=0.05)

    requested = audit_writer.trail(db_session, execution.id)[-1]
    assert requested.event_type == "APPROVAL_REQUESTED"
    assert requested.state_before == {"status": None, "execution_status": "IN_PROGRESS"}
    assert requested.state_after == {"status": "PENDING", "execution_status": "AWAITING_APPROVAL"}


def test_approval_due_date_defaults_to_settings(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PROCESS_DEFAULT_APPROVAL_SLA_HOURS", "12")
    get_settings.cache_clear()
    definition = _active_definition(db_session, [{"name": "Discount", "requires_approval": True}])
    execution = process_engine.start_execution(db_session, definition, 7)
    process_engine.execute_next_step(db_session, execution)

    (approval,) = _approvals(db_session, execution)
    assert approval.approver_id is None
    assert approval.due_at is not None
    assert _hours_until(approval.due_at) == pytest.approx(12, abs=0.05)


def test_second_open_approval_for_step_is_rejected(db_session: Session) -> None:
    definition = _active_definition(db_session, [{"name": "Discount", "requires_approval": True}])
    execution = process_engine.start_execution(db_session, definition, 7)
    step = process_engine.execute_next_step(db_session, execution)
    assert step is not None
    rows_before = len(audit_writer.trail(db_session, execution.id))

    with pytest.raises(DuplicateApprovalError):
        process_engine.request_approval(db_session, execution, step, requested_by=7)

    assert len(_approvals(db_session, execution)) == 1
    assert len(audit_writer.trail(db_session, execution.id)) == rows_before


def test_manual_approval_request_on_running_step(db_session: Session) -> None:
    definition = _active_definition(db_session, [{"name": "Review"}, {"name": "Ship"}])
    execution = process_engine.start_execution(db_session, definition, 7)
    step = process_engine.execute_next_step(db_session, execution)
    assert step is not None

    approval = process_engine.request_approval(db_session, execution, step, requested_by=8)

    assert execution.status == "AWAITING_APPROVAL"
    assert approval.requested_by_id == 8
    process_engine.approve_step(db_session, approval, 9)
    assert step.status == "COMPLETED"
    assert execution.status == "IN_PROGRESS"


def test_execution_level_approval_keeps_execution_running(db_session: Session) -> None:
    definition = _active_definition(db_session, [{"name": "Review"}])
    execution = process_engine.start_execution(db_session, definition, 7)

    approval = process_engine.request_approval(db_session, execution)

    assert approval.execution_step_id is None
    assert approval.requested_by_id == 7
    assert execution.status == "IN_PROGRESS"

    process_engine.approve_step(db_session, approval, 9, "ok")
    assert approval.status == "APPROVED"
    assert execution.status == "IN_PROGRESS"


def test_decided_approval_cannot_be_decided_again(db_session: Session) -> None:
    definition = _active_definition(db_session, [{"name": "Discount", "requires_approval": True}, {"name": "Ship"}])
    execution = process_engine.start_execution(db_session, definition, 7)
    process_engine.execute_next_step(db_session, execution)
    (approval,) = _approvals(db_session, execution)
    process_engine.approve_step(db_session, approval, 9)

    with pytest.raises(InvalidTransitionError):
        process_engine.approve_step(db_session, approval, 9)
    with pytest.raises(InvalidTransitionError):
        process_engine.reject_step(db_session, approval, 9)

    assert approval.status == "APPROVED"
    assert execution.status == "IN_PROGRESS"


def test_assign_unassigned_approval(db_session: Session) -> None:
    definition = _active_definition(db_session, [{"name": "Discount", "requires_approval": True}])
    execution = process_engine.start_execution(db_session, definition, 7)
    process_engine.execute_next_step(db_session, execution)
    (approval,) = _approvals(db_session, execution)
    assert approval.approver_id is None

    process_engine.assign_approver(db_session, approval, 55, 7)

    assert approval.approver_id == 55
    assigned = audit_writer.trail(db_session, execution.id)[-1]
    assert assigned.event_type == "APPROVAL_ASSIGNED"
    assert assigned.user_id == 7
    assert assigned.state_after == {"status": "PENDING", "approver_id": "55"}
    assert events.published_events[-1]["event_type"] == "process.approval.assigned"
    assert events.published_events[-1]["approver_id"] == 55


def test_assign_decided_approval_is_rejected(db_session: Session) -> None:
    definition = _active_definition(db_session, [{"name": "Discount", "requires_approval": True}, {"name": "Ship"}])
    execution = process_engine.start_execution(db_session, definition, 7)
    process_engine.execute_next_step(db_session, execution)
    (approval,) = _approvals(db_session, execution)
    process_engine.approve_step(db_session, approval, 9)

    with pytest.raises(InvalidTransitionError):
        process_engine.assign_approver(db_session, approval, 55, 7)


def test_approval_on_rolled_back_execution_is_rejected(db_session: Session) -> None:
    definition = _active_definition(db_session, [{"name": "Discount", "requires_approval": True}])
    execution = process_engine.start_execution(db_session, definition, 7)
    process_engine.execute_next_step(db_session, execution)
    (approval,) = _approvals(db_session, execution)
    process_engine.rollback(db_session, execution, 7)

    with pytest.raises(InvalidTransitionError):
        process_engine.approve_step(db_session, approval, 9)

    assert approval.status == "PENDING"
    assert approval.decided_at is None


def test_approval_due_date_is_recorded_in_audit_data(db_session: Session) -> None:
    definition = _active_definition(
        db_session,
        [{"name": "Discount", "requires_approval": True, "approval_sla_hours": 1}],
    )
    execution = process_engine.start_execution(db_session, definition, 7)
    before = datetime.now(timezone.utc)
    process_engine.execute_next_step(db_session, execution)

    requested = audit_writer.trail(db_session, execution.id)[-1]
    due_at = datetime.fromisoformat(requested.event_data["due_at"])  # type: ignore[index]
    assert before + timedelta(minutes=59) < due_at < before + timedelta(minutes=61)


def test_zero_approval_sla_makes_approval_due_immediately(db_session: Session) -> None:
    definition = _active_definition(
        db_session,
        [{"name": "Discount", "requires_approval": True, "approval_sla_hours": 0}],
    )
    execution = process_engine.start_execution(db_session, definition, 7)
    process_engine.execute_next_step(db_session, execution)

    (approval,) = _approvals(db_session, execution)
    assert approval.due_at is not None
    assert _hours_until(approval.due_at) == pytest.approx(0, abs=0.05)
