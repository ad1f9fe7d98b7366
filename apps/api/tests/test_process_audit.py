from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.context import reset_client_metadata, reset_correlation_id, set_client_metadata, set_correlation_id
from app.core.database import Base
from app.process.audit import audit_writer, snapshot
from app.process.definitions import definition_service
from app.process.engine import process_engine
from app.process.errors import AuditLogImmutableError
from app.process.models import ProcessDefinition
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


@pytest.fixture()
def definition(db_session: Session) -> ProcessDefinition:
    payload = ProcessDefinitionCreate(
        name="Onboarding",
        slug=f"onboarding-{uuid.uuid4().hex[:8]}",
        steps=[{"name": "Kickoff"}, {"name": "Handover"}],
    )
    created = definition_service.create(db_session, payload, creator_id=1)
    return definition_service.activate(db_session, created.id)


def test_audit_rows_capture_request_context(db_session: Session, definition: ProcessDefinition) -> None:
    metadata_tokens = set_client_metadata("10.1.2.3", "pytest-agent/1.0")
    correlation_token = set_correlation_id("corr-audit-7")
    try:
        execution = process_engine.start_execution(db_session, definition, 7)
    finally:
        reset_correlation_id(correlation_token)
        reset_client_metadata(metadata_tokens)

    (row,) = audit_writer.trail(db_session, execution.id)
    assert row.event_type == "EXECUTION_STARTED"
    assert row.user_id == 7
    assert row.ip_address == "10.1.2.3"
    assert row.user_agent == "pytest-agent/1.0"
    assert row.correlation_id == "corr-audit-7"
    assert row.state_before == {"status": None}
    assert row.state_after == {"status": "IN_PROGRESS"}


def test_step_snapshots_are_taken_before_mutation(db_session: Session, definition: ProcessDefinition) -> None:
    execution = process_engine.start_execution(db_session, definition, 7)
    step = process_engine.execute_next_step(db_session, execution)
    assert step is not None
    process_engine.fail_step(db_session, execution, step, "no budget")

    started, failed = audit_writer.trail(db_session, execution.id)[1:]
    assert started.execution_step_id == step.id
    assert started.state_before == {"status": "PENDING"}
    assert started.state_after == {"status": "IN_PROGRESS"}
    assert failed.state_before == {"status": "IN_PROGRESS", "execution_status": "IN_PROGRESS"}
    assert failed.state_after == {"status": "FAILED", "execution_status": "FAILED"}
    assert failed.event_data == {"error": "no budget"}


def test_audit_rows_cannot_be_updated(db_session: Session, definition: ProcessDefinition) -> None:
    execution = process_engine.start_execution(db_session, definition, 7)
    (row,) = audit_writer.trail(db_session, execution.id)

    row.event_description = "rewritten"
    with pytest.raises(AuditLogImmutableError):
        db_session.commit()
    db_session.rollback()

    (row,) = audit_writer.trail(db_session, execution.id)
    assert row.event_description == "Process execution started"


def test_audit_rows_cannot_be_deleted(db_session: Session, definition: ProcessDefinition) -> None:
    execution = process_engine.start_execution(db_session, definition, 7)
    (row,) = audit_writer.trail(db_session, execution.id)

    db_session.delete(row)
    with pytest.raises(AuditLogImmutableError):
        db_session.commit()
    db_session.rollback()

    assert len(audit_writer.trail(db_session, execution.id)) == 1


def test_engine_never_rewrites_earlier_rows(db_session: Session, definition: ProcessDefinition) -> None:
    execution = process_engine.start_execution(db_session, definition, 7)
    first = audit_writer.trail(db_session, execution.id)[0]
    original = (first.id, first.event_type, first.state_after, first.created_at)

    for _ in range(2):
        step = process_engine.execute_next_step(db_session, execution)
        assert step is not None
        process_engine.complete_step(db_session, execution, step)
    process_engine.escalate(db_session, execution, 3, 7, "post-completion review")
    db_session.expire_all()

    trail = audit_writer.trail(db_session, execution.id)
    assert (trail[0].id, trail[0].event_type, trail[0].state_after, trail[0].created_at) == original
    assert [row.sequence_no for row in trail] == list(range(1, len(trail) + 1))


def test_sequence_numbers_are_per_execution(db_session: Session, definition: ProcessDefinition) -> None:
    first = process_engine.start_execution(db_session, definition, 7)
    second = process_engine.start_execution(db_session, definition, 8)
    process_engine.execute_next_step(db_session, first)

    assert [row.sequence_no for row in audit_writer.trail(db_session, first.id)] == [1, 2]
    assert [row.sequence_no for row in audit_writer.trail(db_session, second.id)] == [1]


def test_snapshot_drops_empty_extras() -> None:
    assert snapshot(None) == {"status": None}
    assert snapshot("PENDING", approver_id=None) == {"status": "PENDING"}
    assert snapshot("PENDING", approver_id=12) == {"status": "PENDING", "approver_id": "12"}
