from __future__ import annotations

import uuid
from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.process.audit import audit_writer
from app.process.definitions import definition_service
from app.process.engine import process_engine
from app.process.errors import StaleExecutionError
from app.process.models import ProcessDefinition, ProcessExecution
from app.process.scheduler import step_scheduler
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
def file_engine(tmp_path: Path) -> Generator[Engine, None, None]:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'process.db'}")
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


def _active_definition(session: Session) -> ProcessDefinition:
    payload = ProcessDefinitionCreate(
        name="Contract",
        slug=f"contract-{uuid.uuid4().hex[:8]}",
        steps=[{"name": "Draft"}, {"name": "Sign"}],
    )
    definition = definition_service.create(session, payload, creator_id=1)
    return definition_service.activate(session, definition.id)


def test_row_version_increments_on_each_mutation(db_session: Session) -> None:
    execution = process_engine.start_execution(db_session, _active_definition(db_session), 7)
    versions = [execution.row_version]

    step = process_engine.execute_next_step(db_session, execution)
    assert step is not None
    versions.append(execution.row_version)
    process_engine.complete_step(db_session, execution, step)
    versions.append(execution.row_version)

    assert versions == sorted(set(versions))


def test_stale_expected_version_is_rejected_without_audit(db_session: Session) -> None:
    execution = process_engine.start_execution(db_session, _active_definition(db_session), 7)
    stale = execution.row_version
    step = process_engine.execute_next_step(db_session, execution, expected_version=stale)
    assert step is not None
    rows_before = len(audit_writer.trail(db_session, execution.id))

    with pytest.raises(StaleExecutionError) as exc_info:
        process_engine.complete_step(db_session, execution, step, expected_version=stale)

    assert exc_info.value.details["expected"] == stale
    assert exc_info.value.details["actual"] == execution.row_version
    assert step.status == "IN_PROGRESS"
    assert len(audit_writer.trail(db_session, execution.id)) == rows_before

    process_engine.complete_step(db_session, execution, step, expected_version=execution.row_version)
    assert step.status == "COMPLETED"


def test_concurrent_writer_gets_stale_error(file_engine: Engine) -> None:
    SessionLocal = sessionmaker(bind=file_engine, autocommit=False, autoflush=False)
    first = SessionLocal()
    second = SessionLocal()
    try:
        execution = process_engine.start_execution(first, _active_definition(first), 7)
        competing = second.get(ProcessExecution, execution.id)
        assert competing is not None
        assert [step.status for step in competing.steps] == ["PENDING", "PENDING"]

        process_engine.execute_next_step(first, execution)

        with pytest.raises(StaleExecutionError):
            process_engine.execute_next_step(second, competing)

        first.expire_all()
        assert [step.status for step in step_scheduler.steps(first, execution)] == ["IN_PROGRESS", "PENDING"]
        assert len(audit_writer.trail(first, execution.id)) == 2
    finally:
        second.close()
        first.close()
