from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.process import tasks
from app.process.definitions import definition_service
from app.process.engine import process_engine
from app.process.errors import StaleExecutionError
from app.process.models import ProcessDefinition, utcnow
from app.process.scheduler import step_scheduler
from app.process.schemas import ProcessDefinitionCreate


@pytest.fixture()
def session_factory(monkeypatch: pytest.MonkeyPatch) -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(tasks, "SessionLocal", SessionLocal)
    try:
        yield SessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def _definition(session: Session, *, activate: bool = True) -> ProcessDefinition:
    payload = ProcessDefinitionCreate(
        name="Churn save",
        slug=f"churn-{uuid.uuid4().hex[:8]}",
        steps=[{"name": "Call"}, {"name": "Offer"}],
    )
    definition = definition_service.create(session, payload, creator_id=1)
    if activate:
        definition = definition_service.activate(session, definition.id)
    return definition


def test_advance_execution_starts_next_step(db_session: Session) -> None:
    execution = process_engine.start_execution(db_session, _definition(db_session), 7)

    result = tasks.advance_execution(db_session, execution.id, expected_version=execution.row_version)

    first = step_scheduler.step_at(db_session, execution, 1)
    assert first is not None
    assert result["step_id"] == str(first.id)
    assert result["status"] == "IN_PROGRESS"
    assert result["row_version"] == execution.row_version


def test_advance_task_runs_in_its_own_session(db_session: Session) -> None:
    execution = process_engine.start_execution(db_session, _definition(db_session), 7)

    result = tasks.advance_execution_task(execution_id=str(execution.id), correlation_id="job-corr-1")

    db_session.expire_all()
    first = step_scheduler.step_at(db_session, execution, 1)
    assert first is not None
    assert first.status == "IN_PROGRESS"
    assert result["execution_id"] == str(execution.id)


def test_advance_task_retries_on_stale_version(db_session: Session, caplog: pytest.LogCaptureFixture) -> None:
    execution = process_engine.start_execution(db_session, _definition(db_session), 7)
    caplog.set_level(logging.WARNING, logger="app.process.jobs")

    with pytest.raises(StaleExecutionError):
        tasks.advance_execution_task(execution_id=str(execution.id), expected_version=execution.row_version + 5)

    retries = [record for record in caplog.records if record.getMessage() == "job.retry"]
    assert len(retries) == 1
    assert retries[0].execution_id == str(execution.id)

    db_session.expire_all()
    assert [step.status for step in step_scheduler.steps(db_session, execution)] == ["PENDING", "PENDING"]


def test_rollup_covers_non_draft_definitions(db_session: Session) -> None:
    active = _definition(db_session)
    _definition(db_session, activate=False)
    process_engine.start_execution(db_session, active, 7)

    results = tasks.rollup_analytics(db_session, utcnow().date())

    assert results == [
        {
            "definition_id": str(active.id),
            "metric_date": utcnow().date().isoformat(),
            "executions_started": 1,
        }
    ]


def test_rollup_task_defaults_to_yesterday(db_session: Session) -> None:
    definition = _definition(db_session)
    process_engine.start_execution(db_session, definition, 7)

    results = tasks.rollup_analytics_task()

    assert results[0]["metric_date"] == (utcnow().date() - timedelta(days=1)).isoformat()
    assert results[0]["executions_started"] == 0
