from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.process.definitions import definition_service
from app.process.engine import process_engine
from app.process.errors import (
    InvalidTransitionError,
    ProcessConfigurationError,
    ProcessConflictError,
    ProcessNotFoundError,
)
from app.process.scheduler import step_scheduler
from app.process.schemas import ProcessDefinitionCreate, ProcessDefinitionUpdate


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


def _payload(slug: str = "lead-qualification", **overrides) -> ProcessDefinitionCreate:  # type: ignore[no-untyped-def]
    data = {
        "name": "Lead Qualification",
        "slug": slug,
        "team_id": 4,
        "steps": [{"key": "call", "name": "Discovery call"}, {"key": "score"}],
    }
    data.update(overrides)
    return ProcessDefinitionCreate(**data)


def test_create_starts_as_draft_version_one(db_session: Session) -> None:
    definition = definition_service.create(db_session, _payload(), creator_id=3)

    assert definition.status == "DRAFT"
    assert definition.version == 1
    assert definition.creator_id == 3
    assert definition.team_id == 4
    assert definition_service.get_by_slug(db_session, "lead-qualification") is not None


def test_duplicate_slug_is_a_conflict(db_session: Session) -> None:
    definition_service.create(db_session, _payload(), creator_id=3)

    with pytest.raises(ProcessConflictError):
        definition_service.create(db_session, _payload(), creator_id=3)

    assert len(definition_service.list_definitions(db_session)) == 1


@pytest.mark.parametrize(
    "steps",
    [
        [{"key": "same"}, {"key": "same"}],
        [{"requires_approval": "sometimes"}],
        [{"name": "Call", "sla_hours": -1}],
    ],
)
def test_invalid_steps_are_rejected(db_session: Session, steps: list) -> None:
    with pytest.raises(ProcessConfigurationError):
        definition_service.create(db_session, _payload(steps=steps), creator_id=3)

    assert definition_service.list_definitions(db_session) == []


def test_invalid_sla_config_is_rejected(db_session: Session) -> None:
    with pytest.raises(ProcessConfigurationError):
        definition_service.create(db_session, _payload(sla_config={"hours": "soon"}), creator_id=3)


def test_steps_get_default_keys_and_names(db_session: Session) -> None:
    created = definition_service.create(
        db_session,
        _payload(steps=[{"custom": "x"}, {"name": "Named"}]),
        creator_id=3,
    )
    definition = definition_service.activate(db_session, created.id)
    execution = process_engine.start_execution(db_session, definition, 7)

    first, second = step_scheduler.steps(db_session, execution)
    assert (first.step_key, first.step_name) == ("step_1", "Step 1")
    assert (second.step_key, second.step_name) == ("step_2", "Named")
    assert first.step_config == {"custom": "x"}


def test_step_changes_bump_version_without_touching_running_executions(db_session: Session) -> None:
    created = definition_service.create(db_session, _payload(), creator_id=3)
    definition = definition_service.activate(db_session, created.id)
    running = process_engine.start_execution(db_session, definition, 7)

    definition_service.update(
        db_session,
        definition.id,
        ProcessDefinitionUpdate(steps=[{"key": "call"}, {"key": "score"}, {"key": "handoff"}]),
    )

    assert definition.version == 2
    assert running.process_version == 1
    assert len(step_scheduler.steps(db_session, running)) == 2

    fresh = process_engine.start_execution(db_session, definition, 7)
    assert fresh.process_version == 2
    assert len(step_scheduler.steps(db_session, fresh)) == 3


def test_name_change_keeps_version(db_session: Session) -> None:
    definition = definition_service.create(db_session, _payload(), creator_id=3)

    definition_service.update(db_session, definition.id, ProcessDefinitionUpdate(name="Inbound Qualification"))

    assert definition.name == "Inbound Qualification"
    assert definition.version == 1


def test_sla_change_bumps_version(db_session: Session) -> None:
    definition = definition_service.create(db_session, _payload(), creator_id=3)

    definition_service.update(db_session, definition.id, ProcessDefinitionUpdate(sla_config={"hours": 72}))

    assert definition.version == 2
    assert definition.sla_config == {"hours": 72}


def test_steps_cannot_be_cleared(db_session: Session) -> None:
    definition = definition_service.create(db_session, _payload(), creator_id=3)

    with pytest.raises(ProcessConfigurationError):
        definition_service.update(db_session, definition.id, ProcessDefinitionUpdate(steps=None))


def test_lifecycle_transitions(db_session: Session) -> None:
    definition = definition_service.create(db_session, _payload(), creator_id=3)

    definition_service.activate(db_session, definition.id)
    with pytest.raises(InvalidTransitionError):
        definition_service.activate(db_session, definition.id)

    definition_service.archive(db_session, definition.id)
    assert definition.status == "ARCHIVED"
    with pytest.raises(ProcessConfigurationError):
        process_engine.start_execution(db_session, definition, 7)
    with pytest.raises(ProcessConfigurationError):
        definition_service.update(db_session, definition.id, ProcessDefinitionUpdate(name="Edited"))

    definition_service.activate(db_session, definition.id)
    assert definition.status == "ACTIVE"


def test_list_filters_by_team_and_status(db_session: Session) -> None:
    first = definition_service.create(db_session, _payload(slug="alpha"), creator_id=3)
    definition_service.create(db_session, _payload(slug="beta", team_id=9), creator_id=3)
    definition_service.activate(db_session, first.id)

    assert [row.slug for row in definition_service.list_definitions(db_session, team_id=4)] == ["alpha"]
    assert [row.slug for row in definition_service.list_definitions(db_session, status="DRAFT")] == ["beta"]


def test_missing_definition_is_not_found(db_session: Session) -> None:
    with pytest.raises(ProcessNotFoundError):
        definition_service.get(db_session, uuid.uuid4())
