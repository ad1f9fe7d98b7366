from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.database import transaction
from app.process.errors import ProcessConfigurationError, ProcessConflictError
from app.process.models import ProcessDefinition
from app.process.repository import ProcessRepository, process_repository
from app.process.schemas import ProcessDefinitionCreate, ProcessDefinitionUpdate
from app.process.states import ProcessDefinitionStatus, assert_definition_transition
from app.process.step_config import parse_sla_hours, validate_steps


logger = logging.getLogger("app.process.definitions")

_VERSIONED_FIELDS = ("steps", "sla_config")


@dataclass(slots=True)
class ProcessDefinitionService:
    repository: ProcessRepository = field(default_factory=lambda: process_repository)

    def create(self, session: Session, payload: ProcessDefinitionCreate, *, creator_id: int | None) -> ProcessDefinition:
        validate_steps(payload.steps)
        parse_sla_hours(payload.sla_config)
        definition = ProcessDefinition(
            **payload.model_dump(mode="json"),
            creator_id=creator_id,
            status=ProcessDefinitionStatus.DRAFT,
            version=1,
        )
        try:
            with transaction(session):
                session.add(definition)
        except IntegrityError as exc:
            raise ProcessConflictError("process definition slug already exists", details={"slug": payload.slug}) from exc
        logger.info("process.definition.created", extra={"definition_id": str(definition.id), "status": definition.status})
        return definition

    def update(self, session: Session, definition_id: uuid.UUID, payload: ProcessDefinitionUpdate) -> ProcessDefinition:
        definition = self.repository.get_definition(session, definition_id)
        if definition.status == ProcessDefinitionStatus.ARCHIVED:
            raise ProcessConfigurationError("archived process definitions cannot be edited")

        changes = payload.model_dump(mode="json", exclude_unset=True)
        for required in ("name", "steps"):
            if required in changes and changes[required] is None:
                raise ProcessConfigurationError(f"{required} cannot be cleared")
        if "steps" in changes:
            validate_steps(changes["steps"])
        if "sla_config" in changes:
            parse_sla_hours(changes["sla_config"])

        # Running executions keep their captured version and step snapshots.
        bump = any(name in changes and changes[name] != getattr(definition, name) for name in _VERSIONED_FIELDS)
        with transaction(session):
            for name, value in changes.items():
                setattr(definition, name, value)
            if bump:
                definition.version = definition.version + 1
        logger.info(
            "process.definition.updated",
            extra={"definition_id": str(definition.id), "status": definition.status, "operation": "bump" if bump else "edit"},
        )
        return definition

    def activate(self, session: Session, definition_id: uuid.UUID) -> ProcessDefinition:
        definition = self.repository.get_definition(session, definition_id)
        validate_steps(definition.steps)
        return self._transition(session, definition, ProcessDefinitionStatus.ACTIVE)

    def archive(self, session: Session, definition_id: uuid.UUID) -> ProcessDefinition:
        definition = self.repository.get_definition(session, definition_id)
        return self._transition(session, definition, ProcessDefinitionStatus.ARCHIVED)

    def get(self, session: Session, definition_id: uuid.UUID) -> ProcessDefinition:
        return self.repository.get_definition(session, definition_id)

    def get_by_slug(self, session: Session, slug: str) -> ProcessDefinition | None:
        return session.scalar(select(ProcessDefinition).where(ProcessDefinition.slug == slug))

    def list_definitions(self, session: Session, *, team_id: int | None = None, status: str | None = None) -> list[ProcessDefinition]:
        stmt = select(ProcessDefinition)
        if team_id is not None:
            stmt = stmt.where(ProcessDefinition.team_id == team_id)
        if status is not None:
            stmt = stmt.where(ProcessDefinition.status == status)
        return list(session.scalars(stmt.order_by(ProcessDefinition.name.asc())).all())

    def _transition(self, session: Session, definition: ProcessDefinition, target: str) -> ProcessDefinition:
        assert_definition_transition(definition.status, target)
        with transaction(session):
            definition.status = target
        logger.info("process.definition.status_changed", extra={"definition_id": str(definition.id), "status": target})
        return definition


definition_service = ProcessDefinitionService()
