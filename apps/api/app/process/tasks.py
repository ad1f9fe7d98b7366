from __future__ import annotations

import logging
import time
import uuid
from datetime import date, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.context import reset_correlation_id, set_correlation_id
from app.core.celery_app import celery_app
from app.core.config import get_settings
from app.core.database import SessionLocal
from app.metrics import observe_process_job
from app.otel import get_tracer
from app.process.analytics import analytics_service
from app.process.engine import process_engine
from app.process.errors import StaleExecutionError
from app.process.models import ProcessDefinition, utcnow
from app.process.repository import process_repository
from app.process.states import ProcessDefinitionStatus


logger = logging.getLogger("app.process.jobs")
tracer = get_tracer("app.process.jobs")


def advance_execution(session: Session, execution_id: uuid.UUID, *, expected_version: int | None = None) -> dict[str, Any]:
    execution = process_repository.get_execution(session, execution_id)
    step = process_engine.execute_next_step(session, execution, expected_version=expected_version)
    return {
        "execution_id": str(execution_id),
        "status": execution.status,
        "step_id": str(step.id) if step is not None else None,
        "row_version": execution.row_version,
    }


def rollup_analytics(session: Session, metric_date: date) -> list[dict[str, Any]]:
    definitions = session.scalars(
        select(ProcessDefinition).where(ProcessDefinition.status != ProcessDefinitionStatus.DRAFT)
    ).all()
    results = []
    for definition in definitions:
        row = analytics_service.rollup(session, definition, metric_date)
        results.append(
            {
                "definition_id": str(row.process_definition_id),
                "metric_date": metric_date.isoformat(),
                "executions_started": row.executions_started,
            }
        )
    return results


@celery_app.task(
    bind=True,
    name="process.advance_execution",
    max_retries=get_settings().process_advance_max_retries,
)
def advance_execution_task(
    self,
    execution_id: str,
    expected_version: int | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    token = set_correlation_id(correlation_id)
    started = time.perf_counter()
    session = SessionLocal()
    try:
        with tracer.start_as_current_span("process.job.advance_execution") as span:
            span.set_attribute("execution_id", execution_id)
            span.set_attribute("job_type", "advance_execution")
            try:
                result = advance_execution(session, uuid.UUID(execution_id), expected_version=expected_version)
            except StaleExecutionError as exc:
                observe_process_job("advance_execution", "Retrying")
                logger.warning(
                    "job.retry",
                    extra={
                        "job_type": "advance_execution",
                        "execution_id": execution_id,
                        "status": "Retrying",
                        "error": str(exc),
                    },
                )
                # Retries drop the pinned version and re-read the row.
                raise self.retry(
                    exc=exc,
                    countdown=2**self.request.retries,
                    args=(),
                    kwargs={"execution_id": execution_id, "correlation_id": correlation_id},
                )
            observe_process_job("advance_execution", "Succeeded")
            logger.info(
                "job.finished",
                extra={
                    "job_type": "advance_execution",
                    "execution_id": execution_id,
                    "status": "Succeeded",
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
            return result
    finally:
        session.close()
        reset_correlation_id(token)


@celery_app.task(name="process.rollup_analytics")
def rollup_analytics_task(metric_date: str | None = None) -> list[dict[str, Any]]:
    target = date.fromisoformat(metric_date) if metric_date else (utcnow().date() - timedelta(days=1))
    started = time.perf_counter()
    session = SessionLocal()
    try:
        with tracer.start_as_current_span("process.job.rollup_analytics") as span:
            span.set_attribute("job_type", "rollup_analytics")
            span.set_attribute("metric_date", target.isoformat())
            results = rollup_analytics(session, target)
        observe_process_job("rollup_analytics", "Succeeded")
        logger.info(
            "job.finished",
            extra={
                "job_type": "rollup_analytics",
                "metric_date": target.isoformat(),
                "status": "Succeeded",
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        return results
    finally:
        session.close()
