from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.database import transaction
from app.process.models import ProcessAnalytics, ProcessDefinition, ProcessEscalation, ProcessExecution, utcnow
from app.process.states import ACTIVE_EXECUTION_STATUSES, ProcessExecutionStatus


logger = logging.getLogger("app.process.analytics")


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes for timezone-aware columns.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@dataclass(slots=True)
class ProcessAnalyticsService:
    def rollup(
        self,
        session: Session,
        definition: ProcessDefinition,
        metric_date: date,
        *,
        now: datetime | None = None,
    ) -> ProcessAnalytics:
        now = now or utcnow()
        day_start = datetime.combine(metric_date, time.min, tzinfo=timezone.utc)
        day_end = day_start + timedelta(days=1)

        candidates = session.scalars(
            select(ProcessExecution).where(
                ProcessExecution.process_definition_id == definition.id,
                ProcessExecution.started_at >= day_start - timedelta(days=1),
                ProcessExecution.started_at < day_end + timedelta(days=1),
            )
        ).all()
        executions = [
            row for row in candidates if row.started_at is not None and day_start <= _aware(row.started_at) < day_end
        ]

        durations: list[float] = []
        completed = failed = breaches = 0
        for execution in executions:
            started_at = _aware(execution.started_at)
            completed_at = _aware(execution.completed_at)
            sla_due_at = _aware(execution.sla_due_at)
            if completed_at is not None:
                completed += 1
                durations.append((completed_at - started_at).total_seconds())
            if execution.status == ProcessExecutionStatus.FAILED:
                failed += 1
            if sla_due_at is not None:
                if completed_at is not None and completed_at > sla_due_at:
                    breaches += 1
                elif completed_at is None and execution.status in ACTIVE_EXECUTION_STATUSES and now > sla_due_at:
                    breaches += 1

        escalations = 0
        execution_ids = [execution.id for execution in executions]
        if execution_ids:
            escalations = int(
                session.scalar(
                    select(func.count(ProcessEscalation.id)).where(ProcessEscalation.execution_id.in_(execution_ids))
                )
                or 0
            )

        with transaction(session):
            row = session.scalar(
                select(ProcessAnalytics).where(
                    ProcessAnalytics.process_definition_id == definition.id,
                    ProcessAnalytics.metric_date == metric_date,
                )
            )
            if row is None:
                row = ProcessAnalytics(process_definition_id=definition.id, team_id=definition.team_id, metric_date=metric_date)
                session.add(row)
            row.executions_started = len(executions)
            row.executions_completed = completed
            row.executions_failed = failed
            row.escalations_count = escalations
            row.sla_breaches = breaches
            row.avg_completion_seconds = round(sum(durations) / len(durations), 3) if durations else None
            row.min_completion_seconds = min(durations) if durations else None
            row.max_completion_seconds = max(durations) if durations else None

        logger.info(
            "process.analytics.rolled_up",
            extra={"definition_id": str(definition.id), "operation": "rollup", "metric_date": metric_date.isoformat()},
        )
        return row


analytics_service = ProcessAnalyticsService()
