from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.context import get_client_metadata, get_correlation_id
from app.process.models import ProcessAuditLog, ProcessExecution, ProcessExecutionStep
from app.process.outbox import queue_audit_event


@dataclass(slots=True)
class ProcessAuditWriter:
    user_agent_max_length: int = 1000

    def append(
        self,
        session: Session,
        execution: ProcessExecution,
        *,
        event_type: str,
        description: str,
        state_before: dict[str, Any] | None,
        state_after: dict[str, Any] | None,
        step: ProcessExecutionStep | None = None,
        actor_id: int | None = None,
        event_data: dict[str, Any] | None = None,
    ) -> ProcessAuditLog:
        if execution.id is None:
            session.flush()

        metadata = get_client_metadata()
        user_agent = metadata.get("user_agent")
        entry = ProcessAuditLog(
            execution_id=execution.id,
            execution_step_id=step.id if step is not None else None,
            sequence_no=self._next_sequence(session, execution),
            user_id=actor_id,
            event_type=str(event_type),
            event_description=description,
            event_data=event_data,
            state_before=state_before,
            state_after=state_after,
            ip_address=metadata.get("ip_address"),
            user_agent=user_agent[: self.user_agent_max_length] if user_agent else None,
            correlation_id=get_correlation_id(),
        )
        session.add(entry)
        session.flush()
        queue_audit_event(session, str(event_type))
        return entry

    def trail(self, session: Session, execution_id: Any) -> list[ProcessAuditLog]:
        stmt = (
            select(ProcessAuditLog)
            .where(ProcessAuditLog.execution_id == execution_id)
            .order_by(ProcessAuditLog.sequence_no.asc())
        )
        return list(session.scalars(stmt).all())

    @staticmethod
    def _next_sequence(session: Session, execution: ProcessExecution) -> int:
        current = session.scalar(
            select(func.coalesce(func.max(ProcessAuditLog.sequence_no), 0)).where(
                ProcessAuditLog.execution_id == execution.id
            )
        )
        return int(current or 0) + 1


def snapshot(status: str | None, **extra: Any) -> dict[str, Any]:
    state: dict[str, Any] = {"status": str(status) if status is not None else None}
    for key, value in extra.items():
        if value is not None:
            state[key] = str(value)
    return state


audit_writer = ProcessAuditWriter()
