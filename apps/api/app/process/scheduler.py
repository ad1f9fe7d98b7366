from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.process.errors import StepOrderError
from app.process.models import ProcessExecution, ProcessExecutionStep
from app.process.states import OPEN_STEP_STATUSES, ProcessStepStatus, derive_execution_status
from app.process.step_config import (
    ApprovalStepConfig,
    TaskStepConfig,
    step_key,
    step_name,
)

__all__ = ["StepScheduler", "derive_execution_status", "step_scheduler"]


@dataclass(slots=True)
class StepScheduler:
    def materialize_steps(
        self,
        session: Session,
        execution: ProcessExecution,
        raw_steps: list[dict],
        configs: list[TaskStepConfig | ApprovalStepConfig],
        *,
        now: datetime,
    ) -> list[ProcessExecutionStep]:
        steps: list[ProcessExecutionStep] = []
        for order, (raw, config) in enumerate(zip(raw_steps, configs), start=1):
            step = ProcessExecutionStep(
                execution_id=execution.id,
                team_id=execution.team_id,
                assigned_to_id=config.assigned_to_id,
                step_key=step_key(config, order),
                step_name=step_name(config, order),
                step_order=order,
                status=ProcessStepStatus.PENDING,
                step_config=dict(raw),
                due_at=now + timedelta(hours=config.sla_hours) if config.sla_hours else None,
            )
            session.add(step)
            steps.append(step)
        session.flush()
        return steps

    def steps(self, session: Session, execution: ProcessExecution) -> list[ProcessExecutionStep]:
        stmt = (
            select(ProcessExecutionStep)
            .where(ProcessExecutionStep.execution_id == execution.id)
            .order_by(ProcessExecutionStep.step_order.asc())
        )
        return list(session.scalars(stmt).all())

    def step_at(self, session: Session, execution: ProcessExecution, order: int) -> ProcessExecutionStep | None:
        return session.scalar(
            select(ProcessExecutionStep).where(
                ProcessExecutionStep.execution_id == execution.id,
                ProcessExecutionStep.step_order == order,
            )
        )

    def current_step(self, session: Session, execution: ProcessExecution) -> ProcessExecutionStep | None:
        if execution.current_step <= 0:
            return None
        return self.step_at(session, execution, execution.current_step)

    def next_pending_step(self, session: Session, execution: ProcessExecution) -> ProcessExecutionStep | None:
        step = self.step_at(session, execution, execution.current_step + 1)
        if step is None or step.status != ProcessStepStatus.PENDING:
            return None
        return step

    def count_open_steps(self, session: Session, execution: ProcessExecution) -> int:
        total = session.scalar(
            select(func.count(ProcessExecutionStep.id)).where(
                ProcessExecutionStep.execution_id == execution.id,
                ProcessExecutionStep.status.in_([str(status) for status in OPEN_STEP_STATUSES]),
            )
        )
        return int(total or 0)

    def assert_can_start(self, session: Session, execution: ProcessExecution, step: ProcessExecutionStep) -> None:
        """Steps run one at a time in ascending order."""
        if step.execution_id != execution.id:
            raise StepOrderError("step does not belong to execution", details={"step_id": str(step.id)})

        blocking = session.scalar(
            select(ProcessExecutionStep)
            .where(
                ProcessExecutionStep.execution_id == execution.id,
                ProcessExecutionStep.id != step.id,
                (ProcessExecutionStep.status == ProcessStepStatus.IN_PROGRESS)
                | (
                    (ProcessExecutionStep.status == ProcessStepStatus.PENDING)
                    & (ProcessExecutionStep.step_order < step.step_order)
                ),
            )
            .order_by(ProcessExecutionStep.step_order.asc())
            .limit(1)
        )
        if blocking is not None:
            raise StepOrderError(
                f"step {step.step_order} cannot start while step {blocking.step_order} is {blocking.status}",
                details={"step_order": step.step_order, "blocking_step_order": blocking.step_order},
            )

    def derive_status(self, session: Session, execution: ProcessExecution) -> str:
        return derive_execution_status(step.status for step in self.steps(session, execution))


step_scheduler = StepScheduler()
