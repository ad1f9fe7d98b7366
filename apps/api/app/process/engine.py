from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from opentelemetry.trace import Span
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.context import get_correlation_id
from app.core.config import get_settings
from app.core.database import transaction
from app.metrics import observe_process_operation, observe_process_operation_failure
from app.otel import get_tracer, mark_span_failed
from app.process import outbox
from app.process.approvals import ApprovalGate, approval_gate
from app.process.audit import ProcessAuditWriter, audit_writer, snapshot
from app.process.errors import (
    ApprovalPendingError,
    InvalidTransitionError,
    ProcessConfigurationError,
    ProcessError,
    ProcessNotFoundError,
    StaleExecutionError,
    StepOrderError,
)
from app.process.escalations import EscalationManager, escalation_manager
from app.process.models import (
    ProcessApproval,
    ProcessDefinition,
    ProcessEscalation,
    ProcessExecution,
    ProcessExecutionStep,
    utcnow,
)
from app.process.scheduler import StepScheduler, step_scheduler
from app.process.states import (
    ACTIVE_EXECUTION_STATUSES,
    TERMINAL_EXECUTION_STATUSES,
    ProcessApprovalStatus,
    ProcessDefinitionStatus,
    ProcessEventType,
    ProcessExecutionStatus,
    ProcessStepStatus,
    assert_approval_transition,
    assert_execution_transition,
    assert_step_transition,
)
from app.process.step_config import parse_sla_hours, validate_steps


logger = logging.getLogger("app.process.engine")
tracer = get_tracer("app.process.engine")


@dataclass
class _OperationScope:
    name: str
    span: Span
    execution_id: str | None = None

    def bind(self, execution: ProcessExecution) -> None:
        self.execution_id = str(execution.id)
        self.span.set_attribute("execution_id", self.execution_id)


@dataclass(slots=True)
class ProcessEngine:
    scheduler: StepScheduler = field(default_factory=lambda: step_scheduler)
    approvals: ApprovalGate = field(default_factory=lambda: approval_gate)
    escalations: EscalationManager = field(default_factory=lambda: escalation_manager)
    audit: ProcessAuditWriter = field(default_factory=lambda: audit_writer)

    def start_execution(
        self,
        session: Session,
        definition: ProcessDefinition,
        initiator_id: int,
        context_data: dict[str, Any] | None = None,
    ) -> ProcessExecution:
        with self._operation(session, "start_execution") as scope:
            scope.span.set_attribute("definition_id", str(definition.id))
            if definition.status != ProcessDefinitionStatus.ACTIVE:
                raise ProcessConfigurationError(
                    f"process definition is {definition.status}, expected ACTIVE",
                    details={"definition_id": str(definition.id), "status": definition.status},
                )
            raw_steps = list(definition.steps or [])
            configs = validate_steps(raw_steps)

            now = utcnow()
            sla_hours = parse_sla_hours(definition.sla_config)
            execution = ProcessExecution(
                team_id=definition.team_id,
                process_definition_id=definition.id,
                initiated_by_id=initiator_id,
                status=ProcessExecutionStatus.IN_PROGRESS,
                process_version=definition.version,
                context_data=dict(context_data or {}),
                execution_state={"current_step": 0},
                started_at=now,
                sla_due_at=now + timedelta(hours=sla_hours) if sla_hours else None,
            )
            session.add(execution)
            session.flush()
            scope.bind(execution)

            self.scheduler.materialize_steps(session, execution, raw_steps, configs, now=now)
            self.audit.append(
                session,
                execution,
                actor_id=initiator_id,
                event_type=ProcessEventType.EXECUTION_STARTED,
                description="Process execution started",
                state_before=snapshot(None),
                state_after=snapshot(execution.status),
                event_data={"context_data": execution.context_data, "process_version": execution.process_version},
            )
            outbox.queue_domain_event(
                session,
                {
                    "event_type": "process.execution.started",
                    "execution_id": str(execution.id),
                    "definition_id": str(definition.id),
                    "initiated_by_id": initiator_id,
                    "team_id": execution.team_id,
                },
            )
        return execution

    def execute_next_step(
        self,
        session: Session,
        execution: ProcessExecution,
        *,
        expected_version: int | None = None,
    ) -> ProcessExecutionStep | None:
        with self._operation(session, "execute_next_step", execution, expected_version) as scope:
            current = self.scheduler.current_step(session, execution)
            if current is not None and current.status == ProcessStepStatus.IN_PROGRESS:
                raise StepOrderError(
                    f"step {current.step_order} is still in progress",
                    details={"step_id": str(current.id), "step_order": current.step_order},
                )

            step = self.scheduler.next_pending_step(session, execution)
            if step is None:
                open_steps = self.scheduler.count_open_steps(session, execution)
                if open_steps:
                    raise StepOrderError(
                        f"no pending step at position {execution.current_step + 1}",
                        details={"current_step": execution.current_step, "open_steps": open_steps},
                    )
                self._complete_execution(session, execution)
                return None

            scope.span.set_attribute("step_id", str(step.id))
            return self._execute_step(session, execution, step)

    def execute_step(
        self,
        session: Session,
        execution: ProcessExecution,
        step: ProcessExecutionStep,
        *,
        expected_version: int | None = None,
    ) -> ProcessExecutionStep:
        with self._operation(session, "execute_step", execution, expected_version) as scope:
            scope.span.set_attribute("step_id", str(step.id))
            return self._execute_step(session, execution, step)

    def complete_step(
        self,
        session: Session,
        execution: ProcessExecution,
        step: ProcessExecutionStep,
        output_data: dict[str, Any] | None = None,
        *,
        expected_version: int | None = None,
    ) -> ProcessExecutionStep:
        with self._operation(session, "complete_step", execution, expected_version) as scope:
            scope.span.set_attribute("step_id", str(step.id))
            return self._complete_step(session, execution, step, output_data)

    def fail_step(
        self,
        session: Session,
        execution: ProcessExecution,
        step: ProcessExecutionStep,
        error_message: str,
        *,
        expected_version: int | None = None,
    ) -> ProcessExecutionStep:
        with self._operation(session, "fail_step", execution, expected_version) as scope:
            scope.span.set_attribute("step_id", str(step.id))
            self._assert_step_of(execution, step)
            self._assert_active(execution, ProcessExecutionStatus.FAILED)
            assert_step_transition(step.status, ProcessStepStatus.FAILED)

            step_before = step.status
            execution_before = execution.status
            assert_execution_transition(execution_before, ProcessExecutionStatus.FAILED)

            step.status = ProcessStepStatus.FAILED
            step.error_message = error_message
            execution.status = ProcessExecutionStatus.FAILED
            execution.error_message = f"Step '{step.step_name}' failed: {error_message}"
            session.flush()

            self.audit.append(
                session,
                execution,
                step=step,
                event_type=ProcessEventType.STEP_FAILED,
                description=f"Step '{step.step_name}' failed",
                state_before=snapshot(step_before, execution_status=execution_before),
                state_after=snapshot(step.status, execution_status=execution.status),
                event_data={"error": error_message},
            )
            self._queue_failed(session, execution, step)
            return step

    def complete_execution(self, session: Session, execution: ProcessExecution) -> ProcessExecution:
        with self._operation(session, "complete_execution", execution):
            return self._complete_execution(session, execution)

    def approve_step(
        self,
        session: Session,
        approval: ProcessApproval,
        approver_id: int,
        notes: str | None = None,
    ) -> ProcessApproval:
        execution = approval.execution
        with self._operation(session, "approve_step", execution) as scope:
            scope.span.set_attribute("approval_id", str(approval.id))
            assert_approval_transition(approval.status, ProcessApprovalStatus.APPROVED)
            if execution.status in TERMINAL_EXECUTION_STATUSES:
                raise InvalidTransitionError("execution", execution.status, ProcessExecutionStatus.IN_PROGRESS)

            step = approval.execution_step
            if step is not None:
                self._assert_not_escalated(execution)
            self.approvals.approve(session, execution, approval, step, approver_id, notes)
            if step is not None:
                self._complete_step(session, execution, step, {})
            return approval

    def reject_step(
        self,
        session: Session,
        approval: ProcessApproval,
        approver_id: int,
        notes: str | None = None,
    ) -> ProcessApproval:
        execution = approval.execution
        with self._operation(session, "reject_step", execution) as scope:
            scope.span.set_attribute("approval_id", str(approval.id))
            assert_approval_transition(approval.status, ProcessApprovalStatus.REJECTED)
            execution_before = execution.status
            assert_execution_transition(execution_before, ProcessExecutionStatus.FAILED)

            # The step keeps its status; only the execution fails.
            execution.status = ProcessExecutionStatus.FAILED
            execution.error_message = "Approval rejected"
            step = approval.execution_step
            self.approvals.reject(
                session,
                execution,
                approval,
                step,
                approver_id,
                notes,
                execution_status_before=execution_before,
            )
            self._queue_failed(session, execution, step)
            return approval

    def request_approval(
        self,
        session: Session,
        execution: ProcessExecution,
        step: ProcessExecutionStep | None = None,
        *,
        requested_by: int | None = None,
    ) -> ProcessApproval:
        with self._operation(session, "request_approval", execution):
            if execution.status in TERMINAL_EXECUTION_STATUSES:
                raise InvalidTransitionError("execution", execution.status, ProcessExecutionStatus.AWAITING_APPROVAL)

            execution_before = execution.status
            if step is not None:
                self._assert_step_of(execution, step)
                if step.status != ProcessStepStatus.IN_PROGRESS:
                    raise InvalidTransitionError("step", step.status, ProcessExecutionStatus.AWAITING_APPROVAL)
                if execution_before != ProcessExecutionStatus.AWAITING_APPROVAL:
                    assert_execution_transition(execution_before, ProcessExecutionStatus.AWAITING_APPROVAL)
                    execution.status = ProcessExecutionStatus.AWAITING_APPROVAL
                    session.flush()

            return self.approvals.request(
                session,
                execution,
                step,
                requested_by=requested_by if requested_by is not None else execution.initiated_by_id,
                execution_state_before=execution_before,
            )

    def assign_approver(
        self,
        session: Session,
        approval: ProcessApproval,
        approver_id: int,
        assigned_by: int,
    ) -> ProcessApproval:
        execution = approval.execution
        with self._operation(session, "assign_approver", execution) as scope:
            scope.span.set_attribute("approval_id", str(approval.id))
            if execution.status in TERMINAL_EXECUTION_STATUSES:
                raise InvalidTransitionError("execution", execution.status, ProcessExecutionStatus.AWAITING_APPROVAL)
            return self.approvals.assign(session, execution, approval, approver_id, assigned_by)

    def escalate(
        self,
        session: Session,
        execution: ProcessExecution,
        escalated_to: int,
        escalated_by: int,
        reason: str,
        step: ProcessExecutionStep | None = None,
        notes: str | None = None,
        *,
        expected_version: int | None = None,
    ) -> ProcessEscalation:
        with self._operation(session, "escalate", execution, expected_version):
            if step is not None:
                self._assert_step_of(execution, step)
            return self.escalations.escalate(
                session,
                execution,
                escalated_to,
                escalated_by,
                reason,
                step=step,
                notes=notes,
                allow_terminal=get_settings().process_allow_escalate_terminal,
            )

    def resolve_escalation(
        self,
        session: Session,
        escalation: ProcessEscalation,
        resolved_by: int,
        notes: str | None = None,
        *,
        resume: bool = False,
    ) -> ProcessEscalation:
        execution = escalation.execution
        with self._operation(session, "resolve_escalation", execution) as scope:
            scope.span.set_attribute("escalation_id", str(escalation.id))
            return self.escalations.resolve(session, execution, escalation, resolved_by, notes, resume=resume)

    def rollback(
        self,
        session: Session,
        execution: ProcessExecution,
        user_id: int,
        rollback_data: dict[str, Any] | None = None,
        *,
        expected_version: int | None = None,
    ) -> ProcessExecution:
        with self._operation(session, "rollback", execution, expected_version):
            before = execution.status
            assert_execution_transition(before, ProcessExecutionStatus.ROLLED_BACK)

            # Marks the execution only; completed steps are not compensated.
            payload = dict(rollback_data or {})
            execution.status = ProcessExecutionStatus.ROLLED_BACK
            execution.rollback_data = payload
            session.flush()

            self.audit.append(
                session,
                execution,
                actor_id=user_id,
                event_type=ProcessEventType.ROLLBACK_COMPLETED,
                description="Process rolled back",
                state_before=snapshot(before),
                state_after=snapshot(execution.status),
                event_data={"rollback_data": payload},
            )
            outbox.queue_domain_event(
                session,
                {
                    "event_type": "process.execution.rolled_back",
                    "execution_id": str(execution.id),
                    "user_id": user_id,
                    "team_id": execution.team_id,
                },
            )
            return execution

    def _execute_step(
        self,
        session: Session,
        execution: ProcessExecution,
        step: ProcessExecutionStep,
    ) -> ProcessExecutionStep:
        self._assert_step_of(execution, step)
        if execution.status != ProcessExecutionStatus.IN_PROGRESS:
            raise InvalidTransitionError("execution", execution.status, ProcessExecutionStatus.IN_PROGRESS)
        assert_step_transition(step.status, ProcessStepStatus.IN_PROGRESS)
        self.scheduler.assert_can_start(session, execution, step)
        gated = self.approvals.requires_approval(step)

        step_before = step.status
        step.status = ProcessStepStatus.IN_PROGRESS
        step.started_at = utcnow()
        execution.execution_state = {**(execution.execution_state or {}), "current_step": step.step_order}
        session.flush()

        self.audit.append(
            session,
            execution,
            step=step,
            event_type=ProcessEventType.STEP_STARTED,
            description=f"Step '{step.step_name}' started",
            state_before=snapshot(step_before),
            state_after=snapshot(step.status),
            event_data={"step_order": step.step_order},
        )

        if gated:
            execution_before = execution.status
            assert_execution_transition(execution_before, ProcessExecutionStatus.AWAITING_APPROVAL)
            execution.status = ProcessExecutionStatus.AWAITING_APPROVAL
            session.flush()
            self.approvals.request(
                session,
                execution,
                step,
                requested_by=execution.initiated_by_id,
                execution_state_before=execution_before,
            )
        return step

    def _complete_step(
        self,
        session: Session,
        execution: ProcessExecution,
        step: ProcessExecutionStep,
        output_data: dict[str, Any] | None,
    ) -> ProcessExecutionStep:
        self._assert_step_of(execution, step)
        self._assert_active(execution, ProcessExecutionStatus.IN_PROGRESS)
        self._assert_not_escalated(execution)
        assert_step_transition(step.status, ProcessStepStatus.COMPLETED)
        open_approval = self.approvals.open_approval(session, step)
        if open_approval is not None:
            raise ApprovalPendingError(
                f"step '{step.step_name}' is waiting for approval",
                details={"approval_id": str(open_approval.id)},
            )

        step_before = step.status
        step.status = ProcessStepStatus.COMPLETED
        step.completed_at = utcnow()
        step.output_data = dict(output_data or {})
        session.flush()

        # Completion is recomputed from step state every time.
        derived = self.scheduler.derive_status(session, execution)
        execution_before = execution.status
        if derived == ProcessExecutionStatus.IN_PROGRESS and execution_before != derived:
            assert_execution_transition(execution_before, ProcessExecutionStatus.IN_PROGRESS)
            execution.status = ProcessExecutionStatus.IN_PROGRESS
            session.flush()

        self.audit.append(
            session,
            execution,
            step=step,
            event_type=ProcessEventType.STEP_COMPLETED,
            description=f"Step '{step.step_name}' completed",
            state_before=snapshot(step_before, execution_status=execution_before),
            state_after=snapshot(step.status, execution_status=execution.status),
            event_data={"output_data": step.output_data},
        )

        if derived == ProcessExecutionStatus.COMPLETED:
            self._complete_execution(session, execution)
        return step

    def _complete_execution(self, session: Session, execution: ProcessExecution) -> ProcessExecution:
        if execution.status == ProcessExecutionStatus.COMPLETED:
            return execution

        before = execution.status
        assert_execution_transition(before, ProcessExecutionStatus.COMPLETED)
        derived = self.scheduler.derive_status(session, execution)
        if derived != ProcessExecutionStatus.COMPLETED:
            raise StepOrderError(
                "execution steps are not all completed",
                details={
                    "execution_id": str(execution.id),
                    "open_steps": self.scheduler.count_open_steps(session, execution),
                    "derived_status": str(derived),
                },
            )

        execution.status = ProcessExecutionStatus.COMPLETED
        execution.completed_at = utcnow()
        session.flush()

        self.audit.append(
            session,
            execution,
            event_type=ProcessEventType.EXECUTION_COMPLETED,
            description="Process execution completed",
            state_before=snapshot(before),
            state_after=snapshot(execution.status),
        )
        outbox.queue_domain_event(
            session,
            {
                "event_type": "process.execution.completed",
                "execution_id": str(execution.id),
                "initiated_by_id": execution.initiated_by_id,
                "team_id": execution.team_id,
            },
        )
        return execution

    @staticmethod
    def _assert_step_of(execution: ProcessExecution, step: ProcessExecutionStep) -> None:
        if step.execution_id != execution.id:
            raise ProcessNotFoundError(
                "process step not found for execution",
                details={"execution_id": str(execution.id), "step_id": str(step.id)},
            )

    @staticmethod
    def _assert_active(execution: ProcessExecution, target: str) -> None:
        if execution.status not in ACTIVE_EXECUTION_STATUSES:
            raise InvalidTransitionError("execution", execution.status, target)

    @staticmethod
    def _assert_not_escalated(execution: ProcessExecution) -> None:
        # Only resolve_escalation(resume=True) moves an execution out of ESCALATED.
        if execution.status == ProcessExecutionStatus.ESCALATED:
            raise InvalidTransitionError("execution", execution.status, ProcessExecutionStatus.IN_PROGRESS)

    @staticmethod
    def _queue_failed(
        session: Session,
        execution: ProcessExecution,
        step: ProcessExecutionStep | None,
    ) -> None:
        outbox.queue_domain_event(
            session,
            {
                "event_type": "process.execution.failed",
                "execution_id": str(execution.id),
                "step_id": str(step.id) if step is not None else None,
                "error": execution.error_message,
                "initiated_by_id": execution.initiated_by_id,
                "team_id": execution.team_id,
            },
        )

    @contextmanager
    def _operation(
        self,
        session: Session,
        name: str,
        execution: ProcessExecution | None = None,
        expected_version: int | None = None,
    ) -> Iterator[_OperationScope]:
        started = time.perf_counter()
        with tracer.start_as_current_span(
            f"process.{name}",
            record_exception=False,
            set_status_on_exception=False,
        ) as span:
            scope = _OperationScope(name=name, span=span)
            span.set_attribute("operation", name)
            correlation_id = get_correlation_id()
            if correlation_id:
                span.set_attribute("correlation_id", correlation_id)
            if execution is not None:
                scope.bind(execution)

            try:
                with transaction(session):
                    if execution is not None and expected_version is not None:
                        self._check_version(execution, expected_version)
                    yield scope
            except StaleDataError as exc:
                outbox.discard(session)
                error = StaleExecutionError(
                    "row_version conflict",
                    details={"execution_id": scope.execution_id},
                )
                self._record_failure(scope, error)
                raise error from exc
            except Exception as exc:
                outbox.discard(session)
                self._record_failure(scope, exc)
                raise
            else:
                outbox.dispatch(session)
                logger.info(
                    "process.operation.completed",
                    extra={
                        "operation": name,
                        "execution_id": scope.execution_id,
                        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    },
                )
            finally:
                observe_process_operation(name, time.perf_counter() - started)

    @staticmethod
    def _check_version(execution: ProcessExecution, expected_version: int) -> None:
        if execution.row_version != expected_version:
            raise StaleExecutionError(
                "row_version conflict",
                details={
                    "execution_id": str(execution.id),
                    "expected": expected_version,
                    "actual": execution.row_version,
                },
            )

    @staticmethod
    def _record_failure(scope: _OperationScope, exc: Exception) -> None:
        reason = exc.code if isinstance(exc, ProcessError) else type(exc).__name__
        observe_process_operation_failure(scope.name, reason)
        mark_span_failed(scope.span, exc, reason)
        logger.warning(
            "process.operation.failed",
            extra={
                "operation": scope.name,
                "execution_id": scope.execution_id,
                "status": reason,
                "error": str(exc)[:500],
            },
        )


process_engine = ProcessEngine()
