from app.process.api import router
from app.process.engine import ProcessEngine, process_engine
from app.process.models import (
    ProcessAnalytics,
    ProcessApproval,
    ProcessAuditLog,
    ProcessDefinition,
    ProcessEscalation,
    ProcessExecution,
    ProcessExecutionStep,
)
from app.process.schemas import (
    ProcessApprovalRead,
    ProcessAuditLogRead,
    ProcessDefinitionCreate,
    ProcessDefinitionRead,
    ProcessEscalationRead,
    ProcessExecutionRead,
    ProcessStepRead,
)

__all__ = [
    "router",
    "ProcessEngine",
    "process_engine",
    "ProcessDefinition",
    "ProcessExecution",
    "ProcessExecutionStep",
    "ProcessApproval",
    "ProcessEscalation",
    "ProcessAuditLog",
    "ProcessAnalytics",
    "ProcessDefinitionCreate",
    "ProcessDefinitionRead",
    "ProcessExecutionRead",
    "ProcessStepRead",
    "ProcessApprovalRead",
    "ProcessEscalationRead",
    "ProcessAuditLogRead",
]
