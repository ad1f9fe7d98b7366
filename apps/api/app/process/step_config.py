from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from app.process.errors import ProcessConfigurationError


class _StepConfigBase(BaseModel):
    # Unknown keys are kept so newer definitions stay readable.
    model_config = ConfigDict(extra="allow")

    key: str | None = Field(default=None, min_length=1, max_length=128)
    name: str | None = Field(default=None, min_length=1, max_length=255)
    # 0 means no due date.
    sla_hours: float | None = Field(default=None, ge=0)
    assigned_to_id: int | None = None


class TaskStepConfig(_StepConfigBase):
    kind: Literal["task"] = "task"
    requires_approval: Literal[False] = False


class ApprovalStepConfig(_StepConfigBase):
    kind: Literal["approval"] = "approval"
    requires_approval: Literal[True] = True
    approver_id: int | None = None
    approval_sla_hours: float | None = Field(default=None, ge=0)
    approval_notes: str | None = None


StepConfig = Annotated[TaskStepConfig | ApprovalStepConfig, Field(discriminator="kind")]

_step_config_adapter: TypeAdapter[TaskStepConfig | ApprovalStepConfig] = TypeAdapter(StepConfig)


def _error_details(exc: ValidationError, index: int | None) -> list[dict[str, Any]]:
    details = []
    for error in exc.errors():
        loc = list(error.get("loc", ()))
        if index is not None:
            loc = ["steps", index, *loc]
        details.append({"loc": loc, "msg": error.get("msg")})
    return details


def parse_step_config(raw: Any, *, index: int | None = None) -> TaskStepConfig | ApprovalStepConfig:
    if not isinstance(raw, Mapping):
        raise ProcessConfigurationError(
            "step configuration must be an object",
            details=[{"loc": ["steps", index] if index is not None else [], "msg": "not an object"}],
        )
    data = dict(raw)
    if "kind" not in data:
        data["kind"] = "approval" if data.get("requires_approval") is True else "task"
    try:
        return _step_config_adapter.validate_python(data)
    except ValidationError as exc:
        raise ProcessConfigurationError("invalid step configuration", details=_error_details(exc, index)) from exc


def validate_steps(raw_steps: Any) -> list[TaskStepConfig | ApprovalStepConfig]:
    """Parse a definition's step list, enforcing at least one step and unique keys."""
    if not isinstance(raw_steps, Sequence) or isinstance(raw_steps, (str, bytes)):
        raise ProcessConfigurationError("steps must be a list")
    if not raw_steps:
        raise ProcessConfigurationError("process definition has no steps")

    configs = [parse_step_config(raw, index=index) for index, raw in enumerate(raw_steps)]
    seen: set[str] = set()
    for order, config in enumerate(configs, start=1):
        key = step_key(config, order)
        if key in seen:
            raise ProcessConfigurationError(
                f"duplicate step key '{key}'",
                details=[{"loc": ["steps", order - 1, "key"], "msg": "duplicate key"}],
            )
        seen.add(key)
    return configs


def step_key(config: TaskStepConfig | ApprovalStepConfig, order: int) -> str:
    return config.key or f"step_{order}"


def step_name(config: TaskStepConfig | ApprovalStepConfig, order: int) -> str:
    return config.name or f"Step {order}"


def parse_sla_hours(sla_config: Mapping[str, Any] | None) -> float | None:
    if not sla_config:
        return None
    hours = sla_config.get("hours")
    if hours is None:
        return None
    if isinstance(hours, bool) or not isinstance(hours, (int, float)) or hours <= 0:
        raise ProcessConfigurationError("sla_config.hours must be a positive number", details={"hours": hours})
    return float(hours)
