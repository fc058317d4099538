from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ValidationError

from turnflow.errors import (
    ArgumentValidationError,
    PermissionDeniedError,
    TransientCapabilityError,
)
from turnflow.logging.sanitizer import user_safe_message
from turnflow.runtime.retry import compute_backoff_delay
from turnflow.types import CapabilityOutcome, ErrorPolicy, ExecutionPolicy


@dataclass
class CapabilityContext:
    execution_id: str
    turn_id: str
    user_id: str
    agent_name: str
    tool_call_id: str
    pending_action_id: str | None = None


@runtime_checkable
class Capability(Protocol):
    def execute(self, arguments: dict[str, Any], context: CapabilityContext) -> Any: ...


class FunctionCapability:
    """Adapts a plain ``fn(arguments, context)`` callable to the capability interface."""

    def __init__(self, fn: Callable[[dict[str, Any], CapabilityContext], Any]) -> None:
        self.fn = fn
        self.description = (fn.__doc__ or "").strip()

    def execute(self, arguments: dict[str, Any], context: CapabilityContext) -> Any:
        return self.fn(arguments, context)


@dataclass
class CapabilitySpec:
    name: str
    handler: Capability
    description: str = ""
    execution: ExecutionPolicy = ExecutionPolicy.SYNCHRONOUS
    on_error: ErrorPolicy = ErrorPolicy.CONTINUE_WITH_CONTEXT
    requires_approval: bool = False
    approvers: list[str] = field(default_factory=list)
    max_attempts: int = 1

    @property
    def args_model(self) -> type[BaseModel] | None:
        return getattr(self.handler, "args_model", None)

    def tool_schema(self) -> dict[str, Any]:
        explicit = getattr(self.handler, "input_schema", None)
        if isinstance(explicit, dict):
            schema = explicit
        elif self.args_model is not None:
            schema = self.args_model.model_json_schema()
        else:
            schema = {"type": "object", "properties": {}}
        description = self.description or getattr(self.handler, "description", "") or self.name
        return {"name": self.name, "description": description, "input_schema": schema}


@dataclass
class CapabilityRun:
    outcome: CapabilityOutcome
    attempts: int
    duration_ms: int


def _validation_summary(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors()[:5]:
        location = ".".join(str(item) for item in error.get("loc", ())) or "arguments"
        parts.append(f"{location}: {error.get('msg', 'invalid')}")
    return "; ".join(parts)


def _validate(spec: CapabilitySpec, arguments: Any) -> dict[str, Any]:
    if not isinstance(arguments, dict):
        raise ArgumentValidationError(f"Arguments for {spec.name} must be an object")
    if spec.args_model is None:
        return arguments
    try:
        return spec.args_model.model_validate(arguments).model_dump(mode="json")
    except ValidationError as exc:
        raise ArgumentValidationError(
            f"Invalid arguments for {spec.name}: {_validation_summary(exc)}"
        ) from exc


def _check_permission(spec: CapabilitySpec, context: CapabilityContext) -> None:
    checker = getattr(spec.handler, "check_permission", None)
    if checker is None:
        return
    if checker(context) is False:
        raise PermissionDeniedError(f"Access to {spec.name} was denied")


def _normalize(result: Any) -> CapabilityOutcome:
    if isinstance(result, CapabilityOutcome):
        return result
    return CapabilityOutcome.ok(result)


def run_capability(
    spec: CapabilitySpec,
    arguments: Any,
    context: CapabilityContext,
    sleep: Callable[[float], None] = time.sleep,
    retry_base_delay: float = 0.5,
    retry_max_delay: float = 4.0,
) -> CapabilityRun:
    """Validate, authorize, run and normalize one capability invocation.

    Validation and permission failures are never retried. ``TransientCapabilityError``
    is retried up to ``spec.max_attempts``; any other exception becomes a
    ``handler_error`` outcome whose user-facing message is sanitized.
    """
    start = time.perf_counter()

    def _done(outcome: CapabilityOutcome, attempts: int) -> CapabilityRun:
        return CapabilityRun(
            outcome=outcome,
            attempts=attempts,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )

    try:
        validated = _validate(spec, arguments)
        _check_permission(spec, context)
    except ArgumentValidationError as exc:
        return _done(CapabilityOutcome.failure("validation_error", str(exc)), 0)
    except PermissionDeniedError as exc:
        return _done(CapabilityOutcome.failure("permission_denied", str(exc)), 0)

    max_attempts = max(spec.max_attempts, 1)
    for attempt in range(1, max_attempts + 1):
        try:
            return _done(_normalize(spec.handler.execute(validated, context)), attempt)
        except TransientCapabilityError as exc:
            if attempt < max_attempts:
                sleep(compute_backoff_delay(attempt, retry_base_delay, retry_max_delay))
                continue
            outcome = CapabilityOutcome.failure(
                "transient_exhausted",
                user_safe_message(str(exc), f"{spec.name} is temporarily unavailable"),
                detail=f"{exc.__class__.__name__}: {exc}",
            )
            return _done(outcome, attempt)
        except ArgumentValidationError as exc:
            return _done(CapabilityOutcome.failure("validation_error", str(exc)), attempt)
        except PermissionDeniedError as exc:
            return _done(
                CapabilityOutcome.failure(
                    "permission_denied", user_safe_message(str(exc), "Access denied")
                ),
                attempt,
            )
        except Exception as exc:
            outcome = CapabilityOutcome.failure(
                "handler_error",
                user_safe_message(str(exc), f"{spec.name} failed unexpectedly"),
                detail=f"{exc.__class__.__name__}: {exc}",
            )
            return _done(outcome, attempt)

    return _done(CapabilityOutcome.failure("handler_error", f"{spec.name} did not run"), 0)
