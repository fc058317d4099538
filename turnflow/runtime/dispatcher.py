from __future__ import annotations

import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from turnflow.capabilities.base import CapabilityContext, CapabilityRun, run_capability
from turnflow.capabilities.registry import CapabilityRegistry
from turnflow.config import RuntimeConfig
from turnflow.runtime.approval import ApprovalGate
from turnflow.runtime.decision_log import DecisionLog
from turnflow.storage.base import ExecutionStore
from turnflow.storage.ids import new_id
from turnflow.types import (
    CapabilityOutcome,
    ErrorPolicy,
    Execution,
    ExecutionPolicy,
    PendingAction,
    PendingActionStatus,
    StepType,
    ToolCall,
)

DispatchStatus = Literal["completed", "suspended", "halted"]
SuspendReason = Literal["action", "approval"]


@dataclass
class DispatchResult:
    call: ToolCall
    status: DispatchStatus
    outcome: CapabilityOutcome | None = None
    action: PendingAction | None = None
    reason: SuspendReason | None = None

    @property
    def halted(self) -> bool:
        return self.status == "halted"

    @property
    def suspended(self) -> bool:
        return self.status == "suspended"


def tool_message_content(outcome: CapabilityOutcome) -> str:
    return json.dumps(outcome.to_tool_content(), ensure_ascii=True, default=str)


class ActionDispatcher:
    """Turns one tool call into a completed outcome, a suspension, or a halt.

    The dispatcher never changes Execution status. Suspended results carry the
    PendingAction; the coordinator persists the new status and only then hands
    the action off.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        store: ExecutionStore,
        approval_gate: ApprovalGate,
        runtime_config: RuntimeConfig,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.registry = registry
        self.store = store
        self.approval_gate = approval_gate
        self.runtime_config = runtime_config
        self._sleep = sleep

    def _context(
        self, execution: Execution, turn_id: str, tool_call_id: str, action_id: str | None
    ) -> CapabilityContext:
        return CapabilityContext(
            execution_id=execution.id,
            turn_id=turn_id,
            user_id=execution.user_id,
            agent_name=execution.agent_name,
            tool_call_id=tool_call_id,
            pending_action_id=action_id,
        )

    def _run(self, spec_name: str, arguments: object, context: CapabilityContext) -> CapabilityRun:
        spec = self.registry.resolve(spec_name)
        if spec is None:
            return CapabilityRun(
                outcome=CapabilityOutcome.failure(
                    "unknown_capability", f"Capability is not registered: {spec_name}"
                ),
                attempts=0,
                duration_ms=0,
            )
        return run_capability(
            spec,
            arguments,
            context,
            sleep=self._sleep,
            retry_base_delay=self.runtime_config.retry_base_delay_seconds,
            retry_max_delay=self.runtime_config.retry_max_delay_seconds,
        )

    def _record_result(
        self, log: DecisionLog, call_id: str, capability: str, run: CapabilityRun, cycle: int
    ) -> None:
        log.record(
            StepType.TOOL_RESULT,
            {
                "tool_call_id": call_id,
                "capability": capability,
                "attempts": run.attempts,
                "code": run.outcome.code,
                "message": run.outcome.message,
                "detail": run.outcome.detail,
            },
            cycle=cycle,
            success=run.outcome.success,
            duration_ms=run.duration_ms,
        )

    def reject(
        self,
        call: ToolCall,
        code: str,
        message: str,
        log: DecisionLog,
        cycle: int,
    ) -> DispatchResult:
        outcome = CapabilityOutcome.failure(code, message)
        log.record(
            StepType.ERROR,
            {"tool_call_id": call.id, "capability": call.name, "code": code, "message": message},
            cycle=cycle,
            success=False,
        )
        return DispatchResult(call=call, status="completed", outcome=outcome)

    def dispatch(
        self,
        execution: Execution,
        call: ToolCall,
        log: DecisionLog,
        allowed: list[str] | None = None,
    ) -> DispatchResult:
        turn_id = execution.current_turn_id or ""
        cycle = execution.cycle_count
        spec = self.registry.resolve(call.name)
        if spec is None or (allowed is not None and call.name not in allowed):
            return self.reject(
                call,
                "unknown_capability",
                f"No capability named {call.name} is available to this agent",
                log,
                cycle,
            )

        log.record(
            StepType.TOOL_CALL,
            {
                "tool_call_id": call.id,
                "capability": spec.name,
                "arguments": call.arguments,
                "execution": spec.execution.value,
                "requires_approval": spec.requires_approval,
            },
            cycle=cycle,
        )

        if spec.requires_approval:
            action = self.approval_gate.request(
                spec,
                call,
                execution_id=execution.id,
                turn_id=turn_id,
                cycle=cycle,
                log=log,
            )
            return DispatchResult(call=call, status="suspended", action=action, reason="approval")

        if spec.execution == ExecutionPolicy.ASYNCHRONOUS:
            action = self.store.create_pending_action(
                PendingAction(
                    id=new_id("act"),
                    execution_id=execution.id,
                    turn_id=turn_id,
                    cycle=cycle,
                    capability=spec.name,
                    arguments=json.dumps(call.arguments, ensure_ascii=True, default=str),
                    tool_call_id=call.id,
                )
            )
            log.bus.emit(
                "action_queued",
                {"pending_action_id": action.id, "capability": spec.name, "cycle": cycle},
            )
            return DispatchResult(call=call, status="suspended", action=action, reason="action")

        context = self._context(execution, turn_id, call.id, None)
        run = self._run(spec.name, call.arguments, context)
        self._record_result(log, call.id, spec.name, run, cycle)
        status: DispatchStatus = "completed"
        if not run.outcome.success and spec.on_error == ErrorPolicy.HALT_AND_REPORT:
            status = "halted"
        return DispatchResult(call=call, status=status, outcome=run.outcome)

    def execute_action(
        self, execution: Execution, action: PendingAction, log: DecisionLog
    ) -> DispatchResult | None:
        """Run a persisted action at most once.

        Returns ``None`` when the claim fails, which means another delivery of the
        same hand-off already ran it.
        """
        allowed = (
            [PendingActionStatus.APPROVED]
            if action.requires_approval
            else [PendingActionStatus.QUEUED]
        )
        claimed = self.store.claim_pending_action(action.id, allowed)
        if claimed is None:
            log.bus.emit(
                "action_claim_refused",
                {"pending_action_id": action.id, "status": action.status.value},
            )
            return None

        call = ToolCall(id=action.tool_call_id, name=action.capability)
        try:
            arguments: object = json.loads(action.arguments)
        except json.JSONDecodeError:
            arguments = None
        if isinstance(arguments, dict):
            call = call.model_copy(update={"arguments": arguments})

        context = self._context(execution, action.turn_id, action.tool_call_id, action.id)
        run = self._run(action.capability, arguments, context)
        terminal = (
            PendingActionStatus.EXECUTED if run.outcome.success else PendingActionStatus.FAILED
        )
        self.store.transition_pending_action(action.id, allowed, terminal)
        self._record_result(log, action.tool_call_id, action.capability, run, action.cycle)

        spec = self.registry.resolve(action.capability)
        status: DispatchStatus = "completed"
        if (
            not run.outcome.success
            and spec is not None
            and spec.on_error == ErrorPolicy.HALT_AND_REPORT
        ):
            status = "halted"
        return DispatchResult(call=call, status=status, outcome=run.outcome, action=claimed)
