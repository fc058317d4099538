from __future__ import annotations

from collections.abc import Callable
from typing import Literal

from turnflow.runtime.transport import HandoffTransport
from turnflow.types import (
    ApprovalDecision,
    Execution,
    HandoffPayload,
    PendingAction,
    TurnOutcome,
)

ResumeHandler = Callable[[str, str, "HandoffPayload | ApprovalDecision"], TurnOutcome]


class AsyncBridge:
    """Carries turn state across execution boundaries.

    A payload holds identifiers only. On receipt it goes straight back through the
    coordinator's ``resume_turn``; nothing in it is acted on before the staleness
    guard has confirmed the turn is still current.
    """

    def __init__(
        self,
        transport: HandoffTransport,
        profile: Literal["publish", "queue"] = "publish",
    ) -> None:
        self.transport = transport
        self.profile = profile
        self._resume: ResumeHandler | None = None

    def attach(self, resume: ResumeHandler) -> None:
        self._resume = resume

    @staticmethod
    def package_action(execution: Execution, action: PendingAction, depth: int) -> HandoffPayload:
        return HandoffPayload(
            kind="action",
            execution_id=execution.id,
            turn_id=action.turn_id,
            cycle_count=action.cycle,
            tool_call_id=action.tool_call_id,
            pending_action_id=action.id,
            depth=depth,
        )

    @staticmethod
    def package_followup(execution: Execution, depth: int) -> HandoffPayload:
        return HandoffPayload(
            kind="followup",
            execution_id=execution.id,
            turn_id=execution.current_turn_id or "",
            cycle_count=execution.cycle_count,
            depth=depth,
        )

    def hand_off(self, payload: HandoffPayload) -> None:
        if self.profile == "queue":
            self.transport.enqueue(payload)
        else:
            self.transport.publish(payload)

    def receive(self, payload: HandoffPayload) -> TurnOutcome:
        if self._resume is None:
            raise RuntimeError("AsyncBridge has no coordinator attached")
        return self._resume(payload.execution_id, payload.turn_id, payload)
