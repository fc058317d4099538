from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from turnflow.capabilities.base import CapabilitySpec
from turnflow.runtime.decision_log import DecisionLog
from turnflow.storage.base import ExecutionStore
from turnflow.storage.ids import new_id
from turnflow.types import (
    ApprovalDecision,
    CapabilityOutcome,
    PendingAction,
    PendingActionStatus,
    StepType,
    ToolCall,
    TurnOutcome,
    utcnow,
)

DecisionHandler = Callable[[ApprovalDecision], TurnOutcome]


@dataclass
class ApprovalRequest:
    handle: str
    pending_action_id: str
    approvers: list[str]
    summary: dict[str, Any]
    submitted_at: str = field(default_factory=lambda: utcnow().isoformat())


class ApprovalWorkflow(ABC):
    """External sign-off system. ``on_decision`` must feed back into the coordinator.

    ``submit`` is only called once the Execution rests in ``AwaitingApproval``, so
    a workflow may decide synchronously from inside ``submit``.
    """

    def __init__(self) -> None:
        self._decision_handler: DecisionHandler | None = None

    def attach(self, handler: DecisionHandler) -> None:
        self._decision_handler = handler

    @abstractmethod
    def submit(
        self, pending_action_id: str, approvers: list[str], summary: dict[str, Any]
    ) -> str:
        raise NotImplementedError

    @abstractmethod
    def lookup(self, handle: str) -> ApprovalRequest | None:
        raise NotImplementedError

    def complete(self, pending_action_id: str) -> None:
        """Called once a decision for the action has been applied, whatever its source."""
        return None

    def on_decision(
        self,
        handle: str,
        approved: bool,
        decided_by: str | None = None,
        comment: str | None = None,
    ) -> TurnOutcome:
        request = self.lookup(handle)
        if request is None:
            raise KeyError(f"Unknown approval handle: {handle}")
        if self._decision_handler is None:
            raise RuntimeError("Approval workflow has no coordinator attached")
        return self._decision_handler(
            ApprovalDecision(
                pending_action_id=request.pending_action_id,
                approved=approved,
                decided_by=decided_by,
                comment=comment,
            )
        )


class InMemoryApprovalWorkflow(ApprovalWorkflow):
    """Keeps open requests only; a request is dropped as soon as its decision lands."""

    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.Lock()
        self._requests: dict[str, ApprovalRequest] = {}

    def submit(
        self, pending_action_id: str, approvers: list[str], summary: dict[str, Any]
    ) -> str:
        handle = new_id("apr")
        with self._lock:
            self._requests[handle] = ApprovalRequest(
                handle=handle,
                pending_action_id=pending_action_id,
                approvers=list(approvers),
                summary=dict(summary),
            )
        return handle

    def lookup(self, handle: str) -> ApprovalRequest | None:
        with self._lock:
            return self._requests.get(handle)

    def pending(self) -> list[ApprovalRequest]:
        with self._lock:
            return list(self._requests.values())

    def complete(self, pending_action_id: str) -> None:
        with self._lock:
            for handle, request in list(self._requests.items()):
                if request.pending_action_id == pending_action_id:
                    del self._requests[handle]


class ApprovalGate:
    """Creates approval-gated actions, submits them, and records decisions on them."""

    def __init__(self, store: ExecutionStore, workflow: ApprovalWorkflow) -> None:
        self.store = store
        self.workflow = workflow

    def request(
        self,
        spec: CapabilitySpec,
        call: ToolCall,
        *,
        execution_id: str,
        turn_id: str,
        cycle: int,
        log: DecisionLog,
    ) -> PendingAction:
        action = self.store.create_pending_action(
            PendingAction(
                id=new_id("act"),
                execution_id=execution_id,
                turn_id=turn_id,
                cycle=cycle,
                capability=spec.name,
                arguments=json.dumps(call.arguments, ensure_ascii=True, default=str),
                tool_call_id=call.id,
                requires_approval=True,
            )
        )
        log.record(
            StepType.APPROVAL_REQUESTED,
            {
                "pending_action_id": action.id,
                "capability": spec.name,
                "approvers": spec.approvers,
            },
            cycle=cycle,
        )
        return action

    def submit(self, action: PendingAction, approvers: list[str], log: DecisionLog) -> str:
        """Hand the request to the workflow; the Execution must already be suspended."""
        try:
            arguments: object = json.loads(action.arguments)
        except json.JSONDecodeError:
            arguments = action.arguments
        handle = self.workflow.submit(
            action.id,
            approvers,
            {
                "execution_id": action.execution_id,
                "capability": action.capability,
                "arguments": arguments,
            },
        )
        self.store.annotate_pending_action(action.id, approval_handle=handle)
        log.bus.emit(
            "approval_submitted",
            {"pending_action_id": action.id, "approval_handle": handle, "approvers": approvers},
        )
        return handle

    def resolve(
        self, action: PendingAction, decision: ApprovalDecision, log: DecisionLog
    ) -> PendingAction | None:
        """Move a queued action to Approved or Rejected; ``None`` for a repeated decision."""
        target = PendingActionStatus.APPROVED if decision.approved else PendingActionStatus.REJECTED
        updated = self.store.transition_pending_action(
            action.id,
            [PendingActionStatus.QUEUED],
            target,
            decided_by=decision.decided_by,
            decision_comment=decision.comment,
        )
        if updated is None:
            return None
        self.workflow.complete(action.id)
        log.record(
            StepType.APPROVAL_RESOLVED,
            {
                "pending_action_id": action.id,
                "capability": action.capability,
                "approved": decision.approved,
                "decided_by": decision.decided_by,
                "comment": decision.comment,
            },
            cycle=action.cycle,
        )
        return updated

    @staticmethod
    def rejection_outcome(action: PendingAction) -> CapabilityOutcome:
        message = f"The request to run {action.capability} was declined"
        if action.decided_by:
            message += f" by {action.decided_by}"
        if action.decision_comment:
            message += f": {action.decision_comment}"
        return CapabilityOutcome.failure(
            "approval_rejected",
            message + ". Do not retry this action; offer the user an alternative.",
        )
