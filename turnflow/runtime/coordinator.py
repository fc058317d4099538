from __future__ import annotations

import time
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from turnflow.capabilities.registry import CapabilityRegistry
from turnflow.config import AgentConfig
from turnflow.errors import (
    ChainDepthExceededError,
    CycleLimitExceededError,
    NotFoundError,
    StaleTurnError,
)
from turnflow.llm.gateway import LlmGateway
from turnflow.llm.prompt_builder import PromptBuilder, PromptProvider, PromptState
from turnflow.logging.events import EventBusFactory
from turnflow.logging.sanitizer import user_safe_message
from turnflow.runtime.approval import ApprovalGate, ApprovalWorkflow
from turnflow.runtime.bridge import AsyncBridge
from turnflow.runtime.decision_log import DecisionLog
from turnflow.runtime.dispatcher import ActionDispatcher, DispatchResult
from turnflow.runtime.notifications import Notifier
from turnflow.runtime.router import ResponseRouter
from turnflow.runtime.state import can_start_turn, check_transition
from turnflow.storage.base import ExecutionStore
from turnflow.storage.ids import generate_turn_id, new_id
from turnflow.types import (
    ApprovalDecision,
    Execution,
    ExecutionPolicy,
    ExecutionStatus,
    HandoffPayload,
    Message,
    OutcomeKind,
    PendingAction,
    PendingActionStatus,
    StepType,
    TurnOutcome,
    utcnow,
)

S = ExecutionStatus

GENERIC_FAILURE = "Something went wrong while handling your request. Please try again."
LLM_FAILURE = "The language model could not be reached. Please try again in a moment."
LOOP_FAILURE = "This request needed more steps than allowed and was stopped."
CHAIN_FAILURE = "This request needed too many background steps and was stopped."
CONFIG_FAILURE = "The assistant is not configured correctly. Please contact support."


class TurnCoordinator:
    """Owns the Execution state machine.

    Every public operation is an independent unit of work: it reads the Execution,
    does what the current state allows, persists through compare-and-set and
    returns a ``TurnOutcome``. Suspension means persisting and returning; the turn
    continues when ``resume_turn`` is called from another unit of work.
    """

    def __init__(
        self,
        config: AgentConfig,
        store: ExecutionStore,
        gateway: LlmGateway,
        registry: CapabilityRegistry,
        bridge: AsyncBridge,
        approval_workflow: ApprovalWorkflow,
        events: EventBusFactory,
        notifier: Notifier | None = None,
        prompts: PromptProvider | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.store = store
        self.gateway = gateway
        self.registry = registry
        self.bridge = bridge
        self.events = events
        self.notifier = notifier or Notifier(channel=None, enabled=False)
        self.prompts = prompts or PromptBuilder(
            config.model,
            config.runtime,
            transient_messages=config.notifications.transient_messages,
        )
        self.approval_gate = ApprovalGate(store, approval_workflow)
        self.dispatcher = ActionDispatcher(
            registry, store, self.approval_gate, config.runtime, sleep=sleep
        )
        self.router = ResponseRouter(store, self.dispatcher, config.runtime, self.notifier)
        bridge.attach(self.resume_turn)
        approval_workflow.attach(self.decide_approval)

    # -- queries ---------------------------------------------------------------

    def get_execution(self, execution_id: str) -> Execution:
        execution = self.store.get_execution(execution_id)
        if execution is None:
            raise NotFoundError(f"Unknown execution: {execution_id}")
        return execution

    def get_history(
        self, execution_id: str, limit: int = 25, before_sequence: int | None = None
    ) -> list[Message]:
        self.get_execution(execution_id)
        return self.store.list_messages(
            execution_id, limit=limit, before_sequence=before_sequence
        )

    def pending_actions(self, execution_id: str) -> list[PendingAction]:
        execution = self.get_execution(execution_id)
        if execution.current_turn_id is None:
            return []
        return self.store.list_pending_actions(execution_id, execution.current_turn_id)

    def open_session(self, user_id: str, agent_name: str = "default") -> Execution:
        self.config.agent_profile(agent_name)
        execution = self.store.create_execution(
            Execution(id=new_id("exe"), user_id=user_id, agent_name=agent_name)
        )
        self.events.for_turn(execution.id, None).emit(
            "session_opened", {"user_id": user_id, "agent_name": agent_name}
        )
        return execution

    # -- outcomes --------------------------------------------------------------

    def _log(self, execution_id: str, turn_id: str) -> DecisionLog:
        return DecisionLog(
            self.store, self.events.for_turn(execution_id, turn_id), execution_id, turn_id
        )

    @staticmethod
    def _outcome(
        execution: Execution,
        outcome: OutcomeKind,
        *,
        turn_id: str | None = None,
        content: str | None = None,
        error: str | None = None,
        reason: str | None = None,
    ) -> TurnOutcome:
        return TurnOutcome(
            execution_id=execution.id,
            turn_id=turn_id or execution.current_turn_id,
            status=execution.status,
            outcome=outcome,
            content=content,
            error=error,
            reason=reason,
        )

    def _stale(self, execution: Execution, log: DecisionLog, reason: str) -> TurnOutcome:
        log.bus.emit(
            "turn_stale",
            {"reason": reason, "current_turn_id": execution.current_turn_id},
        )
        return self._outcome(execution, "stale", turn_id=log.turn_id, reason=reason)

    def _noop(self, execution: Execution, log: DecisionLog, reason: str) -> TurnOutcome:
        log.bus.emit("resume_ignored", {"reason": reason, "status": execution.status.value})
        return self._outcome(execution, "noop", turn_id=log.turn_id, reason=reason)

    def _transition(
        self, execution: Execution, target: ExecutionStatus, **changes: Any
    ) -> Execution | None:
        if execution.status != target:
            check_transition(execution.status, target)
        return self.store.compare_and_set(execution, status=target, **changes)

    def _finalize(self, execution: Execution, log: DecisionLog, message: Message) -> TurnOutcome:
        done = self._transition(execution, S.IDLE)
        if done is None:
            return self._stale(execution, log, "finalize_conflict")
        log.record(
            StepType.FINALIZE,
            {"message_id": message.id, "cycles": execution.cycle_count},
            cycle=execution.cycle_count,
        )
        log.bus.emit("turn_completed", {"cycles": execution.cycle_count})
        self.notifier.agent_response(
            log.bus, done, is_success=True, content=message.content, message_id=message.id
        )
        return self._outcome(done, "completed", content=message.content)

    def _fail(
        self,
        execution: Execution,
        log: DecisionLog,
        error_kind: str,
        user_message: str,
        detail: str | None = None,
    ) -> TurnOutcome:
        log.record(
            StepType.ERROR,
            {"error_kind": error_kind, "message": user_message, "detail": detail},
            cycle=execution.cycle_count,
            success=False,
        )
        text = user_safe_message(user_message, GENERIC_FAILURE)
        try:
            message = self.store.append_message(
                Message(
                    id=new_id("msg"),
                    execution_id=execution.id,
                    turn_id=log.turn_id,
                    role="assistant",
                    content=text,
                    is_error=True,
                ),
                expected_turn_id=log.turn_id,
            )
        except StaleTurnError:
            return self._stale(execution, log, "fail_after_supersede")
        failed = self._transition(execution, S.FAILED)
        if failed is None:
            return self._stale(execution, log, "fail_conflict")
        log.bus.emit("turn_failed", {"error_kind": error_kind, "message": text})
        self.notifier.agent_response(
            log.bus,
            failed,
            is_success=False,
            content=text,
            message_id=message.id,
            error_details=text,
        )
        return self._outcome(failed, "failed", content=text, error=text)

    def _halt(self, log: DecisionLog, result: DispatchResult) -> TurnOutcome:
        execution = self.get_execution(log.execution_id)
        if execution.current_turn_id != log.turn_id:
            return self._stale(execution, log, "halt_after_supersede")
        reason = result.outcome.message if result.outcome else None
        return self._fail(
            execution,
            log,
            "capability_failed",
            f"{result.call.name} failed: {reason or 'no details available'}",
            result.outcome.detail if result.outcome else None,
        )

    def _guarded(
        self, execution: Execution, log: DecisionLog, work: Callable[[], TurnOutcome]
    ) -> TurnOutcome:
        try:
            return work()
        except StaleTurnError:
            latest = self.store.get_execution(execution.id) or execution
            return self._stale(latest, log, "append_refused")
        except Exception as exc:
            log.bus.emit(
                "turn_crashed", {"error": f"{exc.__class__.__name__}: {exc}"}
            )
            latest = self.store.get_execution(execution.id) or execution
            if latest.current_turn_id != log.turn_id or latest.status == S.FAILED:
                return self._stale(latest, log, "crash_after_supersede")
            return self._fail(
                latest, log, "internal", GENERIC_FAILURE, f"{exc.__class__.__name__}: {exc}"
            )

    # -- turn lifecycle --------------------------------------------------------

    def advance_cycle(self, execution: Execution) -> Execution | None:
        """Enter the next cycle of the current turn.

        Raises ``CycleLimitExceededError`` past ``runtime.max_cycles``; returns
        ``None`` when a concurrent writer moved the Execution first.
        """
        next_cycle = execution.cycle_count + 1
        if next_cycle > self.config.runtime.max_cycles:
            raise CycleLimitExceededError(next_cycle, self.config.runtime.max_cycles)
        return self._transition(execution, S.PROCESSING, cycle_count=next_cycle)

    def _supersede(self, execution: Execution, new_turn_id: str) -> Execution | None:
        previous_turn = execution.current_turn_id
        idle = self._transition(execution, S.IDLE)
        if idle is None or previous_turn is None:
            return idle
        old_log = self._log(execution.id, previous_turn)
        old_log.record(
            StepType.FINALIZE,
            {
                "superseded_by": new_turn_id,
                "previous_status": execution.status.value,
            },
            cycle=execution.cycle_count,
            success=False,
        )
        for action in self.store.list_pending_actions(execution.id, previous_turn):
            if action.requires_approval and action.status == PendingActionStatus.QUEUED:
                self.approval_gate.workflow.complete(action.id)
                old_log.bus.emit("approval_withdrawn", {"pending_action_id": action.id})
        return idle

    def start_turn(
        self, execution_id: str, user_message: str, turn_id: str | None = None
    ) -> TurnOutcome:
        execution = self.get_execution(execution_id)
        new_turn = turn_id or generate_turn_id()
        log = self._log(execution.id, new_turn)

        if turn_id is not None and (
            execution.current_turn_id == turn_id
            or self.store.list_messages(execution.id, turn_id=turn_id, limit=1)
        ):
            log.bus.emit("turn_duplicate", {"status": execution.status.value})
            return self._outcome(execution, "noop", turn_id=turn_id, reason="duplicate_turn")

        if execution.status == S.PROCESSING:
            age = utcnow() - execution.last_updated
            if age < timedelta(seconds=self.config.runtime.processing_timeout_seconds):
                log.bus.emit(
                    "turn_rejected_busy", {"current_turn_id": execution.current_turn_id}
                )
                return self._outcome(execution, "rejected_busy", turn_id=new_turn)

        if not can_start_turn(execution.status):
            superseded = self._supersede(execution, new_turn)
            if superseded is None:
                return self._stale(execution, log, "supersede_conflict")
            log.bus.emit(
                "turn_superseded",
                {
                    "previous_turn_id": execution.current_turn_id,
                    "previous_status": execution.status.value,
                },
            )
            execution = superseded

        started = self._transition(
            execution, S.PROCESSING, current_turn_id=new_turn, cycle_count=0
        )
        if started is None:
            return self._stale(execution, log, "start_conflict")
        log.bus.emit("turn_started", {"user_id": started.user_id})
        self.notifier.status(log.bus, started)

        def work() -> TurnOutcome:
            self.store.append_message(
                Message(
                    id=new_id("msg"),
                    execution_id=started.id,
                    turn_id=new_turn,
                    role="user",
                    content=user_message,
                ),
                expected_turn_id=new_turn,
            )
            return self._run_cycles(started, log)

        return self._guarded(started, log, work)

    def _run_cycles(self, execution: Execution, log: DecisionLog) -> TurnOutcome:
        profile = self.config.agent_profile(execution.agent_name)
        allowed = profile.capabilities
        tools = self.registry.tool_schemas(allowed)

        while True:
            try:
                advanced = self.advance_cycle(execution)
            except CycleLimitExceededError as exc:
                return self._fail(execution, log, "bounded_loop", LOOP_FAILURE, str(exc))
            if advanced is None:
                return self._stale(execution, log, "advance_conflict")
            execution = advanced

            history = self.store.list_messages(execution.id)
            prompt = self.prompts.build(PromptState(execution, profile, history, tools))
            call = self.gateway.call(prompt, tools, log, execution.cycle_count)
            if call.result is None:
                kind = call.error_kind or "fatal"
                message = CONFIG_FAILURE if kind == "configuration" else LLM_FAILURE
                return self._fail(execution, log, kind, message, call.error)

            routed = self.router.route(execution, call.result, log, allowed)
            if routed.kind == "final":
                return self._finalize(execution, log, routed.message)
            halted = routed.halted
            if halted is not None:
                return self._halt(log, halted)
            if routed.suspended:
                return self._suspend(execution, log, routed.suspended)
            if self.config.runtime.followup_mode == "handoff":
                return self._handoff_followup(execution, log)

    # -- suspension ------------------------------------------------------------

    def _action_depth(self, action: PendingAction) -> int:
        actions = self.store.list_pending_actions(action.execution_id, action.turn_id)
        return sum(1 for item in actions if item.created_at <= action.created_at)

    def _hand_off_action(
        self, execution: Execution, action: PendingAction, log: DecisionLog
    ) -> TurnOutcome | None:
        payload = self.bridge.package_action(execution, action, self._action_depth(action))
        try:
            self.bridge.hand_off(payload)
        except ChainDepthExceededError as exc:
            self.store.transition_pending_action(
                action.id,
                [PendingActionStatus.QUEUED, PendingActionStatus.APPROVED],
                PendingActionStatus.FAILED,
            )
            return self._fail(execution, log, "configuration", CHAIN_FAILURE, str(exc))
        log.bus.emit(
            "handoff_published",
            {
                "kind": payload.kind,
                "pending_action_id": action.id,
                "depth": payload.depth,
                "profile": self.bridge.profile,
            },
        )
        return None

    def _suspend(
        self, execution: Execution, log: DecisionLog, suspended: list[DispatchResult]
    ) -> TurnOutcome:
        needs_approval = any(item.reason == "approval" for item in suspended)
        target = S.AWAITING_APPROVAL if needs_approval else S.AWAITING_ACTION
        updated = self._transition(execution, target)
        if updated is None:
            return self._stale(execution, log, "suspend_conflict")
        for item in suspended:
            if item.reason != "action" or item.action is None:
                continue
            failed = self._hand_off_action(updated, item.action, log)
            if failed is not None:
                return failed
        log.bus.emit(
            "turn_suspended",
            {"status": target.value, "pending_actions": [i.action.id for i in suspended if i.action]},
        )
        self.notifier.status(log.bus, updated)
        gated = [item.action for item in suspended if item.reason == "approval" and item.action]
        if not gated:
            return self._outcome(updated, "suspended")
        return self._request_approvals(log, gated)

    def _request_approvals(self, log: DecisionLog, actions: list[PendingAction]) -> TurnOutcome:
        """Apply decisions that arrived while the cycle ran, then submit the rest."""
        queued: list[PendingAction] = []
        for action in actions:
            current = self.store.get_pending_action(action.id) or action
            if current.status == PendingActionStatus.QUEUED:
                queued.append(current)
                continue
            stopped = self._apply_approval(log, current)
            if stopped is not None:
                return stopped
        if not queued:
            return self._settle(log)

        for action in queued:
            spec = self.registry.resolve(action.capability)
            self.approval_gate.submit(action, spec.approvers if spec else [], log)
        latest = self.get_execution(log.execution_id)
        if latest.current_turn_id != log.turn_id:
            return self._stale(latest, log, "approval_after_supersede")
        return self._resting_outcome(latest, log)

    def _resting_outcome(self, execution: Execution, log: DecisionLog) -> TurnOutcome:
        """Outcome for a turn that a nested unit of work may already have carried on."""
        if execution.status not in {S.IDLE, S.FAILED}:
            return self._outcome(execution, "suspended")
        messages = self.store.list_messages(execution.id, turn_id=log.turn_id)
        last = next((item for item in reversed(messages) if item.role == "assistant"), None)
        content = last.content if last else None
        if execution.status == S.IDLE:
            return self._outcome(execution, "completed", content=content)
        return self._outcome(execution, "failed", content=content, error=content)

    def _handoff_followup(self, execution: Execution, log: DecisionLog) -> TurnOutcome:
        updated = self._transition(execution, S.AWAITING_FOLLOWUP)
        if updated is None:
            return self._stale(execution, log, "followup_conflict")
        payload = self.bridge.package_followup(updated, depth=updated.cycle_count)
        try:
            self.bridge.hand_off(payload)
        except ChainDepthExceededError as exc:
            return self._fail(updated, log, "configuration", CHAIN_FAILURE, str(exc))
        log.bus.emit(
            "handoff_published",
            {"kind": payload.kind, "depth": payload.depth, "profile": self.bridge.profile},
        )
        self.notifier.status(log.bus, updated)
        return self._outcome(updated, "suspended")

    def _cycle_complete(self, execution: Execution) -> bool:
        messages = self.store.list_messages(execution.id, turn_id=execution.current_turn_id)
        request = next(
            (item for item in reversed(messages) if item.role == "assistant" and item.tool_calls),
            None,
        )
        if request is None or not request.tool_calls:
            return True
        answered = {
            item.tool_call_id
            for item in messages
            if item.role == "tool" and item.sequence > request.sequence
        }
        return all(call.id in answered for call in request.tool_calls)

    def _rest(self, execution: Execution) -> Execution | None:
        """Settle on the waiting status that matches the actions still open."""
        actions = self.store.list_pending_actions(execution.id, execution.current_turn_id or "")
        awaiting_approval = any(
            item.requires_approval
            and item.status == PendingActionStatus.QUEUED
            and item.cycle == execution.cycle_count
            for item in actions
        )
        target = S.AWAITING_APPROVAL if awaiting_approval else S.AWAITING_ACTION
        if execution.status == target:
            return execution
        return self._transition(execution, target)

    def _settle(self, log: DecisionLog) -> TurnOutcome:
        execution = self.get_execution(log.execution_id)
        if execution.current_turn_id != log.turn_id:
            return self._stale(execution, log, "settle_after_supersede")
        if not self._cycle_complete(execution):
            rested = self._rest(execution)
            if rested is None:
                return self._stale(execution, log, "settle_conflict")
            if rested.status != execution.status:
                self.notifier.status(log.bus, rested)
            return self._outcome(rested, "suspended")
        if self.config.runtime.followup_mode == "handoff":
            return self._handoff_followup(execution, log)
        return self._run_cycles(execution, log)

    def _after_action(self, log: DecisionLog, result: DispatchResult) -> TurnOutcome:
        if result.outcome is not None:
            self.router.append_tool_result(
                self.get_execution(log.execution_id), log.turn_id, result.call.id, result.outcome
            )
        if result.halted:
            return self._halt(log, result)
        return self._settle(log)

    # -- resumption ------------------------------------------------------------

    def resume_turn(
        self,
        execution_id: str,
        turn_id: str,
        resume_payload: HandoffPayload | ApprovalDecision,
    ) -> TurnOutcome:
        execution = self.get_execution(execution_id)
        log = self._log(execution_id, turn_id)
        if execution.current_turn_id != turn_id:
            return self._stale(execution, log, "turn_mismatch")
        if (
            isinstance(resume_payload, HandoffPayload)
            and resume_payload.cycle_count != execution.cycle_count
        ):
            return self._stale(execution, log, "cycle_mismatch")

        def work() -> TurnOutcome:
            if isinstance(resume_payload, ApprovalDecision):
                return self._resume_approval(execution, resume_payload, log)
            if resume_payload.kind == "followup":
                return self._resume_followup(execution, log)
            return self._resume_action(execution, resume_payload, log)

        return self._guarded(execution, log, work)

    def _load_action(self, execution: Execution, action_id: str | None) -> PendingAction | None:
        action = self.store.get_pending_action(action_id or "")
        if (
            action is None
            or action.execution_id != execution.id
            or action.turn_id != execution.current_turn_id
            or action.cycle != execution.cycle_count
        ):
            return None
        return action

    def _resume_action(
        self, execution: Execution, payload: HandoffPayload, log: DecisionLog
    ) -> TurnOutcome:
        if execution.status not in {S.AWAITING_ACTION, S.AWAITING_APPROVAL}:
            return self._noop(execution, log, "not_awaiting_action")
        action = self._load_action(execution, payload.pending_action_id)
        if action is None:
            return self._stale(execution, log, "action_not_current")
        result = self.dispatcher.execute_action(execution, action, log)
        if result is None:
            return self._noop(execution, log, "action_already_claimed")
        return self._after_action(log, result)

    def _resume_followup(self, execution: Execution, log: DecisionLog) -> TurnOutcome:
        if execution.status != S.AWAITING_FOLLOWUP:
            return self._noop(execution, log, "not_awaiting_followup")
        return self._run_cycles(execution, log)

    def _apply_approval(self, log: DecisionLog, action: PendingAction) -> TurnOutcome | None:
        """Act on a decided action; ``None`` means the turn can settle."""
        execution = self.get_execution(log.execution_id)
        if action.status == PendingActionStatus.REJECTED:
            if self.store.claim_pending_action(action.id, [PendingActionStatus.REJECTED]) is None:
                return self._noop(execution, log, "rejection_already_applied")
            outcome = self.approval_gate.rejection_outcome(action)
            self.router.append_tool_result(execution, log.turn_id, action.tool_call_id, outcome)
            return None
        spec = self.registry.resolve(action.capability)
        if spec is not None and spec.execution == ExecutionPolicy.ASYNCHRONOUS:
            rested = self._rest(execution)
            if rested is None:
                return self._stale(execution, log, "approval_conflict")
            if rested.status != execution.status:
                self.notifier.status(log.bus, rested)
            return self._hand_off_action(rested, action, log)
        result = self.dispatcher.execute_action(execution, action, log)
        if result is None:
            return self._noop(execution, log, "action_already_claimed")
        if result.outcome is not None:
            self.router.append_tool_result(
                self.get_execution(log.execution_id), log.turn_id, result.call.id, result.outcome
            )
        if result.halted:
            return self._halt(log, result)
        return None

    def _resume_approval(
        self, execution: Execution, decision: ApprovalDecision, log: DecisionLog
    ) -> TurnOutcome:
        if execution.status not in {S.PROCESSING, S.AWAITING_APPROVAL, S.AWAITING_ACTION}:
            return self._noop(execution, log, "not_awaiting_approval")
        action = self._load_action(execution, decision.pending_action_id)
        if action is None:
            return self._stale(execution, log, "action_not_current")
        if not action.requires_approval:
            return self._noop(execution, log, "approval_not_required")
        resolved = self.approval_gate.resolve(action, decision, log)
        if resolved is None:
            return self._noop(execution, log, "approval_already_decided")

        latest = self.get_execution(execution.id)
        if latest.status == S.PROCESSING and latest.current_turn_id == log.turn_id:
            # The running cycle picks the decision up when it suspends.
            log.bus.emit(
                "approval_deferred",
                {"pending_action_id": action.id, "approved": decision.approved},
            )
            return self._outcome(latest, "deferred")
        stopped = self._apply_approval(log, resolved)
        if stopped is not None:
            return stopped
        return self._settle(log)

    def decide_approval(self, decision: ApprovalDecision) -> TurnOutcome:
        action = self.store.get_pending_action(decision.pending_action_id)
        if action is None:
            raise NotFoundError(f"Unknown pending action: {decision.pending_action_id}")
        return self.resume_turn(action.execution_id, action.turn_id, decision)
