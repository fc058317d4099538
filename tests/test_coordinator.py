from __future__ import annotations

import json
from typing import Any

from conftest import call_tools, reply

from turnflow.capabilities.base import CapabilityContext, CapabilitySpec, FunctionCapability
from turnflow.errors import FatalProviderError, RetryableProviderError
from turnflow.runtime.approval import InMemoryApprovalWorkflow
from turnflow.types import (
    ApprovalDecision,
    ErrorPolicy,
    ExecutionPolicy,
    ExecutionStatus,
    PendingActionStatus,
)


def _spec(name: str, fn, **kwargs: Any) -> CapabilitySpec:
    return CapabilitySpec(name=name, handler=FunctionCapability(fn), **kwargs)


class Counter:
    def __init__(self, result: Any = None) -> None:
        self.calls: list[dict[str, Any]] = []
        self.result = result if result is not None else {"ok": True}

    def __call__(self, arguments: dict[str, Any], context: CapabilityContext) -> Any:
        self.calls.append(arguments)
        return self.result


def _tool_payloads(harness, execution_id: str) -> list[dict[str, Any]]:
    return [
        json.loads(item.content or "{}")
        for item in harness.store.list_messages(execution_id)
        if item.role == "tool"
    ]


def test_content_only_reply_finishes_turn(make_harness) -> None:
    harness = make_harness([reply("Your case 42 is open.")])
    session = harness.session()

    outcome = harness.coordinator.start_turn(session, "What's my open case status?")

    assert outcome.outcome == "completed"
    assert outcome.content == "Your case 42 is open."
    execution = harness.coordinator.get_execution(session)
    assert execution.status == ExecutionStatus.IDLE
    messages = harness.store.list_messages(session)
    assert [item.role for item in messages] == ["user", "assistant"]
    assert harness.step_types(session) == ["LLMCall", "Finalize"]


def test_sync_tool_then_followup_answer(make_harness) -> None:
    update = Counter({"updated": True})
    harness = make_harness(
        [
            call_tools(("call_1", "update_record", {"record_id": "r1", "status": "closed"})),
            reply("Record r1 is now closed."),
        ],
        capabilities=[_spec("update_record", update)],
    )
    session = harness.session()

    outcome = harness.coordinator.start_turn(session, "Please close record r1")

    assert outcome.outcome == "completed"
    assert update.calls == [{"record_id": "r1", "status": "closed"}]
    assert harness.coordinator.get_execution(session).status == ExecutionStatus.IDLE
    assert harness.step_types(session) == [
        "LLMCall",
        "ToolCall",
        "ToolResult",
        "LLMCall",
        "Finalize",
    ]
    follow_up = harness.client.requests[1]["messages"]
    assert follow_up[-1]["role"] == "tool"
    assert json.loads(follow_up[-1]["content"])["status"] == "success"


def test_async_tool_suspends_and_resumes_through_worker(make_harness) -> None:
    export = Counter({"rows": 3})
    harness = make_harness(
        [
            call_tools(("call_1", "export_report", {"month": "may"})),
            reply("The report has 3 rows."),
        ],
        capabilities=[_spec("export_report", export, execution=ExecutionPolicy.ASYNCHRONOUS)],
    )
    session = harness.session()

    outcome = harness.coordinator.start_turn(session, "Export the May report")

    assert outcome.outcome == "suspended"
    assert harness.coordinator.get_execution(session).status == ExecutionStatus.AWAITING_ACTION
    actions = harness.coordinator.pending_actions(session)
    assert [item.status for item in actions] == [PendingActionStatus.QUEUED]
    assert export.calls == []
    assert harness.transport.pending() == 1

    harness.runtime.worker.drain()

    assert export.calls == [{"month": "may"}]
    execution = harness.coordinator.get_execution(session)
    assert execution.status == ExecutionStatus.IDLE
    assert harness.store.get_pending_action(actions[0].id).status == PendingActionStatus.EXECUTED
    roles = [item.role for item in harness.store.list_messages(session)]
    assert roles == ["user", "assistant", "tool", "assistant"]


def test_new_message_supersedes_pending_async_turn(make_harness) -> None:
    export = Counter()
    harness = make_harness(
        [
            call_tools(("call_1", "export_report", {"month": "may"})),
            reply("Hello again."),
        ],
        capabilities=[_spec("export_report", export, execution=ExecutionPolicy.ASYNCHRONOUS)],
    )
    session = harness.session()

    first = harness.coordinator.start_turn(session, "Export the May report")
    second = harness.coordinator.start_turn(session, "Actually, just say hello")

    assert first.turn_id != second.turn_id
    assert second.outcome == "completed"

    harness.runtime.worker.drain()

    assert export.calls == []
    assert harness.runtime.worker.stats.outcomes == {"stale": 1}
    old_messages = harness.store.list_messages(session, turn_id=first.turn_id)
    assert [item.role for item in old_messages] == ["user", "assistant"]
    assert harness.coordinator.get_execution(session).current_turn_id == second.turn_id

    prompt = harness.client.requests[1]["messages"]
    closed = [entry for entry in prompt if entry.get("tool_call_id") == "call_1"]
    assert closed and closed[0]["is_error"] is True


def test_approval_rejection_is_fed_back_to_model(make_harness) -> None:
    refund = Counter()

    def acknowledge(messages: list[dict[str, Any]]):
        result = json.loads(messages[-1]["content"])
        assert result["status"] == "rejected"
        assert result["error"]["code"] == "approval_rejected"
        return reply("Understood, the refund was not approved.")

    harness = make_harness(
        [call_tools(("call_1", "issue_refund", {"amount": 50})), acknowledge],
        capabilities=[
            _spec("issue_refund", refund, requires_approval=True, approvers=["finance"])
        ],
    )
    session = harness.session()

    outcome = harness.coordinator.start_turn(session, "Refund my last order")

    assert outcome.outcome == "suspended"
    assert harness.coordinator.get_execution(session).status == ExecutionStatus.AWAITING_APPROVAL
    requests = harness.runtime.approvals.pending()
    assert len(requests) == 1
    assert requests[0].approvers == ["finance"]

    result = harness.runtime.approvals.on_decision(requests[0].handle, False, "alice")

    assert result.outcome == "completed"
    assert result.content == "Understood, the refund was not approved."
    assert refund.calls == []
    action = harness.store.get_pending_action(requests[0].pending_action_id)
    assert action.status == PendingActionStatus.REJECTED
    assert "ApprovalResolved" in harness.step_types(session)


def test_approved_sync_capability_runs_inline(make_harness) -> None:
    refund = Counter({"refunded": 50})
    harness = make_harness(
        [call_tools(("call_1", "issue_refund", {"amount": 50})), reply("Refund issued.")],
        capabilities=[_spec("issue_refund", refund, requires_approval=True)],
    )
    session = harness.session()
    harness.coordinator.start_turn(session, "Refund my last order")
    action = harness.coordinator.pending_actions(session)[0]

    first = harness.coordinator.decide_approval(
        ApprovalDecision(pending_action_id=action.id, approved=True, decided_by="bob")
    )
    duplicate = harness.coordinator.decide_approval(
        ApprovalDecision(pending_action_id=action.id, approved=True, decided_by="bob")
    )

    assert first.outcome == "completed"
    assert duplicate.outcome in {"noop", "stale"}
    assert refund.calls == [{"amount": 50}]
    assert harness.store.get_pending_action(action.id).status == PendingActionStatus.EXECUTED


def test_halt_and_report_failure_ends_turn(make_harness) -> None:
    def explode(arguments: dict[str, Any], context: CapabilityContext) -> Any:
        raise RuntimeError("db write failed password=hunter2")

    harness = make_harness(
        [call_tools(("call_1", "write_ledger", {})), reply("should never be requested")],
        capabilities=[_spec("write_ledger", explode, on_error=ErrorPolicy.HALT_AND_REPORT)],
    )
    session = harness.session()

    outcome = harness.coordinator.start_turn(session, "Post the ledger entry")

    assert outcome.outcome == "failed"
    assert harness.coordinator.get_execution(session).status == ExecutionStatus.FAILED
    assert len(harness.client.requests) == 1
    errors = [
        item
        for item in harness.store.list_messages(session)
        if item.role == "assistant" and item.is_error
    ]
    assert len(errors) == 1
    assert "hunter2" not in (errors[0].content or "")
    assert "write_ledger" in (errors[0].content or "")


def test_continue_with_context_feeds_failure_back(make_harness) -> None:
    def explode(arguments: dict[str, Any], context: CapabilityContext) -> Any:
        raise RuntimeError("lookup service returned 500")

    harness = make_harness(
        [call_tools(("call_1", "lookup", {})), reply("The lookup failed, try later.")],
        capabilities=[_spec("lookup", explode)],
    )
    session = harness.session()

    outcome = harness.coordinator.start_turn(session, "Look it up")

    assert outcome.outcome == "completed"
    payload = _tool_payloads(harness, session)[0]
    assert payload["status"] == "failed"
    assert payload["error"]["code"] == "handler_error"


def test_unknown_capability_is_reported_to_model(make_harness) -> None:
    harness = make_harness(
        [call_tools(("call_1", "does_not_exist", {})), reply("I cannot do that.")],
    )
    session = harness.session()

    outcome = harness.coordinator.start_turn(session, "Do the impossible")

    assert outcome.outcome == "completed"
    assert _tool_payloads(harness, session)[0]["error"]["code"] == "unknown_capability"
    assert "Error" in harness.step_types(session)


def test_agent_capability_allowlist_limits_tools(make_harness) -> None:
    harness = make_harness(
        [call_tools(("call_1", "hidden", {})), reply("done")],
        capabilities=[_spec("visible", Counter()), _spec("hidden", Counter())],
        agent_capabilities=["visible"],
    )
    session = harness.session()

    harness.coordinator.start_turn(session, "hi")

    assert [tool["name"] for tool in harness.client.requests[0]["tools"]] == ["visible"]
    assert _tool_payloads(harness, session)[0]["error"]["code"] == "unknown_capability"


def test_redelivered_handoff_runs_action_once(make_harness) -> None:
    export = Counter()
    harness = make_harness(
        [call_tools(("call_1", "export_report", {})), reply("done")],
        capabilities=[_spec("export_report", export, execution=ExecutionPolicy.ASYNCHRONOUS)],
    )
    session = harness.session()
    harness.coordinator.start_turn(session, "Export")
    delivery = harness.transport.poll()[0]

    first = harness.runtime.bridge.receive(delivery.payload)
    second = harness.runtime.bridge.receive(delivery.payload)

    assert first.outcome == "completed"
    assert second.outcome in {"noop", "stale"}
    assert len(export.calls) == 1


def test_duplicate_resume_before_completion_is_noop(make_harness) -> None:
    export = Counter()
    harness = make_harness(
        [
            call_tools(("call_1", "export_report", {}), ("call_2", "export_report", {})),
            reply("both done"),
        ],
        capabilities=[_spec("export_report", export, execution=ExecutionPolicy.ASYNCHRONOUS)],
    )
    session = harness.session()
    harness.coordinator.start_turn(session, "Export twice")
    deliveries = harness.transport.poll()
    assert len(deliveries) == 2

    first = harness.runtime.bridge.receive(deliveries[0].payload)
    again = harness.runtime.bridge.receive(deliveries[0].payload)

    assert first.outcome == "suspended"
    assert again.outcome == "noop"
    assert len(export.calls) == 1

    last = harness.runtime.bridge.receive(deliveries[1].payload)
    assert last.outcome == "completed"
    assert len(export.calls) == 2


def test_cycle_limit_forces_failure(make_harness) -> None:
    ping = Counter()
    script = [call_tools((f"call_{n}", "ping", {})) for n in range(5)]
    harness = make_harness(script, capabilities=[_spec("ping", ping)], max_cycles=3)
    session = harness.session()

    outcome = harness.coordinator.start_turn(session, "loop forever")

    assert outcome.outcome == "failed"
    assert len(harness.client.requests) == 3
    execution = harness.coordinator.get_execution(session)
    assert execution.status == ExecutionStatus.FAILED
    errors = harness.store.list_decisions(session)
    assert errors[-1].payload["error_kind"] == "bounded_loop"


def test_retryable_provider_errors_are_bounded(make_harness) -> None:
    harness = make_harness(
        [RetryableProviderError("overloaded", 529) for _ in range(5)], max_llm_attempts=3
    )
    session = harness.session()

    outcome = harness.coordinator.start_turn(session, "hello")

    assert outcome.outcome == "failed"
    assert len(harness.client.requests) == 3
    llm_calls = [
        entry for entry in harness.store.list_decisions(session) if entry.step_type.value == "LLMCall"
    ]
    assert len(llm_calls) == 3
    assert all(entry.success is False for entry in llm_calls)


def test_retry_then_success(make_harness) -> None:
    harness = make_harness([TimeoutError("read timed out"), reply("hi there")])
    session = harness.session()

    outcome = harness.coordinator.start_turn(session, "hello")

    assert outcome.outcome == "completed"
    assert [request["attempt"] for request in harness.client.requests] == [1, 2]


def test_fatal_provider_error_is_not_retried(make_harness) -> None:
    harness = make_harness([FatalProviderError("invalid api key", 401), reply("unused")])
    session = harness.session()

    outcome = harness.coordinator.start_turn(session, "hello")

    assert outcome.outcome == "failed"
    assert len(harness.client.requests) == 1
    assert harness.store.list_decisions(session)[-1].payload["error_kind"] == "fatal"


def test_messages_are_strictly_ordered_in_parallel_mode(make_harness) -> None:
    harness = make_harness(
        [
            call_tools(("call_a", "alpha", {}), ("call_b", "beta", {}), ("call_c", "gamma", {})),
            reply("all three done"),
        ],
        capabilities=[
            _spec("alpha", Counter({"n": 1})),
            _spec("beta", Counter({"n": 2})),
            _spec("gamma", Counter({"n": 3})),
        ],
        tool_call_mode="parallel",
        max_parallel_tool_calls=3,
    )
    session = harness.session()

    harness.coordinator.start_turn(session, "run all")

    messages = harness.store.list_messages(session)
    sequences = [item.sequence for item in messages]
    assert sequences == sorted(sequences)
    assert len(set(sequences)) == len(sequences)
    tool_ids = [item.tool_call_id for item in messages if item.role == "tool"]
    assert tool_ids == ["call_a", "call_b", "call_c"]


def test_sequential_halt_skips_remaining_calls(make_harness) -> None:
    later = Counter()

    def explode(arguments: dict[str, Any], context: CapabilityContext) -> Any:
        raise RuntimeError("boom")

    harness = make_harness(
        [call_tools(("call_1", "first", {}), ("call_2", "second", {}))],
        capabilities=[
            _spec("first", explode, on_error=ErrorPolicy.HALT_AND_REPORT),
            _spec("second", later),
        ],
    )
    session = harness.session()

    outcome = harness.coordinator.start_turn(session, "go")

    assert outcome.outcome == "failed"
    assert later.calls == []
    payloads = _tool_payloads(harness, session)
    assert [item["error"]["code"] for item in payloads] == ["handler_error", "skipped"]


def test_tool_calls_over_limit_are_refused(make_harness) -> None:
    ping = Counter()
    harness = make_harness(
        [call_tools(("call_1", "ping", {}), ("call_2", "ping", {})), reply("ok")],
        capabilities=[_spec("ping", ping)],
        max_tool_calls_per_response=1,
    )
    session = harness.session()

    harness.coordinator.start_turn(session, "ping twice")

    assert len(ping.calls) == 1
    codes = [item["status"] for item in _tool_payloads(harness, session)]
    assert codes == ["success", "failed"]
    assert _tool_payloads(harness, session)[1]["error"]["code"] == "tool_call_limit"


def test_start_turn_while_processing_is_rejected(make_harness) -> None:
    harness = make_harness([reply("late answer")])
    session = harness.session()
    execution = harness.coordinator.get_execution(session)
    harness.store.compare_and_set(
        execution, status=ExecutionStatus.PROCESSING, current_turn_id="turn-busy"
    )

    outcome = harness.coordinator.start_turn(session, "are you there?")

    assert outcome.outcome == "rejected_busy"
    assert harness.client.requests == []


def test_wedged_processing_turn_is_superseded_after_timeout(make_harness) -> None:
    harness = make_harness([reply("fresh answer")], processing_timeout_seconds=0)
    session = harness.session()
    execution = harness.coordinator.get_execution(session)
    harness.store.compare_and_set(
        execution, status=ExecutionStatus.PROCESSING, current_turn_id="turn-wedged"
    )

    outcome = harness.coordinator.start_turn(session, "hello?")

    assert outcome.outcome == "completed"
    superseded = harness.store.list_decisions(session, turn_id="turn-wedged")
    assert superseded[0].payload["superseded_by"] == outcome.turn_id


def test_duplicate_turn_identifier_is_ignored(make_harness) -> None:
    harness = make_harness([reply("first answer"), reply("second answer")])
    session = harness.session()

    first = harness.coordinator.start_turn(session, "hi", turn_id="client-turn-1")
    again = harness.coordinator.start_turn(session, "hi", turn_id="client-turn-1")

    assert first.outcome == "completed"
    assert again.outcome == "noop"
    assert len(harness.client.requests) == 1
    assert len(harness.store.list_messages(session)) == 2


def test_followup_handoff_mode_crosses_a_boundary(make_harness) -> None:
    harness = make_harness(
        [call_tools(("call_1", "ping", {})), reply("pong received")],
        capabilities=[_spec("ping", Counter())],
        followup_mode="handoff",
    )
    session = harness.session()

    outcome = harness.coordinator.start_turn(session, "ping")

    assert outcome.outcome == "suspended"
    assert harness.coordinator.get_execution(session).status == ExecutionStatus.AWAITING_FOLLOWUP
    assert len(harness.client.requests) == 1

    harness.runtime.worker.drain()

    assert harness.coordinator.get_execution(session).status == ExecutionStatus.IDLE
    assert len(harness.client.requests) == 2


def test_chain_depth_exceeded_fails_turn(make_harness) -> None:
    export = Counter()
    harness = make_harness(
        [call_tools(("call_1", "export_report", {}))],
        capabilities=[_spec("export_report", export, execution=ExecutionPolicy.ASYNCHRONOUS)],
        dispatch_profile="queue",
        max_chain_depth=0,
    )
    session = harness.session()

    outcome = harness.coordinator.start_turn(session, "export")

    assert outcome.outcome == "failed"
    action = harness.coordinator.pending_actions(session)[0]
    assert action.status == PendingActionStatus.FAILED
    assert harness.store.list_decisions(session)[-1].payload["error_kind"] == "configuration"


def test_resume_with_old_cycle_is_stale(make_harness) -> None:
    harness = make_harness(
        [call_tools(("call_1", "export_report", {}))],
        capabilities=[
            _spec("export_report", Counter(), execution=ExecutionPolicy.ASYNCHRONOUS)
        ],
    )
    session = harness.session()
    harness.coordinator.start_turn(session, "export")
    payload = harness.transport.poll()[0].payload
    stale_payload = payload.model_copy(update={"cycle_count": payload.cycle_count - 1})

    outcome = harness.runtime.bridge.receive(stale_payload)

    assert outcome.outcome == "stale"
    assert harness.coordinator.get_execution(session).status == ExecutionStatus.AWAITING_ACTION


def test_notifications_report_final_response(make_harness) -> None:
    harness = make_harness(
        [call_tools(("call_1", "ping", {}), text="Let me check."), reply("All good.")],
        capabilities=[_spec("ping", Counter())],
        transient_messages=True,
    )
    session = harness.session()

    harness.coordinator.start_turn(session, "status?")

    published = harness.channel.for_session(session)
    kinds = [item["kind"] for item in published]
    assert "transient" in kinds
    final = [item for item in published if item["kind"] == "agent_response"][-1]
    assert final["is_success"] is True
    assert final["final_message_content"] == "All good."


def test_failing_notification_channel_does_not_break_turn(make_harness) -> None:
    harness = make_harness([reply("fine")])

    def broken(session_id: str, payload: dict[str, Any]) -> None:
        raise ConnectionError("push service down")

    harness.coordinator.notifier.channel.publish = broken  # type: ignore[method-assign]
    session = harness.session()

    outcome = harness.coordinator.start_turn(session, "hi")

    assert outcome.outcome == "completed"
    assert harness.events("notification_failed")


def test_history_pages_backwards(make_harness) -> None:
    harness = make_harness([reply(f"answer {n}") for n in range(3)])
    session = harness.session()
    for n in range(3):
        harness.coordinator.start_turn(session, f"question {n}")

    latest = harness.coordinator.get_history(session, limit=2)
    earlier = harness.coordinator.get_history(
        session, limit=2, before_sequence=latest[0].sequence
    )

    assert [item.content for item in latest] == ["question 2", "answer 2"]
    assert [item.content for item in earlier] == ["question 1", "answer 1"]


class AutoApprove(InMemoryApprovalWorkflow):
    """Decides every request before ``submit`` returns."""

    def submit(self, pending_action_id: str, approvers: list[str], summary: dict[str, Any]) -> str:
        handle = super().submit(pending_action_id, approvers, summary)
        self.on_decision(handle, True, "policy-bot")
        return handle


def test_workflow_deciding_inside_submit_completes_turn(make_harness) -> None:
    refund = Counter({"refunded": 50})
    harness = make_harness(
        [call_tools(("call_1", "issue_refund", {"amount": 50})), reply("Refund issued.")],
        capabilities=[_spec("issue_refund", refund, requires_approval=True)],
        approvals=AutoApprove(),
    )
    session = harness.session()

    outcome = harness.coordinator.start_turn(session, "Refund my last order")

    assert outcome.outcome == "completed"
    assert outcome.content == "Refund issued."
    assert refund.calls == [{"amount": 50}]
    assert harness.coordinator.get_execution(session).status == ExecutionStatus.IDLE
    action = harness.coordinator.pending_actions(session)[0]
    assert action.status == PendingActionStatus.EXECUTED
    assert action.approval_handle is not None
    assert action.decided_by == "policy-bot"
    assert harness.runtime.approvals.pending() == []


def test_decision_during_running_cycle_is_applied_on_suspend(make_harness) -> None:
    refund = Counter({"refunded": 50})
    decisions = []
    holder: dict[str, Any] = {}

    def lookup(arguments: dict[str, Any], context: CapabilityContext) -> Any:
        coordinator = holder["harness"].coordinator
        action = coordinator.pending_actions(context.execution_id)[0]
        decisions.append(
            coordinator.decide_approval(
                ApprovalDecision(pending_action_id=action.id, approved=True, decided_by="carol")
            )
        )
        return {"order": "found"}

    harness = make_harness(
        [
            call_tools(
                ("call_1", "issue_refund", {"amount": 50}), ("call_2", "lookup_order", {})
            ),
            reply("Refund issued."),
        ],
        capabilities=[
            _spec("issue_refund", refund, requires_approval=True),
            _spec("lookup_order", lookup),
        ],
    )
    holder["harness"] = harness
    session = harness.session()

    outcome = harness.coordinator.start_turn(session, "Refund my last order")

    assert [item.outcome for item in decisions] == ["deferred"]
    assert outcome.outcome == "completed"
    assert refund.calls == [{"amount": 50}]
    action = harness.coordinator.pending_actions(session)[0]
    assert action.status == PendingActionStatus.EXECUTED
    assert action.approval_handle is None
    assert harness.runtime.approvals.pending() == []
    assert harness.events("approval_deferred")


def test_rejection_during_running_cycle_is_fed_back(make_harness) -> None:
    refund = Counter()
    holder: dict[str, Any] = {}

    def lookup(arguments: dict[str, Any], context: CapabilityContext) -> Any:
        coordinator = holder["harness"].coordinator
        action = coordinator.pending_actions(context.execution_id)[0]
        coordinator.decide_approval(
            ApprovalDecision(
                pending_action_id=action.id, approved=False, decided_by="dana", comment="no"
            )
        )
        return {"order": "found"}

    def acknowledge(messages: list[dict[str, Any]]):
        results = [json.loads(item["content"]) for item in messages if item["role"] == "tool"]
        assert sorted(item["status"] for item in results) == ["rejected", "success"]
        return reply("The refund was declined.")

    harness = make_harness(
        [
            call_tools(
                ("call_1", "issue_refund", {"amount": 50}), ("call_2", "lookup_order", {})
            ),
            acknowledge,
        ],
        capabilities=[
            _spec("issue_refund", refund, requires_approval=True),
            _spec("lookup_order", lookup),
        ],
    )
    holder["harness"] = harness
    session = harness.session()

    outcome = harness.coordinator.start_turn(session, "Refund my last order")

    assert outcome.outcome == "completed"
    assert refund.calls == []
    action = harness.coordinator.pending_actions(session)[0]
    assert action.status == PendingActionStatus.REJECTED
    assert action.decision_comment == "no"


def test_approved_async_capability_runs_through_worker(make_harness) -> None:
    export = Counter({"rows": 1})
    harness = make_harness(
        [call_tools(("call_1", "export_ledger", {"month": "may"})), reply("Ledger exported.")],
        capabilities=[
            _spec(
                "export_ledger",
                export,
                requires_approval=True,
                execution=ExecutionPolicy.ASYNCHRONOUS,
            )
        ],
    )
    session = harness.session()
    harness.coordinator.start_turn(session, "Export the ledger")
    action = harness.coordinator.pending_actions(session)[0]
    assert harness.transport.pending() == 0

    decided = harness.coordinator.decide_approval(
        ApprovalDecision(pending_action_id=action.id, approved=True)
    )

    assert decided.outcome == "suspended"
    assert harness.coordinator.get_execution(session).status == ExecutionStatus.AWAITING_ACTION
    assert export.calls == []
    assert harness.transport.pending() == 1

    harness.runtime.worker.drain()

    assert export.calls == [{"month": "may"}]
    assert harness.coordinator.get_execution(session).status == ExecutionStatus.IDLE
    assert harness.store.get_pending_action(action.id).status == PendingActionStatus.EXECUTED


def test_approval_and_async_action_in_one_response(make_harness) -> None:
    refund = Counter({"refunded": 50})
    export = Counter({"rows": 2})
    harness = make_harness(
        [
            call_tools(
                ("call_1", "issue_refund", {"amount": 50}),
                ("call_2", "export_report", {"month": "may"}),
            ),
            reply("Refund issued and report exported."),
        ],
        capabilities=[
            _spec("issue_refund", refund, requires_approval=True),
            _spec("export_report", export, execution=ExecutionPolicy.ASYNCHRONOUS),
        ],
    )
    session = harness.session()

    started = harness.coordinator.start_turn(session, "Refund and export")

    assert started.outcome == "suspended"
    assert harness.coordinator.get_execution(session).status == ExecutionStatus.AWAITING_APPROVAL
    assert harness.transport.pending() == 1
    actions = harness.coordinator.pending_actions(session)
    gated = [item for item in actions if item.requires_approval]

    decided = harness.coordinator.decide_approval(
        ApprovalDecision(pending_action_id=gated[0].id, approved=True)
    )

    assert decided.outcome == "suspended"
    assert refund.calls == [{"amount": 50}]
    assert harness.coordinator.get_execution(session).status == ExecutionStatus.AWAITING_ACTION

    harness.runtime.worker.drain()

    assert export.calls == [{"month": "may"}]
    execution = harness.coordinator.get_execution(session)
    assert execution.status == ExecutionStatus.IDLE
    assert harness.store.list_messages(session)[-1].content == "Refund issued and report exported."


def test_decision_after_supersede_is_stale(make_harness) -> None:
    refund = Counter()
    harness = make_harness(
        [call_tools(("call_1", "issue_refund", {"amount": 50})), reply("Hello again.")],
        capabilities=[_spec("issue_refund", refund, requires_approval=True)],
    )
    session = harness.session()
    harness.coordinator.start_turn(session, "Refund my last order")
    action = harness.coordinator.pending_actions(session)[0]
    assert len(harness.runtime.approvals.pending()) == 1

    harness.coordinator.start_turn(session, "Never mind, just say hello")
    late = harness.coordinator.decide_approval(
        ApprovalDecision(pending_action_id=action.id, approved=True)
    )

    assert late.outcome == "stale"
    assert late.reason == "turn_mismatch"
    assert refund.calls == []
    assert harness.store.get_pending_action(action.id).status == PendingActionStatus.QUEUED
    assert harness.runtime.approvals.pending() == []
    assert harness.events("approval_withdrawn")


def test_decided_request_leaves_workflow(make_harness) -> None:
    harness = make_harness(
        [call_tools(("call_1", "issue_refund", {"amount": 50})), reply("Refund issued.")],
        capabilities=[_spec("issue_refund", Counter(), requires_approval=True)],
    )
    session = harness.session()
    harness.coordinator.start_turn(session, "Refund my last order")
    action = harness.coordinator.pending_actions(session)[0]

    harness.coordinator.decide_approval(
        ApprovalDecision(pending_action_id=action.id, approved=True)
    )

    assert harness.runtime.approvals.pending() == []
