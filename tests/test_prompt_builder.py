from __future__ import annotations

import json

from turnflow.config import AgentProfile, ModelConfig, RuntimeConfig
from turnflow.llm.prompt_builder import (
    FINAL_ANSWER_HINT,
    PromptBuilder,
    PromptState,
    build_prompt,
    close_unanswered_tool_calls,
)
from turnflow.types import Execution, ExecutionStatus, Message, ToolCall


def _message(sequence: int, turn_id: str, role: str, content: str | None = None, **extra) -> Message:
    return Message(
        id=f"msg-{sequence}",
        execution_id="exe-1",
        turn_id=turn_id,
        sequence=sequence,
        role=role,
        content=content,
        **extra,
    )


def _execution(cycle: int = 1, turn_id: str = "t2") -> Execution:
    return Execution(
        id="exe-1",
        user_id="u1",
        agent_name="default",
        status=ExecutionStatus.PROCESSING,
        current_turn_id=turn_id,
        cycle_count=cycle,
    )


def test_system_prompt_comes_first() -> None:
    result = build_prompt("be helpful", [_message(1, "t1", "user", "hi")], "t1", 32000, 2000)

    assert result.messages[0] == {"role": "system", "content": "be helpful"}
    assert result.messages[1] == {"role": "user", "content": "hi"}
    assert result.dropped_messages == 0


def test_unanswered_tool_call_is_closed() -> None:
    entries = [
        {"role": "user", "content": "go"},
        {
            "role": "assistant",
            "content": None,
            "tool_calls": [{"id": "a", "name": "one"}, {"id": "b", "name": "two"}],
        },
        {"role": "tool", "tool_call_id": "a", "content": "{}", "is_error": False},
        {"role": "user", "content": "never mind"},
    ]

    closed = close_unanswered_tool_calls(entries)

    assert [item.get("tool_call_id") for item in closed if item["role"] == "tool"] == ["a", "b"]
    synthetic = closed[3]
    assert synthetic["is_error"] is True
    assert json.loads(synthetic["content"])["error"]["code"] == "not_completed"
    assert closed[4] == {"role": "user", "content": "never mind"}


def test_old_turns_are_trimmed_first_and_current_turn_kept() -> None:
    history = [
        _message(1, "t1", "user", "a" * 400),
        _message(2, "t1", "assistant", "b" * 400),
        _message(3, "t2", "user", "c" * 400),
    ]

    result = build_prompt("sys", history, "t2", max_context_tokens=200, response_headroom_tokens=0)

    assert [item["role"] for item in result.messages] == ["system", "user"]
    assert result.messages[1]["content"] == "c" * 400
    assert result.dropped_messages == 2


def test_trim_never_leaves_orphaned_tool_result() -> None:
    history = [
        _message(1, "t1", "user", "x" * 300),
        _message(
            2,
            "t1",
            "assistant",
            tool_calls=[ToolCall(id="a", name="lookup")],
        ),
        _message(3, "t1", "tool", json.dumps({"status": "success"}), tool_call_id="a"),
        _message(4, "t1", "assistant", "done"),
        _message(5, "t2", "user", "next"),
    ]

    result = build_prompt("sys", history, "t2", max_context_tokens=120, response_headroom_tokens=0)

    roles = [item["role"] for item in result.messages]
    assert roles[1] == "user"
    assert result.messages[-1] == {"role": "user", "content": "next"}


def test_final_answer_hint_only_for_multi_step_turns() -> None:
    runtime = RuntimeConfig(final_answer_hint=True)
    builder = PromptBuilder(ModelConfig(), runtime)
    profile = AgentProfile(system_prompt="sys")
    history = [_message(1, "t2", "user", "hi")]

    first = builder.build(PromptState(_execution(cycle=1), profile, history))
    later = builder.build(PromptState(_execution(cycle=2), profile, history))

    assert FINAL_ANSWER_HINT not in first[0]["content"]
    assert FINAL_ANSWER_HINT in later[0]["content"]


def test_final_answer_hint_off_with_transient_messages() -> None:
    builder = PromptBuilder(
        ModelConfig(), RuntimeConfig(final_answer_hint=True), transient_messages=True
    )
    state = PromptState(_execution(cycle=3), AgentProfile(), [_message(1, "t2", "user", "hi")])

    assert not builder.wants_final_answer_hint(state)


def test_tool_entries_keep_error_flag() -> None:
    history = [
        _message(1, "t2", "user", "go"),
        _message(2, "t2", "assistant", tool_calls=[ToolCall(id="a", name="x", arguments={"k": 1})]),
        _message(3, "t2", "tool", "{}", tool_call_id="a", is_error=True),
    ]

    messages = build_prompt("sys", history, "t2", 32000, 2000).messages

    assert messages[2]["tool_calls"] == [{"id": "a", "name": "x", "arguments": {"k": 1}}]
    assert messages[3] == {"role": "tool", "tool_call_id": "a", "content": "{}", "is_error": True}
