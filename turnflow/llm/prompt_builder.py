from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Protocol

from turnflow.config import AgentProfile, ModelConfig, RuntimeConfig
from turnflow.llm.token_budget import estimate_message_tokens, history_budget
from turnflow.types import Execution, Message

FINAL_ANSWER_HINT = (
    "You have already used tools during this request. If the results above are "
    "enough, reply to the user with the final answer only and do not narrate "
    "intermediate steps."
)

UNANSWERED_TOOL_RESULT = json.dumps(
    {
        "status": "failed",
        "error": {
            "code": "not_completed",
            "message": "This tool call was not completed before the conversation moved on.",
        },
    }
)


@dataclass
class PromptState:
    execution: Execution
    profile: AgentProfile
    history: list[Message]
    tools: list[dict[str, Any]] = field(default_factory=list)

    @property
    def cycle(self) -> int:
        return self.execution.cycle_count

    @property
    def multi_step(self) -> bool:
        return self.execution.cycle_count > 1


class PromptProvider(Protocol):
    def build(self, state: PromptState) -> list[dict[str, Any]]: ...


@dataclass
class PromptBuildResult:
    messages: list[dict[str, Any]]
    estimated_input_tokens: int
    dropped_messages: int


def to_prompt_entry(message: Message) -> dict[str, Any]:
    if message.role == "tool":
        return {
            "role": "tool",
            "tool_call_id": message.tool_call_id,
            "content": message.content or "",
            "is_error": message.is_error,
        }
    entry: dict[str, Any] = {"role": message.role, "content": message.content}
    if message.tool_calls:
        entry["tool_calls"] = [call.model_dump() for call in message.tool_calls]
    return entry


def close_unanswered_tool_calls(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Add a synthetic failed result after every tool call that never got one.

    Providers reject a history in which a tool call is not followed by its result,
    which happens whenever a suspended turn is superseded by a new user message.
    """
    closed: list[dict[str, Any]] = []
    index = 0
    while index < len(entries):
        entry = entries[index]
        closed.append(entry)
        index += 1
        if entry.get("role") != "assistant" or not entry.get("tool_calls"):
            continue
        answered: set[str] = set()
        while index < len(entries) and entries[index].get("role") == "tool":
            answered.add(str(entries[index].get("tool_call_id")))
            closed.append(entries[index])
            index += 1
        for call in entry["tool_calls"]:
            if call["id"] not in answered:
                closed.append(
                    {
                        "role": "tool",
                        "tool_call_id": call["id"],
                        "content": UNANSWERED_TOOL_RESULT,
                        "is_error": True,
                    }
                )
    return closed


def _drop_leading_partial_exchange(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
    start = 0
    while start < len(entries) and entries[start].get("role") != "user":
        start += 1
    return entries[start:]


def build_prompt(
    system_prompt: str,
    history: list[Message],
    current_turn_id: str | None,
    max_context_tokens: int,
    response_headroom_tokens: int,
    final_answer_hint: bool = False,
) -> PromptBuildResult:
    system_text = system_prompt
    if final_answer_hint:
        system_text = f"{system_prompt}\n\n{FINAL_ANSWER_HINT}"
    system_entry = {"role": "system", "content": system_text}

    earlier = [item for item in history if item.turn_id != current_turn_id]
    current = [item for item in history if item.turn_id == current_turn_id]
    earlier_entries = close_unanswered_tool_calls([to_prompt_entry(item) for item in earlier])
    current_entries = close_unanswered_tool_calls([to_prompt_entry(item) for item in current])

    budget = history_budget(max_context_tokens, response_headroom_tokens)
    fixed_tokens = estimate_message_tokens(system_entry) + sum(
        estimate_message_tokens(item) for item in current_entries
    )
    total = fixed_tokens + sum(estimate_message_tokens(item) for item in earlier_entries)

    # Oldest earlier turns go first; the current turn is never trimmed.
    dropped = 0
    while earlier_entries and total > budget:
        removed = earlier_entries.pop(0)
        total -= estimate_message_tokens(removed)
        dropped += 1
        trimmed = _drop_leading_partial_exchange(earlier_entries)
        for item in earlier_entries[: len(earlier_entries) - len(trimmed)]:
            total -= estimate_message_tokens(item)
            dropped += 1
        earlier_entries = trimmed

    return PromptBuildResult(
        messages=[system_entry, *earlier_entries, *current_entries],
        estimated_input_tokens=total,
        dropped_messages=dropped,
    )


class PromptBuilder:
    """Default prompt provider: agent system prompt plus persisted history."""

    def __init__(
        self,
        model_config: ModelConfig,
        runtime_config: RuntimeConfig,
        transient_messages: bool = False,
    ) -> None:
        self.model_config = model_config
        self.runtime_config = runtime_config
        self.transient_messages = transient_messages

    def wants_final_answer_hint(self, state: PromptState) -> bool:
        return (
            self.runtime_config.final_answer_hint
            and not self.transient_messages
            and state.multi_step
        )

    def build_result(self, state: PromptState) -> PromptBuildResult:
        return build_prompt(
            system_prompt=state.profile.system_prompt,
            history=state.history,
            current_turn_id=state.execution.current_turn_id,
            max_context_tokens=self.model_config.max_context_tokens,
            response_headroom_tokens=self.model_config.response_headroom_tokens,
            final_answer_hint=self.wants_final_answer_hint(state),
        )

    def build(self, state: PromptState) -> list[dict[str, Any]]:
        return self.build_result(state).messages
