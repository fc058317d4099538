from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from turnflow.types import LlmRequestMeta, ToolCall


@dataclass
class LlmResult:
    content: str | None
    meta: LlmRequestMeta
    tool_calls: list[ToolCall] = field(default_factory=list)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


class BaseLlmClient(ABC):
    """Provider adapter.

    ``messages`` use the provider-neutral shape produced by the prompt builder:
    ``{"role": "system|user|assistant|tool", "content": str | None}`` plus
    ``tool_calls`` on assistant entries and ``tool_call_id``/``is_error`` on tool
    entries. ``tools`` are ``{"name", "description", "input_schema"}`` dicts.
    """

    provider: str

    @abstractmethod
    def send(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        model: str,
        max_tokens: int,
        attempt: int,
    ) -> LlmResult:
        raise NotImplementedError
