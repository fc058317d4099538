from __future__ import annotations

import time
from typing import Any

from turnflow.llm.base_client import BaseLlmClient, LlmResult
from turnflow.types import LlmRequestMeta, ToolCall


def to_anthropic_messages(
    messages: list[dict[str, Any]],
) -> tuple[str | None, list[dict[str, Any]]]:
    system_parts: list[str] = []
    converted: list[dict[str, Any]] = []

    def _append(role: str, blocks: list[dict[str, Any]]) -> None:
        # Consecutive entries with the same role are merged into one message.
        if converted and converted[-1]["role"] == role:
            converted[-1]["content"].extend(blocks)
        else:
            converted.append({"role": role, "content": blocks})

    for entry in messages:
        role = entry.get("role")
        content = entry.get("content")
        if role == "system":
            if content:
                system_parts.append(str(content))
            continue
        if role == "tool":
            _append(
                "user",
                [
                    {
                        "type": "tool_result",
                        "tool_use_id": entry["tool_call_id"],
                        "content": str(content or ""),
                        "is_error": bool(entry.get("is_error", False)),
                    }
                ],
            )
            continue
        blocks: list[dict[str, Any]] = []
        if content:
            blocks.append({"type": "text", "text": str(content)})
        for call in entry.get("tool_calls") or []:
            blocks.append(
                {
                    "type": "tool_use",
                    "id": call["id"],
                    "name": call["name"],
                    "input": call.get("arguments") or {},
                }
            )
        if blocks:
            _append("assistant" if role == "assistant" else "user", blocks)

    system = "\n\n".join(system_parts) if system_parts else None
    return system, converted


class AnthropicClient(BaseLlmClient):
    provider = "anthropic"

    def __init__(self, api_key: str | None = None, auth_token: str | None = None) -> None:
        self.api_key = api_key
        self.auth_token = auth_token

    def send(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        model: str,
        max_tokens: int,
        attempt: int,
    ) -> LlmResult:
        start = time.perf_counter()
        try:
            import anthropic  # type: ignore
        except Exception as exc:  # pragma: no cover
            raise RuntimeError("anthropic package is not installed") from exc

        if self.auth_token:
            client = anthropic.Anthropic(auth_token=self.auth_token)
        else:
            client = anthropic.Anthropic(api_key=self.api_key)

        system, converted = to_anthropic_messages(messages)
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": converted,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = {"type": "auto"}

        response = client.messages.create(**kwargs)

        elapsed_ms = int((time.perf_counter() - start) * 1000)
        usage = getattr(response, "usage", None)
        meta = LlmRequestMeta(
            provider="anthropic",
            model=model,
            attempt=attempt,
            latency_ms=elapsed_ms,
            input_tokens=getattr(usage, "input_tokens", None) if usage else None,
            output_tokens=getattr(usage, "output_tokens", None) if usage else None,
        )

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in response.content:
            block_type = getattr(block, "type", None)
            if block_type == "tool_use":
                tool_calls.append(
                    ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {}))
                )
            elif block_type == "text" and getattr(block, "text", None):
                text_parts.append(block.text)

        content = "\n".join(text_parts).strip() or None
        return LlmResult(content=content, meta=meta, tool_calls=tool_calls)
