from __future__ import annotations

import json
import time
import uuid
from typing import Any

from turnflow.llm.base_client import BaseLlmClient, LlmResult
from turnflow.types import LlmRequestMeta, ToolCall


def _tool_response_payload(content: Any) -> dict[str, Any]:
    if isinstance(content, str):
        try:
            loaded = json.loads(content)
        except json.JSONDecodeError:
            return {"output": content}
        return loaded if isinstance(loaded, dict) else {"output": loaded}
    return {"output": content}


class GeminiClient(BaseLlmClient):
    provider = "gemini"

    def __init__(self, api_key: str) -> None:
        self.api_key = api_key

    @staticmethod
    def _build_contents(
        messages: list[dict[str, Any]], genai_types: Any
    ) -> tuple[str | None, list[Any]]:
        system_parts: list[str] = []
        contents: list[Any] = []
        call_names: dict[str, str] = {}

        for entry in messages:
            role = entry.get("role")
            content = entry.get("content")
            if role == "system":
                if content:
                    system_parts.append(str(content))
                continue
            if role == "tool":
                call_id = entry["tool_call_id"]
                part = genai_types.Part.from_function_response(
                    name=call_names.get(call_id, call_id),
                    response=_tool_response_payload(content),
                )
                contents.append(genai_types.Content(role="user", parts=[part]))
                continue

            parts: list[Any] = []
            if content:
                parts.append(genai_types.Part.from_text(text=str(content)))
            for call in entry.get("tool_calls") or []:
                call_names[call["id"]] = call["name"]
                parts.append(
                    genai_types.Part.from_function_call(
                        name=call["name"], args=call.get("arguments") or {}
                    )
                )
            if parts:
                gemini_role = "model" if role == "assistant" else "user"
                contents.append(genai_types.Content(role=gemini_role, parts=parts))

        system = "\n\n".join(system_parts) if system_parts else None
        return system, contents

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
            from google import genai  # type: ignore
            from google.genai import types as genai_types  # type: ignore
        except Exception as exc:  # pragma: no cover
            raise RuntimeError("google-genai package is not installed") from exc

        client = genai.Client(api_key=self.api_key)
        system, contents = self._build_contents(messages, genai_types)

        config: dict[str, Any] = {"max_output_tokens": max_tokens}
        if system:
            config["system_instruction"] = system
        if tools:
            gemini_decls = [
                genai_types.FunctionDeclaration(
                    name=t["name"],
                    description=t.get("description", ""),
                    parameters=t.get("input_schema"),
                )
                for t in tools
            ]
            config["tools"] = [genai_types.Tool(function_declarations=gemini_decls)]
            config["tool_config"] = genai_types.ToolConfig(
                function_calling_config=genai_types.FunctionCallingConfig(
                    mode="AUTO"  # type: ignore[arg-type]
                )
            )

        response = client.models.generate_content(
            model=model,
            contents=contents,
            config=config,  # type: ignore[arg-type]
        )

        elapsed_ms = int((time.perf_counter() - start) * 1000)
        usage = getattr(response, "usage_metadata", None)
        meta = LlmRequestMeta(
            provider="gemini",
            model=model,
            attempt=attempt,
            latency_ms=elapsed_ms,
            input_tokens=getattr(usage, "prompt_token_count", None) if usage else None,
            output_tokens=(
                getattr(usage, "candidates_token_count", None) if usage else None
            ),
        )

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        candidates = getattr(response, "candidates", None) or []
        for candidate in candidates[:1]:
            content = getattr(candidate, "content", None)
            if content is None:
                continue
            for part in getattr(content, "parts", None) or []:
                fc = getattr(part, "function_call", None)
                if fc is not None:
                    call_id = getattr(fc, "id", None) or f"call_{uuid.uuid4().hex[:12]}"
                    tool_calls.append(
                        ToolCall(id=call_id, name=fc.name, arguments=dict(fc.args or {}))
                    )
                    continue
                text = getattr(part, "text", None)
                if text:
                    text_parts.append(text)

        content_text = "\n".join(text_parts).strip() or None
        return LlmResult(content=content_text, meta=meta, tool_calls=tool_calls)
