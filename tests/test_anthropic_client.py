from __future__ import annotations

import sys
import types

from turnflow.llm.anthropic_client import AnthropicClient, to_anthropic_messages


def _install_fake_anthropic_module(monkeypatch, captured: dict[str, object], content) -> None:
    class FakeMessages:
        def create(self, **kwargs: object) -> object:
            captured["request_kwargs"] = kwargs
            return types.SimpleNamespace(
                content=content,
                usage=types.SimpleNamespace(input_tokens=10, output_tokens=5),
            )

    class FakeAnthropic:
        def __init__(self, **kwargs: object) -> None:
            captured["client_kwargs"] = kwargs
            self.messages = FakeMessages()

    fake_module = types.ModuleType("anthropic")
    fake_module.Anthropic = FakeAnthropic
    monkeypatch.setitem(sys.modules, "anthropic", fake_module)


def _text(text: str) -> object:
    return types.SimpleNamespace(type="text", text=text)


def _send(client: AnthropicClient, messages=None, tools=None):
    return client.send(
        messages or [{"role": "user", "content": "hello"}],
        tools or [],
        model="claude-sonnet-4-5",
        max_tokens=128,
        attempt=1,
    )


def test_anthropic_client_prefers_auth_token_when_both_credentials_present(monkeypatch) -> None:
    captured: dict[str, object] = {}
    _install_fake_anthropic_module(monkeypatch, captured, [_text("hi")])

    _send(AnthropicClient(api_key="api-key", auth_token="auth-token"))

    assert captured["client_kwargs"] == {"auth_token": "auth-token"}


def test_anthropic_client_uses_api_key_when_auth_token_missing(monkeypatch) -> None:
    captured: dict[str, object] = {}
    _install_fake_anthropic_module(monkeypatch, captured, [_text("hi")])

    _send(AnthropicClient(api_key="api-key", auth_token=None))

    assert captured["client_kwargs"] == {"api_key": "api-key"}


def test_send_passes_tools_and_system_prompt(monkeypatch) -> None:
    captured: dict[str, object] = {}
    _install_fake_anthropic_module(monkeypatch, captured, [_text("hi")])
    tools = [{"name": "lookup", "description": "Look up", "input_schema": {"type": "object"}}]

    result = _send(
        AnthropicClient(api_key="k"),
        messages=[{"role": "system", "content": "be brief"}, {"role": "user", "content": "hi"}],
        tools=tools,
    )

    request = captured["request_kwargs"]
    assert request["system"] == "be brief"
    assert request["tools"] == tools
    assert request["tool_choice"] == {"type": "auto"}
    assert result.content == "hi"
    assert result.meta.input_tokens == 10
    assert result.meta.output_tokens == 5


def test_send_without_tools_omits_tool_choice(monkeypatch) -> None:
    captured: dict[str, object] = {}
    _install_fake_anthropic_module(monkeypatch, captured, [_text("hi")])

    _send(AnthropicClient(api_key="k"))

    assert "tools" not in captured["request_kwargs"]
    assert "tool_choice" not in captured["request_kwargs"]


def test_send_parses_tool_use_blocks(monkeypatch) -> None:
    captured: dict[str, object] = {}
    blocks = [
        _text("Let me check."),
        types.SimpleNamespace(type="tool_use", id="toolu_1", name="lookup", input={"q": "x"}),
    ]
    _install_fake_anthropic_module(monkeypatch, captured, blocks)

    result = _send(AnthropicClient(api_key="k"))

    assert result.content == "Let me check."
    assert [(call.id, call.name, call.arguments) for call in result.tool_calls] == [
        ("toolu_1", "lookup", {"q": "x"})
    ]


def test_tool_results_become_user_blocks_and_merge() -> None:
    system, converted = to_anthropic_messages(
        [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "do both"},
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {"id": "a", "name": "one", "arguments": {}},
                    {"id": "b", "name": "two", "arguments": {"n": 1}},
                ],
            },
            {"role": "tool", "tool_call_id": "a", "content": "{}", "is_error": False},
            {"role": "tool", "tool_call_id": "b", "content": "{}", "is_error": True},
        ]
    )

    assert system == "sys"
    assert [item["role"] for item in converted] == ["user", "assistant", "user"]
    assert [block["type"] for block in converted[1]["content"]] == ["tool_use", "tool_use"]
    results = converted[2]["content"]
    assert [block["tool_use_id"] for block in results] == ["a", "b"]
    assert results[1]["is_error"] is True
