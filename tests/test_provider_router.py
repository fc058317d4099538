from __future__ import annotations

import pytest
from conftest import ScriptedClient, reply

import turnflow.llm.provider_router as provider_router_module
from turnflow.config import AgentConfig
from turnflow.errors import ConfigError
from turnflow.llm.provider_router import ProviderRouter


class FakeAnthropicClient:
    captured: dict[str, str | None] = {}

    def __init__(self, api_key: str | None = None, auth_token: str | None = None) -> None:
        FakeAnthropicClient.captured = {"api_key": api_key, "auth_token": auth_token}

    def send(self, *args: object, **kwargs: object) -> object:
        raise AssertionError("send should not be called in this test")


def test_provider_router_prefers_auth_token_over_api_key(monkeypatch) -> None:
    monkeypatch.setattr(provider_router_module, "AnthropicClient", FakeAnthropicClient)
    router = ProviderRouter(
        anthropic_api_key="api-key",
        anthropic_auth_token="auth-token",
        gemini_api_key=None,
    )

    assert router.has_provider("anthropic")
    assert not router.has_provider("gemini")
    assert FakeAnthropicClient.captured == {"api_key": None, "auth_token": "auth-token"}


def test_provider_router_uses_api_key_when_auth_token_missing(monkeypatch) -> None:
    monkeypatch.setattr(provider_router_module, "AnthropicClient", FakeAnthropicClient)
    router = ProviderRouter(anthropic_api_key="api-key")

    assert router.has_provider("anthropic")
    assert FakeAnthropicClient.captured == {"api_key": "api-key", "auth_token": None}


def test_provider_router_from_config_reads_environment(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("ANTHROPIC_AUTH_TOKEN", raising=False)
    monkeypatch.setenv("GEMINI_API_KEY", "g-key")

    router = ProviderRouter.from_config(AgentConfig())

    assert router.has_provider("gemini")
    assert not router.has_provider("anthropic")


def test_send_routes_to_registered_client() -> None:
    client = ScriptedClient([reply("hi")])
    router = ProviderRouter()
    router.register("anthropic", client)

    result = router.send("anthropic", [{"role": "user", "content": "x"}], [], "m", 10, 1)

    assert result.content == "hi"
    assert client.requests[0]["attempt"] == 1


def test_send_to_unconfigured_provider_raises() -> None:
    with pytest.raises(ConfigError):
        ProviderRouter().send("gemini", [], [], "m", 10, 1)
