from __future__ import annotations

from typing import Any

from turnflow.config import (
    AgentConfig,
    get_provider_api_key,
    get_provider_auth_token,
)
from turnflow.errors import ConfigError
from turnflow.llm.anthropic_client import AnthropicClient
from turnflow.llm.base_client import BaseLlmClient, LlmResult
from turnflow.llm.gemini_client import GeminiClient


class ProviderRouter:
    def __init__(
        self,
        anthropic_api_key: str | None = None,
        gemini_api_key: str | None = None,
        anthropic_auth_token: str | None = None,
    ) -> None:
        self._clients: dict[str, BaseLlmClient] = {}
        if anthropic_auth_token:
            self._clients["anthropic"] = AnthropicClient(auth_token=anthropic_auth_token)
        elif anthropic_api_key:
            self._clients["anthropic"] = AnthropicClient(api_key=anthropic_api_key)
        if gemini_api_key:
            self._clients["gemini"] = GeminiClient(gemini_api_key)

    @classmethod
    def from_config(cls, config: AgentConfig) -> ProviderRouter:
        return cls(
            anthropic_api_key=get_provider_api_key(config, "anthropic"),
            gemini_api_key=get_provider_api_key(config, "gemini"),
            anthropic_auth_token=get_provider_auth_token(config, "anthropic"),
        )

    def register(self, provider: str, client: BaseLlmClient) -> None:
        self._clients[provider] = client

    def has_provider(self, provider: str) -> bool:
        return provider in self._clients

    def send(
        self,
        provider: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        model: str,
        max_tokens: int,
        attempt: int,
    ) -> LlmResult:
        if provider not in self._clients:
            raise ConfigError(f"Provider is not configured: {provider}")
        return self._clients[provider].send(messages, tools, model, max_tokens, attempt)
