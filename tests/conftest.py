from __future__ import annotations

import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from turnflow.capabilities.base import CapabilitySpec  # noqa: E402
from turnflow.capabilities.registry import CapabilityRegistry  # noqa: E402
from turnflow.config import AgentConfig  # noqa: E402
from turnflow.llm.base_client import BaseLlmClient, LlmResult  # noqa: E402
from turnflow.llm.provider_router import ProviderRouter  # noqa: E402
from turnflow.logging.jsonl_sink import MemorySink  # noqa: E402
from turnflow.runtime.approval import ApprovalWorkflow  # noqa: E402
from turnflow.runtime.builder import Runtime, build_runtime  # noqa: E402
from turnflow.runtime.notifications import InMemoryNotificationChannel  # noqa: E402
from turnflow.runtime.transport import InMemoryTransport  # noqa: E402
from turnflow.storage.memory import MemoryStore  # noqa: E402
from turnflow.types import LlmRequestMeta, ToolCall  # noqa: E402

ScriptItem = LlmResult | Exception | Callable[[list[dict[str, Any]]], LlmResult]


class ScriptedClient(BaseLlmClient):
    """Plays back a fixed list of model replies and records every request."""

    provider = "anthropic"

    def __init__(self, script: list[ScriptItem]) -> None:
        self.script = list(script)
        self.requests: list[dict[str, Any]] = []

    def send(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        model: str,
        max_tokens: int,
        attempt: int,
    ) -> LlmResult:
        self.requests.append({"messages": messages, "tools": tools, "attempt": attempt})
        if not self.script:
            raise AssertionError("model called more often than scripted")
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(messages)
        return item


def _meta() -> LlmRequestMeta:
    return LlmRequestMeta(
        provider="anthropic",
        model="fake-model",
        attempt=1,
        latency_ms=5,
        input_tokens=10,
        output_tokens=4,
    )


def reply(text: str) -> LlmResult:
    return LlmResult(content=text, meta=_meta())


def call_tools(*calls: tuple[str, str, dict[str, Any]], text: str | None = None) -> LlmResult:
    return LlmResult(
        content=text,
        meta=_meta(),
        tool_calls=[
            ToolCall(id=call_id, name=name, arguments=args) for call_id, name, args in calls
        ],
    )


@dataclass
class Harness:
    runtime: Runtime
    client: ScriptedClient
    channel: InMemoryNotificationChannel
    sink: MemorySink

    @property
    def coordinator(self):
        return self.runtime.coordinator

    @property
    def store(self):
        return self.runtime.store

    @property
    def transport(self) -> InMemoryTransport:
        return self.runtime.transport  # type: ignore[return-value]

    def session(self, user_id: str = "user-1") -> str:
        return self.coordinator.open_session(user_id).id

    def step_types(self, execution_id: str) -> list[str]:
        return [entry.step_type.value for entry in self.store.list_decisions(execution_id)]

    def events(self, event_type: str) -> list[dict[str, Any]]:
        return [item.payload for item in self.sink.events if item.event_type == event_type]


@pytest.fixture()
def make_harness(tmp_path: Path):
    def _make(
        script: list[ScriptItem],
        capabilities: list[CapabilitySpec] | None = None,
        agent_capabilities: list[str] | None = None,
        transient_messages: bool = False,
        approvals: ApprovalWorkflow | None = None,
        **runtime_overrides: Any,
    ) -> Harness:
        cfg = AgentConfig()
        cfg.storage.backend = "memory"
        cfg.logging.jsonl_dir = str(tmp_path / "runs")
        cfg.notifications.transient_messages = transient_messages
        for key, value in runtime_overrides.items():
            setattr(cfg.runtime, key, value)
        if agent_capabilities is not None:
            cfg.agents["default"].capabilities = agent_capabilities

        registry = CapabilityRegistry()
        for spec in capabilities or []:
            registry.register(spec)
        client = ScriptedClient(script)
        providers = ProviderRouter()
        providers.register("anthropic", client)
        channel = InMemoryNotificationChannel()
        sink = MemorySink()
        runtime = build_runtime(
            cfg,
            store=MemoryStore(),
            providers=providers,
            registry=registry,
            transport=InMemoryTransport(max_chain_depth=cfg.runtime.max_chain_depth),
            channel=channel,
            approvals=approvals,
            event_sink=sink,
            sleep=lambda _: None,
        )
        return Harness(runtime=runtime, client=client, channel=channel, sink=sink)

    return _make
