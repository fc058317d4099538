from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from turnflow.capabilities.registry import CapabilityRegistry
from turnflow.config import AgentConfig
from turnflow.llm.gateway import LlmGateway
from turnflow.llm.prompt_builder import PromptProvider
from turnflow.llm.provider_router import ProviderRouter
from turnflow.logging.events import EventBusFactory, EventSink
from turnflow.logging.transcript import TranscriptDirectory
from turnflow.runtime.approval import ApprovalWorkflow, InMemoryApprovalWorkflow
from turnflow.runtime.bridge import AsyncBridge
from turnflow.runtime.coordinator import TurnCoordinator
from turnflow.runtime.notifications import NotificationChannel, Notifier
from turnflow.runtime.transport import HandoffTransport, InMemoryTransport, SqliteTransport
from turnflow.runtime.worker import Worker
from turnflow.storage.base import ExecutionStore
from turnflow.storage.factory import open_store
from turnflow.types import EventRecord


@dataclass
class Runtime:
    config: AgentConfig
    store: ExecutionStore
    transport: HandoffTransport
    bridge: AsyncBridge
    approvals: ApprovalWorkflow
    events: EventBusFactory
    coordinator: TurnCoordinator
    worker: Worker

    def close(self) -> None:
        closer = getattr(self.transport, "close", None)
        if callable(closer):
            closer()
        self.store.close()


def open_transport(config: AgentConfig) -> HandoffTransport:
    if config.storage.backend == "sqlite":
        return SqliteTransport(
            config.storage.sqlite_path, max_chain_depth=config.runtime.max_chain_depth
        )
    return InMemoryTransport(max_chain_depth=config.runtime.max_chain_depth)


def build_runtime(
    config: AgentConfig,
    *,
    store: ExecutionStore | None = None,
    providers: ProviderRouter | None = None,
    registry: CapabilityRegistry | None = None,
    transport: HandoffTransport | None = None,
    approvals: ApprovalWorkflow | None = None,
    channel: NotificationChannel | None = None,
    prompts: PromptProvider | None = None,
    event_sink: EventSink | None = None,
    on_emit: Callable[[EventRecord], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Runtime:
    """Assemble every component from one config object.

    Anything passed explicitly replaces the config-driven default, which is how
    tests swap in fake providers, capabilities and in-memory stores.
    """
    store = store or open_store(config.storage)
    transport = transport or open_transport(config)
    approvals = approvals or InMemoryApprovalWorkflow()
    registry = registry or CapabilityRegistry.from_config(config)
    providers = providers or ProviderRouter.from_config(config)

    jsonl_dir = Path(config.logging.jsonl_dir)
    events = EventBusFactory(
        jsonl_dir=None if event_sink is not None else jsonl_dir,
        redact=config.logging.redact_secrets,
        sanitize=config.logging.sanitize_control_chars,
        on_emit=on_emit,
        sink=event_sink,
    )
    transcript = (
        TranscriptDirectory(jsonl_dir, config.logging.llm_transcript_filename)
        if config.logging.llm_transcript_enabled
        else None
    )
    gateway = LlmGateway(providers, config.model, config.runtime, transcript=transcript, sleep=sleep)
    bridge = AsyncBridge(transport, profile=config.runtime.dispatch_profile)
    notifier = Notifier(
        channel,
        enabled=config.notifications.enabled,
        transient_messages=config.notifications.transient_messages,
    )
    coordinator = TurnCoordinator(
        config=config,
        store=store,
        gateway=gateway,
        registry=registry,
        bridge=bridge,
        approval_workflow=approvals,
        events=events,
        notifier=notifier,
        prompts=prompts,
        sleep=sleep,
    )
    worker = Worker(
        transport,
        bridge,
        events,
        poll_interval_seconds=config.runtime.worker_poll_interval_seconds,
    )
    return Runtime(
        config=config,
        store=store,
        transport=transport,
        bridge=bridge,
        approvals=approvals,
        events=events,
        coordinator=coordinator,
        worker=worker,
    )
