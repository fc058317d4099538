from __future__ import annotations

from pathlib import Path

from conftest import ScriptedClient, call_tools, reply

from turnflow.config import ModelConfig, RuntimeConfig
from turnflow.errors import FatalProviderError, RetryableProviderError
from turnflow.llm.gateway import LlmGateway
from turnflow.llm.provider_router import ProviderRouter
from turnflow.logging.events import EventBus, EventContext
from turnflow.logging.jsonl_sink import MemorySink
from turnflow.logging.transcript import LlmTranscriptSink, TranscriptDirectory
from turnflow.runtime.decision_log import DecisionLog
from turnflow.storage.memory import MemoryStore
from turnflow.types import StepType

MESSAGES = [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]


def _gateway(
    client: ScriptedClient | None,
    transcript=None,
    **runtime: object,
) -> tuple[LlmGateway, list[float]]:
    router = ProviderRouter()
    if client is not None:
        router.register("anthropic", client)
    delays: list[float] = []
    gateway = LlmGateway(
        router,
        ModelConfig(),
        RuntimeConfig(**runtime),
        transcript=transcript,
        sleep=delays.append,
    )
    return gateway, delays


def _log() -> tuple[DecisionLog, MemoryStore, MemorySink]:
    store = MemoryStore()
    sink = MemorySink()
    bus = EventBus(sink, EventContext(run_id="exe-1", trace_id="turn-1"))
    return DecisionLog(store, bus, "exe-1", "turn-1"), store, sink


def test_success_records_one_llm_call() -> None:
    client = ScriptedClient([call_tools(("call_1", "lookup", {"q": "x"}), text="checking")])
    gateway, delays = _gateway(client)
    log, store, sink = _log()

    outcome = gateway.call(MESSAGES, [], log, cycle=1)

    assert outcome.ok
    assert outcome.attempts == 1
    assert delays == []
    entries = store.list_decisions("exe-1")
    assert [entry.step_type for entry in entries] == [StepType.LLM_CALL]
    assert entries[0].payload["response_kind"] == "tool_calls"
    assert entries[0].payload["tool_calls"] == ["lookup"]
    kinds = [event.event_type for event in sink.events]
    assert kinds[0] == "llm_request_sent"
    assert "llm_response_received" in kinds


def test_retryable_errors_back_off_then_succeed() -> None:
    client = ScriptedClient([RetryableProviderError("overloaded", 529), reply("ok")])
    gateway, delays = _gateway(client, max_llm_attempts=3)
    log, store, sink = _log()

    outcome = gateway.call(MESSAGES, [], log, cycle=1)

    assert outcome.ok
    assert outcome.attempts == 2
    assert len(delays) == 1
    assert [entry.success for entry in store.list_decisions("exe-1")] == [False, True]
    assert any(event.event_type == "llm_retry_scheduled" for event in sink.events)


def test_retryable_errors_are_bounded() -> None:
    client = ScriptedClient([RetryableProviderError("busy", 503) for _ in range(4)])
    gateway, delays = _gateway(client, max_llm_attempts=2)
    log, store, _ = _log()

    outcome = gateway.call(MESSAGES, [], log, cycle=1)

    assert not outcome.ok
    assert outcome.error_kind == "retryable_exhausted"
    assert outcome.attempts == 2
    assert len(client.requests) == 2
    assert len(delays) == 1
    assert len(outcome.attempt_errors) == 2


def test_fatal_error_stops_immediately() -> None:
    client = ScriptedClient([FatalProviderError("api_key=sk-live-1 rejected", 401)])
    gateway, delays = _gateway(client)
    log, store, _ = _log()

    outcome = gateway.call(MESSAGES, [], log, cycle=2)

    assert outcome.error_kind == "fatal"
    assert delays == []
    assert "sk-live-1" not in (outcome.error or "")
    entry = store.list_decisions("exe-1")[0]
    assert entry.success is False
    assert entry.cycle == 2
    assert entry.payload["retryable"] is False


def test_missing_provider_is_a_configuration_error() -> None:
    gateway, _ = _gateway(None)
    log, store, _ = _log()

    outcome = gateway.call(MESSAGES, [], log, cycle=1)

    assert outcome.error_kind == "configuration"
    assert outcome.attempts == 0
    assert store.list_decisions("exe-1")[0].payload["attempt"] == 0


def test_every_attempt_reaches_the_transcript(tmp_path: Path) -> None:
    client = ScriptedClient([TimeoutError("read timed out"), reply("hello")])
    gateway, _ = _gateway(client, transcript=TranscriptDirectory(tmp_path))
    log, _, _ = _log()

    gateway.call(MESSAGES, [], log, cycle=1)

    blocks = LlmTranscriptSink(tmp_path / "exe-1" / "llm_transcript.log").replay()
    assert len(blocks) == 2
    assert "Status: request_failed" in blocks[0]
    assert "Retryable: True" in blocks[0]
    assert "Status: success" in blocks[1]


def test_transcript_failure_is_reported_not_raised() -> None:
    class BrokenTranscript:
        def write(self, record) -> None:
            raise OSError("disk full")

    client = ScriptedClient([reply("hello")])
    gateway, _ = _gateway(client, transcript=BrokenTranscript())
    log, _, sink = _log()

    outcome = gateway.call(MESSAGES, [], log, cycle=1)

    assert outcome.ok
    assert any(event.event_type == "llm_transcript_write_failed" for event in sink.events)
