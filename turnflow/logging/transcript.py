from __future__ import annotations

import threading
from pathlib import Path
from typing import Protocol

from turnflow.types import LlmTranscriptRecord


class TranscriptWriter(Protocol):
    def write(self, record: LlmTranscriptRecord) -> None: ...


class LlmTranscriptSink:
    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def write(self, record: LlmTranscriptRecord) -> None:
        payload = record.model_dump(mode="json")
        usage = payload.get("usage", {}) or {}
        retryable = payload.get("retryable")

        block = [
            "=== LLM ATTEMPT START ===",
            f"Turn: {payload['turn_id']}",
            f"Cycle: {payload['cycle']}",
            f"Attempt: {payload['attempt']}",
            f"Provider: {payload['provider']}",
            f"Model: {payload['model']}",
            f"Status: {payload['status']}",
            f"Response Kind: {payload['response_kind']}",
            f"Tool Calls: {self._join_list(payload.get('tool_names', []))}",
            (
                "Usage: "
                f"input_tokens={usage.get('input_tokens')}, "
                f"output_tokens={usage.get('output_tokens')}, "
                f"latency_ms={usage.get('latency_ms')}"
            ),
            f"Retryable: {retryable if retryable is not None else 'n/a'}",
            f"Error: {payload.get('error') or 'none'}",
            "",
            "--- Request Messages ---",
            str(payload["request_text"]),
            "--- Raw Model Response ---",
            str(payload.get("response_text") or ""),
            "=== LLM ATTEMPT END ===",
            "",
        ]
        with self._lock, self._path.open("a", encoding="utf-8") as handle:
            handle.write("\n".join(block))

    def replay(self) -> list[str]:
        if not self._path.exists():
            return []
        text = self._path.read_text(encoding="utf-8").strip()
        if not text:
            return []
        chunks = text.split("=== LLM ATTEMPT END ===")
        attempts: list[str] = []
        for chunk in chunks:
            cleaned = chunk.strip()
            if not cleaned:
                continue
            attempts.append(cleaned + "\n=== LLM ATTEMPT END ===")
        return attempts

    @staticmethod
    def _join_list(items: object) -> str:
        if not isinstance(items, list):
            return "none"
        cleaned = [str(item).strip() for item in items if str(item).strip()]
        if not cleaned:
            return "none"
        return ", ".join(cleaned)


class TranscriptDirectory:
    """Writes each record to ``<root>/<execution_id>/<filename>`` beside the event stream."""

    def __init__(self, root: Path, filename: str = "llm_transcript.log") -> None:
        self.root = root
        self.filename = filename
        self._lock = threading.Lock()
        self._sinks: dict[str, LlmTranscriptSink] = {}

    def path_for(self, execution_id: str) -> Path:
        return self.root / execution_id / self.filename

    def sink_for(self, execution_id: str) -> LlmTranscriptSink:
        with self._lock:
            sink = self._sinks.get(execution_id)
            if sink is None:
                sink = LlmTranscriptSink(self.path_for(execution_id))
                self._sinks[execution_id] = sink
            return sink

    def write(self, record: LlmTranscriptRecord) -> None:
        self.sink_for(record.execution_id).write(record)
