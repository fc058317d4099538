from __future__ import annotations

import uuid
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, Protocol

from turnflow.logging.jsonl_sink import JsonlSink
from turnflow.logging.redaction import redact_secrets
from turnflow.logging.sanitizer import sanitize_text
from turnflow.types import EventRecord


class EventSink(Protocol):
    def write(self, event: EventRecord) -> None: ...


@dataclass
class EventContext:
    run_id: str
    trace_id: str


class EventBus:
    def __init__(
        self,
        sink: EventSink,
        context: EventContext,
        redact: bool = True,
        sanitize: bool = True,
        on_emit: Callable[[EventRecord], None] | None = None,
    ) -> None:
        self._sink = sink
        self._context = context
        self._redact = redact
        self._sanitize = sanitize
        self._on_emit = on_emit

    @property
    def context(self) -> EventContext:
        return self._context

    def _clean_value(self, value: Any) -> Any:
        if isinstance(value, str):
            text = value
            if self._sanitize:
                text = sanitize_text(text)
            if self._redact:
                text = redact_secrets(text)
            return text
        if isinstance(value, dict):
            return {key: self._clean_value(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self._clean_value(item) for item in value]
        return value

    def emit(
        self,
        event_type: str,
        payload: dict[str, Any] | None = None,
        redaction_mode: Literal["full", "redacted"] = "redacted",
    ) -> EventRecord:
        event = EventRecord(
            run_id=self._context.run_id,
            trace_id=self._context.trace_id,
            span_id=uuid.uuid4().hex[:12],
            event_type=event_type,
            payload=self._clean_value(payload or {}),
            redaction_mode=redaction_mode,
        )
        self._sink.write(event)
        if self._on_emit is not None:
            with suppress(Exception):
                self._on_emit(event)
        return event


class EventBusFactory:
    """Builds one bus per unit of work, scoped to an execution and turn."""

    def __init__(
        self,
        jsonl_dir: Path | None,
        redact: bool = True,
        sanitize: bool = True,
        on_emit: Callable[[EventRecord], None] | None = None,
        sink: EventSink | None = None,
    ) -> None:
        self.jsonl_dir = jsonl_dir
        self.redact = redact
        self.sanitize = sanitize
        self.on_emit = on_emit
        self._shared_sink = sink

    def events_path(self, execution_id: str) -> Path | None:
        if self.jsonl_dir is None:
            return None
        return self.jsonl_dir / execution_id / "events.jsonl"

    def for_turn(self, execution_id: str, turn_id: str | None) -> EventBus:
        sink: EventSink
        path = self.events_path(execution_id)
        if self._shared_sink is not None:
            sink = self._shared_sink
        elif path is not None:
            sink = JsonlSink(path)
        else:
            raise ValueError("EventBusFactory needs either a jsonl_dir or a sink")
        return EventBus(
            sink=sink,
            context=EventContext(run_id=execution_id, trace_id=turn_id or "no-turn"),
            redact=self.redact,
            sanitize=self.sanitize,
            on_emit=self.on_emit,
        )
