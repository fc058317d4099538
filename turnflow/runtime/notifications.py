from __future__ import annotations

import threading
from typing import Any, Protocol

from turnflow.logging.events import EventBus
from turnflow.types import Execution


class NotificationChannel(Protocol):
    def publish(self, session_id: str, payload: dict[str, Any]) -> None: ...


class InMemoryNotificationChannel:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.published: list[tuple[str, dict[str, Any]]] = []

    def publish(self, session_id: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self.published.append((session_id, dict(payload)))

    def for_session(self, session_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [payload for sid, payload in self.published if sid == session_id]


class Notifier:
    """Best-effort UI updates. Failures are reported to the event stream, never retried."""

    def __init__(
        self,
        channel: NotificationChannel | None,
        enabled: bool = True,
        transient_messages: bool = False,
    ) -> None:
        self.channel = channel
        self.enabled = enabled and channel is not None
        self.transient_messages = transient_messages

    def _send(self, bus: EventBus, execution: Execution, payload: dict[str, Any]) -> None:
        if not self.enabled or self.channel is None:
            return
        try:
            self.channel.publish(execution.id, payload)
        except Exception as exc:
            bus.emit(
                "notification_failed",
                {"kind": payload.get("kind"), "error": f"{exc.__class__.__name__}: {exc}"},
            )

    def status(self, bus: EventBus, execution: Execution) -> None:
        self._send(
            bus,
            execution,
            {
                "kind": "status",
                "status": execution.status.value,
                "turn_id": execution.current_turn_id,
            },
        )

    def transient(self, bus: EventBus, execution: Execution, content: str, message_id: str) -> None:
        if not self.transient_messages:
            return
        self._send(
            bus,
            execution,
            {
                "kind": "transient",
                "status": execution.status.value,
                "content": content,
                "message_id": message_id,
            },
        )

    def agent_response(
        self,
        bus: EventBus,
        execution: Execution,
        *,
        is_success: bool,
        content: str | None,
        message_id: str | None,
        error_details: str | None = None,
    ) -> None:
        self._send(
            bus,
            execution,
            {
                "kind": "agent_response",
                "status": execution.status.value,
                "content": content,
                "is_success": is_success,
                "final_message_content": content if is_success else None,
                "final_assistant_message_id": message_id,
                "error_details": error_details,
                "turn_id": execution.current_turn_id,
            },
        )
