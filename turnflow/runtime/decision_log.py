from __future__ import annotations

from typing import Any

from turnflow.logging.events import EventBus
from turnflow.storage.base import ExecutionStore
from turnflow.storage.ids import new_id
from turnflow.types import DecisionLogEntry, StepType


class DecisionLog:
    """Append-only audit trail for one turn, persisted and mirrored to the event stream."""

    def __init__(
        self, store: ExecutionStore, bus: EventBus, execution_id: str, turn_id: str
    ) -> None:
        self.store = store
        self.bus = bus
        self.execution_id = execution_id
        self.turn_id = turn_id

    def record(
        self,
        step_type: StepType,
        payload: dict[str, Any] | None = None,
        *,
        cycle: int = 0,
        success: bool = True,
        duration_ms: int = 0,
    ) -> DecisionLogEntry:
        entry = DecisionLogEntry(
            id=new_id("dec"),
            execution_id=self.execution_id,
            turn_id=self.turn_id,
            cycle=cycle,
            step_type=step_type,
            payload=payload or {},
            success=success,
            duration_ms=duration_ms,
        )
        self.store.append_decision(entry)
        self.bus.emit(
            "decision_recorded",
            {
                "step_type": step_type.value,
                "cycle": cycle,
                "success": success,
                "duration_ms": duration_ms,
                "payload": entry.payload,
            },
        )
        return entry
