from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from turnflow.errors import NotFoundError
from turnflow.logging.events import EventBusFactory
from turnflow.runtime.bridge import AsyncBridge
from turnflow.runtime.signals import StopSignal, install_signal_handlers
from turnflow.runtime.transport import Delivery, HandoffTransport
from turnflow.types import OutcomeKind, TurnOutcome


@dataclass
class WorkerStats:
    deliveries: int = 0
    released: int = 0
    dropped: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)

    def count(self, outcome: OutcomeKind) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1


class Worker:
    """Drains hand-offs from a transport and feeds them back through the bridge."""

    def __init__(
        self,
        transport: HandoffTransport,
        bridge: AsyncBridge,
        events: EventBusFactory,
        poll_interval_seconds: float = 1.0,
        batch_size: int = 10,
        on_outcome: Callable[[Delivery, TurnOutcome], None] | None = None,
    ) -> None:
        self.transport = transport
        self.bridge = bridge
        self.events = events
        self.poll_interval_seconds = poll_interval_seconds
        self.batch_size = batch_size
        self.on_outcome = on_outcome
        self.stats = WorkerStats()

    def _handle(self, delivery: Delivery) -> None:
        payload = delivery.payload
        bus = self.events.for_turn(payload.execution_id, payload.turn_id)
        self.stats.deliveries += 1
        try:
            outcome = self.bridge.receive(payload)
        except NotFoundError as exc:
            self.transport.ack(delivery)
            self.stats.dropped += 1
            bus.emit("handoff_dropped", {"delivery_id": delivery.id, "error": str(exc)})
            return
        except Exception as exc:
            self.transport.release(delivery)
            self.stats.released += 1
            bus.emit(
                "handoff_released",
                {"delivery_id": delivery.id, "error": f"{exc.__class__.__name__}: {exc}"},
            )
            return
        self.transport.ack(delivery)
        self.stats.count(outcome.outcome)
        bus.emit(
            "handoff_processed",
            {
                "delivery_id": delivery.id,
                "kind": payload.kind,
                "outcome": outcome.outcome,
                "status": outcome.status.value if outcome.status else None,
            },
        )
        if self.on_outcome is not None:
            self.on_outcome(delivery, outcome)

    def run_once(self) -> int:
        batch = self.transport.poll(self.batch_size)
        for delivery in batch:
            self._handle(delivery)
        return len(batch)

    def drain(self, max_rounds: int = 100) -> int:
        """Process deliveries until the transport is empty or ``max_rounds`` polls ran."""
        handled = 0
        for _ in range(max_rounds):
            processed = self.run_once()
            if processed == 0:
                break
            handled += processed
        return handled

    def run_forever(self, stop: StopSignal | None = None) -> WorkerStats:
        with install_signal_handlers(stop) as state:
            while not state.stop_requested:
                if self.run_once() == 0:
                    state.wait(self.poll_interval_seconds)
        return self.stats
