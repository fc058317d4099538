from __future__ import annotations

import threading

from turnflow.errors import NotFoundError
from turnflow.logging.events import EventBusFactory
from turnflow.logging.jsonl_sink import MemorySink
from turnflow.runtime.bridge import AsyncBridge
from turnflow.runtime.signals import StopSignal, install_signal_handlers
from turnflow.runtime.transport import InMemoryTransport
from turnflow.runtime.worker import Worker
from turnflow.types import HandoffPayload, TurnOutcome


def _payload(execution_id: str = "exe-1") -> HandoffPayload:
    return HandoffPayload(
        execution_id=execution_id, turn_id="turn-1", cycle_count=1, pending_action_id="act-1"
    )


def _worker(handler) -> tuple[Worker, InMemoryTransport, MemorySink]:
    transport = InMemoryTransport()
    bridge = AsyncBridge(transport)
    bridge.attach(handler)
    sink = MemorySink()
    worker = Worker(transport, bridge, EventBusFactory(jsonl_dir=None, sink=sink))
    return worker, transport, sink


def test_processed_deliveries_are_acked_and_counted() -> None:
    def resume(execution_id: str, turn_id: str, payload) -> TurnOutcome:
        return TurnOutcome(execution_id=execution_id, turn_id=turn_id, outcome="completed")

    worker, transport, sink = _worker(resume)
    transport.publish(_payload())
    transport.publish(_payload())

    handled = worker.drain()

    assert handled == 2
    assert worker.stats.outcomes == {"completed": 2}
    assert transport.pending() == 0
    assert [e.event_type for e in sink.events] == ["handoff_processed", "handoff_processed"]


def test_unknown_execution_is_dropped() -> None:
    def resume(execution_id: str, turn_id: str, payload) -> TurnOutcome:
        raise NotFoundError(f"Unknown execution: {execution_id}")

    worker, transport, sink = _worker(resume)
    transport.publish(_payload("gone"))

    worker.drain()

    assert worker.stats.dropped == 1
    assert transport.pending() == 0
    assert sink.events[0].event_type == "handoff_dropped"


def test_crashing_delivery_is_released_for_redelivery() -> None:
    calls: list[str] = []

    def resume(execution_id: str, turn_id: str, payload) -> TurnOutcome:
        calls.append(execution_id)
        if len(calls) == 1:
            raise RuntimeError("database is locked")
        return TurnOutcome(execution_id=execution_id, turn_id=turn_id, outcome="completed")

    worker, transport, sink = _worker(resume)
    transport.publish(_payload())

    worker.drain()

    assert calls == ["exe-1", "exe-1"]
    assert worker.stats.released == 1
    assert worker.stats.outcomes == {"completed": 1}
    assert sink.events[0].event_type == "handoff_released"


def test_on_outcome_callback_sees_each_result() -> None:
    seen: list[str] = []

    def resume(execution_id: str, turn_id: str, payload) -> TurnOutcome:
        return TurnOutcome(execution_id=execution_id, turn_id=turn_id, outcome="stale")

    worker, transport, _ = _worker(resume)
    worker.on_outcome = lambda delivery, outcome: seen.append(outcome.outcome)
    transport.publish(_payload())

    worker.run_once()

    assert seen == ["stale"]


def test_run_forever_stops_when_signalled() -> None:
    def resume(execution_id: str, turn_id: str, payload) -> TurnOutcome:
        stop.request_stop("test")
        return TurnOutcome(execution_id=execution_id, turn_id=turn_id, outcome="completed")

    stop = StopSignal()
    worker, transport, _ = _worker(resume)
    worker.poll_interval_seconds = 0.01
    transport.publish(_payload())

    stats = worker.run_forever(stop)

    assert stats.outcomes == {"completed": 1}
    assert stop.signal_name == "test"


def test_signal_handlers_skip_worker_threads() -> None:
    result: list[bool] = []

    def target() -> None:
        with install_signal_handlers() as state:
            result.append(state.stop_requested)

    thread = threading.Thread(target=target)
    thread.start()
    thread.join()

    assert result == [False]
