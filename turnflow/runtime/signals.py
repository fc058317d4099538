from __future__ import annotations

import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from types import FrameType


@dataclass
class StopSignal:
    signal_name: str | None = None
    _event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def stop_requested(self) -> bool:
        return self._event.is_set()

    def request_stop(self, signal_name: str | None = None) -> None:
        self.signal_name = signal_name
        self._event.set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; returns early with True once a stop is requested."""
        return self._event.wait(timeout)


def _resolve_signal_name(signum: int) -> str:
    for name in ("SIGINT", "SIGTERM"):
        if getattr(signal, name, None) == signum:
            return name
    return str(signum)


@contextmanager
def install_signal_handlers(state: StopSignal | None = None) -> Iterator[StopSignal]:
    state = state or StopSignal()

    def _handler(signum: int, _: FrameType | None) -> None:
        state.request_stop(_resolve_signal_name(signum))

    # signal.signal only works on the main thread; elsewhere the caller stops us.
    if threading.current_thread() is not threading.main_thread():
        yield state
        return

    original_int = signal.getsignal(signal.SIGINT)
    original_term = signal.getsignal(signal.SIGTERM)
    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
    try:
        yield state
    finally:
        signal.signal(signal.SIGINT, original_int)
        signal.signal(signal.SIGTERM, original_term)
