"""
Cancellation token and the termination race used once a container is attached.

The token is the only channel for "stop now" between the signal listener, the
caller and the run orchestrator. The race turns the three ways a run can end
(timeout, attach stream closed, token cancelled) into one blocking wait.
"""

from __future__ import annotations

import enum
import logging
import queue
import threading
from typing import Callable

from runonce.errors import RunCancelledError, RunOnceError, SignalTermination


LOGGER = logging.getLogger("runonce.cancellation")


class CancellationToken:
    """Thread-safe, one-shot cancellation flag with callbacks.

    The first ``cancel`` wins; its cause is kept and every registered callback
    runs exactly once. Callbacks registered after cancellation run right away.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._cause: RunOnceError | None = None
        self._callbacks: list[Callable[[RunOnceError], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def cause(self) -> RunOnceError | None:
        return self._cause

    def cancel(self, cause: RunOnceError | None = None) -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self._cause = cause if cause is not None else RunCancelledError()
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            self._run_callback(callback)
        return True

    def add_callback(self, callback: Callable[[RunOnceError], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        self._run_callback(callback)

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._cause is not None:
            raise self._cause

    def _run_callback(self, callback: Callable[[RunOnceError], None]) -> None:
        assert self._cause is not None
        try:
            callback(self._cause)
        except Exception:
            LOGGER.exception("Cancellation callback failed")


class TerminationSignal(enum.Enum):
    TIMEOUT_EXPIRED = "timeout expired"
    STREAM_CLOSED = "attach stream closed"
    EXTERNAL_INTERRUPT = "external interrupt"
    UPSTREAM_CANCELLED = "upstream cancelled"


def termination_signal_for(cause: RunOnceError) -> TerminationSignal:
    if isinstance(cause, SignalTermination):
        return TerminationSignal.EXTERNAL_INTERRUPT
    return TerminationSignal.UPSTREAM_CANCELLED


class TerminationRace:
    """Wait-any over typed termination events; the first one posted wins."""

    def __init__(self) -> None:
        self._events: queue.Queue[TerminationSignal] = queue.Queue()

    def notify(self, signal: TerminationSignal) -> None:
        self._events.put_nowait(signal)

    def watch_token(self, token: CancellationToken) -> None:
        token.add_callback(lambda cause: self.notify(termination_signal_for(cause)))

    def stream_closed(self) -> None:
        self.notify(TerminationSignal.STREAM_CLOSED)

    def wait(self, timeout: float) -> TerminationSignal:
        try:
            return self._events.get(timeout=max(0.0, timeout))
        except queue.Empty:
            return TerminationSignal.TIMEOUT_EXPIRED
