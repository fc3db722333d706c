from __future__ import annotations

import logging
import signal
import socket
import threading
from types import FrameType
from typing import Any, Iterable

from runonce.cancellation import CancellationToken
from runonce.errors import SignalTermination, signal_name


LOGGER = logging.getLogger("runonce.signals")

DEFAULT_SIGNALS: tuple[int, ...] = (signal.SIGINT, signal.SIGTERM)


class SignalListener:
    """Turns OS signals into cancellation of a token.

    Python-level handlers do nothing; the interpreter writes each signal
    number to a wakeup socket and a daemon thread reading that socket cancels
    the token. The main thread therefore never runs token callbacks from
    inside a signal handler.
    """

    def __init__(self, token: CancellationToken, signals: Iterable[int] = DEFAULT_SIGNALS) -> None:
        self._token = token
        self._signals = frozenset(int(sig) for sig in signals)
        self._previous_handlers: dict[int, Any] = {}
        self._previous_wakeup_fd = -1
        self._reader: socket.socket | None = None
        self._writer: socket.socket | None = None
        self._thread: threading.Thread | None = None

    def __enter__(self) -> "SignalListener":
        self.install()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.uninstall()

    @property
    def installed(self) -> bool:
        return self._thread is not None

    def install(self) -> None:
        if self._thread is not None:
            return
        reader, writer = socket.socketpair()
        writer.setblocking(False)
        self._reader, self._writer = reader, writer
        self._previous_wakeup_fd = signal.set_wakeup_fd(writer.fileno(), warn_on_full_buffer=False)
        for sig in sorted(self._signals):
            self._previous_handlers[sig] = signal.signal(sig, self._on_signal)
        self._thread = threading.Thread(target=self._listen, args=(reader,), name="runonce-signals", daemon=True)
        self._thread.start()
        LOGGER.debug("Listening for signals: %s", ", ".join(signal_name(sig) for sig in sorted(self._signals)))

    def uninstall(self) -> None:
        if self._thread is None:
            return
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers.clear()
        signal.set_wakeup_fd(self._previous_wakeup_fd)
        if self._writer is not None:
            self._writer.close()
        self._thread.join(timeout=1.0)
        self._thread = None
        self._reader = None
        self._writer = None

    def _on_signal(self, signum: int, frame: FrameType | None) -> None:
        del signum, frame

    def _listen(self, reader: socket.socket) -> None:
        with reader:
            while True:
                try:
                    data = reader.recv(64)
                except OSError:
                    return
                if not data:
                    return
                for signum in data:
                    if signum not in self._signals:
                        continue
                    LOGGER.warning("received signal %s", signal_name(signum))
                    self._token.cancel(SignalTermination(signum))
