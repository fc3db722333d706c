from __future__ import annotations

import logging
import socket
import sys
import threading
from typing import BinaryIO, Callable, Iterator


LOGGER = logging.getLogger("runonce.attach")

STREAM_STDIN = 0
STREAM_STDOUT = 1
STREAM_STDERR = 2
FRAME_HEADER_SIZE = 8
READ_CHUNK_SIZE = 4096


class MultiplexDemuxer:
    """
    Demultiplex Docker's hijacked attach stream.

    The frame format when TTY is disabled:
        [1 byte stream][3 bytes 0][4 bytes big-endian length][payload]
    """

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._buffer = b""

    def iter_frames(self) -> Iterator[tuple[int, bytes]]:
        while True:
            chunk = self._sock.recv(READ_CHUNK_SIZE)
            if not chunk:
                break
            self._buffer += chunk
            while len(self._buffer) >= FRAME_HEADER_SIZE:
                stream_type = self._buffer[0]
                length = int.from_bytes(self._buffer[4:FRAME_HEADER_SIZE], "big")
                if len(self._buffer) < FRAME_HEADER_SIZE + length:
                    break
                payload = self._buffer[FRAME_HEADER_SIZE : FRAME_HEADER_SIZE + length]
                self._buffer = self._buffer[FRAME_HEADER_SIZE + length :]
                yield stream_type, payload


class AttachBridge:
    """Copies process stdio to and from an attached container socket.

    Output frames go to ``stdout``/``stderr`` as they arrive, ``stdin`` is
    forwarded until EOF and then the socket's write side is shut down so the
    container sees EOF too. Close listeners fire once, when the container
    side of the stream ends (or the bridge is closed).
    """

    def __init__(
        self,
        sock: socket.socket,
        *,
        stdin: BinaryIO | None,
        stdout: BinaryIO,
        stderr: BinaryIO,
    ) -> None:
        self._sock = sock
        self._stdin = stdin
        self._stdout = stdout
        self._stderr = stderr
        self._lock = threading.Lock()
        self._close_listeners: list[Callable[[], None]] = []
        self._remote_closed = False
        self._closed = False
        self._output_thread: threading.Thread | None = None
        self._input_thread: threading.Thread | None = None

    @classmethod
    def for_process(cls, sock: socket.socket) -> "AttachBridge":
        stdin = getattr(sys.stdin, "buffer", None)
        return cls(sock, stdin=stdin, stdout=sys.stdout.buffer, stderr=sys.stderr.buffer)

    @property
    def remote_closed(self) -> bool:
        return self._remote_closed

    def add_close_listener(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._remote_closed:
                self._close_listeners.append(callback)
                return
        callback()

    def start(self) -> None:
        if self._output_thread is not None:
            return
        self._output_thread = threading.Thread(target=self._pump_output, name="runonce-attach-out", daemon=True)
        self._input_thread = threading.Thread(target=self._pump_input, name="runonce-attach-in", daemon=True)
        self._output_thread.start()
        self._input_thread.start()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        if self._output_thread is not None:
            self._output_thread.join(timeout=1.0)
        self._sock.close()

    def _pump_output(self) -> None:
        try:
            for stream_type, payload in MultiplexDemuxer(self._sock).iter_frames():
                if stream_type == STREAM_STDOUT:
                    target = self._stdout
                elif stream_type == STREAM_STDERR:
                    target = self._stderr
                else:
                    continue
                target.write(payload)
                target.flush()
        except (OSError, ValueError) as exc:
            if not self._closed:
                LOGGER.debug("Attach output stream ended: %s", exc)
        finally:
            self._notify_remote_closed()

    def _pump_input(self) -> None:
        stdin = self._stdin
        try:
            if stdin is not None:
                read = getattr(stdin, "read1", None) or stdin.read
                while not self._closed:
                    chunk = read(READ_CHUNK_SIZE)
                    if not chunk:
                        break
                    self._sock.sendall(chunk)
            if not self._closed:
                self._sock.shutdown(socket.SHUT_WR)
        except (OSError, ValueError) as exc:
            if not self._closed:
                LOGGER.debug("Attach input stream ended: %s", exc)

    def _notify_remote_closed(self) -> None:
        with self._lock:
            if self._remote_closed:
                return
            self._remote_closed = True
            listeners = list(self._close_listeners)
            self._close_listeners.clear()
        LOGGER.debug("Attach stream closed by the container")
        for listener in listeners:
            listener()
