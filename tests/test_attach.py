from __future__ import annotations

import io
import socket
import sys
import threading
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from runonce.attach import STREAM_STDERR, STREAM_STDOUT, AttachBridge, MultiplexDemuxer


def _frame(stream_type: int, payload: bytes) -> bytes:
    return bytes([stream_type, 0, 0, 0]) + len(payload).to_bytes(4, "big") + payload


def _read_until_eof(sock: socket.socket) -> bytes:
    chunks = []
    while True:
        chunk = sock.recv(4096)
        if not chunk:
            return b"".join(chunks)
        chunks.append(chunk)


class MultiplexDemuxerTests(unittest.TestCase):
    def test_frames_split_across_reads(self) -> None:
        local, remote = socket.socketpair()
        with local, remote:
            data = _frame(STREAM_STDOUT, b"hello\n") + _frame(STREAM_STDERR, b"oops\n") + _frame(0, b"")
            remote.sendall(data[:5])
            remote.sendall(data[5:11])
            remote.sendall(data[11:])
            remote.shutdown(socket.SHUT_WR)
            frames = list(MultiplexDemuxer(local).iter_frames())
        self.assertEqual(
            frames,
            [(STREAM_STDOUT, b"hello\n"), (STREAM_STDERR, b"oops\n"), (0, b"")],
        )


class AttachBridgeTests(unittest.TestCase):
    def setUp(self) -> None:
        self.local, self.remote = socket.socketpair()
        self.stdout = io.BytesIO()
        self.stderr = io.BytesIO()

    def tearDown(self) -> None:
        self.remote.close()
        self.local.close()

    def test_copies_output_and_forwards_stdin_until_eof(self) -> None:
        closed = threading.Event()
        bridge = AttachBridge(self.local, stdin=io.BytesIO(b"input line\n"), stdout=self.stdout, stderr=self.stderr)
        bridge.add_close_listener(closed.set)
        bridge.start()

        self.assertEqual(_read_until_eof(self.remote), b"input line\n")
        self.remote.sendall(_frame(STREAM_STDOUT, b"out\n") + _frame(STREAM_STDERR, b"err\n"))
        self.remote.shutdown(socket.SHUT_WR)

        self.assertTrue(closed.wait(timeout=2.0))
        self.assertTrue(bridge.remote_closed)
        bridge.close()
        self.assertEqual(self.stdout.getvalue(), b"out\n")
        self.assertEqual(self.stderr.getvalue(), b"err\n")

    def test_without_stdin_the_write_side_is_shut_down(self) -> None:
        bridge = AttachBridge(self.local, stdin=None, stdout=self.stdout, stderr=self.stderr)
        bridge.start()
        self.assertEqual(_read_until_eof(self.remote), b"")
        bridge.close()

    def test_close_listener_fires_once_and_late_listeners_immediately(self) -> None:
        calls: list[str] = []
        bridge = AttachBridge(self.local, stdin=None, stdout=self.stdout, stderr=self.stderr)
        done = threading.Event()
        bridge.add_close_listener(lambda: calls.append("early"))
        bridge.add_close_listener(done.set)
        bridge.start()
        self.remote.shutdown(socket.SHUT_WR)
        self.assertTrue(done.wait(timeout=2.0))
        bridge.add_close_listener(lambda: calls.append("late"))
        bridge.close()
        self.assertEqual(calls, ["early", "late"])

    def test_close_while_container_still_running(self) -> None:
        bridge = AttachBridge(self.local, stdin=None, stdout=self.stdout, stderr=self.stderr)
        bridge.start()
        bridge.close()
        bridge.close()
        self.assertTrue(bridge.remote_closed)


if __name__ == "__main__":
    unittest.main()
