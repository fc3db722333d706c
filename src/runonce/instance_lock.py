from __future__ import annotations

import fcntl
import logging
import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator

from runonce.errors import AlreadyRunningError, RunOnceError


LOGGER = logging.getLogger("runonce.instance_lock")


def executable_path() -> Path:
    """Resolved path of the running program, symlinks followed."""
    return Path(os.path.realpath(sys.argv[0] or sys.executable))


class InstanceLock:
    """Exclusive, non-blocking advisory lock on a file.

    The lock lives on an open file description, so two ``InstanceLock``
    objects for the same path exclude each other even inside one process.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._handle: IO[bytes] | None = None

    @classmethod
    def for_executable(cls) -> "InstanceLock":
        return cls(executable_path())

    @property
    def locked(self) -> bool:
        return self._handle is not None

    def try_acquire(self) -> bool:
        if self._handle is not None:
            return True
        try:
            handle = self.path.open("rb")
        except OSError as exc:
            raise RunOnceError(f"Failed to open instance lock {self.path}: {exc}") from exc
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            return False
        except OSError as exc:
            handle.close()
            raise RunOnceError(f"Failed to acquire instance lock {self.path}: {exc}") from exc
        self._handle = handle
        LOGGER.debug("Acquired instance lock %s", self.path)
        return True

    def release(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except OSError:
            pass
        handle.close()
        LOGGER.debug("Released instance lock %s", self.path)

    @contextmanager
    def hold(self) -> Iterator[None]:
        if not self.try_acquire():
            raise AlreadyRunningError(str(self.path))
        try:
            yield
        finally:
            self.release()
