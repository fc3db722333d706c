from __future__ import annotations

import signal

import click


class RunOnceError(click.ClickException):
    """Base class for every failure that ends a run with a message."""

    exit_code = 1


class ConfigError(RunOnceError):
    pass


class ImageResolutionError(ConfigError):
    pass


class AlreadyRunningError(RunOnceError):
    def __init__(self, lock_path: str) -> None:
        super().__init__("another instance is already running")
        self.lock_path = lock_path


class EngineUnavailableError(RunOnceError):
    pass


class PullError(RunOnceError):
    pass


class CreateError(RunOnceError):
    pass


class StartError(RunOnceError):
    pass


class AttachError(RunOnceError):
    pass


class RunCancelledError(RunOnceError):
    def __init__(self, message: str = "run cancelled") -> None:
        super().__init__(message)


class SignalTermination(RunOnceError):
    """Run ended because the process received a termination signal.

    Not a failure: the exit classifier uses ``exit_code`` as is and prints
    nothing.
    """

    def __init__(self, signum: int) -> None:
        self.signum = int(signum)
        super().__init__(f"terminated by signal {signal_name(self.signum)}")
        self.exit_code = 128 + self.signum


def signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)
