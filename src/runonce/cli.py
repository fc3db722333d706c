from __future__ import annotations

import logging
import os
import sys

import click

from runonce.cancellation import CancellationToken
from runonce.errors import RunOnceError
from runonce.exit_status import exit_code_for
from runonce.options import (
    DEFAULT_BIND_CWD,
    DEFAULT_MEMORY_LIMIT,
    DEFAULT_OPTION_LABEL_PREFIX,
    DEFAULT_STOP_TIMEOUT,
    DEFAULT_TIMEOUT,
    RunOptions,
)
from runonce.orchestrator import RunOrchestrator
from runonce.signals import SignalListener


PROGRAM_NAME = "docker-runonce"
VERSION = "1.0.0"
VERBOSE_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
TERSE_LOG_FORMAT = "%(message)s"

LOGGER = logging.getLogger("runonce")
LOGGER.addHandler(logging.NullHandler())


def implied_image_name(invoked_as: str) -> str:
    """Image implied by the program name, empty when run under the canonical name."""
    exe_name = os.path.basename(str(invoked_as or ""))
    if not exe_name or exe_name == PROGRAM_NAME:
        return ""
    return exe_name


def _configure_logging(verbose: bool) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(VERBOSE_LOG_FORMAT if verbose else TERSE_LOG_FORMAT))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(logging.DEBUG if verbose else logging.WARNING)
    LOGGER.propagate = False


@click.command(help="Run a docker image once and remove its container afterwards")
@click.version_option(VERSION, prog_name=PROGRAM_NAME)
@click.option("--timeout", default=DEFAULT_TIMEOUT, show_default=True, help="Overall run timeout, e.g. 10s or 1m30s")
@click.option(
    "--stop-timeout",
    default=DEFAULT_STOP_TIMEOUT,
    type=int,
    show_default=True,
    help="Seconds the container gets to stop before it is killed",
)
@click.option(
    "--bind-cwd",
    default=DEFAULT_BIND_CWD,
    show_default=True,
    help="Container path to bind-mount the current working directory at (empty disables)",
)
@click.option("--memory-limit", default=DEFAULT_MEMORY_LIMIT, show_default=True, help="Container memory limit")
@click.option(
    "--option-label-prefix",
    default=DEFAULT_OPTION_LABEL_PREFIX,
    show_default=True,
    help="Prefix of image labels that override these options",
)
@click.option(
    "--image",
    "image_name",
    default="",
    help=f"Image name (default is the executable name if it is not {PROGRAM_NAME})",
)
@click.option("-v", "--verbose", is_flag=True, default=False, help="Log every stage of the run")
@click.option(
    "--concurrent/--no-concurrent",
    default=True,
    show_default=True,
    help="Allow concurrent runs of this executable",
)
@click.argument("container_args", nargs=-1, type=click.UNPROCESSED)
@click.pass_context
def main(
    ctx: click.Context,
    timeout: str,
    stop_timeout: int,
    bind_cwd: str,
    memory_limit: str,
    option_label_prefix: str,
    image_name: str,
    verbose: bool,
    concurrent: bool,
    container_args: tuple[str, ...],
) -> None:
    _configure_logging(verbose)
    options = RunOptions(
        image=image_name,
        timeout=timeout,
        stop_timeout=stop_timeout,
        bind_cwd=bind_cwd,
        memory_limit=memory_limit,
        option_label_prefix=option_label_prefix,
        concurrent=concurrent,
        args=tuple(str(arg) for arg in container_args),
    )

    token = CancellationToken()
    error: RunOnceError | None = None
    with SignalListener(token):
        try:
            RunOrchestrator(token).run(options)
        except RunOnceError as exc:
            error = exc
    ctx.exit(exit_code_for(error, verbose=verbose))


def entrypoint(argv: list[str] | None = None, invoked_as: str | None = None) -> None:
    """Console entry point.

    Under any name other than ``docker-runonce`` the name is the image and every
    argument belongs to the container, so they all go after ``--``.
    """
    program = sys.argv[0] if invoked_as is None else invoked_as
    args = list(sys.argv[1:] if argv is None else argv)
    image = implied_image_name(program)
    if not image:
        main.main(args=args, prog_name=PROGRAM_NAME)
        return
    main.main(args=["--", *args], prog_name=image, default_map={"image_name": image})

