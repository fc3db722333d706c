from __future__ import annotations

import logging
import os
import socket
import time
from contextlib import closing, contextmanager, nullcontext
from typing import Any, Callable, ContextManager, Iterator, Protocol

from runonce.attach import AttachBridge
from runonce.cancellation import CancellationToken, TerminationRace, TerminationSignal
from runonce.engine import ContainerSpec, EngineClient, ImageSummary
from runonce.errors import ImageResolutionError
from runonce.instance_lock import InstanceLock
from runonce.options import (
    RunConfig,
    RunOptions,
    format_iec_bytes,
    is_remote_reference,
    resolve_run_config,
    validate_run_options,
)


LOGGER = logging.getLogger("runonce.orchestrator")

CLEANUP_TIMEOUT_SECONDS = 5.0
PIDS_LIMIT = 128
OOM_SCORE_ADJ = 1000
NETWORK_MODE = "host"


class Bridge(Protocol):
    def add_close_listener(self, callback: Callable[[], None]) -> None: ...

    def start(self) -> None: ...

    def close(self) -> None: ...


def build_container_spec(config: RunConfig, cwd: str) -> ContainerSpec:
    return ContainerSpec(
        image=config.image_reference,
        command=tuple(config.extra_args),
        stop_timeout=config.stop_timeout_seconds,
        memory_bytes=config.memory_limit_bytes,
        pids_limit=PIDS_LIMIT,
        oom_score_adj=OOM_SCORE_ADJ,
        network_mode=NETWORK_MODE,
        bind_source=cwd if config.bind_cwd_target else "",
        bind_target=config.bind_cwd_target,
    )


def remove_container(engine: EngineClient, container_id: str | None) -> None:
    """Best-effort forced removal; never raises."""
    if not container_id:
        LOGGER.debug("No container to remove")
        return
    LOGGER.info("removing container %s", container_id)
    try:
        engine.remove_container(container_id, timeout=CLEANUP_TIMEOUT_SECONDS)
    except Exception as exc:
        LOGGER.warning("Failed to remove container %s: %s", container_id, exc)


class _ContainerHandle:
    def __init__(self) -> None:
        self.container_id: str | None = None


class RunOrchestrator:
    """Drives one container run from engine connection to cleanup.

    States: connecting, pulling (remote references only), resolving the
    image, configuring, creating, starting, attaching, running, cleaning.
    Any failure skips the remaining states except cleanup, which runs once
    for every run that got as far as creating.
    """

    def __init__(
        self,
        token: CancellationToken | None = None,
        *,
        engine_factory: Callable[[], Any] = EngineClient.connect,
        bridge_factory: Callable[[socket.socket], Bridge] = AttachBridge.for_process,
        lock_factory: Callable[[], InstanceLock] = InstanceLock.for_executable,
        cleanup: Callable[[Any, str | None], None] = remove_container,
        cwd: Callable[[], str] = os.getcwd,
    ) -> None:
        self.token = token or CancellationToken()
        self._engine_factory = engine_factory
        self._bridge_factory = bridge_factory
        self._lock_factory = lock_factory
        self._cleanup = cleanup
        self._cwd = cwd

    def run(self, options: RunOptions) -> None:
        reference = validate_run_options(options)
        self.token.raise_if_cancelled()

        LOGGER.info("connecting to docker engine...")
        engine = self._engine_factory()
        with closing(engine):
            LOGGER.info("connected, api version = %s", engine.api_version)

            if is_remote_reference(reference):
                self.token.raise_if_cancelled()
                LOGGER.info("pulling %s", reference)
                engine.pull(reference, self.token)

            self.token.raise_if_cancelled()
            image = self._resolve_image(engine, reference)

            config = resolve_run_config(options, image.labels)
            LOGGER.info(
                "run timeout = %gs, memory limit = %s, concurrent execution = %s",
                config.timeout,
                format_iec_bytes(config.memory_limit_bytes),
                str(config.concurrent_execution_allowed).lower(),
            )

            with self._admission(config):
                self._execute(engine, config)

    def _resolve_image(self, engine: Any, reference: str) -> ImageSummary:
        images = engine.find_images(reference)
        if len(images) != 1:
            raise ImageResolutionError(f"could not locate image '{reference}'")
        LOGGER.debug("resolved image %s to %s", reference, images[0].id)
        return images[0]

    def _admission(self, config: RunConfig) -> ContextManager[None]:
        if config.concurrent_execution_allowed:
            return nullcontext()
        return self._lock_factory().hold()

    @contextmanager
    def _cleanup_scope(self, engine: Any) -> Iterator[_ContainerHandle]:
        handle = _ContainerHandle()
        try:
            yield handle
        finally:
            self._cleanup(engine, handle.container_id)

    def _execute(self, engine: Any, config: RunConfig) -> None:
        self.token.raise_if_cancelled()
        # one deadline covers create, start, attach and the run itself
        deadline = time.monotonic() + config.timeout
        with self._cleanup_scope(engine) as handle:
            created = engine.create_container(build_container_spec(config, self._cwd()))
            handle.container_id = created.id
            for warning in created.warnings:
                LOGGER.warning("%s", warning)
            LOGGER.info("container id = %s", created.id)

            self.token.raise_if_cancelled()
            engine.start_container(created.id)

            self.token.raise_if_cancelled()
            sock = engine.attach_container(created.id)
            bridge = self._bridge_factory(sock)
            with closing(bridge):
                outcome = self._await_termination(deadline, bridge)
            LOGGER.info("run ended: %s", outcome.value)

            if outcome in (TerminationSignal.EXTERNAL_INTERRUPT, TerminationSignal.UPSTREAM_CANCELLED):
                self.token.raise_if_cancelled()

    def _await_termination(self, deadline: float, bridge: Bridge) -> TerminationSignal:
        race = TerminationRace()
        bridge.add_close_listener(race.stream_closed)
        race.watch_token(self.token)
        bridge.start()
        return race.wait(deadline - time.monotonic())
