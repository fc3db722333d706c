from __future__ import annotations

import logging
import socket
from dataclasses import dataclass, field
from typing import Any, Callable

import docker
from docker.errors import APIError, DockerException, NotFound
from docker.types import Mount
from requests.exceptions import RequestException

from runonce.cancellation import CancellationToken
from runonce.errors import (
    AttachError,
    CreateError,
    EngineUnavailableError,
    PullError,
    RunOnceError,
    StartError,
)


LOGGER = logging.getLogger("runonce.engine")

ENGINE_ERRORS = (DockerException, RequestException)


@dataclass(frozen=True)
class ImageSummary:
    id: str
    repo_tags: tuple[str, ...] = ()
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ContainerSpec:
    image: str
    command: tuple[str, ...]
    stop_timeout: int
    memory_bytes: int
    pids_limit: int
    oom_score_adj: int
    network_mode: str
    bind_source: str = ""
    bind_target: str = ""


@dataclass(frozen=True)
class CreatedContainer:
    id: str
    warnings: tuple[str, ...] = ()


def _engine_error_detail(exc: BaseException) -> str:
    explanation = getattr(exc, "explanation", None)
    if explanation:
        return str(explanation)
    return str(exc) or exc.__class__.__name__


def _already_removed(exc: APIError) -> bool:
    # auto_remove races the forced remove: 404 once gone, 409 while the daemon removes it
    if isinstance(exc, NotFound):
        return True
    return exc.status_code == 409 and "already in progress" in _engine_error_detail(exc)


def _format_pull_message(message: dict[str, Any]) -> str:
    parts = []
    if message.get("id"):
        parts.append(f"{message['id']}:")
    if message.get("status"):
        parts.append(str(message["status"]))
    if message.get("progress"):
        parts.append(str(message["progress"]))
    return " ".join(parts)


class EngineClient:
    """Blocking Docker engine session built on the low-level API client.

    Every engine failure surfaces as the matching ``RunOnceError`` subclass,
    chained to the original docker/requests exception.
    """

    def __init__(self, client: Any, client_factory: Callable[..., Any] = docker.from_env) -> None:
        self._client = client
        self._client_factory = client_factory

    @classmethod
    def connect(cls, client_factory: Callable[..., Any] = docker.from_env) -> "EngineClient":
        try:
            client = client_factory()
        except ENGINE_ERRORS as exc:
            raise EngineUnavailableError(
                f"Docker engine is not available: {_engine_error_detail(exc)}"
            ) from exc
        engine = cls(client, client_factory)
        engine.ping()
        return engine

    @property
    def api(self) -> Any:
        return self._client.api

    @property
    def api_version(self) -> str:
        return str(getattr(self.api, "api_version", "") or "unknown")

    def ping(self) -> None:
        try:
            self._client.ping()
        except ENGINE_ERRORS as exc:
            raise EngineUnavailableError(
                f"Docker engine did not answer ping: {_engine_error_detail(exc)}"
            ) from exc

    def pull(self, reference: str, token: CancellationToken | None = None) -> None:
        try:
            for message in self.api.pull(reference, stream=True, decode=True):
                if token is not None:
                    token.raise_if_cancelled()
                if not isinstance(message, dict):
                    continue
                if message.get("error"):
                    raise PullError(f"Failed to pull {reference}: {message['error']}")
                text = _format_pull_message(message)
                if text:
                    LOGGER.info("%s", text)
        except ENGINE_ERRORS as exc:
            raise PullError(f"Failed to pull {reference}: {_engine_error_detail(exc)}") from exc

    def find_images(self, reference: str) -> list[ImageSummary]:
        try:
            images = self.api.images(filters={"reference": reference})
        except ENGINE_ERRORS as exc:
            raise RunOnceError(f"Failed to list images for {reference}: {_engine_error_detail(exc)}") from exc
        return [
            ImageSummary(
                id=str(image.get("Id", "")),
                repo_tags=tuple(image.get("RepoTags") or ()),
                labels=dict(image.get("Labels") or {}),
            )
            for image in images or []
        ]

    def create_container(self, spec: ContainerSpec) -> CreatedContainer:
        mounts = []
        if spec.bind_target:
            mounts.append(Mount(target=spec.bind_target, source=spec.bind_source, type="bind", read_only=False))
        try:
            host_config = self.api.create_host_config(
                network_mode=spec.network_mode,
                restart_policy={"Name": "no"},
                auto_remove=True,
                volume_driver="local",
                oom_score_adj=spec.oom_score_adj,
                privileged=False,
                read_only=False,
                mem_limit=spec.memory_bytes,
                mem_reservation=spec.memory_bytes,
                oom_kill_disable=False,
                pids_limit=spec.pids_limit,
                mounts=mounts,
            )
            # HostConfig drops falsy OomKillDisable, so set it explicitly
            host_config["OomKillDisable"] = False
            response = self.api.create_container(
                image=spec.image,
                command=list(spec.command),
                stdin_open=True,
                tty=False,
                detach=False,
                network_disabled=False,
                stop_timeout=spec.stop_timeout,
                host_config=host_config,
            )
        except ENGINE_ERRORS as exc:
            raise CreateError(f"Failed to create container from {spec.image}: {_engine_error_detail(exc)}") from exc
        return CreatedContainer(
            id=str(response.get("Id", "")),
            warnings=tuple(str(w) for w in (response.get("Warnings") or ()) if w),
        )

    def start_container(self, container_id: str) -> None:
        try:
            self.api.start(container_id)
        except ENGINE_ERRORS as exc:
            raise StartError(f"Failed to start container {container_id}: {_engine_error_detail(exc)}") from exc

    def attach_container(self, container_id: str) -> socket.socket:
        try:
            wrapped = self.api.attach_socket(
                container_id,
                params={"stdin": 1, "stdout": 1, "stderr": 1, "stream": 1, "logs": 1},
            )
        except ENGINE_ERRORS as exc:
            raise AttachError(f"Failed to attach to container {container_id}: {_engine_error_detail(exc)}") from exc
        # The SDK hands back a SocketIO wrapper around the hijacked connection.
        return getattr(wrapped, "_sock", wrapped)

    def remove_container(self, container_id: str, *, timeout: float) -> None:
        """Force-remove a container through a fresh session bounded by ``timeout``."""
        client = self._client_factory(timeout=timeout)
        try:
            client.api.remove_container(container_id, force=True)
        except APIError as exc:
            if not _already_removed(exc):
                raise
            LOGGER.debug("Container %s already removed: %s", container_id, _engine_error_detail(exc))
        finally:
            client.close()

    def close(self) -> None:
        try:
            self._client.close()
        except ENGINE_ERRORS as exc:
            LOGGER.debug("Closing Docker client failed: %s", exc)
