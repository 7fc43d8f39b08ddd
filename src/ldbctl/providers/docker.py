"""Docker engine provider.

Wraps the docker SDK's low-level ``APIClient`` behind coroutines so lifecycle
operations can await engine calls. Each blocking SDK call is handed to
``asyncio.to_thread``; the underlying client is created once and reused for
the life of the provider.

SDK failures are translated into the ldbctl error taxonomy:

* connection failures -> :class:`~ldbctl.errors.EngineUnavailableError`
* 404 responses -> :class:`~ldbctl.errors.ContainerNotFoundError`
* other API errors -> :class:`~ldbctl.errors.EngineError` (creation failures
  become :class:`~ldbctl.errors.ProvisioningFailedError`, port collisions
  :class:`~ldbctl.errors.PortConflictError`)
"""
from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator, Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Literal, TypeVar

import docker
import docker.errors
import requests

from ..errors import (
    ContainerNotFoundError,
    DuplicateInstanceError,
    EngineError,
    EngineUnavailableError,
    PortConflictError,
    ProvisioningFailedError,
)
from ..reconcile import split_image

LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")
_PORT_IN_USE = re.compile(r"port is already allocated|address already in use", re.IGNORECASE)
_BIND_PORT = re.compile(r":(\d+)\b")


@dataclass(frozen=True)
class PullProgress:
    """One progress frame reported while pulling an image."""

    id: str
    status: str
    progress: str | None = None
    current: int | None = None
    total: int | None = None


@dataclass(frozen=True)
class LogEvent:
    """One event from a container log stream."""

    kind: Literal["stdout", "error", "eof"]
    message: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a ``{"type", "data"}`` mapping."""
        if self.kind == "eof":
            return {"type": "eof"}
        return {"type": self.kind, "data": {"message": self.message}}


class DockerEngine:
    """Container engine client backed by the docker SDK."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        client_factory: Callable[[], Any] | None = None,
    ) -> None:
        """Configure the connection; nothing is opened until the first call."""
        self.base_url = base_url
        self.timeout = timeout
        self._client_factory = client_factory or self._default_client
        self._api: Any | None = None

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------
    def _default_client(self) -> Any:
        kwargs: dict[str, Any] = {}
        if self.timeout is not None:
            kwargs["timeout"] = int(self.timeout)
        if self.base_url:
            return docker.DockerClient(base_url=self.base_url, **kwargs)
        return docker.from_env(**kwargs)

    @property
    def api(self) -> Any:
        """Return the shared low-level API client, creating it on first use."""
        if self._api is None:
            try:
                client = self._client_factory()
            except docker.errors.DockerException as exc:
                raise EngineUnavailableError(f"Failed to connect to Docker: {exc}") from exc
            self._api = getattr(client, "api", client)
            LOGGER.debug("Docker client initialised (base_url=%s)", self.base_url)
        return self._api

    def close(self) -> None:
        """Release the underlying HTTP session."""
        if self._api is not None:
            close = getattr(self._api, "close", None)
            if callable(close):
                close()
            self._api = None

    async def ping(self) -> None:
        """Verify the daemon answers."""
        await self._call("ping", lambda api: api.ping())

    # ------------------------------------------------------------------
    # Container lifecycle
    # ------------------------------------------------------------------
    async def create_container(
        self,
        *,
        name: str,
        image: str,
        env: Sequence[str],
        command: Sequence[str] | None,
        port_bindings: Mapping[str, tuple[str, int]],
        volume_binds: Mapping[str, Mapping[str, str]],
    ) -> str:
        """Create (but do not start) a container and return its id."""

        def create(api: Any) -> str:
            host_config = api.create_host_config(
                port_bindings=dict(port_bindings),
                binds={host: dict(spec) for host, spec in volume_binds.items()},
            )
            response = api.create_container(
                image=image,
                name=name,
                command=list(command) if command else None,
                environment=list(env) or None,
                ports=[_exposed_port(key) for key in port_bindings],
                host_config=host_config,
            )
            for warning in response.get("Warnings") or []:
                LOGGER.warning("Docker create warning for %s: %s", name, warning)
            return str(response["Id"])

        try:
            return await self._call(f"create container {name}", create)
        except ContainerNotFoundError as exc:
            raise ProvisioningFailedError(
                f"Failed to create container {name}: image {image} is not available locally ({exc})"
            ) from exc
        except EngineError as exc:
            message = str(exc)
            if _PORT_IN_USE.search(message):
                port = _port_from_message(message, port_bindings)
                raise PortConflictError(
                    port,
                    f"Port {port} was taken before the container could be created: {message}",
                    retryable=True,
                ) from exc
            if "Conflict" in message or "already in use" in message:
                raise DuplicateInstanceError(
                    f"Container name {name} is already in use: {message}"
                ) from exc
            raise ProvisioningFailedError(f"Failed to create container {name}: {message}") from exc

    async def start_container(self, ref: str) -> None:
        """Start the container *ref*.

        Host ports are bound at start, so a port taken since allocation
        surfaces here as a retryable :class:`PortConflictError`.
        """
        try:
            await self._call(f"start container {ref}", lambda api: api.start(ref))
        except EngineError as exc:
            message = str(exc)
            if _PORT_IN_USE.search(message):
                port = _port_from_message(message, {})
                raise PortConflictError(
                    port,
                    f"Port {port} was taken before container {ref} could start: {message}",
                    retryable=True,
                ) from exc
            raise

    async def stop_container(self, ref: str, grace_seconds: int) -> None:
        """Stop *ref*, killing it after *grace_seconds*."""
        await self._call(f"stop container {ref}", lambda api: api.stop(ref, timeout=grace_seconds))

    async def restart_container(self, ref: str, grace_seconds: int) -> None:
        """Restart *ref* with the given stop grace period."""
        await self._call(
            f"restart container {ref}", lambda api: api.restart(ref, timeout=grace_seconds)
        )

    async def remove_container(self, ref: str, *, force: bool = True) -> None:
        """Remove *ref* (forcefully by default)."""
        await self._call(
            f"remove container {ref}", lambda api: api.remove_container(ref, force=force)
        )

    async def inspect_container(self, ref: str) -> dict[str, Any]:
        """Return the raw inspect payload for *ref*."""
        return await self._call(f"inspect container {ref}", lambda api: api.inspect_container(ref))

    async def list_containers(self, *, all: bool = False) -> list[dict[str, Any]]:  # noqa: A002
        """Return container summaries (``Id``, ``Names``, ``Ports``...)."""
        return await self._call("list containers", lambda api: list(api.containers(all=all)))

    # ------------------------------------------------------------------
    # Images and logs
    # ------------------------------------------------------------------
    async def pull_image(
        self,
        image: str,
        on_progress: Callable[[PullProgress], None] | None = None,
    ) -> None:
        """Pull *image*, reporting each progress frame to *on_progress*."""
        repository, tag = split_image(image)

        def pull(api: Any) -> None:
            for frame in api.pull(repository, tag=tag, stream=True, decode=True):
                if not isinstance(frame, Mapping):
                    continue
                if frame.get("error"):
                    raise EngineError(f"Pull failed: {frame['error']}")
                if on_progress is not None:
                    on_progress(_progress_from_frame(frame))

        await self._call(f"pull image {image}", pull)

    async def stream_logs(
        self,
        ref: str,
        *,
        tail: int | None = 100,
        follow: bool = True,
    ) -> AsyncIterator[LogEvent]:
        """Yield log events for *ref*, always finishing with ``eof``.

        The SDK merges stdout and stderr frames into one stream, so output is
        reported as ``stdout``. Stream failures yield a single ``error`` event.
        """
        try:
            chunks: Iterator[bytes] = await self._call(
                f"logs {ref}",
                lambda api: api.logs(
                    ref,
                    stdout=True,
                    stderr=True,
                    stream=True,
                    follow=follow,
                    timestamps=True,
                    tail=tail if tail is not None else "all",
                ),
            )
            while True:
                chunk = await self._call(f"logs {ref}", lambda _api: next(chunks, None))
                if chunk is None:
                    break
                yield LogEvent("stdout", _decode(chunk))
        except (EngineError, EngineUnavailableError, ContainerNotFoundError) as exc:
            yield LogEvent("error", f"Stream error: {exc}")
        yield LogEvent("eof")

    # ------------------------------------------------------------------
    async def _call(self, action: str, func: Callable[[Any], _T]) -> _T:
        api = self.api
        try:
            return await asyncio.to_thread(func, api)
        except docker.errors.NotFound as exc:
            raise ContainerNotFoundError(f"Failed to {action}: {_explain(exc)}") from exc
        except docker.errors.APIError as exc:
            raise EngineError(f"Failed to {action}: {_explain(exc)}") from exc
        except (docker.errors.DockerException, requests.exceptions.ConnectionError) as exc:
            raise EngineUnavailableError(f"Failed to connect to Docker: {exc}") from exc


def _exposed_port(key: str) -> int | tuple[int, str]:
    number, _, proto = key.partition("/")
    return (int(number), proto) if proto and proto != "tcp" else int(number)


def _port_from_message(message: str, port_bindings: Mapping[str, tuple[str, int]]) -> int:
    match = _BIND_PORT.search(message)
    if match:
        return int(match.group(1))
    for _, port in port_bindings.values():
        return port
    return 0


def _progress_from_frame(frame: Mapping[str, Any]) -> PullProgress:
    detail = frame.get("progressDetail")
    current = total = None
    if isinstance(detail, Mapping):
        current = detail.get("current")
        total = detail.get("total")
    progress = None
    if current is not None or total is not None:
        progress = f"{current or 0}/{total or 0}"
    return PullProgress(
        id=str(frame.get("id") or ""),
        status=str(frame.get("status") or ""),
        progress=progress,
        current=current,
        total=total,
    )


def _decode(chunk: bytes | str) -> str:
    if isinstance(chunk, bytes):
        return chunk.decode("utf-8", errors="replace")
    return chunk


def _explain(exc: docker.errors.APIError) -> str:
    explanation = getattr(exc, "explanation", None)
    return str(explanation or exc)


__all__ = ["DockerEngine", "LogEvent", "PullProgress"]
