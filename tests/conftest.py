"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import hashlib
import itertools
import os
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

import pytest

from ldbctl.errors import ContainerNotFoundError, DuplicateInstanceError, PortConflictError
from ldbctl.lifecycle import LifecycleManager, LifecycleSettings
from ldbctl.locking import LockManager
from ldbctl.ports import PortAllocator
from ldbctl.providers.docker import LogEvent, PullProgress
from ldbctl.state import InstanceStore


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class FakeEngine:
    """In-memory stand-in for :class:`ldbctl.providers.docker.DockerEngine`."""

    def __init__(self) -> None:
        self.containers: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, object]] = []
        self.pulled: list[str] = []
        self.log_lines: list[str] = ["ready to accept connections\n"]
        self.log_error: str | None = None
        self.create_error: Exception | None = None
        self.external_ports: dict[int, str] = {}
        self.partial: set[str] = set()
        self.closed = False
        self._ids = itertools.count(1)

    # helpers ----------------------------------------------------------
    def add_external(
        self,
        name: str,
        *,
        image: str = "postgres:16",
        port: int = 0,
        running: bool = True,
    ) -> str:
        """Register a container that was not created through the lifecycle manager."""
        bindings = {f"{port}/tcp": ("0.0.0.0", port)} if port else {}
        return self._store(
            name=name, image=image, env=(), command=None, bindings=bindings, running=running
        )

    def _store(
        self,
        *,
        name: str,
        image: str,
        env: Sequence[str],
        command: Sequence[str] | None,
        bindings: Mapping[str, tuple[str, int]],
        running: bool = False,
        volume_binds: Mapping[str, Mapping[str, str]] | None = None,
    ) -> str:
        seed = f"{name}-{next(self._ids)}".encode()
        container_id = hashlib.sha256(seed).hexdigest()
        self.containers[container_id] = {
            "name": name,
            "image": image,
            "env": list(env),
            "command": list(command) if command else None,
            "bindings": dict(bindings),
            "volume_binds": dict(volume_binds or {}),
            "running": running,
            "created": "2024-05-01T10:20:30.123456789Z",
        }
        return container_id

    def _resolve(self, ref: str) -> str:
        candidate = ref.lstrip("/")
        for container_id, data in self.containers.items():
            if container_id == candidate or data["name"] == candidate:
                return container_id
            if len(candidate) >= 12 and container_id.startswith(candidate):
                return container_id
        raise ContainerNotFoundError(f"No such container: {ref}")

    # engine contract --------------------------------------------------
    async def ping(self) -> None:
        self.calls.append(("ping", None))

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
        self.calls.append(("create", name))
        if self.create_error is not None:
            raise self.create_error
        if any(data["name"] == name for data in self.containers.values()):
            raise DuplicateInstanceError(f"Container name {name} is already in use")
        for _, port in port_bindings.values():
            if port in self.external_ports:
                raise PortConflictError(port, f"port {port} is already allocated", retryable=True)
        return self._store(
            name=name,
            image=image,
            env=env,
            command=command,
            bindings=port_bindings,
            volume_binds=volume_binds,
        )

    async def start_container(self, ref: str) -> None:
        self.calls.append(("start", ref))
        self.containers[self._resolve(ref)]["running"] = True

    async def stop_container(self, ref: str, grace_seconds: int) -> None:
        self.calls.append(("stop", (ref, grace_seconds)))
        self.containers[self._resolve(ref)]["running"] = False

    async def restart_container(self, ref: str, grace_seconds: int) -> None:
        self.calls.append(("restart", (ref, grace_seconds)))
        self.containers[self._resolve(ref)]["running"] = True

    async def remove_container(self, ref: str, *, force: bool = True) -> None:
        self.calls.append(("remove", (ref, force)))
        del self.containers[self._resolve(ref)]

    async def inspect_container(self, ref: str) -> dict[str, Any]:
        container_id = self._resolve(ref)
        data = self.containers[container_id]
        ports = {
            key: [{"HostIp": host, "HostPort": str(port)}]
            for key, (host, port) in data["bindings"].items()
        }
        payload: dict[str, Any] = {
            "Id": container_id,
            "Name": f"/{data['name']}",
            "Created": data["created"],
            "Config": {"Image": data["image"], "Env": data["env"]},
            "State": {
                "Status": "running" if data["running"] else "exited",
                "Running": data["running"],
                "Paused": False,
                "Restarting": False,
                "Dead": False,
                "Error": "",
            },
            "NetworkSettings": {"Ports": ports if data["running"] else {}},
            "HostConfig": {"PortBindings": ports},
        }
        if container_id in self.partial:
            del payload["State"]
        return payload

    async def list_containers(self, *, all: bool = False) -> list[dict[str, Any]]:  # noqa: A002
        summaries = []
        for container_id, data in self.containers.items():
            if not all and not data["running"]:
                continue
            ports = []
            if data["running"]:
                for key, (host, port) in data["bindings"].items():
                    private = int(key.split("/", 1)[0])
                    ports.append(
                        {"IP": host, "PrivatePort": private, "PublicPort": port, "Type": "tcp"}
                    )
            summaries.append({"Id": container_id, "Names": [f"/{data['name']}"], "Ports": ports})
        for port, name in self.external_ports.items():
            summaries.append(
                {
                    "Id": hashlib.sha256(name.encode()).hexdigest(),
                    "Names": [f"/{name}"],
                    "Ports": [{"PrivatePort": port, "PublicPort": port, "Type": "tcp"}],
                }
            )
        return summaries

    async def pull_image(
        self,
        image: str,
        on_progress: Callable[[PullProgress], None] | None = None,
    ) -> None:
        self.pulled.append(image)
        if on_progress is not None:
            on_progress(
                PullProgress(
                    id="abc123", status="Downloading", progress="5/10", current=5, total=10
                )
            )
            on_progress(PullProgress(id="", status=f"Status: Downloaded newer image for {image}"))

    async def stream_logs(
        self,
        ref: str,
        *,
        tail: int | None = 100,
        follow: bool = True,
    ) -> AsyncIterator[LogEvent]:
        self.calls.append(("logs", (ref, tail, follow)))
        self._resolve(ref)
        for line in self.log_lines:
            yield LogEvent("stdout", line)
        if self.log_error:
            yield LogEvent("error", f"Stream error: {self.log_error}")
        yield LogEvent("eof")

    def close(self) -> None:
        self.closed = True


async def _no_sleep(_: float) -> None:
    return None


@pytest.fixture
def engine() -> FakeEngine:
    """Return a fresh in-memory engine."""
    return FakeEngine()


@pytest.fixture
def store(tmp_path: Path) -> InstanceStore:
    """Return a metadata store rooted in a temporary data directory."""
    locks = LockManager(tmp_path / "run", default_timeout=1.0)
    return InstanceStore(tmp_path / "instances.yml", tmp_path / "volumes", locks=locks)


@pytest.fixture
def manager(engine: FakeEngine, store: InstanceStore) -> LifecycleManager:
    """Return a lifecycle manager wired to the fake engine."""
    return LifecycleManager(
        engine,
        store,
        allocator=PortAllocator(engine),
        settings=LifecycleSettings(),
        sleep=_no_sleep,
    )
