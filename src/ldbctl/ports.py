"""Host port allocation for ldbctl."""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from .config import PortsConfig
from .errors import NoPortsAvailableError, PortConflictError, ValidationError
from .models import DatabaseType

MAX_PORT = 65535


class ContainerLister(Protocol):
    """Subset of the engine client the allocator needs."""

    async def list_containers(self, *, all: bool = False) -> list[dict[str, Any]]:  # noqa: A002
        """Return container summaries."""
        ...


@dataclass(slots=True)
class PortAllocator:
    """Pick free host ports by scanning upward from a per-type base."""

    engine: ContainerLister
    config: PortsConfig = field(default_factory=PortsConfig)

    # ------------------------------------------------------------------
    async def occupied_ports(self) -> set[int]:
        """Return the public ports of running containers."""
        return {entry["port"] for entry in await self.published()}

    async def published(self) -> list[dict[str, Any]]:
        """Return ``{"port", "container"}`` entries for running containers, by port."""
        containers = await self.engine.list_containers(all=False)
        return published_ports(containers)

    async def is_available(self, port: int) -> bool:
        """Return ``True`` when no running container publishes *port*."""
        _validate_port(port)
        return port not in await self.occupied_ports()

    def base_port_for(self, database_type: DatabaseType) -> int:
        """Return the first port scanned for *database_type*."""
        return self.config.base_for(database_type)

    async def allocate(
        self,
        database_type: DatabaseType,
        preferred: int | None = None,
        occupied: Iterable[int] | None = None,
    ) -> int:
        """Return a free port for *database_type*.

        A *preferred* port is returned as-is when free and rejected with
        :class:`PortConflictError` otherwise. Without a preference the scan
        starts at the base port and ends at 65535. *occupied* skips the engine
        query when the caller already holds a snapshot.
        """
        if preferred is not None:
            _validate_port(preferred)
        used = set(occupied) if occupied is not None else await self.occupied_ports()

        if preferred is not None:
            if preferred in used:
                raise PortConflictError(preferred)
            return preferred

        base = self.base_port_for(database_type)
        for candidate in range(base, MAX_PORT + 1):
            if candidate not in used:
                return candidate
        raise NoPortsAvailableError(
            f"No free port between {base} and {MAX_PORT} for {database_type.label}."
        )


def _validate_port(port: int) -> None:
    if not 1 <= port <= MAX_PORT:
        raise ValidationError(f"Port must be between 1 and {MAX_PORT}. Got {port}.")


def published_ports(containers: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Return the host ports published by *containers* (engine list summaries)."""
    seen: dict[int, str] = {}
    for container in containers:
        names = container.get("Names") or []
        label = str(names[0]).lstrip("/") if names else str(container.get("Id") or "")[:12]
        for entry in container.get("Ports") or []:
            if not isinstance(entry, Mapping):
                continue
            public = entry.get("PublicPort")
            if isinstance(public, int) and public > 0:
                seen.setdefault(public, label)
    return [{"port": port, "container": seen[port]} for port in sorted(seen)]


__all__ = ["ContainerLister", "MAX_PORT", "PortAllocator", "published_ports"]
