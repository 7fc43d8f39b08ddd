"""Port allocator tests."""
from __future__ import annotations

import asyncio

import pytest

from ldbctl.config import PortsConfig
from ldbctl.errors import NoPortsAvailableError, PortConflictError, ValidationError
from ldbctl.models import DatabaseType
from ldbctl.ports import MAX_PORT, PortAllocator, published_ports


def test_allocate_returns_base_when_free(engine) -> None:
    """The base port for each type is used when nothing publishes it."""
    allocator = PortAllocator(engine)

    assert asyncio.run(allocator.allocate(DatabaseType.POSTGRESQL)) == 5432
    assert asyncio.run(allocator.allocate(DatabaseType.MONGODB)) == 27017


def test_allocate_skips_occupied_ports(engine) -> None:
    """Occupied ports are skipped in ascending order."""
    engine.external_ports.update({6379: "cache-a", 6380: "cache-b"})
    allocator = PortAllocator(engine)

    assert asyncio.run(allocator.allocate(DatabaseType.REDIS)) == 6381


def test_allocate_uses_snapshot_without_querying(engine) -> None:
    """An occupied snapshot short-circuits the engine query."""
    engine.external_ports[3306] = "ignored"
    allocator = PortAllocator(engine)

    assert asyncio.run(allocator.allocate(DatabaseType.MYSQL, occupied=[])) == 3306


def test_preferred_port_free_is_returned(engine) -> None:
    """A free preferred port is returned as-is, regardless of type base."""
    allocator = PortAllocator(engine)

    assert asyncio.run(allocator.allocate(DatabaseType.MYSQL, preferred=15000)) == 15000


def test_preferred_port_taken_raises(engine) -> None:
    """A taken preferred port is a non-retryable conflict."""
    engine.external_ports[15000] = "busy"
    allocator = PortAllocator(engine)

    with pytest.raises(PortConflictError) as excinfo:
        asyncio.run(allocator.allocate(DatabaseType.MYSQL, preferred=15000))

    assert excinfo.value.port == 15000
    assert excinfo.value.retryable is False


@pytest.mark.parametrize("port", [0, -1, MAX_PORT + 1])
def test_preferred_port_out_of_range(engine, port: int) -> None:
    """Preferred ports outside 1..65535 are rejected."""
    allocator = PortAllocator(engine)

    with pytest.raises(ValidationError):
        asyncio.run(allocator.allocate(DatabaseType.POSTGRESQL, preferred=port))


def test_exhausted_range_raises(engine) -> None:
    """A fully occupied range above the base raises ``NoPortsAvailableError``."""
    config = PortsConfig(bases={DatabaseType.POSTGRESQL: MAX_PORT - 1})
    allocator = PortAllocator(engine, config)

    with pytest.raises(NoPortsAvailableError):
        asyncio.run(
            allocator.allocate(DatabaseType.POSTGRESQL, occupied=[MAX_PORT - 1, MAX_PORT])
        )


def test_configured_base_is_used(engine) -> None:
    """Configured bases override the type defaults."""
    config = PortsConfig(bases={DatabaseType.REDIS: 16379})
    allocator = PortAllocator(engine, config)

    assert allocator.base_port_for(DatabaseType.REDIS) == 16379
    assert allocator.base_port_for(DatabaseType.MYSQL) == 3306
    assert asyncio.run(allocator.allocate(DatabaseType.REDIS)) == 16379


def test_is_available_reflects_running_containers(engine) -> None:
    """Only running containers occupy ports."""
    engine.add_external("ldb-stopped", image="redis:7", port=6379, running=False)
    engine.add_external("ldb-running", image="mysql:8", port=3306)
    allocator = PortAllocator(engine)

    assert asyncio.run(allocator.is_available(6379)) is True
    assert asyncio.run(allocator.is_available(3306)) is False


def test_published_ports_lists_by_port() -> None:
    """Published ports are sorted and attributed to the first container name."""
    containers = [
        {"Id": "b" * 64, "Names": ["/web"], "Ports": [{"PrivatePort": 80, "PublicPort": 8080}]},
        {
            "Id": "a" * 64,
            "Names": [],
            "Ports": [
                {"PrivatePort": 5432, "PublicPort": 5432},
                {"PrivatePort": 9000},
                "garbage",
            ],
        },
    ]

    assert published_ports(containers) == [
        {"port": 5432, "container": "a" * 12},
        {"port": 8080, "container": "web"},
    ]
