"""Translate a logical instance definition into container creation parameters."""
from __future__ import annotations

from dataclasses import dataclass

from .models import DatabaseType

BIND_ADDRESS = "0.0.0.0"


@dataclass(frozen=True)
class ProvisioningSpec:
    """Engine-facing parameters for creating one database container."""

    env: tuple[str, ...]
    command: tuple[str, ...] | None
    container_volume_path: str
    volume_binds: dict[str, dict[str, str]]
    port_bindings: dict[str, tuple[str, int]]
    exposed_port: str

    @property
    def env_keys(self) -> tuple[str, ...]:
        """Return the environment variable names, in order."""
        return tuple(item.split("=", 1)[0] for item in self.env)


def environment_for(database_type: DatabaseType, password: str) -> list[tuple[str, str]]:
    """Return the ``(key, value)`` environment pairs for *database_type*."""
    policy = database_type.policy
    pairs = list(policy.extra_env)
    if policy.password_env is not None:
        pairs.append((policy.password_env, password))
    return pairs


def command_for(database_type: DatabaseType, password: str) -> tuple[str, ...] | None:
    """Return the command override for types without a password environment variable."""
    if database_type is DatabaseType.REDIS:
        return ("redis-server", "--requirepass", password)
    return None


def build_provisioning(
    database_type: DatabaseType,
    password: str,
    port: int,
    host_volume: str,
) -> ProvisioningSpec:
    """Return the creation parameters for one instance.

    The assigned *port* is published 1:1 (host port equals container port) and
    *host_volume* is bind-mounted read-write at the type's data directory.
    """
    container_path = database_type.policy.volume_path
    port_key = f"{port}/tcp"
    return ProvisioningSpec(
        env=tuple(f"{key}={value}" for key, value in environment_for(database_type, password)),
        command=command_for(database_type, password),
        container_volume_path=container_path,
        volume_binds={host_volume: {"bind": container_path, "mode": "rw"}},
        port_bindings={port_key: (BIND_ADDRESS, port)},
        exposed_port=port_key,
    )


__all__ = ["ProvisioningSpec", "build_provisioning", "command_for", "environment_for"]
