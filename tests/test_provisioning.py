"""Provisioning policy tests."""
from __future__ import annotations

import pytest

from ldbctl.models import DatabaseType
from ldbctl.provisioning import build_provisioning, command_for, environment_for


@pytest.mark.parametrize(
    ("database_type", "env_keys", "volume"),
    [
        (DatabaseType.POSTGRESQL, ("POSTGRES_PASSWORD",), "/var/lib/postgresql/data"),
        (DatabaseType.REDIS, (), "/data"),
        (DatabaseType.MYSQL, ("MYSQL_ROOT_PASSWORD",), "/var/lib/mysql"),
        (
            DatabaseType.MONGODB,
            ("MONGO_INITDB_ROOT_USERNAME", "MONGO_INITDB_ROOT_PASSWORD"),
            "/data/db",
        ),
    ],
)
def test_policy_per_type(
    database_type: DatabaseType,
    env_keys: tuple[str, ...],
    volume: str,
) -> None:
    """Each type gets its environment keys and data directory."""
    spec = build_provisioning(database_type, "pw", database_type.default_port, "/host/vol")

    assert spec.env_keys == env_keys
    assert spec.container_volume_path == volume
    assert spec.volume_binds == {"/host/vol": {"bind": volume, "mode": "rw"}}


def test_port_is_published_one_to_one() -> None:
    """The host port equals the container port."""
    spec = build_provisioning(DatabaseType.POSTGRESQL, "pw", 5433, "/host/vol")

    assert spec.exposed_port == "5433/tcp"
    assert spec.port_bindings == {"5433/tcp": ("0.0.0.0", 5433)}


def test_mongodb_environment_values() -> None:
    """MongoDB creates a ``root`` user with the supplied password."""
    assert environment_for(DatabaseType.MONGODB, "pw") == [
        ("MONGO_INITDB_ROOT_USERNAME", "root"),
        ("MONGO_INITDB_ROOT_PASSWORD", "pw"),
    ]


def test_only_redis_overrides_command() -> None:
    """Redis takes its password as a server flag."""
    assert command_for(DatabaseType.REDIS, "pw") == ("redis-server", "--requirepass", "pw")
    assert command_for(DatabaseType.MYSQL, "pw") is None
    spec = build_provisioning(DatabaseType.REDIS, "pw", 6379, "/host/vol")
    assert spec.env == ()
    assert spec.command == ("redis-server", "--requirepass", "pw")
