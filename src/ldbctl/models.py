"""Domain models for database instances."""
from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from .errors import StoreError, ValidationError

DEFAULT_TAG = "latest"


@dataclass(frozen=True)
class EnginePolicy:
    """Per-type provisioning policy."""

    default_port: int
    volume_path: str
    image_token: str
    default_image: str
    password_env: str | None = None
    extra_env: tuple[tuple[str, str], ...] = ()
    label: str = ""


class DatabaseType(str, Enum):
    """Closed set of database engines ldbctl can provision."""

    POSTGRESQL = "postgresql"
    REDIS = "redis"
    MYSQL = "mysql"
    MONGODB = "mongodb"

    @property
    def policy(self) -> EnginePolicy:
        """Return the provisioning policy for this type."""
        return _POLICIES[self]

    @property
    def default_port(self) -> int:
        """Return the default base port for this type."""
        return self.policy.default_port

    @property
    def label(self) -> str:
        """Return the human-readable name."""
        return self.policy.label

    @classmethod
    def parse(cls, value: object) -> DatabaseType:
        """Parse *value* (enum member, value or label) into a :class:`DatabaseType`."""
        if isinstance(value, DatabaseType):
            return value
        text = str(value).strip().lower()
        for member in cls:
            if text in (member.value, member.label.lower(), member.policy.image_token):
                return member
        allowed = ", ".join(member.value for member in cls)
        raise ValidationError(f"Unsupported database type '{value}'. Allowed: {allowed}.")


_POLICIES: dict[DatabaseType, EnginePolicy] = {
    DatabaseType.POSTGRESQL: EnginePolicy(
        default_port=5432,
        volume_path="/var/lib/postgresql/data",
        image_token="postgres",
        default_image="postgres",
        password_env="POSTGRES_PASSWORD",
        label="PostgreSQL",
    ),
    DatabaseType.REDIS: EnginePolicy(
        default_port=6379,
        volume_path="/data",
        image_token="redis",
        default_image="redis",
        label="Redis",
    ),
    DatabaseType.MYSQL: EnginePolicy(
        default_port=3306,
        volume_path="/var/lib/mysql",
        image_token="mysql",
        default_image="mysql",
        password_env="MYSQL_ROOT_PASSWORD",
        label="MySQL",
    ),
    DatabaseType.MONGODB: EnginePolicy(
        default_port=27017,
        volume_path="/data/db",
        image_token="mongo",
        default_image="mongo",
        password_env="MONGO_INITDB_ROOT_PASSWORD",
        extra_env=(("MONGO_INITDB_ROOT_USERNAME", "root"),),
        label="MongoDB",
    ),
}


class InstanceStatus(str, Enum):
    """Canonical instance status."""

    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    CREATING = "creating"


def container_name_for(name: str, prefix: str = "ldb-") -> str:
    """Return the engine-facing container name derived from a display *name*."""
    return f"{prefix}{name.replace(' ', '-').lower()}"


def new_instance_id() -> str:
    """Return a fresh, engine-independent instance identifier."""
    return str(uuid.uuid4())


@dataclass(slots=True)
class Instance:
    """A logical single-container database deployment."""

    id: str
    name: str
    database_type: DatabaseType
    image: str
    tag: str
    port: int
    root_password: str = ""
    status: InstanceStatus = InstanceStatus.STOPPED
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    volume_path: str | None = None
    container_id: str | None = None
    container_name: str | None = None

    @property
    def image_ref(self) -> str:
        """Return ``image:tag``."""
        return f"{self.image}:{self.tag}"

    def with_status(self, status: InstanceStatus) -> Instance:
        """Return a copy of the instance carrying *status*."""
        return replace(self, status=status)

    def to_dict(self) -> dict[str, Any]:
        """Return a serialisable representation."""
        payload: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "database_type": self.database_type.value,
            "image": self.image,
            "tag": self.tag,
            "port": self.port,
            "root_password": self.root_password,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
        }
        if self.volume_path is not None:
            payload["volume_path"] = self.volume_path
        if self.container_id is not None:
            payload["container_id"] = self.container_id
        if self.container_name is not None:
            payload["container_name"] = self.container_name
        return payload

    def to_public_dict(self) -> dict[str, Any]:
        """Return :meth:`to_dict` with the root password masked."""
        payload = self.to_dict()
        if payload.get("root_password"):
            payload["root_password"] = "********"
        return payload

    @classmethod
    def from_dict(cls, raw: Mapping[str, object]) -> Instance:
        """Build an instance from a stored mapping."""
        if not isinstance(raw, Mapping):
            raise StoreError("Instance entry must be a mapping.")
        identifier = str(raw.get("id") or "").strip()
        if not identifier:
            raise StoreError("Instance entry missing 'id'.")
        try:
            database_type = DatabaseType.parse(raw.get("database_type", DatabaseType.POSTGRESQL))
            status = InstanceStatus(str(raw.get("status", InstanceStatus.STOPPED.value)))
            port = int(str(raw.get("port", 0)))
        except (ValidationError, ValueError) as exc:
            raise StoreError(f"Instance entry '{identifier}' is invalid: {exc}") from exc

        volume_raw = raw.get("volume_path")
        container_id = raw.get("container_id")
        container_name = raw.get("container_name")
        return cls(
            id=identifier,
            name=str(raw.get("name", "")),
            database_type=database_type,
            image=str(raw.get("image", "")),
            tag=str(raw.get("tag", DEFAULT_TAG)),
            port=port,
            root_password=str(raw.get("root_password") or ""),
            status=status,
            created_at=_parse_timestamp(raw.get("created_at"), identifier),
            volume_path=str(volume_raw) if volume_raw else None,
            container_id=str(container_id) if container_id else None,
            container_name=str(container_name) if container_name else None,
        )


def _parse_timestamp(value: object, identifier: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise StoreError(
                f"Instance entry '{identifier}' has an invalid created_at: {value!r}"
            ) from exc
    else:
        raise StoreError(f"Instance entry '{identifier}' missing 'created_at'.")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(frozen=True)
class CreateInstanceRequest:
    """Caller-supplied definition of a new instance."""

    name: str
    database_type: DatabaseType
    password: str
    image: str | None = None
    tag: str = DEFAULT_TAG
    port: int | None = None

    @property
    def resolved_image(self) -> str:
        """Return the requested image, falling back to the type's default."""
        return self.image or self.database_type.policy.default_image

    @property
    def image_ref(self) -> str:
        """Return ``image:tag`` for the request."""
        return f"{self.resolved_image}:{self.tag or DEFAULT_TAG}"


@dataclass(frozen=True)
class ListingEntry:
    """One result from a listing: either a reconciled record or a per-item failure."""

    kind: Literal["ok", "failed"]
    instance: Instance | None = None
    container_id: str | None = None
    reason: str | None = None

    @classmethod
    def ok(cls, instance: Instance) -> ListingEntry:
        """Wrap a successfully reconciled *instance*."""
        return cls(kind="ok", instance=instance, container_id=instance.container_id)

    @classmethod
    def failed(cls, container_id: str, reason: str) -> ListingEntry:
        """Record that *container_id* could not be inspected or reconciled."""
        return cls(kind="failed", container_id=container_id, reason=reason)

    @property
    def is_ok(self) -> bool:
        """Return ``True`` for successful entries."""
        return self.kind == "ok"


__all__ = [
    "CreateInstanceRequest",
    "DEFAULT_TAG",
    "DatabaseType",
    "EnginePolicy",
    "Instance",
    "InstanceStatus",
    "ListingEntry",
    "container_name_for",
    "new_instance_id",
]
