"""Merge engine-observed container state with store-retained instance fields.

Two sources of truth meet here. The engine is authoritative for runtime
facts (running state, published port, image, container identity); the store
is authoritative for what the engine cannot return (logical name, root
password, volume path, database type tag, instance identifier).

Field precedence applied by :func:`merge`:

============== ===================== ==========================
Field          Store record present  No store record
============== ===================== ==========================
id             store                 engine container id
name           store                 container name minus prefix
database_type  store                 inferred from image
image / tag    engine                engine
port           engine (if non-zero)  engine
status         engine-derived        engine-derived
created_at     store                 engine
volume_path    store                 ``None``
root_password  store                 ``""``
============== ===================== ==========================
"""
from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

from .errors import PartialStateError
from .models import DEFAULT_TAG, DatabaseType, Instance, InstanceStatus

LOGGER = logging.getLogger(__name__)

_TYPE_TOKENS: tuple[tuple[str, DatabaseType], ...] = tuple(
    (member.policy.image_token, member) for member in DatabaseType
)
_FRACTION = re.compile(r"\.(\d+)")


@dataclass(frozen=True)
class EngineState:
    """Runtime flags reported by the engine for one container."""

    running: bool = False
    paused: bool = False
    restarting: bool = False
    removing: bool = False
    exited: bool = False
    dead: bool = False
    error: str = ""
    status: str = ""

    @classmethod
    def from_payload(cls, raw: Mapping[str, object]) -> EngineState:
        """Build from the ``State`` block of an inspect payload."""
        status = str(raw.get("Status") or "")
        return cls(
            running=bool(raw.get("Running")),
            paused=bool(raw.get("Paused")),
            restarting=bool(raw.get("Restarting")),
            removing=bool(raw.get("Removing")) or status == "removing",
            exited=status == "exited",
            dead=bool(raw.get("Dead")),
            error=str(raw.get("Error") or ""),
            status=status,
        )


@dataclass(frozen=True)
class EngineObservation:
    """Fields of one container as observed through the engine."""

    container_id: str
    container_name: str
    image: str
    state: EngineState
    port: int
    created_at: datetime | None


def derive_status(state: EngineState) -> InstanceStatus:
    """Return the canonical status for *state*.

    Precedence: running, paused, restarting, error, otherwise stopped.
    """
    if state.running:
        return InstanceStatus.RUNNING
    if state.paused:
        return InstanceStatus.STOPPED
    if state.restarting:
        return InstanceStatus.CREATING
    if state.error:
        return InstanceStatus.ERROR
    return InstanceStatus.STOPPED


def coarse_status(state: EngineState) -> str:
    """Return the engine-level status label without consulting the store."""
    if state.running:
        return "running"
    if state.paused:
        return "paused"
    if state.restarting:
        return "restarting"
    if state.removing:
        return "removing"
    if state.exited:
        return "exited"
    if state.dead:
        return "dead"
    return "created"


def infer_database_type(image: str) -> DatabaseType:
    """Guess the database type from an image reference (PostgreSQL when unknown)."""
    for token, member in _TYPE_TOKENS:
        if token in image:
            return member
    return DatabaseType.POSTGRESQL


def split_image(image: str) -> tuple[str, str]:
    """Split ``repo[:tag]`` into ``(repo, tag)``; registry ports are not tags."""
    without_digest = image.split("@", 1)[0]
    slash = without_digest.rfind("/")
    colon = without_digest.rfind(":")
    if colon > slash:
        return without_digest[:colon], without_digest[colon + 1 :] or DEFAULT_TAG
    return without_digest, DEFAULT_TAG


def parse_engine_timestamp(value: object) -> datetime | None:
    """Parse an RFC 3339 engine timestamp (nanosecond precision tolerated)."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip().replace("Z", "+00:00")
    text = _FRACTION.sub(lambda match: "." + match.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        LOGGER.debug("Unparseable engine timestamp %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def published_port(payload: Mapping[str, object]) -> int:
    """Return the first host port bound for the container, or ``0``."""
    network = payload.get("NetworkSettings")
    ports = network.get("Ports") if isinstance(network, Mapping) else None
    port = _first_host_port(ports)
    if port:
        return port
    # Stopped containers publish nothing; fall back to the requested bindings.
    host_config = payload.get("HostConfig")
    bindings = host_config.get("PortBindings") if isinstance(host_config, Mapping) else None
    return _first_host_port(bindings)


def _first_host_port(mapping: object) -> int:
    if not isinstance(mapping, Mapping):
        return 0
    for bindings in mapping.values():
        if not isinstance(bindings, list):
            continue
        for binding in bindings:
            if not isinstance(binding, Mapping):
                continue
            try:
                port = int(str(binding.get("HostPort") or ""))
            except ValueError:
                continue
            if port:
                return port
    return 0


def observe(payload: Mapping[str, object]) -> EngineObservation:
    """Parse a container inspect *payload*.

    Raises :class:`PartialStateError` when the config or state block is absent.
    """
    container_id = str(payload.get("Id") or "")
    config = payload.get("Config")
    if not isinstance(config, Mapping):
        raise PartialStateError(f"Container {container_id or '?'} inspect returned no config.")
    state = payload.get("State")
    if not isinstance(state, Mapping):
        raise PartialStateError(f"Container {container_id or '?'} inspect returned no state.")
    return EngineObservation(
        container_id=container_id,
        container_name=str(payload.get("Name") or "").lstrip("/"),
        image=str(config.get("Image") or ""),
        state=EngineState.from_payload(state),
        port=published_port(payload),
        created_at=parse_engine_timestamp(payload.get("Created")),
    )


def merge(
    observation: EngineObservation,
    record: Instance | None,
    *,
    prefix: str = "ldb-",
    status_override: InstanceStatus | None = None,
) -> Instance:
    """Return one total record from *observation* and the optional store *record*."""
    repository, tag = split_image(observation.image)
    status = status_override or derive_status(observation.state)

    if record is None:
        name = observation.container_name
        if name.startswith(prefix):
            name = name[len(prefix) :]
        return Instance(
            id=observation.container_id,
            name=name,
            database_type=infer_database_type(observation.image),
            image=repository,
            tag=tag,
            port=observation.port,
            root_password="",
            status=status,
            created_at=observation.created_at or datetime.now(UTC),
            volume_path=None,
            container_id=observation.container_id or None,
            container_name=observation.container_name or None,
        )

    return Instance(
        id=record.id,
        name=record.name,
        database_type=record.database_type,
        image=repository or record.image,
        tag=tag if repository else record.tag,
        port=observation.port or record.port,
        root_password=record.root_password,
        status=status,
        created_at=record.created_at,
        volume_path=record.volume_path,
        container_id=observation.container_id or record.container_id,
        container_name=observation.container_name or record.container_name,
    )


__all__ = [
    "EngineObservation",
    "EngineState",
    "coarse_status",
    "derive_status",
    "infer_database_type",
    "merge",
    "observe",
    "parse_engine_timestamp",
    "published_port",
    "split_image",
]
