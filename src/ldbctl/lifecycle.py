"""Instance lifecycle orchestration.

:class:`LifecycleManager` composes the engine client, the metadata store, the
port allocator and the provisioning translator. Every engine-facing operation
is a coroutine; independent instances may be driven concurrently with
``asyncio.gather``.

Engine references accepted by the operations are the instance id, the full
or short container id, or the container name. The store correlates records
by the container id captured at creation and falls back to the derived
container name for records that predate it.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from .connections import connection_string as build_connection_string
from .errors import (
    ContainerNotFoundError,
    DuplicateInstanceError,
    InstanceNotFoundError,
    LdbError,
    ValidationError,
)
from .models import (
    CreateInstanceRequest,
    Instance,
    InstanceStatus,
    ListingEntry,
    container_name_for,
    new_instance_id,
)
from .ports import PortAllocator
from .provisioning import build_provisioning
from .providers.docker import LogEvent, PullProgress
from .reconcile import coarse_status, merge, observe
from .state import InstanceStore

LOGGER = logging.getLogger(__name__)


class EngineClient(Protocol):
    """Container engine operations used by the lifecycle manager."""

    async def create_container(
        self,
        *,
        name: str,
        image: str,
        env: Sequence[str],
        command: Sequence[str] | None,
        port_bindings: Mapping[str, tuple[str, int]],
        volume_binds: Mapping[str, Mapping[str, str]],
    ) -> str: ...

    async def start_container(self, ref: str) -> None: ...

    async def stop_container(self, ref: str, grace_seconds: int) -> None: ...

    async def restart_container(self, ref: str, grace_seconds: int) -> None: ...

    async def remove_container(self, ref: str, *, force: bool = True) -> None: ...

    async def inspect_container(self, ref: str) -> dict[str, Any]: ...

    async def list_containers(self, *, all: bool = False) -> list[dict[str, Any]]: ...  # noqa: A002

    async def pull_image(
        self, image: str, on_progress: Callable[[PullProgress], None] | None = None
    ) -> None: ...

    def stream_logs(
        self, ref: str, *, tail: int | None = 100, follow: bool = True
    ) -> AsyncIterator[LogEvent]: ...


@dataclass(frozen=True)
class LifecycleSettings:
    """Timing and naming knobs for lifecycle operations."""

    prefix: str = "ldb-"
    stop_timeout: int = 10
    restart_settle: float = 1.0


class LifecycleManager:
    """Create, drive and remove database instances."""

    def __init__(
        self,
        engine: EngineClient,
        store: InstanceStore,
        *,
        allocator: PortAllocator | None = None,
        settings: LifecycleSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Bind the manager to one long-lived *engine* client and *store*."""
        self.engine = engine
        self.store = store
        self.allocator = allocator or PortAllocator(engine)
        self.settings = settings or LifecycleSettings()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    async def create(self, request: CreateInstanceRequest) -> Instance:
        """Provision a new, stopped instance for *request*.

        The image must already be present locally; creation never pulls.
        """
        name = request.name.strip()
        if not name:
            raise ValidationError("Instance name must be a non-empty string.")
        if not request.password:
            raise ValidationError("Root password must be a non-empty string.")
        tag = (request.tag or "").strip()
        if not tag:
            raise ValidationError("Image tag must be a non-empty string.")

        container_name = container_name_for(name, self.settings.prefix)
        for existing in self.store.load():
            existing_name = existing.container_name or container_name_for(
                existing.name, self.settings.prefix
            )
            if existing_name == container_name:
                raise DuplicateInstanceError(
                    f"An instance named '{existing.name}' already uses container {container_name}."
                )

        port = await self.allocator.allocate(request.database_type, preferred=request.port)
        instance_id = new_instance_id()
        volume = self.store.volume_path_for(instance_id)
        spec = build_provisioning(request.database_type, request.password, port, str(volume))
        image = request.resolved_image

        LOGGER.info(
            "Creating %s container %s on port %d",
            request.database_type.label,
            container_name,
            port,
        )
        try:
            container_id = await self.engine.create_container(
                name=container_name,
                image=f"{image}:{tag}",
                env=spec.env,
                command=spec.command,
                port_bindings=spec.port_bindings,
                volume_binds=spec.volume_binds,
            )
        except Exception:
            self._discard_volume(volume)
            raise

        instance = Instance(
            id=instance_id,
            name=name,
            database_type=request.database_type,
            image=image,
            tag=tag,
            port=port,
            root_password=request.password,
            status=InstanceStatus.STOPPED,
            volume_path=str(volume),
            container_id=container_id,
            container_name=container_name,
        )
        try:
            self.store.add(instance)
        except LdbError:
            LOGGER.error(
                "Failed to record instance %s; removing container %s", instance_id, container_id
            )
            try:
                await self.engine.remove_container(container_id, force=True)
            except LdbError as cleanup_exc:
                LOGGER.error("Failed to remove container %s: %s", container_id, cleanup_exc)
            finally:
                self._discard_volume(volume)
            raise
        return instance

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------
    async def start(self, ref: str) -> Instance:
        """Start the instance and return its reconciled record."""
        record = self._lookup(ref)
        engine_ref = _engine_ref(ref, record)
        await self.engine.start_container(engine_ref)
        return await self._reconcile(engine_ref, record)

    async def stop(self, ref: str) -> Instance:
        """Stop the instance; the returned record is always ``stopped``."""
        record = self._lookup(ref)
        engine_ref = _engine_ref(ref, record)
        await self.engine.stop_container(engine_ref, self.settings.stop_timeout)
        return await self._reconcile(
            engine_ref, record, status_override=InstanceStatus.STOPPED
        )

    async def restart(self, ref: str) -> Instance:
        """Restart the instance, wait for it to settle and reconcile."""
        record = self._lookup(ref)
        engine_ref = _engine_ref(ref, record)
        await self.engine.restart_container(engine_ref, self.settings.stop_timeout)
        await self._sleep(self.settings.restart_settle)
        return await self._reconcile(engine_ref, record)

    async def delete(self, ref: str, *, delete_volume: bool = False) -> Instance | None:
        """Remove the container and its store record.

        Returns the removed store record, or ``None`` when the container was
        not tracked. Store and volume cleanup failures are logged, not raised.
        """
        record = self._lookup(ref)
        engine_ref = _engine_ref(ref, record)
        if record is None:
            payload = await self.engine.inspect_container(ref)
            record = self._match_container_name(str(payload.get("Name") or ""))

        try:
            await self.engine.remove_container(engine_ref, force=True)
        except ContainerNotFoundError:
            if record is None:
                raise
            LOGGER.warning("Container %s already gone; removing stored record only", engine_ref)

        if record is not None:
            try:
                self.store.remove(record.id)
            except LdbError as exc:
                LOGGER.warning("Failed to remove instance %s from the store: %s", record.id, exc)

        if delete_volume:
            if record is None:
                LOGGER.warning("No stored record for %s; volume left in place", ref)
            else:
                volume = (
                    Path(record.volume_path)
                    if record.volume_path
                    else self.store.volume_path_for(record.id, create=False)
                )
                self._discard_volume(volume)
        return record

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def list(self) -> list[ListingEntry]:
        """Return one entry per managed container, failures included."""
        containers = await self.engine.list_containers(all=True)
        managed = [item for item in containers if self._is_managed(item)]
        return list(await asyncio.gather(*(self._list_entry(item) for item in managed)))

    async def status(self, ref: str) -> str:
        """Return the coarse engine status label for *ref*."""
        engine_ref = _engine_ref(ref, self._lookup(ref))
        payload = await self.engine.inspect_container(engine_ref)
        return coarse_status(observe(payload).state)

    async def get(self, ref: str) -> Instance:
        """Return the reconciled record for *ref* without changing state."""
        record = self._lookup(ref)
        return await self._reconcile(_engine_ref(ref, record), record)

    def connection_string(self, instance_id: str) -> str:
        """Return the client URI for the stored instance *instance_id*."""
        record = self.store.get(instance_id) or self.store.find_by_container(instance_id)
        if record is None:
            raise InstanceNotFoundError(f"Instance not found: {instance_id}")
        return build_connection_string(record)

    def logs(
        self, ref: str, *, tail: int | None = 100, follow: bool = True
    ) -> AsyncIterator[LogEvent]:
        """Return the log event stream for *ref*."""
        engine_ref = _engine_ref(ref, self._lookup(ref))
        return self.engine.stream_logs(engine_ref, tail=tail, follow=follow)

    async def pull_image(
        self, image: str, on_progress: Callable[[PullProgress], None] | None = None
    ) -> None:
        """Pull *image* ahead of :meth:`create`."""
        await self.engine.pull_image(image, on_progress)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _list_entry(self, summary: Mapping[str, Any]) -> ListingEntry:
        container_id = str(summary.get("Id") or "")
        try:
            instance = await self._reconcile(container_id, None)
        except LdbError as exc:
            LOGGER.warning("Could not reconcile container %s: %s", container_id[:12], exc)
            return ListingEntry.failed(container_id, str(exc))
        return ListingEntry.ok(instance)

    async def _reconcile(
        self,
        engine_ref: str,
        record: Instance | None,
        *,
        status_override: InstanceStatus | None = None,
    ) -> Instance:
        payload = await self.engine.inspect_container(engine_ref)
        observation = observe(payload)
        if record is None:
            record = self._enrichment(observation.container_id, observation.container_name)
        return merge(
            observation,
            record,
            prefix=self.settings.prefix,
            status_override=status_override,
        )

    def _enrichment(self, container_id: str, container_name: str) -> Instance | None:
        try:
            if container_id:
                record = self.store.find_by_container(container_id)
                if record is not None:
                    return record
            return self._match_container_name(container_name)
        except LdbError as exc:
            LOGGER.warning("Store lookup failed for %s: %s", container_name or container_id, exc)
            return None

    def _match_container_name(self, container_name: str) -> Instance | None:
        target = container_name.strip().lstrip("/")
        if not target:
            return None
        for instance in self.store.load():
            stored = instance.container_name or container_name_for(
                instance.name, self.settings.prefix
            )
            if stored == target:
                return instance
        return None

    def _lookup(self, ref: str) -> Instance | None:
        try:
            return self.store.get(ref) or self.store.find_by_container(ref)
        except LdbError as exc:
            LOGGER.warning("Store lookup failed for %s: %s", ref, exc)
            return None

    def _is_managed(self, summary: Mapping[str, Any]) -> bool:
        names = summary.get("Names") or []
        return any(str(name).lstrip("/").startswith(self.settings.prefix) for name in names)

    def _discard_volume(self, volume: Path) -> None:
        try:
            self.store.remove_volume(volume)
        except LdbError as exc:
            LOGGER.warning("Failed to remove volume %s: %s", volume, exc)


def _engine_ref(ref: str, record: Instance | None) -> str:
    if record is None:
        return ref
    return record.container_id or record.container_name or ref


__all__ = ["EngineClient", "LifecycleManager", "LifecycleSettings"]
