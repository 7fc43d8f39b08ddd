"""Durable instance metadata store.

The store file (``~/.ldb-engine/instances.yml`` by default) is the only
durable record of what the engine forgets: the root password, the assigned
volume path and the logical instance name. It holds a single YAML document::

    instances:
      - id: 6f0c...
        name: My DB
        database_type: postgresql
        ...

Writes replace the whole file atomically. Every read-modify-write cycle runs
under the store lock so concurrent ``ldbctl`` processes cannot lose each
other's updates.
"""
from __future__ import annotations

import os
import shutil
import tempfile
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover
    raise RuntimeError(
        "PyYAML is required to manage ldbctl state. Install with `pip install ldbctl`."
    ) from exc

from ..errors import InstanceNotFoundError, StoreError
from ..locking import LockManager
from ..models import Instance


class InstanceStore:
    """Load, persist and query :class:`~ldbctl.models.Instance` records."""

    def __init__(
        self,
        path: Path,
        volumes_dir: Path,
        *,
        locks: LockManager | None = None,
    ) -> None:
        """Bind the store to *path*; volumes live under *volumes_dir*."""
        self.path = Path(path).expanduser()
        self.volumes_dir = Path(volumes_dir).expanduser()
        self.locks = locks or LockManager(self.path.parent / "run")

    # ------------------------------------------------------------------
    # Whole-file access
    # ------------------------------------------------------------------
    def load(self) -> list[Instance]:
        """Return every stored instance (empty on first run)."""
        if not self.path.exists():
            return []
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StoreError(f"Failed to parse store file {self.path}: {exc}") from exc
        except OSError as exc:
            raise StoreError(f"Failed to read store file {self.path}: {exc}") from exc
        if data is None:
            return []
        if not isinstance(data, Mapping):
            raise StoreError(f"Store file {self.path} must contain a mapping at the top level.")
        raw_instances = data.get("instances") or []
        if not isinstance(raw_instances, list):
            raise StoreError(f"Store file {self.path} 'instances' must be a list.")
        return [Instance.from_dict(entry) for entry in raw_instances]

    def save(self, instances: Sequence[Instance]) -> None:
        """Replace the store contents with *instances*."""
        with self._mutation():
            self._write(instances)

    # ------------------------------------------------------------------
    # Record helpers
    # ------------------------------------------------------------------
    def get(self, instance_id: str) -> Instance | None:
        """Return the instance with *instance_id*, if stored."""
        for instance in self.load():
            if instance.id == instance_id:
                return instance
        return None

    def add(self, instance: Instance) -> None:
        """Append *instance* to the store."""
        with self._mutation():
            instances = self.load()
            if any(existing.id == instance.id for existing in instances):
                raise StoreError(f"Instance '{instance.id}' already exists in the store.")
            instances.append(instance)
            self._write(instances)

    def update(self, instance: Instance) -> None:
        """Replace the stored record sharing *instance*'s identifier."""
        with self._mutation():
            instances = self.load()
            for index, existing in enumerate(instances):
                if existing.id == instance.id:
                    instances[index] = instance
                    break
            else:
                raise InstanceNotFoundError(f"Instance not found: {instance.id}")
            self._write(instances)

    def remove(self, instance_id: str) -> Instance:
        """Remove and return the instance with *instance_id*."""
        with self._mutation():
            instances = self.load()
            remaining = [entry for entry in instances if entry.id != instance_id]
            if len(remaining) == len(instances):
                raise InstanceNotFoundError(f"Instance not found: {instance_id}")
            removed = next(entry for entry in instances if entry.id == instance_id)
            self._write(remaining)
        return removed

    def find_by_container(self, ref: str) -> Instance | None:
        """Return the instance correlated with engine reference *ref*.

        *ref* may be the full container id, a short id prefix (12+ chars) or
        the container name (with or without the leading ``/``).
        """
        candidate = ref.strip().lstrip("/")
        if not candidate:
            return None
        for instance in self.load():
            if instance.container_id and (
                instance.container_id == candidate
                or (len(candidate) >= 12 and instance.container_id.startswith(candidate))
            ):
                return instance
        for instance in self.load():
            if instance.container_name and instance.container_name == candidate:
                return instance
        return None

    def find_by_container_name(self, container_name: str) -> Instance | None:
        """Return the first instance whose stored container name is *container_name*."""
        target = container_name.strip().lstrip("/")
        for instance in self.load():
            if instance.container_name == target:
                return instance
        return None

    # ------------------------------------------------------------------
    # Volume helpers
    # ------------------------------------------------------------------
    def volume_path_for(self, instance_id: str, *, create: bool = True) -> Path:
        """Return the volume directory for *instance_id*, creating it by default."""
        path = self.volumes_dir / instance_id
        if create:
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise StoreError(f"Failed to create volume directory {path}: {exc}") from exc
        return path

    def remove_volume(self, path: Path) -> bool:
        """Delete the volume directory at *path*; return ``False`` when absent."""
        target = Path(path).expanduser()
        if not target.exists():
            return False
        try:
            shutil.rmtree(target)
        except OSError as exc:
            raise StoreError(f"Failed to remove volume directory {target}: {exc}") from exc
        return True

    # ------------------------------------------------------------------
    @contextmanager
    def _mutation(self) -> Iterator[None]:
        with self.locks.store_lock():
            yield

    def _write(self, instances: Sequence[Instance]) -> None:
        payload = {"instances": [instance.to_dict() for instance in instances]}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent),
                prefix=f".{self.path.name}.",
            )
        except OSError as exc:
            raise StoreError(f"Failed to prepare store file {self.path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, self.path)
            os.chmod(self.path, 0o600)
        finally:
            tmp_path.unlink(missing_ok=True)


__all__ = ["InstanceStore"]
