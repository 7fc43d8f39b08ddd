"""Configuration loader for ldbctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``~/.ldb-engine/config.yml`` (or an override path).
3. Environment variables prefixed with ``LDBCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export LDBCTL_ENGINE__STOP_TIMEOUT=5
    export LDBCTL_PORTS__BASES__POSTGRESQL=15432

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover
    raise RuntimeError(
        "PyYAML is required to load ldbctl configuration. Install with "
        "`pip install ldbctl` or ensure PyYAML>=6.0 is available."
    ) from exc

from .errors import ValidationError
from .models import DatabaseType

ENV_PREFIX = "LDBCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class EngineConfig:
    """Container engine connection and timing settings."""

    base_url: str | None = None
    timeout: float | None = None
    stop_timeout: int = 10
    restart_settle: float = 1.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "base_url": self.base_url,
            "timeout": self.timeout,
            "stop_timeout": self.stop_timeout,
            "restart_settle": self.restart_settle,
        }


@dataclass(frozen=True)
class PortsConfig:
    """Per-type base port overrides."""

    bases: Mapping[DatabaseType, int] = field(default_factory=dict)

    def base_for(self, database_type: DatabaseType) -> int:
        """Return the base port for *database_type*."""
        return self.bases.get(database_type, database_type.default_port)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"bases": {member.value: self.base_for(member) for member in DatabaseType}}


@dataclass(frozen=True)
class HubConfig:
    """Remote tag catalogue settings."""

    api_url: str = "https://hub.docker.com/v2"
    page_size: int = 20
    timeout: float = 10.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"api_url": self.api_url, "page_size": self.page_size, "timeout": self.timeout}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for ldbctl."""

    config_file: Path
    data_dir: Path
    store_file: Path
    volumes_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    prefix: str
    logs_tail: int
    engine: EngineConfig
    ports: PortsConfig
    hub: HubConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "data_dir": str(self.data_dir),
            "store_file": str(self.store_file),
            "volumes_dir": str(self.volumes_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "naming": {"prefix": self.prefix},
            "logs": {"tail": self.logs_tail},
            "engine": self.engine.to_dict(),
            "ports": self.ports.to_dict(),
            "hub": self.hub.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.ldb-engine/config.yml",
    "data_dir": "~/.ldb-engine",
    "store_file": None,  # derived from data_dir when absent
    "volumes_dir": None,
    "logs_dir": None,
    "runtime_dir": None,
    "lock_timeout": 30.0,
    "naming": {
        "prefix": "ldb-",
    },
    "logs": {
        "tail": 100,
    },
    "engine": {
        "base_url": None,
        "timeout": None,
        "stop_timeout": 10,
        "restart_settle": 1.0,
    },
    "ports": {
        "bases": {},
    },
    "hub": {
        "api_url": "https://hub.docker.com/v2",
        "page_size": 20,
        "timeout": 10.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "naming": {"prefix"},
    "logs": {"tail"},
    "engine": {"base_url", "timeout", "stop_timeout", "restart_settle"},
    "ports": {"bases"},
    "hub": {"api_url", "page_size", "timeout"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in _ALLOWED_SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    ports = _as_dict(raw.get("ports"), "ports")
    bases = _as_dict(ports.get("bases"), "ports.bases")
    for key in bases:
        try:
            DatabaseType.parse(key)
        except ValidationError as exc:
            raise ConfigError(f"Unknown database type in ports.bases: {key}.") from exc


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    data_dir = _to_path(raw.get("data_dir"))
    store_file = _optional_path(raw.get("store_file")) or data_dir / "instances.yml"
    volumes_dir = _optional_path(raw.get("volumes_dir")) or data_dir / "volumes"
    logs_dir = _optional_path(raw.get("logs_dir")) or data_dir / "logs"
    runtime_dir = _optional_path(raw.get("runtime_dir")) or data_dir / "run"
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    naming = _as_dict(raw.get("naming"), "naming")
    prefix = str(naming.get("prefix", "ldb-")).strip()
    if not prefix:
        raise ConfigError("naming.prefix must be a non-empty string.")

    logs = _as_dict(raw.get("logs"), "logs")
    logs_tail = _expect_int(logs.get("tail"), "logs.tail", default=100)
    if logs_tail < 0:
        raise ConfigError("logs.tail must be non-negative.")

    engine_mapping = _as_dict(raw.get("engine"), "engine")
    base_url_value = engine_mapping.get("base_url")
    timeout_value = engine_mapping.get("timeout")
    stop_timeout = _expect_int(
        engine_mapping.get("stop_timeout"), "engine.stop_timeout", default=10
    )
    if stop_timeout < 0:
        raise ConfigError("engine.stop_timeout must be non-negative.")
    restart_settle = _expect_non_negative_float(
        engine_mapping.get("restart_settle"), "engine.restart_settle", default=1.0
    )
    engine = EngineConfig(
        base_url=str(base_url_value) if base_url_value else None,
        timeout=(
            _expect_positive_float(timeout_value, "engine.timeout", default=60.0)
            if timeout_value is not None
            else None
        ),
        stop_timeout=stop_timeout,
        restart_settle=restart_settle,
    )

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    bases_mapping = _as_dict(ports_mapping.get("bases"), "ports.bases")
    bases: dict[DatabaseType, int] = {}
    for key, value in bases_mapping.items():
        port = _expect_int(value, f"ports.bases.{key}", default=0)
        if not 1 <= port <= 65535:
            raise ConfigError(f"ports.bases.{key} must be between 1 and 65535. Got {port}.")
        bases[DatabaseType.parse(key)] = port

    hub_mapping = _as_dict(raw.get("hub"), "hub")
    hub = HubConfig(
        api_url=str(hub_mapping.get("api_url", "https://hub.docker.com/v2")).rstrip("/"),
        page_size=_expect_int(hub_mapping.get("page_size"), "hub.page_size", default=20),
        timeout=_expect_positive_float(hub_mapping.get("timeout"), "hub.timeout", default=10.0),
    )

    return AppConfig(
        config_file=config_file,
        data_dir=data_dir,
        store_file=store_file,
        volumes_dir=volumes_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        prefix=prefix,
        logs_tail=logs_tail,
        engine=engine,
        ports=PortsConfig(bases=bases),
        hub=hub,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_path(value: object) -> Path | None:
    if value in (None, ""):
        return None
    return _to_path(value)


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_number(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must be non-negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "EngineConfig",
    "HubConfig",
    "PortsConfig",
    "load_config",
]
