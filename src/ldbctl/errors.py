"""Error taxonomy shared by the lifecycle core.

Every failure surfaced to callers derives from :class:`LdbError` so the CLI can
map it to an exit code in one place. Messages are plain, descriptive strings
meant to be shown to the user verbatim.
"""
from __future__ import annotations


class LdbError(RuntimeError):
    """Base class for ldbctl failures."""


class EngineUnavailableError(LdbError):
    """Raised when the container engine daemon cannot be reached."""


class InstanceNotFoundError(LdbError):
    """Raised when a store lookup misses."""


class ContainerNotFoundError(InstanceNotFoundError):
    """Raised when the engine has no container for the given reference."""


class PortConflictError(LdbError):
    """Raised when a requested port is already published by a running container."""

    def __init__(self, port: int, message: str | None = None, *, retryable: bool = False) -> None:
        """Record the conflicting *port* and whether a retry may succeed."""
        super().__init__(message or f"Port {port} is already in use.")
        self.port = port
        self.retryable = retryable


class NoPortsAvailableError(LdbError):
    """Raised when the whole port range above the base port is occupied."""


class EngineError(LdbError):
    """Raised when the engine rejects a request."""


class ProvisioningFailedError(EngineError):
    """Raised when the engine rejects container creation parameters."""


class PartialStateError(LdbError):
    """Raised when an inspect payload lacks the config or state block."""


class DuplicateInstanceError(LdbError):
    """Raised when a new instance would reuse an existing container name."""


class ValidationError(LdbError):
    """Raised when caller-supplied values are malformed."""


class StoreError(LdbError):
    """Raised when the metadata store cannot be read or written."""


class CatalogError(LdbError):
    """Raised when the remote tag catalogue request fails."""


__all__ = [
    "CatalogError",
    "ContainerNotFoundError",
    "DuplicateInstanceError",
    "EngineError",
    "EngineUnavailableError",
    "InstanceNotFoundError",
    "LdbError",
    "NoPortsAvailableError",
    "PartialStateError",
    "PortConflictError",
    "ProvisioningFailedError",
    "StoreError",
    "ValidationError",
]
