"""Enumerations for CLI exit codes and the error-to-code mapping."""
from __future__ import annotations

from enum import IntEnum

from .config import ConfigError
from .errors import (
    CatalogError,
    DuplicateInstanceError,
    EngineUnavailableError,
    InstanceNotFoundError,
    NoPortsAvailableError,
    PortConflictError,
    ValidationError,
)
from .locking import LockTimeoutError


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4


_VALIDATION_ERRORS = (
    DuplicateInstanceError,
    InstanceNotFoundError,
    NoPortsAvailableError,
    PortConflictError,
    ValidationError,
    ConfigError,
)
_ENVIRONMENT_ERRORS = (EngineUnavailableError, CatalogError, LockTimeoutError)


def exit_code_for(exc: BaseException) -> ExitCode:
    """Return the exit code a command should use when *exc* aborts it."""
    if isinstance(exc, _VALIDATION_ERRORS):
        return ExitCode.VALIDATION
    if isinstance(exc, _ENVIRONMENT_ERRORS):
        return ExitCode.ENVIRONMENT
    return ExitCode.PROVIDER


__all__ = ["ExitCode", "exit_code_for"]
