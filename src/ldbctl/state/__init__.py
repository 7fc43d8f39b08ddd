"""Metadata store helpers."""
from __future__ import annotations

from .registry import InstanceStore

__all__ = ["InstanceStore"]
