"""Engine and catalogue providers for ldbctl."""
from __future__ import annotations

from .docker import DockerEngine, LogEvent, PullProgress
from .hub import SUPPORTED_IMAGES, HubClient, TagGroups, categorize_tags

__all__ = [
    "DockerEngine",
    "HubClient",
    "LogEvent",
    "PullProgress",
    "SUPPORTED_IMAGES",
    "TagGroups",
    "categorize_tags",
]
