"""Remote tag catalogue (Docker Hub) client."""
from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import requests
from packaging.version import InvalidVersion, Version

from ..errors import CatalogError

LOGGER = logging.getLogger(__name__)

DEFAULT_API_URL = "https://hub.docker.com/v2"

SUPPORTED_IMAGES: tuple[tuple[str, str], ...] = (
    ("postgres", "library/postgres"),
    ("redis", "library/redis"),
    ("mysql", "library/mysql"),
    ("mongo", "library/mongo"),
)

_VERSION_PREFIX = re.compile(r"^v?(\d+(?:\.\d+)*)(.*)$")


@dataclass(frozen=True)
class TagGroups:
    """Tags grouped for display."""

    latest: list[str] = field(default_factory=list)
    stable: list[str] = field(default_factory=list)
    variants: list[str] = field(default_factory=list)
    other: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[str]]:
        """Return a serialisable representation."""
        return {
            "latest": list(self.latest),
            "stable": list(self.stable),
            "variants": list(self.variants),
            "other": list(self.other),
        }


class HubClient:
    """Fetch image tags from the remote catalogue, following pagination."""

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        *,
        page_size: int = 20,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        """Point the client at *api_url*; a shared *session* may be injected."""
        self.api_url = api_url.rstrip("/")
        self.page_size = page_size
        self.timeout = timeout
        self.session = session or requests.Session()

    def get_page(self, repository: str, page: int = 1) -> dict[str, Any]:
        """Return one page of the tag listing for *repository*."""
        url = f"{self.api_url}/repositories/{repository}/tags"
        try:
            response = self.session.get(
                url,
                params={"page": page, "page_size": self.page_size},
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise CatalogError(f"Failed to fetch tags: {exc}") from exc
        if not response.ok:
            raise CatalogError(f"Docker Hub API error: {response.status_code} {response.reason}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise CatalogError(f"Failed to parse tags: {exc}") from exc
        if not isinstance(payload, Mapping):
            raise CatalogError("Failed to parse tags: response is not an object.")
        return dict(payload)

    def list_tags(self, image: str) -> list[str]:
        """Return every tag name for *image* (``postgres`` or ``library/postgres``)."""
        repository = hub_repository(image)
        tags: list[str] = []
        page = 1
        while True:
            payload = self.get_page(repository, page)
            for entry in payload.get("results") or []:
                if isinstance(entry, Mapping) and entry.get("name"):
                    tags.append(str(entry["name"]))
            if not payload.get("next"):
                break
            page += 1
        LOGGER.debug("Fetched %d tags for %s over %d page(s)", len(tags), repository, page)
        return tags


def hub_repository(image: str) -> str:
    """Return the ``namespace/image`` form used by the catalogue API."""
    name = image.strip()
    for short, full in SUPPORTED_IMAGES:
        if name == short:
            return full
    if "/" not in name:
        return f"library/{name}"
    return name


def categorize_tags(tags: Iterable[str]) -> TagGroups:
    """Group *tags* into latest, stable versions, suffixed variants and other.

    Version groups are ordered newest first.
    """
    groups = TagGroups()
    stable: list[tuple[Version, str]] = []
    variants: list[tuple[Version, str]] = []
    for tag in dict.fromkeys(tags):
        if tag == "latest":
            groups.latest.append(tag)
            continue
        match = _VERSION_PREFIX.match(tag)
        version = _parse_version(match.group(1)) if match else None
        if match is None or version is None:
            groups.other.append(tag)
        elif match.group(2):
            variants.append((version, tag))
        else:
            stable.append((version, tag))

    for bucket in (stable, variants):
        bucket.sort(key=lambda item: item[1])
        bucket.sort(key=lambda item: item[0], reverse=True)
    groups.stable.extend(tag for _, tag in stable)
    groups.variants.extend(tag for _, tag in variants)
    groups.other.sort()
    return groups


def _parse_version(text: str) -> Version | None:
    try:
        return Version(text)
    except InvalidVersion:
        return None


__all__ = [
    "DEFAULT_API_URL",
    "HubClient",
    "SUPPORTED_IMAGES",
    "TagGroups",
    "categorize_tags",
    "hub_repository",
]
