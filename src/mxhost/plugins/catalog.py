"""Plugin registry document (catalog) loading.

A registry is JSON, either ``{"plugins": [...]}`` or a bare list of
manifests. Each manifest's ``entry`` is resolved relative to the registry's
own location.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urljoin, urlparse

import httpx

from mxhost.errors import PluginError
from mxhost.plugins.manifest import PluginManifest, validate_manifest

logger = logging.getLogger(__name__)


def _is_url(location: str) -> bool:
    return urlparse(location).scheme in ("http", "https", "file")


def resolve_entry(entry: str, registry_location: str) -> str:
    """Resolve a manifest entry against the registry it came from."""
    if _is_url(entry):
        return entry
    if _is_url(registry_location):
        return urljoin(registry_location, entry)
    entry_path = Path(entry)
    if entry_path.is_absolute():
        return str(entry_path)
    return str(Path(registry_location).expanduser().parent / entry_path)


def parse_registry(
    payload: Any,
    registry_location: str,
    known_permissions: Iterable[str] | None = None,
) -> list[PluginManifest]:
    """Validate every manifest in a registry document.

    Raises:
        PluginError: If the document has the wrong shape
        ManifestValidationError: If any manifest is invalid
    """
    items = payload.get("plugins") if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        raise PluginError(f"Plugin registry at {registry_location} has an invalid format")

    known = list(known_permissions) if known_permissions is not None else None
    manifests = []
    for item in items:
        manifest = validate_manifest(item, known)
        manifests.append(manifest.with_entry(resolve_entry(manifest.entry, registry_location)))
    return manifests


class PluginCatalog:
    """Fetches and caches the plugin registry document."""

    def __init__(
        self,
        registry_url: str,
        timeout: float = 30.0,
        known_permissions: Iterable[str] | None = None,
    ):
        """Initialize catalog.

        Args:
            registry_url: http(s) URL, file:// URL or local path of the registry
            timeout: HTTP timeout in seconds
            known_permissions: Accepted permission names for validation
        """
        self.registry_url = registry_url
        self.timeout = timeout
        self.known_permissions = list(known_permissions) if known_permissions else None
        self._cache: list[PluginManifest] | None = None

    async def _load_document(self) -> Any:
        parsed = urlparse(self.registry_url)
        if parsed.scheme in ("http", "https"):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self.registry_url)
                    response.raise_for_status()
                    return response.json()
            except httpx.HTTPError as e:
                raise PluginError(f"Failed to load plugin registry: {e}") from e
            except ValueError as e:
                raise PluginError(f"Plugin registry is not valid JSON: {e}") from e

        path = Path(unquote(parsed.path)) if parsed.scheme == "file" else Path(self.registry_url)
        try:
            return json.loads(path.expanduser().read_text(encoding="utf-8"))
        except OSError as e:
            raise PluginError(f"Failed to read plugin registry {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise PluginError(f"Plugin registry is not valid JSON: {e}") from e

    async def fetch(self, refresh: bool = False) -> list[PluginManifest]:
        """Return all manifests in the registry, cached after the first load."""
        if self._cache is not None and not refresh:
            return list(self._cache)

        document = await self._load_document()
        self._cache = parse_registry(document, self.registry_url, self.known_permissions)
        logger.info("Loaded %d plugin manifests from %s", len(self._cache), self.registry_url)
        return list(self._cache)

    async def get(self, plugin_id: str) -> PluginManifest | None:
        for manifest in await self.fetch():
            if manifest.id == plugin_id:
                return manifest
        return None

    def invalidate(self) -> None:
        self._cache = None
