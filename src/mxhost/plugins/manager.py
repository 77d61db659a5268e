"""Installed-plugin state and the install/enable/disable/remove flows.

Installed plugins are remembered in a YAML file so they can be brought back
on the next start. Activation always goes validate, verify integrity, stage
the verified bytes, then register with the host. A plugin that fails to
activate stays installed but disabled, with the error kept for display.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from mxhost.errors import ManifestValidationError, PluginError
from mxhost.plugins.bridge import PluginDefinition
from mxhost.plugins.catalog import PluginCatalog
from mxhost.plugins.integrity import IntegrityVerifier, parse_integrity
from mxhost.plugins.manifest import PluginManifest, validate_manifest

if TYPE_CHECKING:
    from mxhost.host import PluginHost

logger = logging.getLogger(__name__)


@dataclass
class StoredPlugin:
    """One entry of the persisted plugin state."""

    manifest: PluginManifest
    enabled: bool
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "manifest": self.manifest.to_dict(),
            "enabled": self.enabled,
            "last_error": self.last_error,
        }


@dataclass
class InstalledPluginState:
    """What a UI needs to show about an installed plugin."""

    id: str
    manifest: PluginManifest
    enabled: bool
    active: bool
    last_error: str | None = None


class PluginStateStore:
    """YAML file holding installed plugins keyed by id."""

    def __init__(self, path: str | Path, known_permissions: list[str] | None = None):
        self.path = Path(path).expanduser()
        self.known_permissions = known_permissions

    def read(self) -> dict[str, StoredPlugin]:
        """Load stored plugins. Unreadable entries are skipped with a warning."""
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Failed to read plugin state %s: %s", self.path, e)
            return {}

        plugins = data.get("plugins") if isinstance(data, dict) else None
        if not isinstance(plugins, dict):
            return {}

        state: dict[str, StoredPlugin] = {}
        for plugin_id, entry in plugins.items():
            if not isinstance(entry, dict):
                continue
            try:
                manifest = validate_manifest(entry.get("manifest"), self.known_permissions)
            except ManifestValidationError as e:
                logger.warning("Ignoring stored plugin %s: %s", plugin_id, e)
                continue
            state[manifest.id] = StoredPlugin(
                manifest=manifest,
                enabled=bool(entry.get("enabled", False)),
                last_error=entry.get("last_error"),
            )
        return state

    def write(self, state: dict[str, StoredPlugin]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {"plugins": {plugin_id: entry.to_dict() for plugin_id, entry in state.items()}}
        with open(self.path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


class PluginManager:
    """Installs plugins into a :class:`PluginHost` and remembers them."""

    def __init__(
        self,
        host: PluginHost,
        state_path: str | Path,
        staging_dir: str | Path,
        verifier: IntegrityVerifier | None = None,
        catalog: PluginCatalog | None = None,
    ):
        """Initialize plugin manager.

        Args:
            host: Host plugins are registered with
            state_path: YAML file with installed plugin state
            staging_dir: Directory verified plugin code is copied into
            verifier: Integrity verifier
            catalog: Registry used to refresh manifests in listings
        """
        self.host = host
        self.store = PluginStateStore(state_path, host.permission_map.known_permissions)
        self.staging_dir = Path(staging_dir).expanduser()
        self.verifier = verifier or IntegrityVerifier()
        self.catalog = catalog

    def _validate(self, manifest: PluginManifest | dict[str, Any]) -> PluginManifest:
        return validate_manifest(manifest, self.host.permission_map.known_permissions)

    def _stage(self, manifest: PluginManifest, data: bytes) -> Path:
        assert manifest.integrity is not None
        digest = parse_integrity(manifest.integrity)
        safe_id = re.sub(r"[^A-Za-z0-9_.-]", "_", manifest.id)
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        path = self.staging_dir / f"{safe_id}-{digest[:16]}.py"
        path.write_bytes(data)
        return path

    async def _activate(self, manifest: PluginManifest) -> None:
        data = await self.verifier.fetch_verified(manifest, manifest.entry)
        staged = self._stage(manifest, data)
        if manifest.id in self.host.get_plugin_ids():
            logger.info("Replacing live instance of plugin %s", manifest.id)
            await self.host.unregister_plugin(manifest.id)
        await self.host.register_plugin(
            PluginDefinition(manifest=manifest, entry_location=str(staged))
        )

    def _update(self, plugin_id: str, entry: StoredPlugin | None) -> None:
        state = self.store.read()
        if entry is None:
            state.pop(plugin_id, None)
        else:
            state[plugin_id] = entry
        self.store.write(state)

    async def install_plugin_from_manifest(
        self, manifest: PluginManifest | dict[str, Any]
    ) -> PluginManifest:
        """Validate, verify and activate a plugin, then remember it.

        Returns:
            The accepted manifest

        Raises:
            ManifestValidationError: If the manifest is invalid (nothing stored)
            IntegrityError, ContextFailure, DuplicateRegistrationError: If
                activation fails; the plugin is stored as disabled with the error
        """
        accepted = self._validate(manifest)
        try:
            await self._activate(accepted)
        except Exception as e:
            logger.error("Failed to activate plugin %s: %s", accepted.id, e)
            self._update(accepted.id, StoredPlugin(accepted, enabled=False, last_error=str(e)))
            raise
        self._update(accepted.id, StoredPlugin(accepted, enabled=True))
        return accepted

    async def enable_stored_plugin(self, plugin_id: str) -> None:
        """Activate a previously installed plugin.

        Raises:
            PluginError: If the plugin is not installed, or activation fails
        """
        entry = self.store.read().get(plugin_id)
        if entry is None:
            raise PluginError(f"Plugin {plugin_id} is not installed")
        try:
            await self._activate(entry.manifest)
        except Exception as e:
            self._update(plugin_id, StoredPlugin(entry.manifest, enabled=False, last_error=str(e)))
            raise
        self._update(plugin_id, StoredPlugin(entry.manifest, enabled=True))

    async def disable_plugin(self, plugin_id: str) -> None:
        await self.host.unregister_plugin(plugin_id)
        entry = self.store.read().get(plugin_id)
        if entry is not None:
            self._update(
                plugin_id, StoredPlugin(entry.manifest, enabled=False, last_error=entry.last_error)
            )

    async def remove_stored_plugin(self, plugin_id: str) -> None:
        await self.host.unregister_plugin(plugin_id)
        self._update(plugin_id, None)

    async def bootstrap_stored_plugins(self) -> list[str]:
        """Activate every enabled stored plugin.

        Failures are recorded on the plugin and do not stop the others.

        Returns:
            Ids of plugins that were activated
        """
        state = self.store.read()
        activated: list[str] = []
        changed = False
        for plugin_id, entry in state.items():
            if not entry.enabled:
                continue
            try:
                await self._activate(entry.manifest)
            except Exception as e:
                logger.error("Failed to activate plugin %s: %s", plugin_id, e)
                entry.enabled = False
                entry.last_error = str(e)
                changed = True
                continue
            activated.append(plugin_id)
            if entry.last_error:
                entry.last_error = None
                changed = True
        if changed:
            self.store.write(state)
        return activated

    async def get_installed_plugins(self) -> list[InstalledPluginState]:
        """Installed plugins sorted by name, with catalog manifests preferred."""
        registry: dict[str, PluginManifest] = {}
        if self.catalog is not None:
            try:
                registry = {m.id: m for m in await self.catalog.fetch()}
            except PluginError as e:
                logger.warning("Plugin catalog unavailable: %s", e)

        active = set(self.host.get_plugin_ids())
        plugins = [
            InstalledPluginState(
                id=plugin_id,
                manifest=registry.get(plugin_id, entry.manifest),
                enabled=entry.enabled,
                active=plugin_id in active,
                last_error=entry.last_error,
            )
            for plugin_id, entry in self.store.read().items()
        ]
        return sorted(plugins, key=lambda p: p.manifest.name.lower())
