"""Plugin manifest model and validation."""

from __future__ import annotations

from collections.abc import Iterable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from mxhost.errors import ManifestValidationError
from mxhost.plugins.permissions import Permission


class PluginEvent(StrEnum):
    """Events the host can deliver to plugins."""

    CLIENT_READY = "matrix.client-ready"
    CLIENT_UPDATED = "matrix.client-updated"
    CLIENT_STOPPED = "matrix.client-stopped"
    ROOM_EVENT = "matrix.room-event"
    MESSAGE = "matrix.message"
    COMMAND_INVOKED = "command.invoked"


KNOWN_EVENTS: frozenset[str] = frozenset(e.value for e in PluginEvent)


class PluginManifest(BaseModel):
    """Declared identity and capability request of a plugin.

    Immutable once accepted. Re-installing a plugin with the same id
    replaces the manifest rather than mutating it.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Globally unique plugin id")
    name: str = Field(..., description="Human readable name")
    version: str = "0.0.0"
    description: str = ""
    entry: str = Field(..., description="Location of the plugin's code")
    permissions: tuple[str, ...] = ()
    events: tuple[str, ...] = ()
    integrity: str | None = Field(None, description="Content hash, sha256-<hex>")

    def with_entry(self, entry: str) -> PluginManifest:
        """Copy of this manifest pointing at a different entry location."""
        return self.model_copy(update={"entry": entry})

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


def _require_string(raw: dict[str, Any], key: str, plugin_id: str | None) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        if plugin_id is None:
            raise ManifestValidationError(f'Manifest must contain a non-empty string "{key}"')
        raise ManifestValidationError(
            f'Plugin "{plugin_id}" manifest must contain a non-empty string "{key}"',
            plugin_id=plugin_id,
        )
    return value


def _string_list(raw: dict[str, Any], key: str, plugin_id: str) -> list[str]:
    value = raw.get(key)
    if value is None:
        return []
    if not isinstance(value, list | tuple) or not all(isinstance(v, str) for v in value):
        raise ManifestValidationError(
            f'Plugin "{plugin_id}" field "{key}" must be a list of strings',
            plugin_id=plugin_id,
        )
    return list(value)


def validate_manifest(
    raw: Any,
    known_permissions: Iterable[str] | None = None,
) -> PluginManifest:
    """Validate a raw manifest document.

    Checks run in a fixed order: object shape, identity strings, permissions,
    events, then the integrity reference. Nothing is registered on failure.

    Args:
        raw: Parsed manifest (usually a dict from JSON or YAML)
        known_permissions: Accepted permission names. Defaults to the
            built-in permission enumeration.

    Returns:
        Validated manifest

    Raises:
        ManifestValidationError: On the first failed check
    """
    if isinstance(raw, PluginManifest):
        raw = raw.to_dict()
    if not isinstance(raw, dict):
        raise ManifestValidationError("Plugin manifest must be an object")

    plugin_id = _require_string(raw, "id", None)
    name = _require_string(raw, "name", plugin_id)
    entry = _require_string(raw, "entry", plugin_id)

    if known_permissions is None:
        known_permissions = [p.value for p in Permission]
    allowed_permissions = set(known_permissions)

    permissions = _string_list(raw, "permissions", plugin_id)
    for permission in permissions:
        if permission not in allowed_permissions:
            raise ManifestValidationError(
                f'Plugin "{plugin_id}" requests unknown permission "{permission}"',
                plugin_id=plugin_id,
            )

    events_key = "events" if "events" in raw else "requiredEvents"
    events = _string_list(raw, events_key, plugin_id)
    for event in events:
        if event not in KNOWN_EVENTS:
            raise ManifestValidationError(
                f'Plugin "{plugin_id}" requests unsupported event "{event}"',
                plugin_id=plugin_id,
            )

    integrity = raw.get("integrity")
    if integrity is not None and (not isinstance(integrity, str) or not integrity.strip()):
        raise ManifestValidationError(
            f'Plugin "{plugin_id}" integrity must be a non-empty string',
            plugin_id=plugin_id,
        )

    version = raw.get("version")
    description = raw.get("description")
    return PluginManifest(
        id=plugin_id,
        name=name,
        version=version if isinstance(version, str) and version else "0.0.0",
        description=description if isinstance(description, str) else "",
        entry=entry,
        permissions=tuple(dict.fromkeys(permissions)),
        events=tuple(dict.fromkeys(events)),
        integrity=integrity,
    )
