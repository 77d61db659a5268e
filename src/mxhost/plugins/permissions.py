"""Permission enumeration and per-plugin permission sets.

The mapping from permission names to concrete action names is versioned
configuration. New host actions are introduced by adding feature toggles to
the map, never by changing what an existing permission grants.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mxhost.plugins.manifest import PluginManifest


class Permission(StrEnum):
    SEND_TEXT_MESSAGE = "send-text-message"
    SEND_ARBITRARY_EVENT = "send-arbitrary-event"
    REDACT_EVENT = "redact-event"
    STORAGE_ACCESS = "storage-access"
    SCHEDULER_ACCESS = "scheduler-access"


PERMISSION_DESCRIPTIONS: dict[str, str] = {
    Permission.SEND_TEXT_MESSAGE: "Send text messages on behalf of a selected account",
    Permission.SEND_ARBITRARY_EVENT: "Send arbitrary events into a room",
    Permission.REDACT_EVENT: "Redact events in a room",
    Permission.STORAGE_ACCESS: "Read and write the plugin's isolated storage",
    Permission.SCHEDULER_ACCESS: "Run background timers inside the plugin",
}

PERMISSION_MAP_VERSION = 1

DEFAULT_ACTIONS: Mapping[str, tuple[str, ...]] = MappingProxyType(
    {
        Permission.SEND_TEXT_MESSAGE.value: ("sendTextMessage",),
        Permission.SEND_ARBITRARY_EVENT.value: ("sendEvent",),
        Permission.REDACT_EVENT.value: ("redactEvent",),
        Permission.STORAGE_ACCESS.value: (),
        Permission.SCHEDULER_ACCESS.value: (),
    }
)


def describe_permission(permission: str) -> str:
    return PERMISSION_DESCRIPTIONS.get(permission, permission)


@dataclass(frozen=True)
class PermissionMap:
    """Versioned mapping from permission names to the actions they unlock."""

    version: int = PERMISSION_MAP_VERSION
    actions: Mapping[str, tuple[str, ...]] = field(default_factory=lambda: DEFAULT_ACTIONS)

    @classmethod
    def default(cls) -> PermissionMap:
        return cls()

    @classmethod
    def with_feature_toggles(
        cls,
        toggles: Mapping[str, list[str] | tuple[str, ...]],
        version: int = PERMISSION_MAP_VERSION,
    ) -> PermissionMap:
        """Build a map from the built-in permissions plus host feature toggles.

        Args:
            toggles: Extra permission name -> action names it unlocks
            version: Map version recorded on every resolved permission set

        Raises:
            ValueError: If a toggle tries to redefine a built-in permission
        """
        actions = dict(DEFAULT_ACTIONS)
        for name, toggle_actions in toggles.items():
            if name in actions:
                raise ValueError(f"Feature toggle cannot redefine built-in permission: {name}")
            actions[name] = tuple(toggle_actions)
        return cls(version=version, actions=MappingProxyType(actions))

    @property
    def known_permissions(self) -> list[str]:
        return list(self.actions.keys())

    def actions_for(self, permission: str) -> tuple[str, ...]:
        return self.actions.get(permission, ())


@dataclass(frozen=True)
class PermissionSet:
    """Resolved allow-list for one plugin instance.

    Computed once at registration and never widened. Revocation means
    disposing the plugin and registering it again with a smaller manifest.
    """

    plugin_id: str
    permissions: frozenset[str]
    actions: frozenset[str]
    events: frozenset[str]
    storage: bool = False
    scheduler: bool = False
    map_version: int = PERMISSION_MAP_VERSION

    def allows_action(self, action: str) -> bool:
        return action in self.actions

    def allows_event(self, event: str) -> bool:
        return event in self.events


def resolve_permissions(
    manifest: PluginManifest,
    permission_map: PermissionMap | None = None,
) -> PermissionSet:
    """Derive the permission set for a validated manifest."""
    permission_map = permission_map or PermissionMap.default()
    granted = frozenset(manifest.permissions)
    actions: set[str] = set()
    for permission in manifest.permissions:
        actions.update(permission_map.actions_for(permission))

    return PermissionSet(
        plugin_id=manifest.id,
        permissions=granted,
        actions=frozenset(actions),
        events=frozenset(manifest.events),
        storage=Permission.STORAGE_ACCESS in granted,
        scheduler=Permission.SCHEDULER_ACCESS in granted,
        map_version=permission_map.version,
    )
