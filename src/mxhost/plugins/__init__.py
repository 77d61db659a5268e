"""Sandboxed plugin system for mxhost.

Manifests are validated and their code verified against a content hash
before anything runs. Each plugin then lives in its own isolated context
and reaches the host only through the sandbox bridge.
"""

from mxhost.plugins.bridge import (
    BridgeSettings,
    PluginDefinition,
    PluginHandle,
    PluginState,
    SandboxBridge,
)
from mxhost.plugins.catalog import PluginCatalog
from mxhost.plugins.context import IsolatedContext, SandboxLimits, SubprocessContext
from mxhost.plugins.integrity import IntegrityVerifier, compute_integrity
from mxhost.plugins.manager import InstalledPluginState, PluginManager
from mxhost.plugins.manifest import PluginEvent, PluginManifest, validate_manifest
from mxhost.plugins.permissions import (
    Permission,
    PermissionMap,
    PermissionSet,
    resolve_permissions,
)

__all__ = [
    "BridgeSettings",
    "InstalledPluginState",
    "IntegrityVerifier",
    "IsolatedContext",
    "Permission",
    "PermissionMap",
    "PermissionSet",
    "PluginCatalog",
    "PluginDefinition",
    "PluginEvent",
    "PluginHandle",
    "PluginManager",
    "PluginManifest",
    "PluginState",
    "SandboxBridge",
    "SandboxLimits",
    "SubprocessContext",
    "compute_integrity",
    "resolve_permissions",
    "validate_manifest",
]
