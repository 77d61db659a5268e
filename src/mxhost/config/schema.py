"""Pydantic models for mxhost.yaml configuration."""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

from mxhost.plugins.context import DEFAULT_ENV_ALLOWLIST
from mxhost.plugins.permissions import PERMISSION_MAP_VERSION, Permission, PermissionMap


class SandboxConfig(BaseModel):
    """Isolated context limits and bridge timeouts."""

    ready_timeout: float = Field(
        default=10.0, description="Seconds a plugin has to acknowledge INIT", gt=0
    )
    command_timeout: float = Field(
        default=10.0, description="Seconds a plugin command handler may run", gt=0
    )
    delivery_timeout: float = Field(
        default=10.0, description="Seconds to wait for one plugin to accept an event", gt=0
    )
    max_memory_mb: int = Field(default=256, description="Address space limit per plugin", ge=32)
    max_cpu_seconds: int = Field(default=60, description="CPU time limit per plugin", ge=1)
    max_timers: int = Field(default=32, description="Timers a plugin may hold at once", ge=0)
    min_interval_ms: int = Field(default=100, description="Shortest repeat interval", ge=1)
    env_allowlist: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ENV_ALLOWLIST),
        description="Environment variables passed through to plugin processes",
    )


class PermissionMapConfig(BaseModel):
    """Versioned permission to action mapping.

    Built-in permissions are fixed; host features are added as toggles,
    each an extra permission name unlocking host-registered actions.
    """

    version: int = Field(default=PERMISSION_MAP_VERSION, ge=1)
    feature_toggles: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Extra permission name -> action names it unlocks",
    )

    @field_validator("feature_toggles")
    @classmethod
    def _no_builtin_override(cls, value: dict[str, list[str]]) -> dict[str, list[str]]:
        builtin = {p.value for p in Permission}
        clashes = sorted(set(value) & builtin)
        if clashes:
            raise ValueError(f"feature toggles cannot redefine built-in permissions: {clashes}")
        return value

    def to_permission_map(self) -> PermissionMap:
        return PermissionMap.with_feature_toggles(self.feature_toggles, version=self.version)


class IntegrityConfig(BaseModel):
    """Plugin code fetching limits."""

    max_bytes: int = Field(default=5 * 1024 * 1024, description="Largest plugin bundle", ge=1)
    timeout: float = Field(default=30.0, description="HTTP timeout in seconds", gt=0)


class StorageConfig(BaseModel):
    """Per-plugin storage backend."""

    backend: Literal["memory", "sqlite"] = Field(default="sqlite")
    path: str = Field(
        default="~/.mxhost/plugin-storage.db", description="SQLite database path"
    )


class CatalogConfig(BaseModel):
    """Plugin registry document location."""

    registry_url: str | None = Field(
        default=None, description="URL or path of the plugin registry JSON"
    )
    timeout: float = Field(default=30.0, gt=0)


class HostConfig(BaseModel):
    """Root configuration model for mxhost.yaml."""

    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    permissions: PermissionMapConfig = Field(default_factory=PermissionMapConfig)
    integrity: IntegrityConfig = Field(default_factory=IntegrityConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    state_path: str = Field(
        default="~/.mxhost/plugins.yaml", description="Installed plugin state file"
    )
    staging_dir: str = Field(
        default="~/.mxhost/plugins", description="Directory verified plugin code is staged in"
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
