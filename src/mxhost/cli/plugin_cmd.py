"""CLI commands for plugin inspection and verification."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import yaml
from rich.console import Console
from rich.table import Table

from mxhost.config.loader import load_config
from mxhost.config.schema import HostConfig
from mxhost.errors import PluginError
from mxhost.plugins.catalog import resolve_entry
from mxhost.plugins.manifest import PluginManifest, validate_manifest
from mxhost.plugins.permissions import describe_permission, resolve_permissions

console = Console()


def _load_config(config_path: str | None) -> HostConfig:
    config = load_config(config_path)
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return config


def _read_manifest(manifest_path: str, config: HostConfig) -> PluginManifest:
    """Read a JSON or YAML manifest file and validate it.

    Relative entries are resolved against the manifest's directory.
    """
    path = Path(manifest_path).expanduser()
    try:
        with open(path) as f:
            raw: Any = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise PluginError(f"Failed to read manifest {path}: {e}") from e

    known = config.permissions.to_permission_map().known_permissions
    manifest = validate_manifest(raw, known)
    return manifest.with_entry(resolve_entry(manifest.entry, str(path)))


def validate_plugin(manifest_path: str, config_path: str | None = None) -> None:
    """Validate a manifest and print a summary."""
    config = _load_config(config_path)
    manifest = _read_manifest(manifest_path, config)

    console.print(f"\n[bold cyan]{manifest.name}[/bold cyan] v{manifest.version}")
    if manifest.description:
        console.print(f"  {manifest.description}")
    console.print(f"  Id: {manifest.id}")
    console.print(f"  Entry: {manifest.entry}")
    console.print(f"  Events: {', '.join(manifest.events) or 'none'}")
    console.print(f"  Permissions: {', '.join(manifest.permissions) or 'none'}")
    if manifest.integrity:
        console.print(f"  Integrity: {manifest.integrity}")
    else:
        console.print("  [yellow]Integrity: missing (the plugin cannot be installed)[/yellow]")
    console.print("[green]Manifest is valid.[/green]")


def digest_file(path: str) -> None:
    """Print the integrity reference for a plugin file."""
    from mxhost.plugins.integrity import compute_integrity

    try:
        data = Path(path).expanduser().read_bytes()
    except OSError as e:
        raise PluginError(f"Failed to read {path}: {e}") from e
    console.print(compute_integrity(data), highlight=False)


def verify_plugin(
    manifest_path: str, entry: str | None = None, config_path: str | None = None
) -> None:
    """Fetch a plugin's code and check it against its integrity reference."""
    from mxhost.plugins.integrity import IntegrityVerifier

    config = _load_config(config_path)
    manifest = _read_manifest(manifest_path, config)
    verifier = IntegrityVerifier(
        max_bytes=config.integrity.max_bytes, timeout=config.integrity.timeout
    )
    location = entry or manifest.entry
    asyncio.run(verifier.verify(manifest, location))
    console.print(f"[green]Plugin '{manifest.id}' matches {manifest.integrity}[/green]")


def show_permissions(manifest_path: str, config_path: str | None = None) -> None:
    """Show what a manifest's permissions resolve to."""
    config = _load_config(config_path)
    manifest = _read_manifest(manifest_path, config)
    permission_map = config.permissions.to_permission_map()
    resolved = resolve_permissions(manifest, permission_map)

    table = Table(title=f"Permissions for {manifest.id} (map v{resolved.map_version})")
    table.add_column("Permission", style="cyan")
    table.add_column("Actions", style="green")
    table.add_column("Description")

    for permission in manifest.permissions:
        actions = permission_map.actions_for(permission)
        table.add_row(
            permission,
            ", ".join(actions) if actions else "-",
            describe_permission(permission),
        )

    console.print(table)
    console.print(f"Events: {', '.join(sorted(resolved.events)) or 'none'}")
    console.print(f"Storage: {resolved.storage}")
    console.print(f"Scheduler: {resolved.scheduler}")


def list_catalog(registry: str | None = None, config_path: str | None = None) -> None:
    """List the plugins offered by the registry."""
    from mxhost.plugins.catalog import PluginCatalog

    config = _load_config(config_path)
    registry_url = registry or config.catalog.registry_url
    if not registry_url:
        console.print("[red]No plugin registry configured.[/red]")
        console.print("Set catalog.registry_url in mxhost.yaml or pass --registry.")
        return

    catalog = PluginCatalog(
        registry_url,
        timeout=config.catalog.timeout,
        known_permissions=config.permissions.to_permission_map().known_permissions,
    )
    manifests = asyncio.run(catalog.fetch())

    if not manifests:
        console.print("[dim]The registry lists no plugins.[/dim]")
        return

    table = Table(title="Available Plugins")
    table.add_column("Id", style="cyan")
    table.add_column("Name")
    table.add_column("Version")
    table.add_column("Permissions", style="green")
    table.add_column("Integrity")

    for manifest in manifests:
        table.add_row(
            manifest.id,
            manifest.name,
            manifest.version,
            ", ".join(manifest.permissions) if manifest.permissions else "-",
            "[green]yes[/green]" if manifest.integrity else "[red]missing[/red]",
        )

    console.print(table)


def list_plugins(config_path: str | None = None) -> None:
    """List installed plugins from the saved plugin state."""
    from mxhost.plugins.manager import PluginStateStore

    config = _load_config(config_path)
    known = config.permissions.to_permission_map().known_permissions
    state = PluginStateStore(config.state_path, known).read()

    if not state:
        console.print("[dim]No plugins installed.[/dim]")
        return

    table = Table(title="Installed Plugins")
    table.add_column("Id", style="cyan")
    table.add_column("Version")
    table.add_column("Events")
    table.add_column("Permissions", style="green")
    table.add_column("Status")

    for plugin_id, entry in sorted(state.items(), key=lambda item: item[1].manifest.name.lower()):
        status = "[green]enabled[/green]" if entry.enabled else "[red]disabled[/red]"
        if entry.last_error:
            status = f"[red]error: {entry.last_error[:40]}[/red]"
        table.add_row(
            plugin_id,
            entry.manifest.version,
            ", ".join(entry.manifest.events) if entry.manifest.events else "-",
            ", ".join(entry.manifest.permissions) if entry.manifest.permissions else "-",
            status,
        )

    console.print(table)
