"""Initialize command - write a starter mxhost.yaml."""

import typer
from rich.console import Console
from rich.panel import Panel

from mxhost.config.loader import resolve_config_path, save_config
from mxhost.config.schema import HostConfig

console = Console()


def build_initial_config(
    registry: str | None = None, storage: str = "sqlite", home: str | None = None
) -> HostConfig:
    """Default configuration, optionally pointed at a registry and data directory.

    Args:
        registry: Plugin registry URL or path for ``mxhost plugin catalog``
        storage: Storage backend, ``sqlite`` or ``memory``
        home: Directory for plugin state, staged code and the storage database
    """
    config = HostConfig.model_validate({"storage": {"backend": storage}})
    if registry:
        config.catalog.registry_url = registry
    if home:
        config.state_path = f"{home}/plugins.yaml"
        config.staging_dir = f"{home}/plugins"
        config.storage.path = f"{home}/plugin-storage.db"
    return config


def init_command(
    force: bool = False,
    registry: str | None = None,
    storage: str = "sqlite",
    config_path: str | None = None,
) -> None:
    """Create an mxhost configuration file.

    Args:
        force: Overwrite an existing config file
        registry: Plugin registry URL or path to record
        storage: Storage backend for plugin key/value data
        config_path: Destination (default: ~/.mxhost/mxhost.yaml)
    """
    path = resolve_config_path(config_path)
    console.print(
        Panel.fit(
            "[bold blue]mxhost initialization[/bold blue]\n"
            "Writing a starter plugin host configuration...",
            border_style="blue",
        )
    )

    if path.exists() and not force:
        console.print(f"\n[yellow]Config already exists at {path}[/yellow]")
        console.print("Use [bold]--force[/bold] to overwrite it.")
        raise typer.Exit(0)

    # Custom locations keep their plugin data beside the config file.
    home = None if config_path is None else str(path.parent)
    config = build_initial_config(registry=registry, storage=storage, home=home)
    written = save_config(config, path)
    console.print(f"\n[green]✓ Configuration saved to {written}[/green]")

    console.print("\nNext steps:")
    if config.catalog.registry_url:
        console.print("  Browse plugins: [bold]mxhost plugin catalog[/bold]")
    else:
        console.print("  Set [bold]catalog.registry_url[/bold] to browse a plugin registry")
    console.print("  Check a manifest: [bold]mxhost plugin validate manifest.json[/bold]")
