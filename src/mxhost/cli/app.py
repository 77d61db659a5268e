"""Main CLI application using Typer."""

import sys

import typer
from rich.console import Console

from mxhost import __version__

# Create Typer app
app = typer.Typer(
    name="mxhost",
    help="mxhost - Sandboxed plugin host for Matrix messenger clients",
    no_args_is_help=True,
)

console = Console()

CONFIG_HELP = "Path to config file (default: ~/.mxhost/mxhost.yaml)"


@app.command()
def version():
    """Show mxhost version."""
    console.print(f"mxhost version {__version__}")


@app.command()
def init(
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite existing config"),
    registry: str = typer.Option(None, "--registry", "-r", help="Plugin registry URL or path"),
    storage: str = typer.Option("sqlite", "--storage", help="Storage backend: sqlite or memory"),
    config_path: str = typer.Option(None, "--config", "-c", help=CONFIG_HELP),
):
    """Write a starter mxhost.yaml."""
    from mxhost.cli.init_cmd import init_command

    init_command(force=force, registry=registry, storage=storage, config_path=config_path)


# Plugin commands
plugin_app = typer.Typer(help="Inspect and verify mxhost plugins")
app.add_typer(plugin_app, name="plugin")


@plugin_app.command("validate")
def plugin_validate(
    manifest: str = typer.Argument(..., help="Manifest file (JSON or YAML)"),
    config_path: str = typer.Option(None, "--config", "-c", help=CONFIG_HELP),
):
    """Validate a plugin manifest."""
    from mxhost.cli.plugin_cmd import validate_plugin

    validate_plugin(manifest, config_path=config_path)


@plugin_app.command("digest")
def plugin_digest(
    path: str = typer.Argument(..., help="Plugin entry file"),
):
    """Print the integrity reference for a plugin file."""
    from mxhost.cli.plugin_cmd import digest_file

    digest_file(path)


@plugin_app.command("verify")
def plugin_verify(
    manifest: str = typer.Argument(..., help="Manifest file (JSON or YAML)"),
    entry: str = typer.Option(None, "--entry", "-e", help="Override the entry location"),
    config_path: str = typer.Option(None, "--config", "-c", help=CONFIG_HELP),
):
    """Check a plugin's code against its integrity reference."""
    from mxhost.cli.plugin_cmd import verify_plugin

    verify_plugin(manifest, entry=entry, config_path=config_path)


@plugin_app.command("permissions")
def plugin_permissions(
    manifest: str = typer.Argument(..., help="Manifest file (JSON or YAML)"),
    config_path: str = typer.Option(None, "--config", "-c", help=CONFIG_HELP),
):
    """Show what a manifest's permissions unlock."""
    from mxhost.cli.plugin_cmd import show_permissions

    show_permissions(manifest, config_path=config_path)


@plugin_app.command("catalog")
def plugin_catalog(
    registry: str = typer.Option(None, "--registry", "-r", help="Registry URL or path"),
    config_path: str = typer.Option(None, "--config", "-c", help=CONFIG_HELP),
):
    """List plugins offered by the registry."""
    from mxhost.cli.plugin_cmd import list_catalog

    list_catalog(registry=registry, config_path=config_path)


@plugin_app.command("list")
def plugin_list(
    config_path: str = typer.Option(None, "--config", "-c", help=CONFIG_HELP),
):
    """List installed plugins."""
    from mxhost.cli.plugin_cmd import list_plugins

    list_plugins(config_path=config_path)


def main():
    """Entry point for the CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
