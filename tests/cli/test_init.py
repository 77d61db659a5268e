"""Tests for CLI init command."""

from unittest.mock import patch

import pytest
import typer
import yaml

from mxhost.cli.init_cmd import build_initial_config, init_command
from mxhost.config.loader import load_config
from mxhost.config.schema import HostConfig


def test_build_initial_config_defaults():
    """Test the starter config matches the built-in defaults."""
    assert build_initial_config() == HostConfig()


def test_build_initial_config_options():
    """Test registry, storage and data directory options."""
    config = build_initial_config(
        registry="https://plugins.example.org/registry.json", storage="memory", home="/srv/mx"
    )
    assert config.catalog.registry_url == "https://plugins.example.org/registry.json"
    assert config.storage.backend == "memory"
    assert config.state_path == "/srv/mx/plugins.yaml"
    assert config.staging_dir == "/srv/mx/plugins"
    assert config.storage.path == "/srv/mx/plugin-storage.db"


def test_init_command_writes_loadable_config(tmp_path):
    """Test init writes a config that load_config reads back."""
    config_path = tmp_path / "conf" / "mxhost.yaml"

    init_command(registry="registry.json", config_path=str(config_path))

    assert config_path.read_text().startswith("# mxhost configuration")
    loaded = load_config(config_path)
    assert loaded.catalog.registry_url == "registry.json"
    assert loaded.state_path == str(tmp_path / "conf" / "plugins.yaml")


def test_init_command_default_location(tmp_path):
    """Test init falls back to the default path and default data locations."""
    config_path = tmp_path / "mxhost.yaml"

    with patch("mxhost.config.loader.DEFAULT_CONFIG_PATH", config_path):
        init_command()

    data = yaml.safe_load(config_path.read_text())
    assert data["state_path"] == "~/.mxhost/plugins.yaml"
    assert data["storage"]["backend"] == "sqlite"


def test_init_command_config_exists(tmp_path):
    """Test init refuses to overwrite existing config without --force."""
    config_path = tmp_path / "mxhost.yaml"
    config_path.write_text("log_level: DEBUG\n")

    with patch("mxhost.cli.init_cmd.save_config") as mock_save, pytest.raises(typer.Exit):
        init_command(force=False, config_path=str(config_path))
    mock_save.assert_not_called()
    assert config_path.read_text() == "log_level: DEBUG\n"


def test_init_command_force_overwrite(tmp_path):
    """Test init with --force overwrites existing config."""
    config_path = tmp_path / "mxhost.yaml"
    config_path.write_text("log_level: DEBUG\n")

    init_command(force=True, storage="memory", config_path=str(config_path))

    loaded = load_config(config_path)
    assert loaded.log_level == "INFO"
    assert loaded.storage.backend == "memory"
