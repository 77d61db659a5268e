"""Shared fixtures for CLI tests."""

import json
from pathlib import Path

import pytest
import yaml

from mxhost.plugins.integrity import compute_integrity

PLUGIN_CODE = b"def setup(ctx):\n    pass\n"


@pytest.fixture
def tmp_config_path(tmp_path: Path) -> Path:
    """Provide a temporary config file path with state kept under tmp_path."""
    path = tmp_path / "mxhost.yaml"
    with open(path, "w") as f:
        yaml.safe_dump(
            {
                "state_path": str(tmp_path / "plugins.yaml"),
                "staging_dir": str(tmp_path / "staged"),
                "log_level": "WARNING",
            },
            f,
        )
    return path


@pytest.fixture
def plugin_entry(tmp_path: Path) -> Path:
    """Write a plugin entry file next to the manifest."""
    path = tmp_path / "echo.py"
    path.write_bytes(PLUGIN_CODE)
    return path


@pytest.fixture
def manifest_path(tmp_path: Path, plugin_entry: Path) -> Path:
    """Write a valid JSON manifest whose entry is relative to it."""
    path = tmp_path / "manifest.json"
    path.write_text(
        json.dumps(
            {
                "id": "demo.echo",
                "name": "Echo",
                "version": "1.2.0",
                "entry": plugin_entry.name,
                "permissions": ["send-text-message"],
                "requiredEvents": ["matrix.message"],
                "integrity": compute_integrity(PLUGIN_CODE),
            }
        )
    )
    return path
