"""Tests for the plugin registry catalog."""

import json

import pytest
import respx
from httpx import Response

from mxhost.errors import ManifestValidationError, PluginError
from mxhost.plugins.catalog import PluginCatalog, parse_registry, resolve_entry

REGISTRY_URL = "https://plugins.example.org/v1/registry.json"

ECHO = {
    "id": "demo.echo",
    "name": "Echo",
    "entry": "echo/plugin.py",
    "permissions": ["send-text-message"],
    "requiredEvents": ["matrix.message"],
    "integrity": "sha256-" + "0" * 64,
}


class TestResolveEntry:
    def test_absolute_url_kept(self):
        entry = "https://cdn.example.org/echo.py"
        assert resolve_entry(entry, REGISTRY_URL) == entry

    def test_relative_to_registry_url(self):
        assert (
            resolve_entry("echo/plugin.py", REGISTRY_URL)
            == "https://plugins.example.org/v1/echo/plugin.py"
        )

    def test_relative_to_registry_file(self, tmp_path):
        registry = tmp_path / "registry.json"
        assert resolve_entry("echo.py", str(registry)) == str(tmp_path / "echo.py")


class TestParseRegistry:
    def test_plugins_key(self):
        manifests = parse_registry({"plugins": [ECHO]}, REGISTRY_URL)
        assert [m.id for m in manifests] == ["demo.echo"]
        assert manifests[0].entry == "https://plugins.example.org/v1/echo/plugin.py"
        assert manifests[0].events == ("matrix.message",)

    def test_bare_list(self):
        assert len(parse_registry([ECHO], REGISTRY_URL)) == 1

    def test_invalid_shape(self):
        with pytest.raises(PluginError, match="invalid format"):
            parse_registry({"items": []}, REGISTRY_URL)

    def test_invalid_manifest(self):
        with pytest.raises(ManifestValidationError):
            parse_registry([{**ECHO, "permissions": ["everything"]}], REGISTRY_URL)


class TestPluginCatalog:
    @pytest.mark.asyncio
    @respx.mock
    async def test_fetch_is_cached(self):
        route = respx.get(REGISTRY_URL).mock(
            return_value=Response(200, json={"plugins": [ECHO]})
        )
        catalog = PluginCatalog(REGISTRY_URL)

        first = await catalog.fetch()
        second = await catalog.fetch()
        assert [m.id for m in first] == [m.id for m in second] == ["demo.echo"]
        assert route.call_count == 1

        await catalog.fetch(refresh=True)
        assert route.call_count == 2

    @pytest.mark.asyncio
    @respx.mock
    async def test_get(self):
        respx.get(REGISTRY_URL).mock(return_value=Response(200, json=[ECHO]))
        catalog = PluginCatalog(REGISTRY_URL)
        assert (await catalog.get("demo.echo")).name == "Echo"
        assert await catalog.get("missing") is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_invalidate(self):
        route = respx.get(REGISTRY_URL).mock(return_value=Response(200, json=[ECHO]))
        catalog = PluginCatalog(REGISTRY_URL)
        await catalog.fetch()
        catalog.invalidate()
        await catalog.fetch()
        assert route.call_count == 2

    @pytest.mark.asyncio
    @respx.mock
    async def test_http_error(self):
        respx.get(REGISTRY_URL).mock(return_value=Response(503))
        with pytest.raises(PluginError, match="Failed to load"):
            await PluginCatalog(REGISTRY_URL).fetch()

    @pytest.mark.asyncio
    @respx.mock
    async def test_invalid_json(self):
        respx.get(REGISTRY_URL).mock(return_value=Response(200, content=b"<html>"))
        with pytest.raises(PluginError, match="not valid JSON"):
            await PluginCatalog(REGISTRY_URL).fetch()

    @pytest.mark.asyncio
    async def test_local_registry(self, tmp_path):
        registry = tmp_path / "registry.json"
        registry.write_text(json.dumps({"plugins": [ECHO]}))
        manifests = await PluginCatalog(str(registry)).fetch()
        assert manifests[0].entry == str(tmp_path / "echo" / "plugin.py")

    @pytest.mark.asyncio
    async def test_missing_local_registry(self, tmp_path):
        with pytest.raises(PluginError, match="Failed to read"):
            await PluginCatalog(str(tmp_path / "missing.json")).fetch()

    @pytest.mark.asyncio
    async def test_known_permissions_applied(self, tmp_path):
        registry = tmp_path / "registry.json"
        registry.write_text(json.dumps([{**ECHO, "permissions": ["reactions"]}]))
        catalog = PluginCatalog(str(registry), known_permissions=["reactions"])
        assert (await catalog.fetch())[0].permissions == ("reactions",)
