"""Pytest configuration and shared fixtures."""

import pytest
import pytest_asyncio

from fakes import FakeClient, FakeContextFactory
from mxhost.accounts import AccountMetadata
from mxhost.config.schema import HostConfig
from mxhost.host import PluginHost
from mxhost.plugins.bridge import BridgeSettings


@pytest.fixture
def default_config() -> HostConfig:
    """Provide a default configuration for tests."""
    return HostConfig()


@pytest.fixture
def account() -> AccountMetadata:
    return AccountMetadata(
        id="acc1",
        user_id="@alice:example.org",
        homeserver_url="https://example.org",
        display_name="Alice",
    )


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def factory() -> FakeContextFactory:
    return FakeContextFactory()


@pytest.fixture
def bridge_settings() -> BridgeSettings:
    return BridgeSettings(ready_timeout=1.0, command_timeout=1.0, dispose_timeout=0.2)


@pytest_asyncio.fixture
async def host(factory, bridge_settings):
    """Plugin host wired to fake contexts, closed after the test."""
    plugin_host = PluginHost(
        context_factory=factory,
        bridge_settings=bridge_settings,
        delivery_timeout=1.0,
    )
    yield plugin_host
    await plugin_host.aclose()
