"""Tests for the PluginHost coordinator."""

import asyncio

import pytest

from fakes import FakeClient, make_definition, wait_until
from mxhost.accounts import AccountMetadata, MatrixClient
from mxhost.commands import CommandDefinition, CommandInvocation, CommandStatus
from mxhost.errors import (
    AccountNotFoundError,
    ActionNotAvailableError,
    ContextFailure,
    DuplicateRegistrationError,
    ManifestValidationError,
    PluginError,
)
from mxhost.host import (
    PluginHost,
    RedactEventInput,
    SendEventInput,
    SendTextMessageInput,
    build_message_content,
)
from mxhost.plugins.permissions import PermissionMap
from mxhost.storage import SQLiteStorageAdapter

ROOM = "!room:example.org"


class TestAccounts:
    @pytest.mark.asyncio
    async def test_register_and_list(self, host, account, client):
        host.register_account(account, client)
        assert host.list_accounts() == [account]
        assert host.get_account("acc1") == account
        assert host.get_account_context("acc1").client is client

    @pytest.mark.asyncio
    async def test_update_unknown_account_is_noop(self, host, account):
        host.update_account(account)
        assert host.list_accounts() == []

    @pytest.mark.asyncio
    async def test_update_replaces_metadata(self, host, account, client):
        host.register_account(account, client)
        renamed = account.model_copy(update={"display_name": "Alice B."})
        host.update_account(renamed)
        assert host.get_account("acc1").display_name == "Alice B."

    @pytest.mark.asyncio
    async def test_unregister(self, host, account, client):
        host.register_account(account, client)
        host.unregister_account("acc1")
        host.unregister_account("acc1")
        assert host.get_account("acc1") is None

    @pytest.mark.asyncio
    async def test_lifecycle_events_reach_subscribers(self, host, factory, account, client):
        factory.configure(
            "watcher",
            subscribe=["matrix.client-ready", "matrix.client-updated", "matrix.client-stopped"],
        )
        await host.register_plugin(
            make_definition(
                "watcher",
                events=["matrix.client-ready", "matrix.client-updated", "matrix.client-stopped"],
            )
        )
        ctx = factory.contexts["watcher"]

        host.register_account(account, client)
        host.update_account(account)
        host.unregister_account("acc1")
        await wait_until(lambda: len(ctx.sent_of("sandbox:event")) == 3)

        events = ctx.sent_of("sandbox:event")
        assert {e["event"] for e in events} == {
            "matrix.client-ready",
            "matrix.client-updated",
            "matrix.client-stopped",
        }
        assert all(e["payload"]["account"]["id"] == "acc1" for e in events)

    def test_register_without_event_loop(self, account, client):
        host = PluginHost()
        host.register_account(account, client)
        assert host.get_account("acc1") == account


class TestPluginRegistry:
    @pytest.mark.asyncio
    async def test_register_and_unregister(self, host):
        handle = await host.register_plugin(make_definition())
        assert host.get_plugin_ids() == ["demo.echo"]
        assert host.get_handle("demo.echo") is handle

        await host.unregister_plugin("demo.echo")
        assert host.get_plugin_ids() == []
        assert host.get_handle("demo.echo") is None

    @pytest.mark.asyncio
    async def test_duplicate_registration_rejected(self, host, factory):
        await host.register_plugin(make_definition())
        with pytest.raises(DuplicateRegistrationError, match="demo.echo"):
            await host.register_plugin(make_definition())
        assert len(factory.created) == 1

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_registration_rejected(self, host):
        results = await asyncio.gather(
            host.register_plugin(make_definition()),
            host.register_plugin(make_definition()),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], DuplicateRegistrationError)

    @pytest.mark.asyncio
    async def test_unknown_permission_creates_nothing(self, host, factory):
        with pytest.raises(ManifestValidationError, match="root-access"):
            await host.register_plugin(make_definition(permissions=["root-access"]))
        assert factory.created == []
        assert host.get_plugin_ids() == []

    @pytest.mark.asyncio
    async def test_unregister_absent_is_noop(self, host):
        await host.unregister_plugin("nobody")

    @pytest.mark.asyncio
    async def test_aclose_disposes_everything(self, factory):
        async with PluginHost(context_factory=factory) as host:
            await host.register_plugin(make_definition("a.plugin"))
            await host.register_plugin(make_definition("b.plugin"))
        assert host.get_plugin_ids() == []
        assert all(ctx.terminated for ctx in factory.created)

    @pytest.mark.asyncio
    async def test_aclose_aborts_pending_activation(self, factory):
        host = PluginHost(context_factory=factory)
        factory.configure("demo.echo", ready=False)
        activation = asyncio.create_task(host.register_plugin(make_definition()))
        await wait_until(lambda: "demo.echo" in factory.contexts)
        ctx = factory.contexts["demo.echo"]
        await wait_until(lambda: ctx.sent_of("sandbox:init"))

        await host.aclose()
        with pytest.raises(ContextFailure):
            await activation
        assert host.get_plugin_ids() == []
        assert ctx.terminated

        with pytest.raises(PluginError, match="closed"):
            await host.register_plugin(make_definition("other.plugin"))
        assert "other.plugin" not in factory.contexts

    @pytest.mark.asyncio
    async def test_storage_view_cached_per_plugin(self, host):
        assert host.storage_for("a") is host.storage_for("a")
        assert host.storage_for("a") is not host.storage_for("b")


class TestEmit:
    @pytest.mark.asyncio
    async def test_emit_without_plugins(self, host):
        await host.emit("matrix.message", {})

    @pytest.mark.asyncio
    async def test_failing_context_does_not_affect_others(self, host, factory):
        factory.configure("broken", subscribe=["matrix.message"])
        factory.configure("healthy", subscribe=["matrix.message"])
        await host.register_plugin(make_definition("broken"))
        await host.register_plugin(make_definition("healthy"))
        broken = factory.contexts["broken"]

        async def explode(message):
            raise RuntimeError("pipe closed")

        broken.send = explode
        await host.emit("matrix.message", {"n": 1})
        assert len(factory.contexts["healthy"].sent_of("sandbox:event")) == 1


class TestActions:
    @pytest.mark.asyncio
    async def test_send_text_message(self, host, account, client):
        host.register_account(account, client)
        result = await host.send_text_message(
            SendTextMessageInput(account_id="acc1", room_id=ROOM, body="hello")
        )
        assert result == {"eventId": "$event1"}
        assert client.sent == [(ROOM, "m.room.message", {"body": "hello", "msgtype": "m.text"})]

    @pytest.mark.asyncio
    async def test_send_event(self, host, account, client):
        host.register_account(account, client)
        await host.send_event(
            SendEventInput(account_id="acc1", room_id=ROOM, type="m.reaction", content={"k": 1})
        )
        assert client.sent == [(ROOM, "m.reaction", {"k": 1})]

    @pytest.mark.asyncio
    async def test_redact_event(self, host, account, client):
        host.register_account(account, client)
        await host.redact_event(
            RedactEventInput(account_id="acc1", room_id=ROOM, event_id="$e", reason="spam")
        )
        assert client.redacted == [(ROOM, "$e", "spam")]

    @pytest.mark.asyncio
    async def test_unknown_account(self, host):
        with pytest.raises(AccountNotFoundError):
            await host.send_text_message(
                SendTextMessageInput(account_id="ghost", room_id=ROOM, body="hi")
            )

    @pytest.mark.asyncio
    async def test_sync_client_supported(self, host, account):
        class SyncClient:
            def send_event(self, room_id, event_type, content):
                return {"event_id": "$sync"}

            def redact_event(self, room_id, event_id, reason=None):
                return None

        host.register_account(account, SyncClient())
        result = await host.perform_action(
            "p", "sendTextMessage", {"accountId": "acc1", "roomId": ROOM, "body": "x"}
        )
        assert result == {"eventId": "$sync"}

    @pytest.mark.asyncio
    async def test_unknown_action(self, host):
        with pytest.raises(ActionNotAvailableError):
            await host.perform_action("p", "teleport", {})

    @pytest.mark.asyncio
    async def test_feature_toggle_action(self, factory, account, client):
        permission_map = PermissionMap.with_feature_toggles({"reactions": ["sendReaction"]})
        host = PluginHost(context_factory=factory, permission_map=permission_map)
        calls = []

        async def send_reaction(plugin_id, payload):
            calls.append((plugin_id, payload))
            return {"ok": True}

        host.register_action("sendReaction", send_reaction)
        with pytest.raises(DuplicateRegistrationError):
            host.register_action("sendReaction", send_reaction)

        try:
            await host.register_plugin(make_definition("reactor", permissions=["reactions"]))
            ctx = factory.contexts["reactor"]
            ctx.push(
                {
                    "type": "sandbox:action-request",
                    "requestId": 1,
                    "action": "sendReaction",
                    "payload": {"key": "+1"},
                }
            )
            await wait_until(lambda: ctx.sent_of("sandbox:action-response"))
            assert ctx.sent_of("sandbox:action-response")[0]["result"] == {"ok": True}
            assert calls == [("reactor", {"key": "+1"})]
        finally:
            await host.aclose()


def test_build_message_content_with_formatting():
    content = build_message_content(
        SendTextMessageInput(
            account_id="a",
            room_id="r",
            body="*hi*",
            formatted_body="<b>hi</b>",
            additional_content={"m.mentions": {}},
        )
    )
    assert content == {
        "body": "*hi*",
        "msgtype": "m.text",
        "format": "org.matrix.custom.html",
        "formatted_body": "<b>hi</b>",
        "m.mentions": {},
    }


def test_build_message_content_custom_msgtype():
    content = build_message_content(
        SendTextMessageInput(account_id="a", room_id="r", body="waves", msgtype="m.emote")
    )
    assert content == {"body": "waves", "msgtype": "m.emote"}


class TestExecuteCommand:
    @pytest.mark.asyncio
    async def test_not_found(self, host, factory, account, client):
        host.register_account(account, client)
        factory.configure("watcher", subscribe=["command.invoked"])
        await host.register_plugin(make_definition("watcher", events=["command.invoked"]))

        result = await host.execute_command(CommandInvocation(command="/nope", account_id="acc1"))
        assert result.status is CommandStatus.NOT_FOUND
        assert result.plugin_id is None

        invoked = factory.contexts["watcher"].sent_of("sandbox:event")
        assert len(invoked) == 1
        assert invoked[0]["payload"]["status"] == "not_found"
        assert "pluginId" not in invoked[0]["payload"]
        assert invoked[0]["payload"]["account"]["id"] == "acc1"

    @pytest.mark.asyncio
    async def test_not_available_when_owner_inactive(self, host, factory, account, client):
        host.register_account(account, client)
        factory.configure("watcher", subscribe=["command.invoked"])
        await host.register_plugin(make_definition("watcher", events=["command.invoked"]))

        async def handler(ctx):
            return "never"

        host.register_command("gone.plugin", CommandDefinition(name="/gone", handler=handler))
        result = await host.execute_command(CommandInvocation(command="/gone", account_id="acc1"))
        assert result.status is CommandStatus.NOT_AVAILABLE
        assert result.plugin_id == "gone.plugin"

        invoked = factory.contexts["watcher"].sent_of("sandbox:event")
        assert [e["payload"]["status"] for e in invoked] == ["not_available"]
        assert invoked[0]["payload"]["pluginId"] == "gone.plugin"

    @pytest.mark.asyncio
    async def test_host_side_handler_with_reply(self, host, factory, account, client):
        host.register_account(account, client)
        factory.configure("owner", subscribe=["command.invoked"])
        await host.register_plugin(make_definition("owner", events=["command.invoked"]))

        async def handler(ctx):
            await ctx.reply(f"echo {' '.join(ctx.args)}")
            return {"message": "done"}

        host.register_command("owner", CommandDefinition(name="/Echo", handler=handler))
        result = await host.execute_command(
            CommandInvocation(command=" /ECHO ", account_id="acc1", room_id=ROOM, args=["hi"])
        )
        assert result.status is CommandStatus.OK
        assert result.message == "done"
        assert client.sent == [(ROOM, "m.room.message", {"body": "echo hi", "msgtype": "m.text"})]

        invoked = factory.contexts["owner"].sent_of("sandbox:event")
        assert len(invoked) == 1
        assert invoked[0]["event"] == "command.invoked"
        assert invoked[0]["payload"]["command"] == " /ECHO "
        assert invoked[0]["payload"]["pluginId"] == "owner"
        assert invoked[0]["payload"]["status"] == "ok"
        assert invoked[0]["payload"]["account"]["id"] == "acc1"

    @pytest.mark.asyncio
    async def test_handler_error_wrapped(self, host, factory, account, client):
        host.register_account(account, client)
        factory.configure("owner", subscribe=["command.invoked"])
        await host.register_plugin(make_definition("owner", events=["command.invoked"]))

        async def handler(ctx):
            raise RuntimeError("kaboom")

        host.register_command("owner", CommandDefinition(name="/fail", handler=handler))
        result = await host.execute_command(CommandInvocation(command="/fail", account_id="acc1"))
        assert result.status is CommandStatus.ERROR
        assert result.error == "kaboom"
        assert len(factory.contexts["owner"].sent_of("sandbox:event")) == 1

    @pytest.mark.asyncio
    async def test_unknown_account_is_error(self, host):
        await host.register_plugin(make_definition("owner"))

        async def handler(ctx):
            return None

        host.register_command("owner", CommandDefinition(name="/x", handler=handler))
        result = await host.execute_command(CommandInvocation(command="/x", account_id="ghost"))
        assert result.status is CommandStatus.ERROR
        assert "ghost" in result.error

    @pytest.mark.asyncio
    async def test_reply_without_room_fails(self, host, account, client):
        host.register_account(account, client)
        await host.register_plugin(make_definition("owner"))

        async def handler(ctx):
            await ctx.reply("hi")

        host.register_command("owner", CommandDefinition(name="/r", handler=handler))
        result = await host.execute_command(CommandInvocation(command="/r", account_id="acc1"))
        assert result.status is CommandStatus.ERROR
        assert "room" in result.error


def test_from_config(default_config, tmp_path):
    default_config.storage.path = str(tmp_path / "storage.db")
    default_config.sandbox.command_timeout = 3.0
    default_config.permissions.feature_toggles = {"reactions": ["sendReaction"]}
    host = PluginHost.from_config(default_config)
    assert isinstance(host.storage, SQLiteStorageAdapter)
    assert host.bridge_settings.command_timeout == 3.0
    assert "reactions" in host.permission_map.known_permissions


def test_account_metadata_payload_uses_camel_case():
    account = AccountMetadata(id="a", user_id="@a:x", homeserver_url="https://x")
    assert account.to_payload() == {"id": "a", "userId": "@a:x", "homeserverUrl": "https://x"}


def test_fake_client_satisfies_protocol():
    assert isinstance(FakeClient(), MatrixClient)
