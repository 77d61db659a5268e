"""PluginHost: the coordinator the embedding application talks to.

The host owns the account registry, the live plugin handles, the command
registry and event fan-out. Plugins never reach accounts or clients
directly; every privileged operation goes through :meth:`perform_action`
after the plugin's sandbox bridge has authorized it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from mxhost.accounts import AccountContext, AccountMetadata, MatrixClient
from mxhost.commands import (
    CommandContext,
    CommandDefinition,
    CommandExecutionResult,
    CommandInvocation,
    CommandRegistry,
    CommandStatus,
    RegisteredCommand,
)
from mxhost.errors import (
    AccountNotFoundError,
    ActionNotAvailableError,
    ContextFailure,
    DuplicateRegistrationError,
    PluginError,
)
from mxhost.plugins.bridge import (
    BridgeSettings,
    PluginDefinition,
    PluginHandle,
    PluginState,
    SandboxBridge,
)
from mxhost.plugins.context import ContextFactory, subprocess_context_factory
from mxhost.plugins.manifest import PluginEvent, validate_manifest
from mxhost.plugins.permissions import PermissionMap, resolve_permissions
from mxhost.storage import MemoryStorageAdapter, PluginStorage, StorageAdapter

if TYPE_CHECKING:
    from mxhost.config.schema import HostConfig

logger = logging.getLogger(__name__)

ActionHandler = Callable[[str, dict[str, Any]], Any]

DEFAULT_MSGTYPE = "m.text"
HTML_FORMAT = "org.matrix.custom.html"


class ActionInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    account_id: str
    room_id: str


class SendTextMessageInput(ActionInput):
    """Text message with an optional rich body."""

    body: str
    msgtype: str | None = None
    formatted_body: str | None = None
    format: str | None = None
    additional_content: dict[str, Any] | None = None


class SendEventInput(ActionInput):
    type: str = Field(..., min_length=1)
    content: dict[str, Any] = Field(default_factory=dict)


class RedactEventInput(ActionInput):
    event_id: str = Field(..., min_length=1)
    reason: str | None = None


def build_message_content(data: SendTextMessageInput) -> dict[str, Any]:
    """Build ``m.room.message`` content from a text message request."""
    content: dict[str, Any] = {"body": data.body, "msgtype": data.msgtype or DEFAULT_MSGTYPE}
    if data.formatted_body:
        content["format"] = data.format or HTML_FORMAT
        content["formatted_body"] = data.formatted_body
    if data.additional_content:
        content.update(data.additional_content)
    return content


def _event_id(response: Any) -> str:
    if isinstance(response, dict):
        return str(response.get("event_id") or response.get("eventId") or "")
    return str(getattr(response, "event_id", "") or "")


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class PluginHost:
    """Central coordinator for accounts, plugins, events and commands."""

    def __init__(
        self,
        storage: StorageAdapter | None = None,
        permission_map: PermissionMap | None = None,
        context_factory: ContextFactory | None = None,
        bridge_settings: BridgeSettings | None = None,
        delivery_timeout: float = 10.0,
    ):
        """Initialize plugin host.

        Args:
            storage: Backend for per-plugin storage (in-memory by default)
            permission_map: Permission to action mapping
            context_factory: Creates an isolated context per plugin id;
                defaults to one subprocess per plugin
            bridge_settings: Timeouts and limits for sandbox bridges
            delivery_timeout: Seconds to wait for one plugin to accept an event
        """
        self.storage = storage or MemoryStorageAdapter()
        self.permission_map = permission_map or PermissionMap.default()
        self.context_factory = context_factory or subprocess_context_factory()
        self.bridge_settings = bridge_settings or BridgeSettings()
        self.delivery_timeout = delivery_timeout

        self._accounts: dict[str, AccountContext] = {}
        self._plugins: dict[str, PluginHandle] = {}
        self._activating: dict[str, SandboxBridge] = {}
        self._disposing: dict[str, PluginHandle] = {}
        self._closed = False
        self._commands = CommandRegistry()
        self._storages: dict[str, PluginStorage] = {}
        self._background: set[asyncio.Task[None]] = set()
        self._actions: dict[str, ActionHandler] = {
            "sendTextMessage": self._action_send_text,
            "sendEvent": self._action_send_event,
            "redactEvent": self._action_redact_event,
        }

    @classmethod
    def from_config(
        cls, config: HostConfig, context_factory: ContextFactory | None = None
    ) -> PluginHost:
        """Build a host from loaded configuration."""
        from mxhost.plugins.context import SandboxLimits
        from mxhost.storage import create_storage_adapter

        sandbox = config.sandbox
        return cls(
            storage=create_storage_adapter(config.storage.backend, config.storage.path),
            permission_map=config.permissions.to_permission_map(),
            context_factory=context_factory
            or subprocess_context_factory(
                SandboxLimits(
                    max_memory_mb=sandbox.max_memory_mb,
                    max_cpu_seconds=sandbox.max_cpu_seconds,
                    env_allowlist=list(sandbox.env_allowlist),
                )
            ),
            bridge_settings=BridgeSettings(
                ready_timeout=sandbox.ready_timeout,
                command_timeout=sandbox.command_timeout,
                max_timers=sandbox.max_timers,
                min_interval_ms=sandbox.min_interval_ms,
            ),
            delivery_timeout=sandbox.delivery_timeout,
        )

    # Accounts

    def register_account(self, account: AccountMetadata, client: MatrixClient) -> None:
        """Bind an account id to an authenticated client, replacing any previous binding."""
        self._accounts[account.id] = AccountContext(account=account, client=client)
        logger.info("Account registered: %s", account.id)
        self._emit_in_background(PluginEvent.CLIENT_READY, {"account": account.to_payload()})

    def update_account(self, account: AccountMetadata) -> None:
        """Replace an account's metadata. Unknown ids are ignored."""
        context = self._accounts.get(account.id)
        if context is None:
            return
        context.account = account
        self._emit_in_background(PluginEvent.CLIENT_UPDATED, {"account": account.to_payload()})

    def unregister_account(self, account_id: str) -> None:
        context = self._accounts.pop(account_id, None)
        if context is None:
            return
        logger.info("Account unregistered: %s", account_id)
        self._emit_in_background(
            PluginEvent.CLIENT_STOPPED, {"account": context.account.to_payload()}
        )

    def list_accounts(self) -> list[AccountMetadata]:
        return [context.account for context in self._accounts.values()]

    def get_account(self, account_id: str) -> AccountMetadata | None:
        context = self._accounts.get(account_id)
        return context.account if context else None

    def get_account_context(self, account_id: str) -> AccountContext | None:
        return self._accounts.get(account_id)

    def _ensure_account(self, account_id: str) -> AccountContext:
        context = self._accounts.get(account_id)
        if context is None:
            raise AccountNotFoundError(account_id)
        return context

    # Plugins

    async def register_plugin(self, definition: PluginDefinition) -> PluginHandle:
        """Activate a plugin and index its handle by id.

        Args:
            definition: Manifest, resolved entry location and optional context factory

        Returns:
            Live plugin handle

        A previous instance of the same id that is still being disposed is
        waited for first, so the new instance never races it for command names.

        Raises:
            DuplicateRegistrationError: If the id already has a live handle
            ManifestValidationError: If the manifest asks for unknown permissions or events
            ContextFailure: If activation fails; nothing stays registered
            PluginError: If the host has been closed
        """
        manifest = validate_manifest(definition.manifest, self.permission_map.known_permissions)
        previous = self._disposing.get(manifest.id)
        if previous is not None:
            await previous.dispose()
        if self._closed:
            raise PluginError(f"Plugin host is closed; cannot register {manifest.id}")
        if manifest.id in self._plugins or manifest.id in self._activating:
            raise DuplicateRegistrationError(f'Plugin with id "{manifest.id}" already registered')

        permissions = resolve_permissions(manifest, self.permission_map)
        factory = definition.context_factory or self.context_factory
        bridge = SandboxBridge(
            definition, permissions, self, factory(manifest.id), self.bridge_settings
        )

        self._activating[manifest.id] = bridge
        try:
            handle = await bridge.activate()
        finally:
            del self._activating[manifest.id]

        if self._closed:
            await handle.dispose()
            raise ContextFailure(f"Plugin host closed while activating {manifest.id}")

        self._plugins[manifest.id] = handle
        bridge.add_dispose_callback(self._forget_bridge)
        logger.info(
            "Plugin registered: %s (permissions: %s)",
            manifest.id,
            ", ".join(manifest.permissions) or "none",
        )
        return handle

    def _forget_bridge(self, bridge: SandboxBridge) -> None:
        handle = self._plugins.get(bridge.plugin_id)
        if handle is not None and handle.bridge is bridge:
            del self._plugins[bridge.plugin_id]

    async def unregister_plugin(self, plugin_id: str) -> None:
        """Dispose a plugin's handle. Unknown ids are a no-op."""
        handle = self._plugins.pop(plugin_id, None)
        if handle is None:
            return
        self._disposing[plugin_id] = handle
        try:
            await handle.dispose()
        finally:
            if self._disposing.get(plugin_id) is handle:
                del self._disposing[plugin_id]
        logger.info("Plugin unregistered: %s", plugin_id)

    def get_plugin_ids(self) -> list[str]:
        return list(self._plugins.keys())

    def get_handle(self, plugin_id: str) -> PluginHandle | None:
        return self._plugins.get(plugin_id)

    def storage_for(self, plugin_id: str) -> PluginStorage:
        storage = self._storages.get(plugin_id)
        if storage is None:
            storage = self._storages[plugin_id] = PluginStorage(self.storage, plugin_id)
        return storage

    # Events

    async def emit(self, event: str, payload: Any) -> None:
        """Deliver an event to every live plugin subscribed to it.

        Deliveries run concurrently and independently. A failing or slow
        plugin is logged and never affects the others or the caller.
        """
        event = str(event)
        deliveries: list[tuple[str, asyncio.Future[bool]]] = []
        for plugin_id, handle in list(self._plugins.items()):
            future = handle.bridge.deliver(event, payload)
            if future is not None:
                deliveries.append((plugin_id, future))
        if not deliveries:
            return

        results = await asyncio.gather(
            *(self._await_delivery(plugin_id, event, future) for plugin_id, future in deliveries),
            return_exceptions=True,
        )
        for (plugin_id, _), result in zip(deliveries, results, strict=True):
            if isinstance(result, Exception):
                logger.error("Delivery of %s to plugin %s failed: %s", event, plugin_id, result)

    async def _await_delivery(
        self, plugin_id: str, event: str, future: asyncio.Future[bool]
    ) -> None:
        try:
            delivered = await asyncio.wait_for(future, timeout=self.delivery_timeout)
        except TimeoutError:
            logger.warning(
                "Plugin %s did not accept %s within %ss", plugin_id, event, self.delivery_timeout
            )
            return
        if not delivered:
            logger.debug("Event %s dropped for plugin %s", event, plugin_id)

    def _emit_in_background(self, event: str, payload: Any) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self.emit(event, payload))
        except RuntimeError:
            logger.debug("No running event loop; %s not emitted", event)
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # Actions

    def register_action(self, name: str, handler: ActionHandler) -> None:
        """Expose a host feature as an action plugins can request.

        Args:
            name: Action name referenced by the permission map
            handler: Called with ``(plugin_id, payload)``; may be async

        Raises:
            DuplicateRegistrationError: If the action name is already taken
        """
        if name in self._actions:
            raise DuplicateRegistrationError(f"Action already registered: {name}")
        self._actions[name] = handler

    async def perform_action(self, plugin_id: str, action: str, payload: dict[str, Any]) -> Any:
        """Run an already-authorized action for a plugin.

        Raises:
            ActionNotAvailableError: If no handler implements the action
            AccountNotFoundError: If the payload names an unknown account
            pydantic.ValidationError: If the payload is malformed
        """
        handler = self._actions.get(action)
        if handler is None:
            raise ActionNotAvailableError(f"Action {action} is not available on this host")
        return await _maybe_await(handler(plugin_id, payload))

    async def send_text_message(self, data: SendTextMessageInput) -> dict[str, str]:
        context = self._ensure_account(data.account_id)
        response = await _maybe_await(
            context.client.send_event(data.room_id, "m.room.message", build_message_content(data))
        )
        return {"eventId": _event_id(response)}

    async def send_event(self, data: SendEventInput) -> dict[str, str]:
        context = self._ensure_account(data.account_id)
        response = await _maybe_await(
            context.client.send_event(data.room_id, data.type, data.content)
        )
        return {"eventId": _event_id(response)}

    async def redact_event(self, data: RedactEventInput) -> None:
        context = self._ensure_account(data.account_id)
        await _maybe_await(context.client.redact_event(data.room_id, data.event_id, data.reason))

    async def _action_send_text(self, plugin_id: str, payload: dict[str, Any]) -> Any:
        return await self.send_text_message(SendTextMessageInput.model_validate(payload))

    async def _action_send_event(self, plugin_id: str, payload: dict[str, Any]) -> Any:
        return await self.send_event(SendEventInput.model_validate(payload))

    async def _action_redact_event(self, plugin_id: str, payload: dict[str, Any]) -> Any:
        await self.redact_event(RedactEventInput.model_validate(payload))
        return None

    # Commands

    def register_command(self, plugin_id: str, definition: CommandDefinition) -> RegisteredCommand:
        return self._commands.register(plugin_id, definition)

    def unregister_command(self, entry: RegisteredCommand) -> None:
        self._commands.unregister(entry)

    def get_registered_commands(self) -> list[RegisteredCommand]:
        return self._commands.list_commands()

    async def execute_command(self, invocation: CommandInvocation) -> CommandExecutionResult:
        """Run a command by name on behalf of an external caller.

        Returns ``not_found`` for unknown names, ``not_available`` when the
        owner is not live, ``error`` when the handler fails and ``ok``
        otherwise. ``command.invoked`` is emitted once the outcome is known,
        whatever it is.
        """
        registration = self._commands.lookup(invocation.command)
        if registration is None:
            await self._emit_command_invoked(invocation, CommandStatus.NOT_FOUND, None)
            return CommandExecutionResult(
                command=invocation.command, status=CommandStatus.NOT_FOUND
            )

        plugin_id = registration.plugin_id
        handle = self._plugins.get(plugin_id)
        if handle is None or handle.state is not PluginState.READY:
            await self._emit_command_invoked(invocation, CommandStatus.NOT_AVAILABLE, plugin_id)
            return CommandExecutionResult(
                command=invocation.command,
                status=CommandStatus.NOT_AVAILABLE,
                plugin_id=plugin_id,
            )

        message: str | None = None
        try:
            context = self._ensure_account(invocation.account_id)

            async def reply(content: str | dict[str, Any]) -> None:
                if not invocation.room_id:
                    raise ValueError("Cannot reply without room context")
                if isinstance(content, str):
                    content = {"body": content}
                data = SendTextMessageInput.model_validate(
                    {**content, "accountId": invocation.account_id, "roomId": invocation.room_id}
                )
                await self.send_text_message(data)

            result = await registration.definition.handler(
                CommandContext(
                    account=context.account,
                    client=context.client,
                    room_id=invocation.room_id,
                    args=list(invocation.args),
                    event=invocation.event,
                    reply=reply,
                )
            )
            if isinstance(result, str):
                message = result
            elif isinstance(result, dict) and isinstance(result.get("message"), str):
                message = result["message"]
        except Exception as e:
            logger.error("Command execution failed: %s: %s", invocation.command, e)
            await self._emit_command_invoked(invocation, CommandStatus.ERROR, plugin_id)
            return CommandExecutionResult(
                command=invocation.command,
                status=CommandStatus.ERROR,
                plugin_id=plugin_id,
                message=message,
                error=str(e),
            )

        await self._emit_command_invoked(invocation, CommandStatus.OK, plugin_id)
        return CommandExecutionResult(
            command=invocation.command,
            status=CommandStatus.OK,
            plugin_id=plugin_id,
            message=message,
        )

    async def _emit_command_invoked(
        self,
        invocation: CommandInvocation,
        status: CommandStatus,
        plugin_id: str | None,
    ) -> None:
        payload: dict[str, Any] = {
            "command": invocation.command,
            "args": list(invocation.args),
            "status": str(status),
        }
        if plugin_id is not None:
            payload["pluginId"] = plugin_id
        context = self._accounts.get(invocation.account_id)
        if context is not None:
            payload["account"] = context.account.to_payload()
        if invocation.room_id is not None:
            payload["roomId"] = invocation.room_id
        if invocation.event is not None:
            payload["event"] = invocation.event
        await self.emit(PluginEvent.COMMAND_INVOKED, payload)

    # Teardown

    async def aclose(self) -> None:
        """Dispose every plugin and cancel pending background emits.

        Activations still in progress are aborted and later registrations
        are refused.
        """
        self._closed = True
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()

        activating = list(self._activating.values())
        plugin_ids = list(self._plugins.keys())
        await asyncio.gather(
            *(bridge.dispose() for bridge in activating),
            *(self.unregister_plugin(plugin_id) for plugin_id in plugin_ids),
            *(handle.dispose() for handle in list(self._disposing.values())),
            return_exceptions=True,
        )
        self._accounts.clear()

    async def __aenter__(self) -> PluginHost:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
