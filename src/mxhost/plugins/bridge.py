"""Sandbox bridge: the only component that talks to a plugin's context.

One :class:`SandboxBridge` owns one isolated context. It sends INIT, waits
for READY, forwards subscribed events, authorizes every request coming back
against the plugin's :class:`PermissionSet` and answers with a correlated
response. Inbound and outbound traffic each run in a dedicated task, so
messages to and from one context keep their order.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol

from mxhost.accounts import AccountMetadata
from mxhost.commands import CommandContext, CommandDefinition, RegisteredCommand
from mxhost.errors import ContextFailure, DuplicateRegistrationError, PluginError
from mxhost.plugins.context import ContextFactory, IsolatedContext, PluginLoggerAdapter
from mxhost.plugins.manifest import PluginManifest
from mxhost.plugins.permissions import PermissionSet
from mxhost.plugins.protocol import (
    ActionRequest,
    ActionResponse,
    CommandInvocationPayload,
    CommandInvokeMessage,
    CommandResult,
    DisposeMessage,
    ErrorMessage,
    EventMessage,
    InitManifest,
    InitMessage,
    LogMessage,
    MatrixRequest,
    MatrixResponse,
    ReadyMessage,
    RegisterCommandMessage,
    SchedulerRequest,
    SchedulerResponse,
    StorageRequest,
    StorageResponse,
    SubscribeMessage,
    TimerFiredMessage,
    UnregisterCommandMessage,
    UnsubscribeMessage,
    WireModel,
    decode_host_bound,
    encode_message,
)
from mxhost.plugins.scheduler import PluginScheduler, SchedulerLimitError
from mxhost.storage import PluginStorage

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class PluginState(StrEnum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"
    DISPOSED = "disposed"


@dataclass
class PluginDefinition:
    """Everything needed to activate one plugin instance."""

    manifest: PluginManifest
    entry_location: str | None = None
    context_factory: ContextFactory | None = None

    @property
    def id(self) -> str:
        return self.manifest.id

    @property
    def resolved_entry(self) -> str:
        return self.entry_location or self.manifest.entry


@dataclass
class BridgeSettings:
    """Timeouts and limits applied by every bridge."""

    ready_timeout: float = 10.0
    command_timeout: float = 10.0
    dispose_timeout: float = 1.0
    max_timers: int = 32
    min_interval_ms: int = 100


class BridgeHost(Protocol):
    """Host services a bridge may call on behalf of its plugin."""

    async def perform_action(self, plugin_id: str, action: str, payload: dict[str, Any]) -> Any: ...

    def storage_for(self, plugin_id: str) -> PluginStorage: ...

    def list_accounts(self) -> list[AccountMetadata]: ...

    def get_account(self, account_id: str) -> AccountMetadata | None: ...

    def register_command(
        self, plugin_id: str, definition: CommandDefinition
    ) -> RegisteredCommand: ...

    def unregister_command(self, entry: RegisteredCommand) -> None: ...


class SandboxBridge:
    """Owns one isolated context and speaks the sandbox protocol with it."""

    def __init__(
        self,
        definition: PluginDefinition,
        permissions: PermissionSet,
        host: BridgeHost,
        context: IsolatedContext,
        settings: BridgeSettings | None = None,
    ):
        self.definition = definition
        self.permissions = permissions
        self.settings = settings or BridgeSettings()
        self._host = host
        self._context = context
        self._log = PluginLoggerAdapter(logger, definition.id)

        self.state = PluginState.PENDING
        self._subscriptions: set[str] = set()
        self._in_flight: set[int] = set()
        self._outbound: asyncio.Queue[tuple[WireModel, asyncio.Future[bool]]] = asyncio.Queue()
        self._ready: asyncio.Future[None] | None = None
        self._reader: asyncio.Task[None] | None = None
        self._writer: asyncio.Task[None] | None = None
        self._request_tasks: set[asyncio.Task[Any]] = set()
        self._pending_commands: dict[int, asyncio.Future[CommandResult]] = {}
        self._commands: dict[int, RegisteredCommand] = {}
        self._next_request_id = 1
        self._dispose_task: asyncio.Task[None] | None = None
        self._dispose_callbacks: list[Callable[[SandboxBridge], None]] = []
        self.scheduler = PluginScheduler(
            definition.id,
            self._fire_timer,
            max_timers=self.settings.max_timers,
            min_interval_ms=self.settings.min_interval_ms,
        )

    @property
    def plugin_id(self) -> str:
        return self.definition.id

    @property
    def subscriptions(self) -> frozenset[str]:
        return frozenset(self._subscriptions)

    def is_subscribed(self, event: str) -> bool:
        return self.state is PluginState.READY and event in self._subscriptions

    def add_dispose_callback(self, callback: Callable[[SandboxBridge], None]) -> None:
        self._dispose_callbacks.append(callback)

    # Lifecycle

    async def activate(self) -> PluginHandle:
        """Start the context, send INIT and wait for READY.

        Returns:
            Live handle for the plugin

        Raises:
            ContextFailure: If the context fails, reports an error, closes or
                does not acknowledge INIT in time. The context is released
                before the error propagates.
        """
        if self.state is not PluginState.PENDING or self._ready is not None:
            raise ContextFailure(f"Plugin {self.plugin_id} bridge was already activated")

        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        manifest = self.definition.manifest
        init = InitMessage(
            manifest=InitManifest(
                id=manifest.id,
                name=manifest.name,
                version=manifest.version,
                description=manifest.description or None,
            ),
            entry_url=self.definition.resolved_entry,
            allowed_events=sorted(self.permissions.events),
        )

        try:
            await self._context.start()
            self._reader = asyncio.create_task(self._read_loop())
            self._writer = asyncio.create_task(self._write_loop())
            await self._send(init)
            await asyncio.wait_for(asyncio.shield(self._ready), timeout=self.settings.ready_timeout)
        except asyncio.CancelledError:
            await self._fail("activation cancelled")
            raise
        except TimeoutError as e:
            await self._fail("no READY")
            raise ContextFailure(
                f"Plugin {self.plugin_id} did not acknowledge INIT within "
                f"{self.settings.ready_timeout}s"
            ) from e
        except ContextFailure as e:
            await self._fail(str(e))
            raise
        except Exception as e:
            await self._fail(str(e))
            raise ContextFailure(f"Plugin {self.plugin_id} failed to activate: {e}") from e

        if self.state is not PluginState.PENDING:
            raise ContextFailure(f"Plugin {self.plugin_id} was disposed during activation")
        self.state = PluginState.READY
        self._log.info("Plugin activated (%s)", self.definition.resolved_entry)
        return PluginHandle(self)

    async def dispose(self) -> None:
        """Tear the plugin down. Idempotent, safe to call concurrently, never raises."""
        if self._dispose_task is None:
            if self.state in (PluginState.DISPOSED, PluginState.FAILED):
                return
            self._dispose_task = asyncio.create_task(self._dispose())
        await asyncio.shield(self._dispose_task)

    async def _dispose(self) -> None:
        was_ready = self.state is PluginState.READY
        self.state = PluginState.DISPOSED
        if was_ready:
            try:
                await asyncio.wait_for(
                    self._context.send(encode_message(DisposeMessage())),
                    timeout=self.settings.dispose_timeout,
                )
            except Exception as e:
                self._log.debug("DISPOSE not delivered: %s", e)
        await self._release("disposed")
        self._log.info("Plugin disposed")

    async def _fail(self, reason: str) -> None:
        if self.state in (PluginState.DISPOSED, PluginState.FAILED):
            return
        self.state = PluginState.FAILED
        self._log.warning("Activation failed: %s", reason)
        await self._release(f"activation failed: {reason}")

    async def _release(self, reason: str) -> None:
        try:
            await self._context.terminate()
        except Exception as e:
            self._log.warning("Context terminate failed: %s", e)

        current = asyncio.current_task()
        tasks = [
            t
            for t in (self._reader, self._writer, *self._request_tasks)
            if t is not None and t is not current and not t.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._request_tasks.clear()

        self.scheduler.cancel_all()
        self._subscriptions.clear()

        failure = ContextFailure(f"Plugin {self.plugin_id} {reason}")
        for future in self._pending_commands.values():
            if not future.done():
                future.set_exception(failure)
        self._pending_commands.clear()
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(failure)
            # Nobody awaits the ready future past this point.
            self._ready.exception()

        while not self._outbound.empty():
            _, future = self._outbound.get_nowait()
            if not future.done():
                future.set_result(False)

        for entry in self._commands.values():
            self._host.unregister_command(entry)
        self._commands.clear()

        for callback in self._dispose_callbacks:
            try:
                callback(self)
            except Exception as e:
                self._log.warning("Dispose callback failed: %s", e)
        self._dispose_callbacks.clear()

    # Outbound channel

    def _enqueue(self, message: WireModel) -> asyncio.Future[bool]:
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._outbound.put_nowait((message, future))
        return future

    async def _send(self, message: WireModel) -> None:
        if not await self._enqueue(message):
            raise ContextFailure(f"Plugin {self.plugin_id} context closed")

    def _respond(self, message: WireModel) -> None:
        if self.state in (PluginState.PENDING, PluginState.READY):
            self._enqueue(message)

    async def _write_loop(self) -> None:
        while True:
            message, future = await self._outbound.get()
            try:
                await self._context.send(encode_message(message))
            except asyncio.CancelledError:
                if not future.done():
                    future.set_result(False)
                raise
            except Exception as e:
                self._log.warning("Failed to send %s: %s", getattr(message, "type", "?"), e)
                if not future.done():
                    future.set_result(False)
                continue
            if not future.done():
                future.set_result(True)

    def deliver(self, event: str, payload: Any) -> asyncio.Future[bool] | None:
        """Queue an EVENT for the context if the plugin subscribed to it.

        Enqueueing happens synchronously, so events reach one plugin in the
        order this method was called.

        Returns:
            Future resolving once the message was written (True) or dropped
            (False), or None if the plugin is not subscribed.
        """
        if not self.is_subscribed(event):
            return None
        return self._enqueue(EventMessage(event=event, payload=payload))

    # Inbound channel

    async def _read_loop(self) -> None:
        while True:
            try:
                raw = await self._context.receive()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._log.warning("Context channel failed: %s", e)
                raw = None
            if raw is None:
                break
            message = decode_host_bound(raw)
            if message is None:
                continue
            try:
                self._dispatch(message)
            except Exception as e:
                self._log.error("Failed to handle %s: %s", message.type, e)

        if self.state is PluginState.PENDING:
            if self._ready is not None and not self._ready.done():
                self._ready.set_exception(
                    ContextFailure(f"Plugin {self.plugin_id} context exited before READY")
                )
        elif self.state is PluginState.READY:
            self._log.warning("Context exited unexpectedly; disposing plugin")
            self._dispose_task = asyncio.create_task(self._dispose())

    def _dispatch(self, message: Any) -> None:
        if self.state not in (PluginState.PENDING, PluginState.READY):
            return

        if isinstance(message, ReadyMessage):
            if self._ready is not None and not self._ready.done():
                self._ready.set_result(None)
        elif isinstance(message, ErrorMessage):
            self._log.error("Context reported error: %s", message.error)
            if self._ready is not None and not self._ready.done():
                self._ready.set_exception(
                    ContextFailure(f"Plugin {self.plugin_id} failed: {message.error}")
                )
        elif isinstance(message, SubscribeMessage):
            self._handle_subscribe(message.event)
        elif isinstance(message, UnsubscribeMessage):
            self._subscriptions.discard(message.event)
        elif isinstance(message, LogMessage):
            level = _LOG_LEVELS.get(message.level, logging.INFO)
            if message.args:
                self._log.log(level, "%s %s", message.message, message.args)
            else:
                self._log.log(level, "%s", message.message)
        elif isinstance(message, RegisterCommandMessage):
            self._handle_register_command(message)
        elif isinstance(message, UnregisterCommandMessage):
            entry = self._commands.pop(message.handler_id, None)
            if entry is not None:
                self._host.unregister_command(entry)
        elif isinstance(message, CommandResult):
            future = self._pending_commands.pop(message.request_id, None)
            if future is not None and not future.done():
                future.set_result(message)
        elif isinstance(message, ActionRequest | StorageRequest | MatrixRequest | SchedulerRequest):
            self._handle_request(message)

    def _handle_subscribe(self, event: str) -> None:
        if not self.permissions.allows_event(event):
            self._log.warning("Refused subscription to %s (not in manifest)", event)
            return
        self._subscriptions.add(event)

    # Requests

    def _handle_request(self, message: Any) -> None:
        response_type = _RESPONSE_TYPES[type(message)]
        request_id = message.request_id

        if request_id in self._in_flight:
            self._log.warning("Duplicate request id %d ignored", request_id)
            self._respond(
                response_type(
                    request_id=request_id, success=False, error="Duplicate request id"
                )
            )
            return

        denial = self._authorize(message)
        if denial is not None:
            self._log.warning("Denied %s: %s", message.type, denial)
            self._respond(response_type(request_id=request_id, success=False, error=denial))
            return

        if isinstance(message, SchedulerRequest):
            # Answered inline so the response is queued ahead of any TIMER_FIRED.
            self._respond(self._run_scheduler(message))
            return

        self._in_flight.add(request_id)
        task = asyncio.create_task(self._run_request(message, response_type))
        self._request_tasks.add(task)
        task.add_done_callback(self._request_tasks.discard)

    def _authorize(self, message: Any) -> str | None:
        if isinstance(message, ActionRequest):
            if not self.permissions.allows_action(message.action):
                return f"Action {message.action} is not permitted"
        elif isinstance(message, StorageRequest):
            if not self.permissions.storage:
                return "Storage access is not permitted for this plugin"
        elif isinstance(message, SchedulerRequest):
            if not self.permissions.scheduler:
                return "Scheduler access is not permitted for this plugin"
        return None

    async def _run_request(self, message: Any, response_type: type[Any]) -> None:
        try:
            if isinstance(message, ActionRequest):
                result = await self._host.perform_action(
                    self.plugin_id, message.action, message.payload
                )
            elif isinstance(message, StorageRequest):
                result = self._run_storage(message)
            else:
                result = self._run_matrix(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.warning("%s %d failed: %s", message.type, message.request_id, e)
            self._respond(response_type(request_id=message.request_id, success=False, error=str(e)))
            return
        finally:
            # Ids are unique only while in flight; a finished id may be reused.
            self._in_flight.discard(message.request_id)
        self._respond(response_type(request_id=message.request_id, success=True, result=result))

    def _run_storage(self, message: StorageRequest) -> Any:
        storage = self._host.storage_for(self.plugin_id)
        operation = message.operation
        if operation.op in ("get", "set", "delete") and not operation.key:
            raise ValueError(f"Storage {operation.op} requires a key")
        if operation.op == "get":
            return storage.get(operation.key)
        if operation.op == "set":
            storage.set(operation.key, operation.value)
        elif operation.op == "delete":
            storage.delete(operation.key)
        elif operation.op == "keys":
            return storage.keys()
        elif operation.op == "clear":
            storage.clear()
        return None

    def _run_matrix(self, message: MatrixRequest) -> Any:
        operation = message.operation
        if operation.op == "listAccounts":
            return [account.to_payload() for account in self._host.list_accounts()]
        if not operation.account_id:
            raise ValueError("getAccount requires an accountId")
        account = self._host.get_account(operation.account_id)
        return account.to_payload() if account is not None else None

    def _run_scheduler(self, message: SchedulerRequest) -> SchedulerResponse:
        operation = message.operation
        try:
            if operation.op == "cancel":
                if operation.timer_id is None:
                    raise SchedulerLimitError("cancel requires a timerId")
                result: dict[str, Any] = {"cancelled": self.scheduler.cancel(operation.timer_id)}
            else:
                if operation.delay_ms is None:
                    raise SchedulerLimitError(f"{operation.op} requires delayMs")
                if operation.op == "setTimeout":
                    timer_id = self.scheduler.set_timeout(operation.delay_ms)
                else:
                    timer_id = self.scheduler.set_interval(operation.delay_ms)
                result = {"timerId": timer_id}
        except SchedulerLimitError as e:
            return SchedulerResponse(request_id=message.request_id, success=False, error=str(e))
        return SchedulerResponse(request_id=message.request_id, success=True, result=result)

    def _fire_timer(self, timer_id: int) -> None:
        if self.state is PluginState.READY:
            self._enqueue(TimerFiredMessage(timer_id=timer_id))

    # Commands

    def _handle_register_command(self, message: RegisterCommandMessage) -> None:
        serialized = message.definition
        handler_id = serialized.handler_id

        async def handler(ctx: CommandContext) -> Any:
            return await self.invoke_command(handler_id, serialized.name, ctx)

        definition = CommandDefinition(
            name=serialized.name,
            handler=handler,
            aliases=list(serialized.aliases),
            description=serialized.description,
            usage=serialized.usage,
        )
        try:
            entry = self._host.register_command(self.plugin_id, definition)
        except (DuplicateRegistrationError, ValueError) as e:
            self._log.warning("Command %s not registered: %s", serialized.name, e)
            return
        self._commands[handler_id] = entry

    async def invoke_command(self, handler_id: int, command: str, ctx: CommandContext) -> Any:
        """Run a plugin command handler inside the context.

        Raises:
            ContextFailure: If the plugin is not live, goes away or times out
            PluginError: If the handler itself failed
        """
        if self.state is not PluginState.READY:
            raise ContextFailure(f"Plugin {self.plugin_id} is not active")

        request_id = self._next_request_id
        self._next_request_id += 1
        future: asyncio.Future[CommandResult] = asyncio.get_running_loop().create_future()
        self._pending_commands[request_id] = future
        self._enqueue(
            CommandInvokeMessage(
                request_id=request_id,
                handler_id=handler_id,
                command=command,
                invocation=CommandInvocationPayload(
                    account=ctx.account.to_payload(),
                    room_id=ctx.room_id,
                    args=list(ctx.args),
                    event=ctx.event,
                ),
            )
        )
        try:
            result = await asyncio.wait_for(future, timeout=self.settings.command_timeout)
        except TimeoutError as e:
            raise ContextFailure(
                f"Plugin {self.plugin_id} command {command} timed out after "
                f"{self.settings.command_timeout}s"
            ) from e
        finally:
            self._pending_commands.pop(request_id, None)

        if not result.success:
            raise PluginError(result.error or "Command execution failed")
        return result.result


_RESPONSE_TYPES: dict[type, type] = {
    ActionRequest: ActionResponse,
    StorageRequest: StorageResponse,
    MatrixRequest: MatrixResponse,
    SchedulerRequest: SchedulerResponse,
}


class PluginHandle:
    """Live plugin instance as seen by the host and its callers."""

    def __init__(self, bridge: SandboxBridge):
        self._bridge = bridge

    @property
    def id(self) -> str:
        return self._bridge.plugin_id

    @property
    def manifest(self) -> PluginManifest:
        return self._bridge.definition.manifest

    @property
    def permissions(self) -> PermissionSet:
        return self._bridge.permissions

    @property
    def state(self) -> PluginState:
        return self._bridge.state

    @property
    def subscriptions(self) -> frozenset[str]:
        return self._bridge.subscriptions

    @property
    def bridge(self) -> SandboxBridge:
        return self._bridge

    async def dispose(self) -> None:
        """Release the plugin. Calling it again is a no-op."""
        await self._bridge.dispose()

    def __repr__(self) -> str:
        return f"PluginHandle(id={self.id!r}, state={self.state.value})"
