"""Context-side runtime that hosts one plugin inside its isolated process.

Started by :class:`~mxhost.plugins.context.SubprocessContext` as
``python -m mxhost.plugins.runtime``. It reads host messages from stdin,
writes its own messages to stdout (one JSON object per line) and exposes a
``ctx`` object to the plugin's ``setup`` function. Every privileged call the
plugin makes turns into a correlated request that the host authorizes.

A plugin entry file looks like::

    async def setup(ctx):
        async def on_message(payload):
            body = payload["content"].get("body", "")
            if body.startswith("!echo "):
                await ctx.actions.send_text_message(
                    account_id=payload["account"]["id"],
                    room_id=payload["roomId"],
                    body=body[len("!echo "):],
                )

        ctx.events.on("matrix.message", on_message)
"""

from __future__ import annotations

import asyncio
import importlib.util
import inspect
import json
import re
import sys
import traceback
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Any
from urllib.parse import unquote, urlparse

from mxhost.plugins.protocol import (
    ActionRequest,
    ActionResponse,
    CommandInvokeMessage,
    CommandResult,
    DisposeMessage,
    ErrorMessage,
    EventMessage,
    InitManifest,
    InitMessage,
    LogMessage,
    MatrixOperation,
    MatrixRequest,
    MatrixResponse,
    ReadyMessage,
    RegisterCommandMessage,
    Response,
    SchedulerOperation,
    SchedulerRequest,
    SchedulerResponse,
    SerializedCommand,
    StorageOperation,
    StorageRequest,
    StorageResponse,
    SubscribeMessage,
    TimerFiredMessage,
    UnregisterCommandMessage,
    UnsubscribeMessage,
    WireModel,
    decode_context_bound,
    encode_message,
)

Handler = Callable[..., Any]


class PluginRequestError(Exception):
    """The host refused or failed a request made by this plugin."""


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def load_entry(entry_url: str, plugin_id: str) -> ModuleType:
    """Import the plugin's entry file as a fresh module."""
    parsed = urlparse(entry_url)
    path = Path(unquote(parsed.path)) if parsed.scheme == "file" else Path(entry_url)
    module_name = "mxhost_plugin_" + re.sub(r"\W", "_", plugin_id)
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot create module spec for {path}")

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    spec.loader.exec_module(module)
    return module


def _find_setup(module: ModuleType) -> Handler:
    setup = getattr(module, "setup", None)
    if callable(setup):
        return setup
    plugin = getattr(module, "plugin", None)
    setup = getattr(plugin, "setup", None)
    if callable(setup):
        return setup
    raise ImportError("Plugin module did not export a setup function")


class EventsAPI:
    """``ctx.events``: subscribe to host events the manifest allows."""

    def __init__(self, runtime: PluginRuntime):
        self._runtime = runtime
        self._handlers: dict[str, list[Handler]] = {}

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Register a handler; returns a callable that removes it.

        Raises:
            PermissionError: If the manifest did not list the event
        """
        if event not in self._runtime.allowed_events:
            raise PermissionError(f"Event {event} is not allowed for this plugin")

        handlers = self._handlers.get(event)
        if handlers is None:
            handlers = self._handlers[event] = []
            self._runtime.post(SubscribeMessage(event=event))
        handlers.append(handler)

        def off() -> None:
            current = self._handlers.get(event)
            if current is None or handler not in current:
                return
            current.remove(handler)
            if not current:
                del self._handlers[event]
                self._runtime.post(UnsubscribeMessage(event=event))

        return off

    def once(self, event: str, handler: Handler) -> Callable[[], None]:
        async def wrapper(payload: Any) -> None:
            off()
            await _maybe_await(handler(payload))

        off = self.on(event, wrapper)
        return off

    def handlers_for(self, event: str) -> list[Handler]:
        return list(self._handlers.get(event, []))

    def clear(self) -> None:
        self._handlers.clear()


class ActionsAPI:
    """``ctx.actions``: privileged operations performed by the host."""

    def __init__(self, runtime: PluginRuntime):
        self._runtime = runtime

    async def call(self, action: str, payload: dict[str, Any] | None = None) -> Any:
        """Invoke any host action by name, including host feature toggles."""
        request_id = self._runtime.next_request_id()
        response = await self._runtime.request(
            ActionRequest(request_id=request_id, action=action, payload=payload or {})
        )
        return response.result

    async def send_text_message(
        self,
        account_id: str,
        room_id: str,
        body: str,
        msgtype: str | None = None,
        formatted_body: str | None = None,
        format: str | None = None,
        additional_content: dict[str, Any] | None = None,
    ) -> Any:
        payload: dict[str, Any] = {"accountId": account_id, "roomId": room_id, "body": body}
        if msgtype is not None:
            payload["msgtype"] = msgtype
        if formatted_body is not None:
            payload["formattedBody"] = formatted_body
        if format is not None:
            payload["format"] = format
        if additional_content:
            payload["additionalContent"] = additional_content
        return await self.call("sendTextMessage", payload)

    async def send_event(
        self, account_id: str, room_id: str, type: str, content: dict[str, Any]
    ) -> Any:
        return await self.call(
            "sendEvent",
            {"accountId": account_id, "roomId": room_id, "type": type, "content": content},
        )

    async def redact_event(
        self, account_id: str, room_id: str, event_id: str, reason: str | None = None
    ) -> Any:
        payload: dict[str, Any] = {"accountId": account_id, "roomId": room_id, "eventId": event_id}
        if reason is not None:
            payload["reason"] = reason
        return await self.call("redactEvent", payload)


class StorageAPI:
    """``ctx.storage``: the plugin's own key/value namespace."""

    def __init__(self, runtime: PluginRuntime):
        self._runtime = runtime

    async def _op(self, operation: StorageOperation) -> Any:
        request_id = self._runtime.next_request_id()
        response = await self._runtime.request(
            StorageRequest(request_id=request_id, operation=operation)
        )
        return response.result

    async def get(self, key: str) -> Any:
        return await self._op(StorageOperation(op="get", key=key))

    async def set(self, key: str, value: Any) -> None:
        await self._op(StorageOperation(op="set", key=key, value=value))

    async def delete(self, key: str) -> None:
        await self._op(StorageOperation(op="delete", key=key))

    async def keys(self) -> list[str]:
        result = await self._op(StorageOperation(op="keys"))
        return list(result) if isinstance(result, list) else []

    async def clear(self) -> None:
        await self._op(StorageOperation(op="clear"))


class MatrixAPI:
    """``ctx.matrix``: read-only account queries."""

    def __init__(self, runtime: PluginRuntime):
        self._runtime = runtime

    async def list_accounts(self) -> list[dict[str, Any]]:
        request_id = self._runtime.next_request_id()
        response = await self._runtime.request(
            MatrixRequest(request_id=request_id, operation=MatrixOperation(op="listAccounts"))
        )
        return response.result if isinstance(response.result, list) else []

    async def get_account(self, account_id: str) -> dict[str, Any] | None:
        request_id = self._runtime.next_request_id()
        response = await self._runtime.request(
            MatrixRequest(
                request_id=request_id,
                operation=MatrixOperation(op="getAccount", account_id=account_id),
            )
        )
        return response.result


class SchedulerAPI:
    """``ctx.scheduler``: timers run by the host, fired back into the plugin."""

    def __init__(self, runtime: PluginRuntime):
        self._runtime = runtime

    async def _schedule(self, op: str, handler: Handler, ms: int) -> int:
        request_id = self._runtime.next_request_id()
        self._runtime.pending_timers[request_id] = (handler, op == "setInterval")
        try:
            response = await self._runtime.request(
                SchedulerRequest(
                    request_id=request_id,
                    operation=SchedulerOperation(op=op, delay_ms=ms),
                )
            )
        finally:
            self._runtime.pending_timers.pop(request_id, None)
        return int(response.result["timerId"])

    async def set_timeout(self, handler: Handler, ms: int) -> int:
        return await self._schedule("setTimeout", handler, ms)

    async def set_interval(self, handler: Handler, ms: int) -> int:
        return await self._schedule("setInterval", handler, ms)

    async def cancel(self, timer_id: int) -> None:
        self._runtime.timers.pop(timer_id, None)
        request_id = self._runtime.next_request_id()
        await self._runtime.request(
            SchedulerRequest(
                request_id=request_id,
                operation=SchedulerOperation(op="cancel", timer_id=timer_id),
            )
        )


class CommandsAPI:
    """``ctx.commands``: register chat commands served by this plugin."""

    def __init__(self, runtime: PluginRuntime):
        self._runtime = runtime
        self._definitions: dict[int, SerializedCommand] = {}
        self.handlers: dict[int, Handler] = {}

    def register(
        self,
        name: str,
        handler: Handler,
        aliases: list[str] | None = None,
        description: str | None = None,
        usage: str | None = None,
    ) -> Callable[[], None]:
        handler_id = self._runtime.next_request_id()
        definition = SerializedCommand(
            handler_id=handler_id,
            name=name,
            aliases=aliases or [],
            description=description,
            usage=usage,
        )
        self._definitions[handler_id] = definition
        self.handlers[handler_id] = handler
        self._runtime.post(RegisterCommandMessage(definition=definition))

        def unregister() -> None:
            if self.handlers.pop(handler_id, None) is not None:
                self._definitions.pop(handler_id, None)
                self._runtime.post(UnregisterCommandMessage(handler_id=handler_id))

        return unregister

    def list(self) -> list[SerializedCommand]:
        return list(self._definitions.values())

    def clear(self) -> None:
        self._definitions.clear()
        self.handlers.clear()


class LoggerAPI:
    """``ctx.logger``: log records forwarded to the host's logging."""

    def __init__(self, runtime: PluginRuntime):
        self._runtime = runtime

    def _log(self, level: str, message: str, *args: Any) -> None:
        self._runtime.post(
            LogMessage(level=level, message=str(message), args=[_json_safe(a) for a in args])
        )

    def debug(self, message: str, *args: Any) -> None:
        self._log("debug", message, *args)

    def info(self, message: str, *args: Any) -> None:
        self._log("info", message, *args)

    def warning(self, message: str, *args: Any) -> None:
        self._log("warn", message, *args)

    warn = warning

    def error(self, message: str, *args: Any) -> None:
        self._log("error", message, *args)


def _json_safe(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return repr(value)
    return value


@dataclass
class CommandCall:
    """What a command handler receives inside the context."""

    account: dict[str, Any]
    room_id: str | None
    args: list[str]
    event: Any
    reply: Callable[[str], Awaitable[Any]]


@dataclass
class PluginContext:
    """The ``ctx`` object handed to a plugin's ``setup``."""

    id: str
    manifest: InitManifest
    events: EventsAPI
    actions: ActionsAPI
    storage: StorageAPI
    matrix: MatrixAPI
    scheduler: SchedulerAPI
    commands: CommandsAPI
    logger: LoggerAPI
    extra: dict[str, Any] = field(default_factory=dict)


class PluginRuntime:
    """Message loop for one plugin inside its isolated context."""

    def __init__(self, post: Callable[[dict[str, Any]], None]):
        """Initialize runtime.

        Args:
            post: Writes one encoded message to the host
        """
        self._post = post
        self._next_id = 1
        self._pending: dict[int, asyncio.Future[Response]] = {}
        self._tasks: set[asyncio.Future[Any]] = set()
        self._cleanup: Any = None
        self.allowed_events: set[str] = set()
        self.pending_timers: dict[int, tuple[Handler, bool]] = {}
        self.timers: dict[int, tuple[Handler, bool]] = {}
        self.context: PluginContext | None = None
        self.init_task: asyncio.Future[None] | None = None
        self.events = EventsAPI(self)
        self.commands = CommandsAPI(self)
        self.disposed = asyncio.Event()

    def post(self, message: WireModel) -> None:
        self._post(encode_message(message))

    def next_request_id(self) -> int:
        request_id = self._next_id
        self._next_id += 1
        return request_id

    async def request(self, message: Any) -> Response:
        """Send a correlated request and wait for its response.

        Raises:
            PluginRequestError: If the host answered with success false
        """
        future: asyncio.Future[Response] = asyncio.get_running_loop().create_future()
        self._pending[message.request_id] = future
        self.post(message)
        response = await future
        if not response.success:
            raise PluginRequestError(response.error or "Request failed")
        return response

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Future[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def handle(self, message: Any) -> None:
        if isinstance(message, InitMessage):
            self.init_task = self._spawn(self._handle_init(message))
        elif isinstance(message, EventMessage):
            self._handle_event(message)
        elif isinstance(message, (ActionResponse, StorageResponse, MatrixResponse)):
            self._resolve(message)
        elif isinstance(message, SchedulerResponse):
            self._handle_scheduler_response(message)
        elif isinstance(message, TimerFiredMessage):
            self._handle_timer(message)
        elif isinstance(message, CommandInvokeMessage):
            self._spawn(self._handle_command(message))
        elif isinstance(message, DisposeMessage):
            await self.dispose()

    async def _handle_init(self, message: InitMessage) -> None:
        self.allowed_events = set(message.allowed_events)
        try:
            module = load_entry(message.entry_url, message.manifest.id)
            setup = _find_setup(module)
            self.context = PluginContext(
                id=message.manifest.id,
                manifest=message.manifest,
                events=self.events,
                actions=ActionsAPI(self),
                storage=StorageAPI(self),
                matrix=MatrixAPI(self),
                scheduler=SchedulerAPI(self),
                commands=self.commands,
                logger=LoggerAPI(self),
            )
            self._cleanup = await _maybe_await(setup(self.context))
        except Exception as e:
            traceback.print_exc(file=sys.stderr)
            self.post(ErrorMessage(error=f"{type(e).__name__}: {e}"))
            return
        self.post(ReadyMessage())

    def _handle_event(self, message: EventMessage) -> None:
        for handler in self.events.handlers_for(message.event):
            self._spawn(self._run_handler(handler, message.payload, f"event {message.event}"))

    async def _run_handler(self, handler: Handler, payload: Any, label: str) -> None:
        try:
            await _maybe_await(handler(payload))
        except Exception as e:
            self.post(LogMessage(level="error", message=f"{label} handler failed: {e}"))

    def _resolve(self, message: Response) -> None:
        future = self._pending.pop(message.request_id, None)
        if future is not None and not future.done():
            future.set_result(message)

    def _handle_scheduler_response(self, message: SchedulerResponse) -> None:
        timer = self.pending_timers.pop(message.request_id, None)
        if timer is not None and message.success and isinstance(message.result, dict):
            self.timers[int(message.result["timerId"])] = timer
        self._resolve(message)

    def _handle_timer(self, message: TimerFiredMessage) -> None:
        timer = self.timers.get(message.timer_id)
        if timer is None:
            return
        handler, repeat = timer
        if not repeat:
            del self.timers[message.timer_id]
        self._spawn(self._run_timer(handler, message.timer_id))

    async def _run_timer(self, handler: Handler, timer_id: int) -> None:
        try:
            await _maybe_await(handler())
        except Exception as e:
            self.post(LogMessage(level="error", message=f"timer {timer_id} handler failed: {e}"))

    async def _handle_command(self, message: CommandInvokeMessage) -> None:
        handler = self.commands.handlers.get(message.handler_id)
        if handler is None:
            self.post(
                CommandResult(
                    request_id=message.request_id,
                    success=False,
                    error=f"Unknown command handler {message.handler_id}",
                )
            )
            return

        invocation = message.invocation
        account_id = invocation.account.get("id")

        async def reply(body: str) -> Any:
            if not invocation.room_id or not account_id:
                raise PluginRequestError("Cannot reply without room context")
            assert self.context is not None
            return await self.context.actions.send_text_message(
                account_id=account_id, room_id=invocation.room_id, body=body
            )

        call = CommandCall(
            account=invocation.account,
            room_id=invocation.room_id,
            args=invocation.args,
            event=invocation.event,
            reply=reply,
        )
        try:
            result = await _maybe_await(handler(call))
        except Exception as e:
            self.post(CommandResult(request_id=message.request_id, success=False, error=str(e)))
            return
        self.post(
            CommandResult(request_id=message.request_id, success=True, result=_json_safe(result))
        )

    async def dispose(self) -> None:
        """Run the plugin's cleanup and stop the message loop."""
        if self.disposed.is_set():
            return
        try:
            if callable(self._cleanup):
                await _maybe_await(self._cleanup())
        except Exception:
            traceback.print_exc(file=sys.stderr)
        finally:
            self.events.clear()
            self.commands.clear()
            self.timers.clear()
            for future in self._pending.values():
                if not future.done():
                    future.cancel()
            self._pending.clear()
            for task in list(self._tasks):
                task.cancel()
            self.disposed.set()


async def _serve() -> None:
    out = sys.stdout.buffer
    # Plugin print() output goes to stderr so it can't corrupt the channel.
    sys.stdout = sys.stderr

    def post(message: dict[str, Any]) -> None:
        out.write(json.dumps(message, separators=(",", ":")).encode("utf-8") + b"\n")
        out.flush()

    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=2 * 1024 * 1024)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)

    runtime = PluginRuntime(post)
    while not runtime.disposed.is_set():
        line = await reader.readline()
        if not line:
            break
        try:
            raw = json.loads(line)
        except json.JSONDecodeError:
            print(f"runtime: ignoring non-JSON input {line[:200]!r}", file=sys.stderr)
            continue
        message = decode_context_bound(raw)
        if message is not None:
            await runtime.handle(message)
    await runtime.dispose()


def main() -> None:
    asyncio.run(_serve())


if __name__ == "__main__":
    main()
