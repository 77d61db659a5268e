"""Test doubles shared across the suite."""

import asyncio
from collections.abc import Callable
from typing import Any

from mxhost.errors import ContextFailure
from mxhost.plugins.bridge import PluginDefinition
from mxhost.plugins.context import IsolatedContext
from mxhost.plugins.manifest import PluginManifest

MessageHook = Callable[[dict[str, Any]], list[dict[str, Any]] | None]


class FakeContext(IsolatedContext):
    """Scripted in-memory stand-in for a plugin's isolated context.

    Answers INIT with the configured subscriptions followed by READY (or an
    ERROR), records every message the host sends and lets tests push
    context-to-host messages with :meth:`push`.
    """

    def __init__(
        self,
        plugin_id: str = "test.plugin",
        subscribe: list[str] | tuple[str, ...] = (),
        ready: bool = True,
        init_error: str | None = None,
        fail_start: bool = False,
        on_message: MessageHook | None = None,
    ):
        self.plugin_id = plugin_id
        self.subscribe = list(subscribe)
        self.ready = ready
        self.init_error = init_error
        self.fail_start = fail_start
        self.on_message = on_message
        self.sent: list[dict[str, Any]] = []
        self.inbox: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self.started = False
        self.terminated = False
        self.terminate_calls = 0

    async def start(self) -> None:
        if self.fail_start:
            raise ContextFailure("context could not start")
        self.started = True

    async def send(self, message: dict[str, Any]) -> None:
        if self.terminated:
            raise ContextFailure("context terminated")
        self.sent.append(message)
        if message["type"] == "sandbox:init":
            if self.init_error is not None:
                self.push({"type": "sandbox:error", "error": self.init_error})
            elif self.ready:
                for event in self.subscribe:
                    self.push({"type": "sandbox:event-subscribe", "event": event})
                self.push({"type": "sandbox:ready"})
        if self.on_message is not None:
            for reply in self.on_message(message) or []:
                self.push(reply)

    async def receive(self) -> dict[str, Any] | None:
        return await self.inbox.get()

    async def terminate(self) -> None:
        self.terminate_calls += 1
        self.terminated = True
        self.inbox.put_nowait(None)

    def push(self, message: dict[str, Any]) -> None:
        self.inbox.put_nowait(message)

    def close(self) -> None:
        """Simulate the context exiting on its own."""
        self.inbox.put_nowait(None)

    def sent_of(self, kind: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m["type"] == kind]


class FakeContextFactory:
    """Context factory recording the contexts it created, by plugin id."""

    def __init__(self, **defaults: Any):
        self.defaults = defaults
        self.options: dict[str, dict[str, Any]] = {}
        self.contexts: dict[str, FakeContext] = {}
        self.created: list[FakeContext] = []

    def configure(self, plugin_id: str, **options: Any) -> None:
        self.options[plugin_id] = options

    def __call__(self, plugin_id: str) -> FakeContext:
        context = FakeContext(plugin_id, **{**self.defaults, **self.options.get(plugin_id, {})})
        self.contexts[plugin_id] = context
        self.created.append(context)
        return context


class FakeClient:
    """Matrix client double recording sends and redactions."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []
        self.redacted: list[tuple[str, str, str | None]] = []

    async def send_event(self, room_id: str, event_type: str, content: dict[str, Any]) -> Any:
        self.sent.append((room_id, event_type, content))
        return {"event_id": f"$event{len(self.sent)}"}

    async def redact_event(self, room_id: str, event_id: str, reason: str | None = None) -> Any:
        self.redacted.append((room_id, event_id, reason))
        return {}


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the event loop until ``predicate`` holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


def make_manifest(
    plugin_id: str = "demo.echo",
    permissions: list[str] | None = None,
    events: list[str] | None = None,
    **extra: Any,
) -> PluginManifest:
    """Build a manifest for tests."""
    return PluginManifest(
        id=plugin_id,
        name=extra.pop("name", plugin_id.replace(".", " ").title()),
        entry=extra.pop("entry", f"/plugins/{plugin_id}.py"),
        permissions=tuple(permissions or []),
        events=tuple(events if events is not None else ["matrix.message"]),
        **extra,
    )


def make_definition(plugin_id: str = "demo.echo", **kwargs: Any) -> PluginDefinition:
    return PluginDefinition(manifest=make_manifest(plugin_id, **kwargs))
