"""Isolated execution contexts for plugins.

An :class:`IsolatedContext` is a bidirectional channel of JSON objects to
one plugin instance. The host side never shares memory with the plugin;
:class:`SubprocessContext` runs the plugin in a separate interpreter and
talks to it over newline-delimited JSON on stdin/stdout.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import sys
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from mxhost.errors import ContextFailure

logger = logging.getLogger(__name__)

MAX_LINE_BYTES = 2 * 1024 * 1024

DEFAULT_ENV_ALLOWLIST = ["PATH", "LANG", "LC_ALL", "LC_CTYPE", "PYTHONPATH", "SYSTEMROOT", "TZ"]


class IsolatedContext(ABC):
    """One plugin instance's private execution environment."""

    @abstractmethod
    async def start(self) -> None:
        """Bring the context up. Raises ContextFailure on failure."""

    @abstractmethod
    async def send(self, message: dict[str, Any]) -> None:
        """Deliver one message. Raises ContextFailure if the channel is gone."""

    @abstractmethod
    async def receive(self) -> dict[str, Any] | None:
        """Next message from the context, or None once the channel closed."""

    @abstractmethod
    async def terminate(self) -> None:
        """Forcibly stop the context. Must never raise."""


ContextFactory = Callable[[str], IsolatedContext]


class PluginLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every record with the plugin id."""

    def __init__(self, base: logging.Logger, plugin_id: str):
        super().__init__(base, {"plugin_id": plugin_id})

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        return f"[{self.extra['plugin_id']}] {msg}", kwargs


@dataclass
class SandboxLimits:
    """Resource limits applied to a plugin subprocess."""

    max_memory_mb: int = 256
    max_cpu_seconds: int = 60
    env_allowlist: list[str] = field(default_factory=lambda: list(DEFAULT_ENV_ALLOWLIST))


def _apply_resource_limits(limits: SandboxLimits) -> Callable[[], None] | None:
    if sys.platform == "win32":
        return None

    import resource

    def _preexec() -> None:
        memory_bytes = limits.max_memory_mb * 1024 * 1024
        try:
            resource.setrlimit(resource.RLIMIT_AS, (memory_bytes, memory_bytes))
        except (ValueError, OSError):
            pass
        try:
            resource.setrlimit(
                resource.RLIMIT_CPU, (limits.max_cpu_seconds, limits.max_cpu_seconds)
            )
        except (ValueError, OSError):
            pass

    return _preexec


def build_subprocess_env(allowlist: list[str]) -> dict[str, str]:
    """Copy only allow-listed variables from the host environment."""
    env = {key: os.environ[key] for key in allowlist if key in os.environ}
    env["PYTHONIOENCODING"] = "utf-8"
    env["PYTHONDONTWRITEBYTECODE"] = "1"
    return env


class SubprocessContext(IsolatedContext):
    """Plugin context backed by ``python -m mxhost.plugins.runtime``."""

    def __init__(
        self,
        plugin_id: str,
        limits: SandboxLimits | None = None,
        python: str | None = None,
    ):
        """Initialize subprocess context.

        Args:
            plugin_id: Plugin this context belongs to, used for log prefixes
            limits: Resource limits and environment allow-list
            python: Interpreter to run; defaults to the host interpreter
        """
        self.plugin_id = plugin_id
        self.limits = limits or SandboxLimits()
        self.python = python or sys.executable
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._log = PluginLoggerAdapter(logger, plugin_id)

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    async def start(self) -> None:
        kwargs: dict[str, Any] = {
            "stdin": asyncio.subprocess.PIPE,
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
            "env": build_subprocess_env(self.limits.env_allowlist),
            "limit": MAX_LINE_BYTES,
        }
        preexec = _apply_resource_limits(self.limits)
        if preexec is not None:
            kwargs["preexec_fn"] = preexec
            kwargs["start_new_session"] = True

        try:
            self._process = await asyncio.create_subprocess_exec(
                self.python, "-m", "mxhost.plugins.runtime", **kwargs
            )
        except OSError as e:
            raise ContextFailure(f"Failed to spawn context for {self.plugin_id}: {e}") from e

        logger.debug("Plugin %s context spawned (PID %d)", self.plugin_id, self._process.pid)
        self._stderr_task = asyncio.create_task(self._forward_stderr())

    async def _forward_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        stderr = self._process.stderr
        while True:
            try:
                line = await stderr.readline()
            except ValueError:
                continue
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._log.info("%s", text)

    async def send(self, message: dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None or process.returncode is not None:
            raise ContextFailure(f"Context for {self.plugin_id} is not running")

        data = json.dumps(message, separators=(",", ":")).encode("utf-8") + b"\n"
        try:
            process.stdin.write(data)
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ContextFailure(f"Context for {self.plugin_id} closed its input") from e

    async def receive(self) -> dict[str, Any] | None:
        process = self._process
        if process is None or process.stdout is None:
            return None

        while True:
            try:
                line = await process.stdout.readline()
            except (ValueError, asyncio.LimitOverrunError):
                logger.warning("Plugin %s sent an oversized message; closing", self.plugin_id)
                return None
            if not line:
                return None
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Plugin %s sent non-JSON output: %.200r", self.plugin_id, line)
                continue
            if isinstance(message, dict):
                return message
            logger.warning("Plugin %s sent a non-object message", self.plugin_id)

    async def terminate(self) -> None:
        process = self._process
        if process is not None and process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            try:
                await asyncio.wait_for(process.wait(), timeout=5.0)
            except (TimeoutError, ProcessLookupError):
                logger.warning("Plugin %s context did not exit after kill", self.plugin_id)

        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()
            try:
                await self._stderr_task
            except asyncio.CancelledError:
                pass
        self._stderr_task = None


def subprocess_context_factory(limits: SandboxLimits | None = None) -> ContextFactory:
    """Factory producing one :class:`SubprocessContext` per plugin id."""

    def factory(plugin_id: str) -> IsolatedContext:
        return SubprocessContext(plugin_id, limits=limits)

    return factory
