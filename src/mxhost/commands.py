"""Case-insensitive, exclusive command registry.

Command names and aliases are trimmed and lower-cased before lookup. A name
belongs to exactly one plugin until that plugin unregisters it.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from mxhost.accounts import AccountMetadata, MatrixClient
from mxhost.errors import DuplicateRegistrationError

logger = logging.getLogger(__name__)

CommandHandler = Callable[["CommandContext"], Awaitable[Any]]
ReplyFn = Callable[[str | dict[str, Any]], Awaitable[None]]


def normalise_command_name(name: str) -> str:
    return name.strip().lower()


@dataclass
class CommandDefinition:
    """A command name plus aliases and the handler that serves them."""

    name: str
    handler: CommandHandler
    aliases: list[str] = field(default_factory=list)
    description: str | None = None
    usage: str | None = None

    @property
    def names(self) -> list[str]:
        """All normalised names, primary first, without duplicates."""
        seen: list[str] = []
        for raw in [self.name, *self.aliases]:
            name = normalise_command_name(raw)
            if name and name not in seen:
                seen.append(name)
        return seen


@dataclass
class CommandInvocation:
    """A request from an external caller to run a command."""

    command: str
    account_id: str
    room_id: str | None = None
    args: list[str] = field(default_factory=list)
    event: dict[str, Any] | None = None


@dataclass
class CommandContext:
    """What a command handler gets to work with."""

    account: AccountMetadata
    client: MatrixClient
    room_id: str | None
    args: list[str]
    event: dict[str, Any] | None
    reply: ReplyFn


class CommandStatus(StrEnum):
    OK = "ok"
    ERROR = "error"
    NOT_FOUND = "not_found"
    NOT_AVAILABLE = "not_available"


@dataclass
class CommandExecutionResult:
    """Outcome of :meth:`PluginHost.execute_command`."""

    command: str
    status: CommandStatus
    plugin_id: str | None = None
    message: str | None = None
    error: str | None = None


@dataclass
class RegisteredCommand:
    plugin_id: str
    definition: CommandDefinition
    names: list[str]


class CommandRegistry:
    """Dispatch table from normalised command names to their owner."""

    def __init__(self) -> None:
        self._index: dict[str, RegisteredCommand] = {}
        self._by_plugin: dict[str, list[RegisteredCommand]] = {}

    def register(self, plugin_id: str, definition: CommandDefinition) -> RegisteredCommand:
        """Register a command for a plugin.

        Args:
            plugin_id: Owning plugin
            definition: Command definition

        Returns:
            The registration record

        Raises:
            DuplicateRegistrationError: If any name or alias is already taken
            ValueError: If the definition has no usable name
        """
        names = definition.names
        if not names:
            raise ValueError("Command definition requires a non-empty name")

        taken = [name for name in names if name in self._index]
        if taken:
            owner = self._index[taken[0]].plugin_id
            raise DuplicateRegistrationError(
                f"Command name already in use: {taken[0]} (owned by {owner})"
            )

        entry = RegisteredCommand(plugin_id=plugin_id, definition=definition, names=names)
        for name in names:
            self._index[name] = entry
        self._by_plugin.setdefault(plugin_id, []).append(entry)
        logger.debug("Registered command %s for plugin %s", names[0], plugin_id)
        return entry

    def unregister(self, entry: RegisteredCommand) -> None:
        """Remove one registration. Removing twice is a no-op."""
        for name in entry.names:
            if self._index.get(name) is entry:
                del self._index[name]
        entries = self._by_plugin.get(entry.plugin_id)
        if entries and entry in entries:
            entries.remove(entry)
            if not entries:
                del self._by_plugin[entry.plugin_id]

    def lookup(self, name: str) -> RegisteredCommand | None:
        return self._index.get(normalise_command_name(name))

    def list_commands(self) -> list[RegisteredCommand]:
        """Registrations in plugin registration order."""
        result: list[RegisteredCommand] = []
        for entries in self._by_plugin.values():
            result.extend(entries)
        return result

    def commands_for(self, plugin_id: str) -> list[RegisteredCommand]:
        return list(self._by_plugin.get(plugin_id, []))
