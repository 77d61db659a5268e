"""Error taxonomy for the plugin host.

Registration and activation errors propagate to the caller. Steady-state
failures (event handling, action execution) are contained per plugin and
reported as failed responses instead of exceptions.
"""


class PluginError(Exception):
    """Base class for plugin host errors."""


class ManifestValidationError(PluginError):
    """Malformed or over-privileged plugin manifest."""

    def __init__(self, message: str, plugin_id: str | None = None):
        super().__init__(message)
        self.plugin_id = plugin_id


class IntegrityError(PluginError):
    """Plugin code could not be verified against its declared hash."""


class DuplicateRegistrationError(PluginError):
    """A plugin id or command name is already registered."""


class AccountNotFoundError(PluginError):
    """A privileged action referenced an unknown account id."""

    def __init__(self, account_id: str):
        super().__init__(f"Unknown account: {account_id}")
        self.account_id = account_id


class ContextFailure(PluginError):
    """The isolated context failed, hung, or went away."""


class ActionNotAvailableError(PluginError):
    """The host has no implementation for a requested action."""
