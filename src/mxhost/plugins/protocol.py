"""Wire protocol spoken between the host and an isolated plugin context.

Every message is a JSON object tagged by a ``type`` discriminant. Requests
and responses are correlated by a caller-chosen integer ``requestId`` that
is unique within one plugin instance. Attributes are snake_case in Python
and camelCase on the wire.
"""

import logging
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class MessageKind(StrEnum):
    """Discriminants for the ``type`` field."""

    INIT = "sandbox:init"
    READY = "sandbox:ready"
    SUBSCRIBE = "sandbox:event-subscribe"
    UNSUBSCRIBE = "sandbox:event-unsubscribe"
    EVENT = "sandbox:event"
    ACTION_REQUEST = "sandbox:action-request"
    ACTION_RESPONSE = "sandbox:action-response"
    STORAGE_REQUEST = "sandbox:storage-request"
    STORAGE_RESPONSE = "sandbox:storage-response"
    MATRIX_REQUEST = "sandbox:matrix-request"
    MATRIX_RESPONSE = "sandbox:matrix-response"
    SCHEDULER_REQUEST = "sandbox:scheduler-request"
    SCHEDULER_RESPONSE = "sandbox:scheduler-response"
    TIMER_FIRED = "sandbox:timer-fired"
    REGISTER_COMMAND = "sandbox:register-command"
    UNREGISTER_COMMAND = "sandbox:unregister-command"
    COMMAND_INVOKE = "sandbox:command-invoke"
    COMMAND_RESULT = "sandbox:command-result"
    LOG = "sandbox:log"
    ERROR = "sandbox:error"
    DISPOSE = "sandbox:dispose"


class WireModel(BaseModel):
    """Base for everything that crosses the isolation boundary."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class Response(WireModel):
    """Shared shape of every correlated response."""

    request_id: int
    success: bool
    result: Any = None
    error: str | None = None


# Host -> context


class InitManifest(WireModel):
    id: str
    name: str
    version: str | None = None
    description: str | None = None


class InitMessage(WireModel):
    """Start the plugin: where its code lives and which events it may receive."""

    type: Literal["sandbox:init"] = "sandbox:init"
    manifest: InitManifest
    entry_url: str
    allowed_events: list[str] = Field(default_factory=list)


class EventMessage(WireModel):
    type: Literal["sandbox:event"] = "sandbox:event"
    event: str
    payload: Any = None


class ActionResponse(Response):
    type: Literal["sandbox:action-response"] = "sandbox:action-response"


class StorageResponse(Response):
    type: Literal["sandbox:storage-response"] = "sandbox:storage-response"


class MatrixResponse(Response):
    type: Literal["sandbox:matrix-response"] = "sandbox:matrix-response"


class SchedulerResponse(Response):
    type: Literal["sandbox:scheduler-response"] = "sandbox:scheduler-response"


class TimerFiredMessage(WireModel):
    type: Literal["sandbox:timer-fired"] = "sandbox:timer-fired"
    timer_id: int


class CommandInvocationPayload(WireModel):
    account: dict[str, Any]
    room_id: str | None = None
    args: list[str] = Field(default_factory=list)
    event: Any = None


class CommandInvokeMessage(WireModel):
    """Ask the context to run one of its registered command handlers."""

    type: Literal["sandbox:command-invoke"] = "sandbox:command-invoke"
    request_id: int
    handler_id: int
    command: str
    invocation: CommandInvocationPayload


class DisposeMessage(WireModel):
    type: Literal["sandbox:dispose"] = "sandbox:dispose"
    reason: str | None = None


# Context -> host


class ReadyMessage(WireModel):
    type: Literal["sandbox:ready"] = "sandbox:ready"


class SubscribeMessage(WireModel):
    type: Literal["sandbox:event-subscribe"] = "sandbox:event-subscribe"
    event: str


class UnsubscribeMessage(WireModel):
    type: Literal["sandbox:event-unsubscribe"] = "sandbox:event-unsubscribe"
    event: str


class ActionRequest(WireModel):
    type: Literal["sandbox:action-request"] = "sandbox:action-request"
    request_id: int
    action: str
    payload: dict[str, Any] = Field(default_factory=dict)


class StorageOperation(WireModel):
    op: Literal["get", "set", "delete", "keys", "clear"]
    key: str | None = None
    value: Any = None


class StorageRequest(WireModel):
    type: Literal["sandbox:storage-request"] = "sandbox:storage-request"
    request_id: int
    operation: StorageOperation


class MatrixOperation(WireModel):
    op: Literal["listAccounts", "getAccount"]
    account_id: str | None = None


class MatrixRequest(WireModel):
    type: Literal["sandbox:matrix-request"] = "sandbox:matrix-request"
    request_id: int
    operation: MatrixOperation


class SchedulerOperation(WireModel):
    op: Literal["setTimeout", "setInterval", "cancel"]
    delay_ms: int | None = None
    timer_id: int | None = None


class SchedulerRequest(WireModel):
    type: Literal["sandbox:scheduler-request"] = "sandbox:scheduler-request"
    request_id: int
    operation: SchedulerOperation


class SerializedCommand(WireModel):
    """A command definition with its handler replaced by a context-local id."""

    handler_id: int
    name: str
    aliases: list[str] = Field(default_factory=list)
    description: str | None = None
    usage: str | None = None


class RegisterCommandMessage(WireModel):
    type: Literal["sandbox:register-command"] = "sandbox:register-command"
    definition: SerializedCommand


class UnregisterCommandMessage(WireModel):
    type: Literal["sandbox:unregister-command"] = "sandbox:unregister-command"
    handler_id: int


class CommandResult(Response):
    type: Literal["sandbox:command-result"] = "sandbox:command-result"


class LogMessage(WireModel):
    type: Literal["sandbox:log"] = "sandbox:log"
    level: Literal["debug", "info", "warn", "error"] = "info"
    message: str
    args: list[Any] = Field(default_factory=list)


class ErrorMessage(WireModel):
    type: Literal["sandbox:error"] = "sandbox:error"
    error: str


HostBoundMessage = Annotated[
    ReadyMessage
    | SubscribeMessage
    | UnsubscribeMessage
    | ActionRequest
    | StorageRequest
    | MatrixRequest
    | SchedulerRequest
    | RegisterCommandMessage
    | UnregisterCommandMessage
    | CommandResult
    | LogMessage
    | ErrorMessage,
    Field(discriminator="type"),
]

ContextBoundMessage = Annotated[
    InitMessage
    | EventMessage
    | ActionResponse
    | StorageResponse
    | MatrixResponse
    | SchedulerResponse
    | TimerFiredMessage
    | CommandInvokeMessage
    | DisposeMessage,
    Field(discriminator="type"),
]

_host_bound_adapter: TypeAdapter[HostBoundMessage] = TypeAdapter(HostBoundMessage)
_context_bound_adapter: TypeAdapter[ContextBoundMessage] = TypeAdapter(ContextBoundMessage)

HOST_BOUND_KINDS = frozenset(
    {
        MessageKind.READY,
        MessageKind.SUBSCRIBE,
        MessageKind.UNSUBSCRIBE,
        MessageKind.ACTION_REQUEST,
        MessageKind.STORAGE_REQUEST,
        MessageKind.MATRIX_REQUEST,
        MessageKind.SCHEDULER_REQUEST,
        MessageKind.REGISTER_COMMAND,
        MessageKind.UNREGISTER_COMMAND,
        MessageKind.COMMAND_RESULT,
        MessageKind.LOG,
        MessageKind.ERROR,
    }
)
CONTEXT_BOUND_KINDS = frozenset(MessageKind) - HOST_BOUND_KINDS


def encode_message(message: WireModel) -> dict[str, Any]:
    """Serialize a message to its JSON-safe wire form."""
    return message.model_dump(mode="json", by_alias=True, exclude_none=True)


def _decode(
    raw: Any,
    adapter: TypeAdapter[Any],
    accepted: frozenset[MessageKind],
    direction: str,
) -> Any:
    if not isinstance(raw, dict):
        logger.warning("Dropping non-object %s message: %r", direction, type(raw).__name__)
        return None

    kind = raw.get("type")
    if kind not in MessageKind.__members__.values():
        logger.warning("Dropping %s message of unknown kind: %r", direction, kind)
        return None
    if kind not in accepted:
        logger.warning("Dropping %s message travelling the wrong way: %s", direction, kind)
        return None

    try:
        return adapter.validate_python(raw)
    except ValidationError as e:
        logger.warning("Dropping malformed %s message %s: %s", direction, kind, e)
        return None


def decode_host_bound(raw: Any) -> HostBoundMessage | None:
    """Decode a message sent by a context to the host.

    Args:
        raw: Parsed JSON value

    Returns:
        Typed message, or None for unknown, wrong-direction or malformed input
    """
    return _decode(raw, _host_bound_adapter, HOST_BOUND_KINDS, "host-bound")


def decode_context_bound(raw: Any) -> ContextBoundMessage | None:
    """Decode a message sent by the host to a context."""
    return _decode(raw, _context_bound_adapter, CONTEXT_BOUND_KINDS, "context-bound")
