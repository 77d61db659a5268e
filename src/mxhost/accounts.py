"""Account bindings between identities and messaging clients."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field


class AccountMetadata(BaseModel):
    """Identity bound to one messaging client."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Unique account id within the host")
    user_id: str = Field(..., alias="userId", description="Protocol user id (@user:server)")
    homeserver_url: str = Field(..., alias="homeserverUrl", description="Server origin")
    display_name: str | None = Field(None, alias="displayName")
    avatar_url: str | None = Field(None, alias="avatarUrl")
    label: str | None = Field(None, description="Human readable label for UI selections")
    data: dict[str, Any] | None = Field(None, description="Opaque host-supplied data")

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe representation handed to plugins."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


@runtime_checkable
class MatrixClient(Protocol):
    """The subset of a protocol client the host needs.

    Methods may be sync or async; the host awaits results when needed.
    """

    def send_event(self, room_id: str, event_type: str, content: dict[str, Any]) -> Any: ...

    def redact_event(self, room_id: str, event_id: str, reason: str | None = None) -> Any: ...


@dataclass
class AccountContext:
    """A registered account and its already-authenticated client."""

    account: AccountMetadata
    client: MatrixClient
