"""Forwarding of raw timeline events from the embedding application."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from mxhost.accounts import AccountMetadata, MatrixClient
from mxhost.plugins.manifest import PluginEvent

if TYPE_CHECKING:
    from mxhost.host import PluginHost

logger = logging.getLogger(__name__)

ROOM_MESSAGE_TYPE = "m.room.message"


def account_metadata(
    key: str,
    user_id: str,
    homeserver_url: str,
    display_name: str | None = None,
    avatar_url: str | None = None,
) -> AccountMetadata:
    """Account metadata as a session layer usually knows it."""
    return AccountMetadata(
        id=key,
        user_id=user_id,
        homeserver_url=homeserver_url,
        display_name=display_name,
        avatar_url=avatar_url,
        label=display_name or user_id,
    )


class TimelineForwarder:
    """Turns timeline events into ``matrix.room-event`` and ``matrix.message``.

    Args:
        host: Plugin host the events are emitted on
    """

    def __init__(self, host: PluginHost):
        self.host = host

    def attach(self, account: AccountMetadata, client: MatrixClient) -> Callable[[], None]:
        """Register an account with the host.

        Returns:
            Callable that detaches the account again
        """
        self.host.register_account(account, client)
        detached = False

        def detach() -> None:
            nonlocal detached
            if detached:
                return
            detached = True
            self.host.unregister_account(account.id)

        return detach

    async def forward(
        self,
        account_id: str,
        event: dict[str, Any],
        room_id: str | None,
        to_start_of_timeline: bool = False,
        is_live: bool = True,
        data: dict[str, Any] | None = None,
    ) -> bool:
        """Emit a timeline event for a registered account.

        Args:
            account_id: Account that received the event
            event: Raw event as a JSON-compatible dict
            room_id: Room the event belongs to
            to_start_of_timeline: True for back-paginated events
            is_live: Whether the event arrived live
            data: Extra timeline data from the client

        Returns:
            False if the event was skipped (no room or unknown account)
        """
        if not room_id:
            return False
        account = self.host.get_account(account_id)
        if account is None:
            logger.debug("Timeline event for unknown account %s skipped", account_id)
            return False

        payload: dict[str, Any] = {
            "account": account.to_payload(),
            "roomId": room_id,
            "event": event,
            "isLiveEvent": is_live,
            "direction": "backward" if to_start_of_timeline else "forward",
        }
        if data:
            payload["data"] = data

        await self.host.emit(PluginEvent.ROOM_EVENT, payload)
        if event.get("type") == ROOM_MESSAGE_TYPE:
            content = event.get("content") or {}
            await self.host.emit(
                PluginEvent.MESSAGE,
                {
                    **payload,
                    "content": content,
                    "messageType": content.get("msgtype", "m.text"),
                },
            )
        return True
