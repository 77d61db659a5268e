"""Tests for timeline event forwarding."""

import pytest

from fakes import make_definition
from mxhost.timeline import TimelineForwarder, account_metadata

ROOM = "!room:example.org"


@pytest.fixture
def metadata():
    return account_metadata("acc1", "@alice:example.org", "https://example.org", "Alice")


def test_account_metadata_label():
    assert account_metadata("k", "@bob:x", "https://x").label == "@bob:x"
    assert account_metadata("k", "@bob:x", "https://x", display_name="Bob").label == "Bob"


class TestTimelineForwarder:
    @pytest.mark.asyncio
    async def test_attach_and_detach(self, host, metadata, client):
        forwarder = TimelineForwarder(host)
        detach = forwarder.attach(metadata, client)
        assert host.get_account("acc1") == metadata
        detach()
        detach()
        assert host.get_account("acc1") is None

    @pytest.mark.asyncio
    async def test_message_emits_room_event_and_message(self, host, factory, metadata, client):
        factory.configure("listener", subscribe=["matrix.room-event", "matrix.message"])
        await host.register_plugin(
            make_definition("listener", events=["matrix.room-event", "matrix.message"])
        )
        forwarder = TimelineForwarder(host)
        forwarder.attach(metadata, client)

        event = {
            "type": "m.room.message",
            "event_id": "$1",
            "content": {"msgtype": "m.notice", "body": "hello"},
        }
        assert await forwarder.forward("acc1", event, ROOM) is True

        delivered = factory.contexts["listener"].sent_of("sandbox:event")
        assert [m["event"] for m in delivered] == ["matrix.room-event", "matrix.message"]
        room_event, message = (m["payload"] for m in delivered)
        assert room_event["roomId"] == ROOM
        assert room_event["event"] == event
        assert room_event["isLiveEvent"] is True
        assert room_event["direction"] == "forward"
        assert room_event["account"]["id"] == "acc1"
        assert message["content"] == {"msgtype": "m.notice", "body": "hello"}
        assert message["messageType"] == "m.notice"

    @pytest.mark.asyncio
    async def test_state_event_only_emits_room_event(self, host, factory, metadata, client):
        factory.configure("listener", subscribe=["matrix.room-event", "matrix.message"])
        await host.register_plugin(
            make_definition("listener", events=["matrix.room-event", "matrix.message"])
        )
        forwarder = TimelineForwarder(host)
        forwarder.attach(metadata, client)

        await forwarder.forward(
            "acc1",
            {"type": "m.room.topic", "content": {"topic": "x"}},
            ROOM,
            to_start_of_timeline=True,
            is_live=False,
            data={"liveEvent": False},
        )
        delivered = factory.contexts["listener"].sent_of("sandbox:event")
        assert [m["event"] for m in delivered] == ["matrix.room-event"]
        assert delivered[0]["payload"]["direction"] == "backward"
        assert delivered[0]["payload"]["data"] == {"liveEvent": False}

    @pytest.mark.asyncio
    async def test_skips_without_room_or_account(self, host, metadata, client):
        forwarder = TimelineForwarder(host)
        assert await forwarder.forward("acc1", {"type": "m.room.message"}, ROOM) is False
        forwarder.attach(metadata, client)
        assert await forwarder.forward("acc1", {"type": "m.room.message"}, None) is False
