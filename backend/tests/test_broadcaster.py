"""Tests for the Broadcaster fan-out primitive."""
import pytest

from relay.chat.broadcaster import Broadcaster, encode, frame
from relay.chat.presence import PresenceTracker
from relay.chat.schemas import PresenceRecord, ServerEvent


def test_frame_envelope_uses_event_value():
    record = PresenceRecord(id="a", username="Alice", room="general")
    assert frame(ServerEvent.USER_LIST, {"room": "general", "users": [record]}) == {
        "type": "user_list",
        "data": {
            "room": "general",
            "users": [{"id": "a", "username": "Alice", "room": "general"}],
        },
    }


def test_encode_passes_plain_values_through():
    assert encode(["general", "tech"]) == ["general", "tech"]
    assert encode(True) is True


class TestBroadcaster:
    """Tests for room and single-connection delivery."""

    @pytest.mark.asyncio
    async def test_to_room_reaches_only_room_members(self, make_socket):
        presence = PresenceTracker()
        broadcaster = Broadcaster(presence)
        sockets = {cid: make_socket() for cid in ("a", "b", "c")}
        for cid, socket in sockets.items():
            broadcaster.register(cid, socket)
        presence.join("a", "Alice", "general")
        presence.join("b", "Bob", "general")
        presence.join("c", "Carol", "tech")

        await broadcaster.to_room("general", "typing_users", {"room": "general", "users": []})

        assert sockets["a"].types() == ["typing_users"]
        assert sockets["b"].types() == ["typing_users"]
        assert sockets["c"].sent == []

    @pytest.mark.asyncio
    async def test_to_room_skips_unregistered_members(self, make_socket):
        presence = PresenceTracker()
        broadcaster = Broadcaster(presence)
        socket = make_socket()
        broadcaster.register("a", socket)
        presence.join("a", "Alice", "general")
        presence.join("ghost", "Ghost", "general")

        await broadcaster.to_room("general", ServerEvent.USER_LIST, {"room": "general"})
        assert len(socket.sent) == 1

    @pytest.mark.asyncio
    async def test_to_connection_delivers_once(self, make_socket):
        broadcaster = Broadcaster(PresenceTracker())
        a, b = make_socket(), make_socket()
        broadcaster.register("a", a)
        broadcaster.register("b", b)

        await broadcaster.to_connection("b", ServerEvent.CONNECTED, {"id": "b"})
        assert a.sent == []
        assert b.sent == [{"type": "connected", "data": {"id": "b"}}]

    @pytest.mark.asyncio
    async def test_to_unknown_connection_is_a_noop(self):
        broadcaster = Broadcaster(PresenceTracker())
        await broadcaster.to_connection("nobody", ServerEvent.CONNECTED, {})

    @pytest.mark.asyncio
    async def test_failed_send_is_swallowed_and_socket_dropped(self, make_socket):
        presence = PresenceTracker()
        broadcaster = Broadcaster(presence)
        good, bad = make_socket(), make_socket(fail=True)
        broadcaster.register("good", good)
        broadcaster.register("bad", bad)
        presence.join("good", "Good", "general")
        presence.join("bad", "Bad", "general")

        await broadcaster.to_room("general", ServerEvent.USER_LIST, {"room": "general"})

        assert len(good.sent) == 1
        assert broadcaster.is_connected("good")
        assert not broadcaster.is_connected("bad")
