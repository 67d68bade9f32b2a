"""
Tests for the realtime broadcaster.

Tests verify:
- FIFO delivery to every socket in a room
- Dead sockets are dropped without affecting the others
- publish() is safe from worker threads
- Malformed events are refused, publish_safely() never raises
"""

import json
import threading

import pytest
import pytest_asyncio

from core.broadcaster import Broadcaster, publish_safely
from core.exceptions import UnknownEvent


class FakeWebSocket:
    def __init__(self, fail=False):
        self.fail = fail
        self.accepted = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))


@pytest_asyncio.fixture
async def broadcaster():
    instance = Broadcaster()
    await instance.start()
    yield instance
    await instance.stop()


def test_publish_without_dispatcher_is_dropped():
    instance = Broadcaster()
    assert instance.publish("session:x", "session:started", {"sessionId": "x"}) is False


class TestDelivery:

    @pytest.mark.asyncio
    async def test_messages_arrive_in_publish_order(self, broadcaster):
        first, second = FakeWebSocket(), FakeWebSocket()
        await broadcaster.connect(first, ["session:1"])
        await broadcaster.connect(second, ["session:1"])

        broadcaster.publish("session:1", "session:started", {"sessionId": "1"})
        broadcaster.publish("session:1", "session:advanced", {"sessionId": "1", "phase": "nosing", "whiskeyIndex": 0})
        broadcaster.publish("session:1", "session:paused", {"sessionId": "1"})
        await broadcaster.drain()

        expected = ["session:started", "session:advanced", "session:paused"]
        assert first.accepted and second.accepted
        assert [m["event"] for m in first.sent] == expected
        assert [m["event"] for m in second.sent] == expected

    @pytest.mark.asyncio
    async def test_rooms_are_isolated(self, broadcaster):
        inside, outside = FakeWebSocket(), FakeWebSocket()
        await broadcaster.connect(inside, ["session:1"])
        await broadcaster.connect(outside, ["session:2"])

        broadcaster.publish("session:1", "session:started", {"sessionId": "1"})
        await broadcaster.drain()

        assert len(inside.sent) == 1
        assert outside.sent == []

    @pytest.mark.asyncio
    async def test_sender_can_be_excluded(self, broadcaster):
        sender, other = FakeWebSocket(), FakeWebSocket()
        await broadcaster.connect(sender, ["session:1"])
        await broadcaster.connect(other, ["session:1"])

        broadcaster.publish("session:1", "participant:typing", {"participantId": "p1"}, exclude=sender)
        await broadcaster.drain()

        assert sender.sent == []
        assert other.sent == [{"event": "participant:typing", "data": {"participantId": "p1"}}]

    @pytest.mark.asyncio
    async def test_dead_socket_is_removed(self, broadcaster):
        healthy, dead = FakeWebSocket(), FakeWebSocket(fail=True)
        await broadcaster.connect(healthy, ["session:1"])
        await broadcaster.connect(dead, ["session:1"])

        broadcaster.publish("session:1", "session:started", {"sessionId": "1"})
        await broadcaster.drain()

        assert len(healthy.sent) == 1
        assert broadcaster.connection_count("session:1") == 1

    @pytest.mark.asyncio
    async def test_publish_from_worker_thread(self, broadcaster):
        socket = FakeWebSocket()
        await broadcaster.connect(socket, ["session:1"])

        def worker():
            for index in range(5):
                broadcaster.publish("session:1", "session:advanced", {
                    "sessionId": "1", "phase": "pour", "whiskeyIndex": index,
                })

        thread = threading.Thread(target=worker)
        thread.start()
        thread.join()
        await broadcaster.drain()

        assert [m["data"]["whiskeyIndex"] for m in socket.sent] == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_disconnect_leaves_every_room(self, broadcaster):
        socket = FakeWebSocket()
        await broadcaster.connect(socket, ["session:1", "user:u"])

        assert broadcaster.disconnect(socket) == {"session:1", "user:u"}
        assert broadcaster.connection_count("session:1") == 0
        assert "user:u" not in broadcaster.rooms


class TestMalformedEvents:

    @pytest.mark.asyncio
    async def test_unknown_event_raises(self, broadcaster):
        with pytest.raises(UnknownEvent):
            broadcaster.publish("session:1", "session:exploded", {"sessionId": "1"})

    @pytest.mark.asyncio
    async def test_publish_safely_swallows_and_reports(self, broadcaster):
        assert publish_safely(broadcaster, "session:1", "session:exploded", {}) is False
        assert publish_safely(broadcaster, "session:1", "session:started", {"sessionId": "1"}) is True
