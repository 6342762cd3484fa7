"""Relay semantics of SignalingServer, driven without sockets."""

from typing import Any, Dict, List

import pytest

from p2pcall import protocol
from p2pcall.server.signaling_server import SignalingServer


class FakeConnection:
    def __init__(self, connection_id: str, alive: bool = True) -> None:
        self.id = connection_id
        self.alive = alive
        self.frames: List[Dict[str, Any]] = []

    def send(self, frame: Dict[str, Any]) -> bool:
        if not self.alive:
            return False
        self.frames.append(frame)
        return True

    def events(self, name: str) -> List[Dict[str, Any]]:
        return [f for f in self.frames if f["event"] == name]


def connect(server: SignalingServer, *names: str) -> List[FakeConnection]:
    conns = [FakeConnection(n) for n in names]
    for c in conns:
        server.connections[c.id] = c
    return conns


def offer(room: str, sdp: str = "x") -> Dict[str, Any]:
    return {"room": room, "type": "offer", "offer": {"sdp": sdp, "type": "offer"}}


@pytest.mark.asyncio
async def test_join_acks_only_the_requester() -> None:
    server = SignalingServer()
    x, y = connect(server, "x", "y")

    await server.join(x, "r")

    assert x.events("joined") == [{"event": "joined", "room": "r"}]
    assert y.frames == []


@pytest.mark.asyncio
async def test_join_is_idempotent() -> None:
    server = SignalingServer()
    (x,) = connect(server, "x")

    await server.join(x, "r")
    await server.join(x, "r")

    assert len(x.events("joined")) == 2
    assert server.rooms.member_count("r") == 1


@pytest.mark.asyncio
async def test_relay_stays_inside_room() -> None:
    server = SignalingServer()
    a, b, c = connect(server, "a", "b", "c")
    await server.join(a, "r1")
    await server.join(b, "r1")
    await server.join(c, "r2")

    delivered = await server.relay(a, offer("r1"))

    assert delivered == 1
    assert b.events("message") == [{"event": "message", "message": offer("r1")}]
    assert c.events("message") == []
    assert a.events("message") == []


@pytest.mark.asyncio
async def test_relay_forwards_message_unmodified() -> None:
    server = SignalingServer()
    a, b = connect(server, "a", "b")
    await server.join(a, "r")
    await server.join(b, "r")
    message = {"room": "r", "type": "candidate", "candidate": {"candidate": "c"}, "extra": [1, 2]}

    await server.relay(a, message)

    assert b.events("message")[0]["message"] is message


@pytest.mark.asyncio
async def test_relay_to_empty_room_is_dropped() -> None:
    server = SignalingServer()
    a, late = connect(server, "a", "late")

    assert await server.relay(a, offer("nobody-here")) == 0

    await server.join(late, "nobody-here")
    assert late.events("message") == []
    assert server.rooms.room_names() == ["nobody-here"]


@pytest.mark.asyncio
async def test_message_without_room_is_broadcast() -> None:
    server = SignalingServer()
    a, b, c = connect(server, "a", "b", "c")
    await server.join(b, "r1")

    delivered = await server.relay(a, {"type": "offer", "offer": {"sdp": "x", "type": "offer"}})

    assert delivered == 2
    assert len(b.events("message")) == 1
    assert len(c.events("message")) == 1
    assert a.frames == []


@pytest.mark.asyncio
async def test_strict_rooms_rejects_roomless_message() -> None:
    server = SignalingServer(strict_rooms=True)
    a, b = connect(server, "a", "b")

    assert await server.relay(a, {"room": "", "type": "offer", "offer": {}}) == 0

    assert b.frames == []
    assert a.events("error") == [{"event": "error", "reason": "room-required"}]


@pytest.mark.asyncio
async def test_dead_recipient_does_not_block_others() -> None:
    server = SignalingServer()
    a, dead, b = connect(server, "a", "dead", "b")
    dead.alive = False
    for conn in (a, dead, b):
        await server.join(conn, "r")

    delivered = await server.relay(a, offer("r"))

    assert delivered == 1
    assert len(b.events("message")) == 1


@pytest.mark.asyncio
async def test_messages_keep_sender_order() -> None:
    server = SignalingServer()
    a, b = connect(server, "a", "b")
    await server.join(a, "r")
    await server.join(b, "r")

    for i in range(10):
        await server.relay(a, offer("r", sdp=str(i)))

    assert [f["message"]["offer"]["sdp"] for f in b.events("message")] == [str(i) for i in range(10)]


@pytest.mark.asyncio
async def test_disconnect_leaves_every_room() -> None:
    server = SignalingServer()
    a, b = connect(server, "a", "b")
    await server.join(a, "r1")
    await server.join(a, "r2")
    await server.join(b, "r2")

    await server.disconnect(a)

    assert "a" not in server.connections
    assert server.rooms.room_names() == ["r2"]
    assert await server.rooms.members("r2") == frozenset({"b"})
    assert await server.relay(b, offer("r2")) == 0


@pytest.mark.asyncio
async def test_handle_frame_errors() -> None:
    server = SignalingServer()
    (a,) = connect(server, "a")

    await server.handle_frame(a, "not json")
    await server.handle_frame(a, "[1, 2]")
    await server.handle_frame(a, protocol.encode({"event": "dance"}))
    await server.handle_frame(a, protocol.encode({"event": "join", "room": ""}))
    await server.handle_frame(a, protocol.encode({"event": "message", "message": "offer"}))

    assert [f["reason"] for f in a.events("error")] == [
        "bad-json",
        "bad-json",
        "unknown-event",
        "room-required",
        "bad-message",
    ]
    assert a.events("error")[2]["got"] == "dance"


@pytest.mark.asyncio
async def test_handle_frame_join_and_message() -> None:
    server = SignalingServer()
    a, b = connect(server, "a", "b")

    await server.handle_frame(a, protocol.encode(protocol.join_frame("r")))
    await server.handle_frame(b, protocol.encode(protocol.join_frame("r")).encode("utf-8"))
    await server.handle_frame(a, protocol.encode(protocol.message_frame(offer("r"))))

    assert b.events("message")[0]["message"] == offer("r")
