"""Room membership bookkeeping and the per-connection outbox."""

import asyncio
import json

import pytest
from websockets.exceptions import ConnectionClosedError

from p2pcall.server.connection import Connection
from p2pcall.server.rooms import RoomRegistry


@pytest.mark.asyncio
async def test_rooms_are_created_and_removed_on_demand() -> None:
    rooms = RoomRegistry()

    assert await rooms.join("r", "a") is True
    assert await rooms.join("r", "a") is False
    assert await rooms.join("r", "b") is True
    assert rooms.member_count("r") == 2

    assert await rooms.leave_all("a") == ["r"]
    assert rooms.room_names() == ["r"]
    assert await rooms.leave_all("b") == ["r"]
    assert rooms.room_names() == []
    assert await rooms.members("r") == frozenset()


@pytest.mark.asyncio
async def test_membership_is_only_what_was_joined() -> None:
    rooms = RoomRegistry()
    await rooms.join("r1", "a")
    await rooms.join("r2", "a")
    await rooms.join("r2", "b")

    assert await rooms.rooms_of("a") == ["r1", "r2"]
    assert await rooms.rooms_of("b") == ["r2"]
    assert await rooms.leave_all("nobody") == []


@pytest.mark.asyncio
async def test_members_is_a_snapshot() -> None:
    rooms = RoomRegistry()
    await rooms.join("r", "a")
    snapshot = await rooms.members("r")

    await rooms.join("r", "b")

    assert snapshot == frozenset({"a"})


class RecordingSocket:
    remote_address = ("127.0.0.1", 5555)

    def __init__(self, fail_after: int = -1) -> None:
        self.sent = []
        self.fail_after = fail_after

    async def send(self, raw: str) -> None:
        if self.fail_after >= 0 and len(self.sent) >= self.fail_after:
            raise ConnectionClosedError(None, None)
        await asyncio.sleep(0)
        self.sent.append(json.loads(raw))


@pytest.mark.asyncio
async def test_connection_flushes_in_order_on_close() -> None:
    ws = RecordingSocket()
    conn = Connection(ws, connection_id="c1")
    conn.start()

    for i in range(5):
        assert conn.send({"event": "message", "n": i}) is True
    await conn.close()

    assert [f["n"] for f in ws.sent] == [0, 1, 2, 3, 4]
    assert conn.send({"event": "message"}) is False


@pytest.mark.asyncio
async def test_connection_drops_when_outbox_full() -> None:
    conn = Connection(RecordingSocket(), queue_size=1)

    assert conn.send({"event": "joined", "room": "r"}) is True
    assert conn.send({"event": "joined", "room": "r"}) is False
    await conn.close()


@pytest.mark.asyncio
async def test_connection_stops_after_socket_closes() -> None:
    ws = RecordingSocket(fail_after=1)
    conn = Connection(ws)
    conn.start()

    conn.send({"event": "message", "n": 0})
    conn.send({"event": "message", "n": 1})
    for _ in range(10):
        await asyncio.sleep(0)

    assert conn.closed
    assert [f["n"] for f in ws.sent] == [0]
    assert conn.send({"event": "message", "n": 2}) is False
    await conn.close()


class BrokenSocket(RecordingSocket):
    async def send(self, raw: str) -> None:
        raise RuntimeError("transport exploded")


@pytest.mark.asyncio
async def test_connection_closes_when_writer_fails(caplog) -> None:
    conn = Connection(BrokenSocket(), connection_id="c9")
    conn.start()

    assert conn.send({"event": "message", "n": 0}) is True
    for _ in range(10):
        await asyncio.sleep(0)

    assert conn.closed
    assert conn.send({"event": "message", "n": 1}) is False
    await conn.close()
    assert "writer for 'c9' failed" in caplog.text


@pytest.mark.asyncio
async def test_connection_ids_are_unique() -> None:
    ids = {Connection(RecordingSocket()).id for _ in range(50)}
    assert len(ids) == 50
