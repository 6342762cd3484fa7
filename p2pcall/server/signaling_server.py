#!/usr/bin/env python3
"""Room-scoped signaling relay.

Connections join rooms and every ``message`` frame is forwarded, untouched, to
the other members of the room it names. Nothing is stored: a message reaches
only the members present when it is forwarded.
"""
import argparse
import asyncio
import logging
import os
import ssl
from typing import Any, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from p2pcall import protocol
from p2pcall.server.connection import Connection
from p2pcall.server.rooms import RoomRegistry
from p2pcall.utils.logging import configure_logging

logger = logging.getLogger(__name__)


class SignalingServer:
    def __init__(self, strict_rooms: bool = False):
        self.rooms = RoomRegistry()
        self.connections: Dict[str, Connection] = {}
        # Reject room-less messages instead of broadcasting them server-wide.
        self.strict_rooms = strict_rooms

    async def handler(self, ws):
        conn = Connection(ws)
        conn.start()
        self.connections[conn.id] = conn
        logger.info(f"[NEW CONNECTION] '{conn.id}' from {conn.remote_address}")
        try:
            async for raw in ws:
                await self.handle_frame(conn, raw)
        except ConnectionClosed:
            logger.info(f"[DISCONNECT] Connection closed for '{conn.id}'")
        except Exception:
            logger.exception(f"[ERROR] Exception in handler for '{conn.id}'")
        finally:
            await self.disconnect(conn)
            await conn.close()

    async def handle_frame(self, conn: Connection, raw) -> None:
        try:
            frame = protocol.decode(raw)
        except protocol.ProtocolError as exc:
            logger.warning(f"[ERROR] Bad frame from '{conn.id}': {exc}")
            conn.send(protocol.error_frame("bad-json"))
            return

        event = frame.get("event")
        if event == protocol.EVENT_JOIN:
            room = frame.get("room")
            if not isinstance(room, str) or not room:
                conn.send(protocol.error_frame("room-required"))
                return
            await self.join(conn, room)
        elif event == protocol.EVENT_MESSAGE:
            message = frame.get("message")
            if not isinstance(message, dict):
                conn.send(protocol.error_frame("bad-message"))
                return
            await self.relay(conn, message)
        else:
            logger.warning(f"[ERROR] Unknown event from '{conn.id}': {event}")
            conn.send(protocol.error_frame("unknown-event", got=event))

    async def join(self, conn: Connection, room: str) -> None:
        added = await self.rooms.join(room, conn.id)
        if not added:
            logger.debug(f"[JOIN] '{conn.id}' already in '{room}'")
        conn.send(protocol.joined_frame(room))

    async def relay(self, conn: Connection, message: Dict[str, Any]) -> int:
        """Forward ``message`` to the other members of its room.

        Returns the number of recipients the frame was queued for.
        """
        room = message.get("room")
        room = str(room) if room else ""
        kind = message.get("type")
        logger.info(f"[RELAY] {kind} from '{conn.id}' room: {room or '(none)'}")

        if room:
            targets = [cid for cid in await self.rooms.members(room) if cid != conn.id]
        elif self.strict_rooms:
            conn.send(protocol.error_frame("room-required"))
            return 0
        else:
            # Legacy fallback: no room means every other connection.
            targets = [cid for cid in list(self.connections) if cid != conn.id]

        frame = protocol.message_frame(message)
        delivered = 0
        for cid in targets:
            target = self.connections.get(cid)
            if target is None:
                continue
            if target.send(frame):
                delivered += 1
            else:
                logger.debug(f"[DROP] {kind} for '{cid}' not delivered")
        return delivered

    async def disconnect(self, conn: Connection) -> None:
        self.connections.pop(conn.id, None)
        left = await self.rooms.leave_all(conn.id)
        logger.info(f"[CLEANUP] Removed '{conn.id}' from {left}. Connections: {len(self.connections)}")


def build_ssl_context(certfile: str, keyfile: str) -> ssl.SSLContext:
    ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ssl_context.load_cert_chain(certfile=certfile, keyfile=keyfile)
    return ssl_context


async def serve(host: str, port: int, strict_rooms: bool = False,
                ssl_context: Optional[ssl.SSLContext] = None) -> None:
    server = SignalingServer(strict_rooms=strict_rooms)
    scheme = "wss" if ssl_context else "ws"
    logger.info("=" * 50)
    logger.info(f" Signaling Server listening on {scheme}://{host}:{port}")
    logger.info(f" Room-less messages: {'rejected' if strict_rooms else 'broadcast'}")
    logger.info("=" * 50)
    async with websockets.serve(server.handler, host, port, ssl=ssl_context):
        await asyncio.Future()


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="p2pcall signaling relay")
    ap.add_argument("--host", default=os.getenv("P2PCALL_HOST", "0.0.0.0"))
    ap.add_argument("--port", type=int, default=int(os.getenv("P2PCALL_PORT", "3000")))
    ap.add_argument("--ssl", "--wss", dest="ssl", action="store_true", help="serve wss://")
    ap.add_argument("--certfile", default=os.getenv("P2PCALL_CERTFILE"))
    ap.add_argument("--keyfile", default=os.getenv("P2PCALL_KEYFILE"))
    ap.add_argument("--strict-rooms", action="store_true",
                    help="reject messages without a room instead of broadcasting them")
    ap.add_argument("--log-level", default=os.getenv("P2PCALL_LOG_LEVEL", "INFO"))
    args = ap.parse_args(argv)
    if args.ssl and not (args.certfile and args.keyfile):
        ap.error("--ssl requires --certfile and --keyfile")
    return args


def main(argv=None):
    args = parse_args(argv)
    configure_logging(args.log_level)
    ssl_context = build_ssl_context(args.certfile, args.keyfile) if args.ssl else None
    try:
        asyncio.run(serve(args.host, args.port, args.strict_rooms, ssl_context))
    except KeyboardInterrupt:
        logger.info("Signaling server stopped")


if __name__ == "__main__":
    main()
