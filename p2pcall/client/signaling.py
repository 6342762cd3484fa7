"""
Client side of the signaling relay: join a room, send and receive
SignalMessages over one WebSocket.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from p2pcall import protocol
from p2pcall.protocol import SignalMessage

logger = logging.getLogger(__name__)

SignalHandler = Callable[[SignalMessage], Awaitable[Any]]


class SignalingChannel:
    def __init__(self, url: str, room: str, join_timeout: float = 10.0) -> None:
        self.url = url
        self.room = room
        self.join_timeout = join_timeout
        self.ws = None
        # Signal messages that arrived before listen() was called.
        self._early: "asyncio.Queue[SignalMessage]" = asyncio.Queue()

    async def connect(self) -> None:
        """Open the socket, join the room and wait for the ``joined`` ack."""
        self.ws = await websockets.connect(self.url)
        logger.info(f"[SIG] Connected to signaling at {self.url}")
        try:
            await self.ws.send(protocol.encode(protocol.join_frame(self.room)))
            await asyncio.wait_for(self._wait_joined(), timeout=self.join_timeout)
        except Exception:
            await self.close()
            raise
        logger.info(f"[SIG] Joined room '{self.room}'")

    async def _wait_joined(self) -> None:
        while True:
            frame = protocol.decode(await self.ws.recv())
            event = frame.get("event")
            if event == protocol.EVENT_JOINED and frame.get("room") == self.room:
                return
            if event == protocol.EVENT_MESSAGE:
                message = self._parse(frame)
                if message is not None:
                    self._early.put_nowait(message)
            elif event == protocol.EVENT_ERROR:
                logger.error(f"[SIG][ERROR] {frame}")

    async def send(self, message: SignalMessage) -> None:
        if self.ws is None:
            raise ConnectionError("signaling channel is not connected")
        await self.ws.send(protocol.encode(protocol.message_frame(message.to_dict())))

    async def listen(self, handler: SignalHandler) -> None:
        """Feed every inbound SignalMessage to ``handler`` until the socket closes.

        A failing handler is logged and the loop keeps going; the controller
        has already moved the call to its failed status by then.
        """
        while not self._early.empty():
            await self._handle(handler, self._early.get_nowait())
        try:
            async for raw in self.ws:
                try:
                    frame = protocol.decode(raw)
                except protocol.ProtocolError as exc:
                    logger.warning(f"[SIG] Unreadable frame: {exc}")
                    continue
                event = frame.get("event")
                if event == protocol.EVENT_MESSAGE:
                    message = self._parse(frame)
                    if message is not None:
                        await self._handle(handler, message)
                elif event == protocol.EVENT_ERROR:
                    logger.error(f"[SIG][ERROR] {frame}")
                elif event == protocol.EVENT_JOINED:
                    logger.debug(f"[SIG] joined {frame.get('room')}")
        except ConnectionClosed:
            logger.info("[SIG] Signaling connection closed")

    async def _handle(self, handler: SignalHandler, message: SignalMessage) -> None:
        try:
            await handler(message)
        except Exception as exc:
            logger.error(f"[SIG] Signal handling error ({message.type}): {exc}")

    @staticmethod
    def _parse(frame) -> Optional[SignalMessage]:
        try:
            return SignalMessage.from_dict(frame.get("message"))
        except protocol.ProtocolError as exc:
            logger.warning(f"[SIG] Ignoring malformed signal message: {exc}")
            return None

    async def close(self) -> None:
        if self.ws is not None:
            await self.ws.close()
            self.ws = None
