"""
Outbound side of one client connection.

Each connection owns a bounded queue drained by a single writer task, so a
slow or dead socket never stalls delivery to anybody else and frames reach
the socket in the order they were queued.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional

from websockets.exceptions import ConnectionClosed

from p2pcall import protocol

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256


class Connection:
    def __init__(self, websocket, connection_id: Optional[str] = None,
                 queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.id = connection_id or uuid.uuid4().hex
        self.websocket = websocket
        self._outbox: "asyncio.Queue[Optional[str]]" = asyncio.Queue(maxsize=queue_size)
        self._writer: Optional[asyncio.Task] = None
        self.closed = False

    @property
    def remote_address(self):
        return getattr(self.websocket, "remote_address", None)

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.ensure_future(self._drain())

    def send(self, frame: Dict[str, Any]) -> bool:
        """Queue ``frame`` for delivery. Returns False if it was dropped."""
        if self.closed:
            return False
        try:
            self._outbox.put_nowait(protocol.encode(frame))
        except asyncio.QueueFull:
            logger.debug(f"[DROP] outbox full for '{self.id}'")
            return False
        return True

    async def _drain(self) -> None:
        while True:
            raw = await self._outbox.get()
            if raw is None:
                return
            try:
                await self.websocket.send(raw)
            except ConnectionClosed:
                logger.debug(f"[DROP] '{self.id}' closed while sending")
                self.closed = True
                return
            except Exception as e:
                logger.error(f"[ERROR] writer for '{self.id}' failed: {e}")
                self.closed = True
                return

    async def close(self) -> None:
        """Stop the writer after it flushes whatever is already queued."""
        if self._writer is None:
            self.closed = True
            return
        if not self.closed:
            self.closed = True
            try:
                self._outbox.put_nowait(None)
            except asyncio.QueueFull:
                self._writer.cancel()
        try:
            await self._writer
        except asyncio.CancelledError:
            pass
        self._writer = None

    def __repr__(self) -> str:
        return f"Connection({self.id!r}, {self.remote_address!r})"
