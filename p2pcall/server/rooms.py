"""
Room membership for the relay.

Rooms exist only while they have members: joining creates one on demand and
the last member leaving removes it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, FrozenSet, List, Set

logger = logging.getLogger(__name__)


class RoomRegistry:
    """room id -> set of connection ids, guarded by a single lock."""

    def __init__(self) -> None:
        self._rooms: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()

    async def join(self, room: str, connection_id: str) -> bool:
        """Add ``connection_id`` to ``room``. Returns False if it was already a member."""
        async with self._lock:
            members = self._rooms.setdefault(room, set())
            if connection_id in members:
                return False
            members.add(connection_id)
            logger.info(f"[ROOM] '{connection_id}' joined '{room}'. Members: {len(members)}")
            return True

    async def leave_all(self, connection_id: str) -> List[str]:
        """Remove ``connection_id`` from every room; returns the rooms it left."""
        left = []
        async with self._lock:
            for room in list(self._rooms):
                members = self._rooms[room]
                if connection_id not in members:
                    continue
                members.discard(connection_id)
                left.append(room)
                if not members:
                    del self._rooms[room]
                    logger.info(f"[ROOM] '{room}' deleted (empty)")
        return left

    async def members(self, room: str) -> FrozenSet[str]:
        async with self._lock:
            return frozenset(self._rooms.get(room, ()))

    async def rooms_of(self, connection_id: str) -> List[str]:
        async with self._lock:
            return sorted(r for r, m in self._rooms.items() if connection_id in m)

    def room_names(self) -> List[str]:
        return sorted(self._rooms)

    def member_count(self, room: str) -> int:
        return len(self._rooms.get(room, ()))
