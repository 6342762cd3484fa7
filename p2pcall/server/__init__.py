"""
Signaling relay.
"""

from __future__ import annotations

from .connection import Connection
from .rooms import RoomRegistry
from .signaling_server import SignalingServer

__all__ = ["Connection", "RoomRegistry", "SignalingServer"]
