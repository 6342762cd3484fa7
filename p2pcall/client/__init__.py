"""
Call client: negotiation controller and its signaling transport.
"""

from __future__ import annotations

from .capabilities import LocalMedia, LoggingStatusSink
from .config import CallConfig, ice_servers, room_from_url
from .controller import NegotiationController, NegotiationSession
from .errors import CallError, CallStateError, MediaAcquisitionError, NegotiationError
from .signaling import SignalingChannel

__all__ = [
    "CallConfig",
    "CallError",
    "CallStateError",
    "LocalMedia",
    "LoggingStatusSink",
    "MediaAcquisitionError",
    "NegotiationController",
    "NegotiationError",
    "NegotiationSession",
    "SignalingChannel",
    "ice_servers",
    "room_from_url",
]
