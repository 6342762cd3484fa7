"""
Wire format shared by the relay server and the call client.

Every WebSocket frame is a JSON object with an ``event`` key. Signaling
payloads travel inside ``message`` frames and are never interpreted by the
relay beyond their ``room`` and ``type`` fields.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

EVENT_JOIN = "join"
EVENT_JOINED = "joined"
EVENT_MESSAGE = "message"
EVENT_ERROR = "error"

OFFER = "offer"
ANSWER = "answer"
CANDIDATE = "candidate"
SIGNAL_TYPES = (OFFER, ANSWER, CANDIDATE)


class ProtocolError(ValueError):
    """Raised when a frame or signaling message cannot be decoded."""


def encode(frame: Dict[str, Any]) -> str:
    return json.dumps(frame)


def decode(raw) -> Dict[str, Any]:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        frame = json.loads(raw)
    except ValueError as exc:
        raise ProtocolError(f"invalid json: {exc}") from exc
    if not isinstance(frame, dict):
        raise ProtocolError("frame must be a json object")
    return frame


def join_frame(room: str) -> Dict[str, Any]:
    return {"event": EVENT_JOIN, "room": room}


def joined_frame(room: str) -> Dict[str, Any]:
    return {"event": EVENT_JOINED, "room": room}


def message_frame(message: Dict[str, Any]) -> Dict[str, Any]:
    return {"event": EVENT_MESSAGE, "message": message}


def error_frame(reason: str, **extra: Any) -> Dict[str, Any]:
    frame = {"event": EVENT_ERROR, "reason": reason}
    frame.update(extra)
    return frame


@dataclass(frozen=True)
class SessionDescription:
    """An SDP blob plus its role (``offer`` or ``answer``)."""

    type: str
    sdp: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "sdp": self.sdp}

    @classmethod
    def from_dict(cls, data: Any) -> "SessionDescription":
        if not isinstance(data, dict) or "sdp" not in data or "type" not in data:
            raise ProtocolError(f"not a session description: {data!r}")
        return cls(type=str(data["type"]), sdp=str(data["sdp"]))


@dataclass(frozen=True)
class IceCandidate:
    """Serialisable ICE candidate container."""

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "IceCandidate":
        if not isinstance(data, dict) or "candidate" not in data:
            raise ProtocolError(f"not an ice candidate: {data!r}")
        mline = data.get("sdpMLineIndex")
        return cls(
            candidate=str(data["candidate"]),
            sdp_mid=data.get("sdpMid"),
            sdp_mline_index=int(mline) if mline is not None else None,
        )


@dataclass(frozen=True)
class SignalMessage:
    """
    One negotiation step addressed to a room.

    ``payload`` holds the value stored under the key named by ``type`` on the
    wire (``offer``, ``answer`` or ``candidate``).
    """

    room: str
    type: str
    payload: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"room": self.room, "type": self.type, self.type: self.payload}

    @classmethod
    def from_dict(cls, data: Any) -> "SignalMessage":
        if not isinstance(data, dict):
            raise ProtocolError(f"signal message must be an object, got {data!r}")
        kind = data.get("type")
        if kind not in SIGNAL_TYPES:
            raise ProtocolError(f"unknown signal type: {kind!r}")
        if kind not in data:
            raise ProtocolError(f"{kind} message without {kind} payload")
        return cls(room=str(data.get("room") or ""), type=kind, payload=data[kind])

    @classmethod
    def offer(cls, room: str, description: SessionDescription) -> "SignalMessage":
        return cls(room=room, type=OFFER, payload=description.to_dict())

    @classmethod
    def answer(cls, room: str, description: SessionDescription) -> "SignalMessage":
        return cls(room=room, type=ANSWER, payload=description.to_dict())

    @classmethod
    def candidate(cls, room: str, candidate: IceCandidate) -> "SignalMessage":
        return cls(room=room, type=CANDIDATE, payload=candidate.to_dict())


__all__ = [
    "ANSWER",
    "CANDIDATE",
    "EVENT_ERROR",
    "EVENT_JOIN",
    "EVENT_JOINED",
    "EVENT_MESSAGE",
    "IceCandidate",
    "OFFER",
    "ProtocolError",
    "SessionDescription",
    "SignalMessage",
    "decode",
    "encode",
    "error_frame",
    "join_frame",
    "joined_frame",
    "message_frame",
]
