"""
Call configuration: ICE servers, room selection and media constraints.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

DEFAULT_ROOM = "main"
DEFAULT_SIGNALING_URL = "ws://localhost:3000"

STUN_URLS = ["stun:stun.l.google.com:19302", "stun:stun1.l.google.com:19302"]

AUDIO_CONSTRAINTS: Dict[str, Any] = {
    "echoCancellation": {"ideal": True},
    "noiseSuppression": {"ideal": True},
    "autoGainControl": {"ideal": False},
    "channelCount": {"ideal": 1},
    "sampleRate": {"ideal": 48000},
    "sampleSize": {"ideal": 16},
}

AUDIO_MAX_BITRATE = 64000


def room_from_url(url: Optional[str], default: str = DEFAULT_ROOM) -> str:
    """Use the URL fragment as room id, e.g. ``http://host/#room-1`` -> ``room-1``."""
    if not url:
        return default
    fragment = urlsplit(url).fragment
    return fragment or default


def parse_turn(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse a TURN descriptor ``{urls, username, credential}`` from JSON."""
    if not raw:
        return None
    try:
        turn = json.loads(raw)
    except ValueError as exc:
        logger.warning(f"[CONFIG] Ignoring invalid TURN json: {exc}")
        return None
    if not isinstance(turn, dict) or "urls" not in turn:
        logger.warning(f"[CONFIG] Ignoring TURN descriptor without urls: {turn!r}")
        return None
    return turn


def load_turn(cli_value: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """TURN from the command line, then ``P2PCALL_TURN_FILE``, then ``P2PCALL_TURN``."""
    if cli_value:
        return parse_turn(cli_value)
    path = os.getenv("P2PCALL_TURN_FILE")
    if path:
        try:
            with open(path, encoding="utf-8") as fh:
                return parse_turn(fh.read())
        except OSError as exc:
            logger.warning(f"[CONFIG] Cannot read TURN file {path}: {exc}")
            return None
    return parse_turn(os.getenv("P2PCALL_TURN"))


def ice_servers(turn: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    servers: List[Dict[str, Any]] = [{"urls": list(STUN_URLS)}]
    if turn:
        servers.append(dict(turn))
    return servers


@dataclass
class CallConfig:
    signaling_url: str = DEFAULT_SIGNALING_URL
    room: str = DEFAULT_ROOM
    turn: Optional[Dict[str, Any]] = None
    video: bool = True
    audio: Dict[str, Any] = field(default_factory=lambda: dict(AUDIO_CONSTRAINTS))

    @property
    def ice_servers(self) -> List[Dict[str, Any]]:
        return ice_servers(self.turn)

    @property
    def media_constraints(self) -> Dict[str, Any]:
        return {"video": self.video, "audio": self.audio}
