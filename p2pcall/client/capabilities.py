"""
Interfaces of the collaborators the negotiation controller drives.

The controller never touches media or the network stack directly; it talks
to a peer-connection capability, a media capability and a status sink. The
GStreamer implementation lives in :mod:`p2pcall.client.gst_media`, tests use
in-memory fakes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol

from p2pcall.protocol import IceCandidate, SessionDescription

logger = logging.getLogger(__name__)

# Signaling states as reported by the peer connection.
STABLE = "stable"
HAVE_LOCAL_OFFER = "have-local-offer"
HAVE_REMOTE_OFFER = "have-remote-offer"
CLOSED = "closed"

# Call status shown to the user.
DISCONNECTED = "disconnected"
CONNECTING = "connecting"
CONNECTED = "connected"


class Track(Protocol):
    kind: str
    enabled: bool

    def stop(self) -> None: ...


class Sender(Protocol):
    track: Optional[Track]

    async def replace_track(self, track: Optional[Track]) -> None: ...


class PeerConnection(Protocol):
    signaling_state: str

    def add_track(self, track: Track) -> Sender: ...

    async def create_offer(self, ice_restart: bool = False) -> SessionDescription: ...

    async def create_answer(self) -> SessionDescription: ...

    async def set_local_description(self, description: SessionDescription) -> None: ...

    async def set_remote_description(self, description: SessionDescription) -> None: ...

    async def add_ice_candidate(self, candidate: IceCandidate) -> None: ...

    def restart_ice(self) -> None: ...

    def get_senders(self) -> List[Sender]: ...

    async def close(self) -> None: ...


OnIceCandidate = Callable[[IceCandidate], None]
OnTrack = Callable[[Track, Any], None]


class PeerConnectionFactory(Protocol):
    """Builds a peer connection; the callbacks must be invoked on the event loop thread."""

    def __call__(self, ice_servers: List[Dict[str, Any]], on_ice_candidate: OnIceCandidate,
                 on_track: OnTrack) -> PeerConnection: ...


@dataclass
class LocalMedia:
    audio_track: Optional[Track] = None
    video_track: Optional[Track] = None

    def tracks(self) -> List[Track]:
        return [t for t in (self.video_track, self.audio_track) if t is not None]

    def stop(self) -> None:
        for track in self.tracks():
            try:
                track.stop()
            except Exception as exc:
                logger.warning(f"[MEDIA] stopping {track.kind} track failed: {exc}")


class MediaCapability(Protocol):
    async def acquire_local_media(self, constraints: Dict[str, Any]) -> LocalMedia: ...

    async def acquire_display_media(self) -> Track: ...


class StatusSink(Protocol):
    def set_status(self, state: str, text: str) -> None: ...

    def set_remote_stream(self, stream: Any) -> None: ...


class LoggingStatusSink:
    """Status sink for headless use: writes every update to the log."""

    def set_status(self, state: str, text: str) -> None:
        logger.info(f"[STATUS] {state}: {text}")

    def set_remote_stream(self, stream: Any) -> None:
        logger.info(f"[STATUS] remote stream attached: {stream!r}")
