"""
Offer/answer/candidate negotiation for a single call.

All work goes through one queue served by one worker task: user intents,
inbound signaling messages and peer-connection events are applied strictly
in arrival order, so the session is never mutated concurrently. Public
coroutines wait for their queue item and re-raise its failure; events coming
from the peer connection are fire-and-forget.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from p2pcall import protocol
from p2pcall.client.capabilities import (
    CONNECTED,
    CONNECTING,
    DISCONNECTED,
    HAVE_LOCAL_OFFER,
    LocalMedia,
    LoggingStatusSink,
    MediaCapability,
    PeerConnection,
    PeerConnectionFactory,
    StatusSink,
    Track,
)
from p2pcall.client.config import AUDIO_CONSTRAINTS, AUDIO_MAX_BITRATE, ice_servers as default_ice_servers
from p2pcall.client.errors import CallError, CallStateError, MediaAcquisitionError, NegotiationError
from p2pcall.protocol import IceCandidate, SessionDescription, SignalMessage

logger = logging.getLogger(__name__)

SendSignal = Callable[[SignalMessage], Awaitable[None]]


@dataclass(eq=False)
class NegotiationSession:
    """State of one call attempt. A new offer always gets a new session."""

    peer: Optional[PeerConnection] = None
    media: Optional[LocalMedia] = None
    screen_track: Optional[Track] = None
    remote_stream: Any = None

    @property
    def signaling_state(self) -> Optional[str]:
        return self.peer.signaling_state if self.peer is not None else None

    async def close(self) -> None:
        if self.screen_track is not None:
            self.screen_track.stop()
            self.screen_track = None
        if self.media is not None:
            self.media.stop()
        if self.peer is not None:
            await self.peer.close()


class NegotiationController:
    def __init__(
        self,
        room: str,
        send: SendSignal,
        peer_factory: PeerConnectionFactory,
        media: MediaCapability,
        ui: Optional[StatusSink] = None,
        ice_servers: Optional[List[Dict[str, Any]]] = None,
        media_constraints: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.room = room
        self._send = send
        self.peer_factory = peer_factory
        self.media = media
        self.ui = ui or LoggingStatusSink()
        self.ice_servers = ice_servers if ice_servers is not None else default_ice_servers()
        self.media_constraints = media_constraints or {"video": True, "audio": dict(AUDIO_CONSTRAINTS)}

        self.session: Optional[NegotiationSession] = None
        self.status = DISCONNECTED
        self.status_text = ""
        self._queue: "asyncio.Queue" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    # ---------- lifecycle ----------
    @property
    def signaling_state(self) -> Optional[str]:
        return self.session.signaling_state if self.session is not None else None

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.ensure_future(self._run())

    async def stop(self) -> None:
        """Hang up any active call and stop the worker."""
        if self._worker is None:
            return
        await self.hangup()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    async def __aenter__(self) -> "NegotiationController":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def _run(self) -> None:
        while True:
            fn, args, future = await self._queue.get()
            if future is not None and future.cancelled():
                continue
            try:
                result = await fn(*args)
            except Exception as exc:
                if future is None:
                    logger.exception(f"[CALL] {fn.__name__} failed")
                elif not future.cancelled():
                    future.set_exception(exc)
            else:
                if future is not None and not future.cancelled():
                    future.set_result(result)

    async def _submit(self, fn, *args):
        self.start()
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((fn, args, future))
        return await future

    def _post(self, fn, *args) -> None:
        self.start()
        self._queue.put_nowait((fn, args, None))

    # ---------- user intents ----------
    async def start_call(self) -> None:
        await self._submit(self._start_call)

    async def hangup(self) -> bool:
        return await self._submit(self._hangup)

    async def restart_ice(self) -> None:
        await self._submit(self._restart_ice)

    async def toggle_mute(self) -> Optional[bool]:
        return await self._submit(self._toggle, "audio")

    async def toggle_video(self) -> Optional[bool]:
        return await self._submit(self._toggle, "video")

    async def share_screen(self) -> bool:
        return await self._submit(self._share_screen)

    async def stop_screen_share(self) -> bool:
        return await self._submit(self._stop_screen_share)

    # ---------- inbound signaling ----------
    async def dispatch(self, message: SignalMessage):
        if message.type == protocol.OFFER:
            return await self.on_remote_offer(message.payload)
        if message.type == protocol.ANSWER:
            return await self.on_remote_answer(message.payload)
        if message.type == protocol.CANDIDATE:
            return await self.on_remote_candidate(message.payload)
        logger.warning(f"[SIG] Ignoring unknown message type {message.type!r}")
        return None

    async def on_remote_offer(self, offer: Any) -> None:
        await self._submit(self._on_remote_offer, offer)

    async def on_remote_answer(self, answer: Any) -> bool:
        return await self._submit(self._on_remote_answer, answer)

    async def on_remote_candidate(self, candidate: Any) -> bool:
        return await self._submit(self._on_remote_candidate, candidate)

    # ---------- peer connection events ----------
    def on_local_ice_candidate(self, session: NegotiationSession, candidate: IceCandidate) -> None:
        self._post(self._on_local_ice_candidate, session, candidate)

    def on_remote_track(self, session: NegotiationSession, track: Track, stream: Any) -> None:
        self._post(self._on_remote_track, session, track, stream)

    # ---------- handlers (run on the worker only) ----------
    async def _start_call(self) -> None:
        if self.session is not None:
            raise CallStateError("a call is already active; hang up first")
        logger.info("[CALL] start_call: begin")
        self._set_status(CONNECTING, "Requesting media...")
        try:
            media = await self._acquire_media()
        except MediaAcquisitionError:
            self._set_status(DISCONNECTED, "Permissions blocked")
            raise

        session = NegotiationSession(media=media)
        self.session = session
        try:
            session.peer = self._create_peer(session)
            self._add_local_tracks(session)
            self._set_status(CONNECTING, "Creating offer...")
            logger.info(f"[CALL] signalingState(before offer)={session.signaling_state}")
            offer = await self._negotiate("create offer", session.peer.create_offer())
            await self._negotiate("set local offer", session.peer.set_local_description(offer))
            logger.info(f"[CALL] signalingState(after setLocalDescription)={session.signaling_state}")
            await self._configure_audio_sender(session.peer)
            self._set_status(CONNECTING, "Calling...")
            await self._send(SignalMessage.offer(self.room, offer))
        except Exception:
            await self._abort(session)
            raise

    async def _on_remote_offer(self, payload: Any) -> None:
        self._set_status(CONNECTING, "Incoming call...")
        logger.info(f"[SIG] onOffer: signalingState(before)={self.signaling_state or '(no pc)'}")
        if self.session is not None:
            logger.info("[SIG] Incoming offer supersedes the active session")
            await self._teardown()

        session = NegotiationSession()
        self.session = session
        try:
            offer = self._parse_description(payload)
            session.peer = self._create_peer(session)
            await self._negotiate("set remote offer", session.peer.set_remote_description(offer))
            logger.info(f"[SIG] onOffer: signalingState(after setRemote)={session.signaling_state}")

            try:
                session.media = await self._acquire_media()
            except MediaAcquisitionError:
                await self._teardown()
                self._set_status(DISCONNECTED, "Permissions blocked")
                raise
            self._add_local_tracks(session)

            answer = await self._negotiate("create answer", session.peer.create_answer())
            await self._negotiate("set local answer", session.peer.set_local_description(answer))
            logger.info(f"[SIG] onOffer: signalingState(after setLocal answer)={session.signaling_state}")
            await self._configure_audio_sender(session.peer)
            await self._send(SignalMessage.answer(self.room, answer))
        except MediaAcquisitionError:
            raise
        except Exception:
            await self._abort(session)
            raise

    async def _on_remote_answer(self, payload: Any) -> bool:
        session = self.session
        if session is None:
            logger.warning("[SIG] onAnswer ignored; no active call")
            return False
        state = session.signaling_state
        logger.info(f"[SIG] onAnswer: signalingState(before)={state}")
        if state != HAVE_LOCAL_OFFER:
            # Stale or glare answer: applying it would break the peer connection.
            logger.warning(f"[SIG] onAnswer ignored; expected {HAVE_LOCAL_OFFER}, got {state}")
            return False
        try:
            answer = self._parse_description(payload)
            await self._negotiate("set remote answer", session.peer.set_remote_description(answer))
        except Exception:
            await self._abort(session)
            raise
        logger.info(f"[SIG] onAnswer: signalingState(after setRemote)={session.signaling_state}")
        return True

    async def _on_remote_candidate(self, payload: Any) -> bool:
        session = self.session
        if session is None or session.peer is None:
            logger.debug("[ICE] candidate ignored; no active call")
            return False
        try:
            candidate = IceCandidate.from_dict(payload)
            await session.peer.add_ice_candidate(candidate)
        except Exception as exc:
            logger.warning(f"[ICE] addIceCandidate failed: {exc}")
            return False
        return True

    async def _on_local_ice_candidate(self, session: NegotiationSession, candidate: IceCandidate) -> None:
        if session is not self.session:
            logger.debug("[ICE] dropping candidate from a closed session")
            return
        await self._send(SignalMessage.candidate(self.room, candidate))

    async def _on_remote_track(self, session: NegotiationSession, track: Track, stream: Any) -> None:
        if session is not self.session:
            return
        logger.info(f"[CALL] remote {track.kind} track received")
        session.remote_stream = stream
        self.ui.set_remote_stream(stream)
        self._set_status(CONNECTED, "Connected")

    async def _restart_ice(self) -> None:
        session = self.session
        if session is None:
            raise CallStateError("no active call to restart")
        try:
            session.peer.restart_ice()
            self._set_status(CONNECTING, "Re-negotiating...")
            offer = await self._negotiate("create restart offer", session.peer.create_offer(ice_restart=True))
            await self._negotiate("set local restart offer", session.peer.set_local_description(offer))
            await self._send(SignalMessage.offer(self.room, offer))
        except Exception:
            logger.error("[CALL] ICE restart failed")
            await self._abort(session)
            raise

    async def _hangup(self) -> bool:
        had_session = await self._teardown()
        self._set_status(DISCONNECTED, "Call ended")
        return had_session

    async def _toggle(self, kind: str) -> Optional[bool]:
        media = self.session.media if self.session is not None else None
        track = None
        if media is not None:
            track = media.audio_track if kind == "audio" else media.video_track
        if track is None:
            return None
        track.enabled = not track.enabled
        logger.info(f"[MEDIA] {kind} {'enabled' if track.enabled else 'disabled'}")
        return track.enabled

    async def _share_screen(self) -> bool:
        session = self.session
        if session is None or session.peer is None:
            logger.warning("[MEDIA] Screen share needs an active call")
            return False
        try:
            screen = await self.media.acquire_display_media()
            sender = self._video_sender(session.peer)
            if sender is None:
                screen.stop()
                logger.warning("[MEDIA] No outgoing video to replace")
                return False
            await sender.replace_track(screen)
        except Exception as exc:
            logger.warning(f"[MEDIA] Screen share canceled/failed: {exc}")
            return False
        if session.screen_track is not None:
            session.screen_track.stop()
        session.screen_track = screen
        return True

    async def _stop_screen_share(self) -> bool:
        session = self.session
        if session is None or session.screen_track is None:
            return False
        screen, session.screen_track = session.screen_track, None
        camera = session.media.video_track if session.media is not None else None
        sender = self._video_sender(session.peer)
        try:
            if sender is not None and camera is not None:
                await sender.replace_track(camera)
        except Exception as exc:
            logger.warning(f"[MEDIA] Restoring camera failed: {exc}")
            return False
        finally:
            screen.stop()
        return True

    # ---------- helpers ----------
    def _set_status(self, state: str, text: str) -> None:
        self.status = state
        self.status_text = text
        self.ui.set_status(state, text)

    async def _acquire_media(self) -> LocalMedia:
        try:
            return await self.media.acquire_local_media(self.media_constraints)
        except MediaAcquisitionError:
            raise
        except Exception as exc:
            raise MediaAcquisitionError(f"cannot capture local media: {exc}") from exc

    def _create_peer(self, session: NegotiationSession) -> PeerConnection:
        try:
            return self.peer_factory(
                self.ice_servers,
                on_ice_candidate=lambda candidate: self.on_local_ice_candidate(session, candidate),
                on_track=lambda track, stream: self.on_remote_track(session, track, stream),
            )
        except Exception as exc:
            raise NegotiationError(f"cannot create peer connection: {exc}") from exc

    @staticmethod
    def _add_local_tracks(session: NegotiationSession) -> None:
        for track in session.media.tracks():
            session.peer.add_track(track)

    @staticmethod
    def _parse_description(payload: Any) -> SessionDescription:
        try:
            return SessionDescription.from_dict(payload)
        except protocol.ProtocolError as exc:
            raise NegotiationError(str(exc)) from exc

    @staticmethod
    async def _negotiate(step: str, awaitable):
        try:
            return await awaitable
        except CallError:
            raise
        except Exception as exc:
            raise NegotiationError(f"{step} failed: {exc}") from exc

    @staticmethod
    def _video_sender(peer: PeerConnection):
        for sender in peer.get_senders():
            if sender.track is not None and sender.track.kind == "video":
                return sender
        return None

    async def _configure_audio_sender(self, peer: PeerConnection) -> None:
        """Cap outgoing audio at 64 kbps where the peer connection exposes encodings."""
        try:
            sender = next((s for s in peer.get_senders()
                           if s.track is not None and s.track.kind == "audio"), None)
            get_parameters = getattr(sender, "get_parameters", None)
            if get_parameters is None:
                logger.debug("[AUDIO] No audio sender or get_parameters unsupported")
                return
            params = get_parameters() or {}
            encodings = params.get("encodings")
            if not encodings:
                logger.debug("[AUDIO] Skipping set_parameters: no encodings present yet")
                return
            encodings[0] = dict(encodings[0] or {}, maxBitrate=AUDIO_MAX_BITRATE)
            await sender.set_parameters(params)
        except Exception as exc:
            logger.warning(f"[AUDIO] Failed to set audio sender parameters: {exc}")

    async def _teardown(self) -> bool:
        session, self.session = self.session, None
        if session is None:
            return False
        try:
            await session.close()
        except Exception as exc:
            logger.warning(f"[CALL] closing session failed: {exc}")
        return True

    async def _abort(self, session: NegotiationSession) -> None:
        if self.session is session:
            await self._teardown()
        self._set_status(DISCONNECTED, "Call setup failed")
