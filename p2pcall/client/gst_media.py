"""
GStreamer ``webrtcbin`` implementation of the peer-connection and media
capabilities.

webrtcbin reports results and events on its own streaming threads; every
callback here hops back onto the asyncio loop with ``call_soon_threadsafe``
before touching controller state.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import gi

gi.require_version("Gst", "1.0")
gi.require_version("GstSdp", "1.0")
gi.require_version("GstWebRTC", "1.0")
from gi.repository import GLib, Gst, GstSdp, GstWebRTC  # noqa: E402

from p2pcall.client.capabilities import LocalMedia  # noqa: E402
from p2pcall.client.errors import MediaAcquisitionError, NegotiationError  # noqa: E402
from p2pcall.protocol import IceCandidate, SessionDescription  # noqa: E402

logger = logging.getLogger(__name__)

Gst.init(None)

RAW_VIDEO_CAPS = "video/x-raw,width=640,height=480,framerate=30/1"

VIDEO_SOURCE = "autovideosrc ! videoconvert ! videoscale ! videorate ! " + RAW_VIDEO_CAPS
TEST_VIDEO_SOURCE = "videotestsrc is-live=true pattern=ball ! videoconvert ! " + RAW_VIDEO_CAPS
SCREEN_SOURCE = "ximagesrc use-damage=false ! videoconvert ! videoscale ! videorate ! " + RAW_VIDEO_CAPS
AUDIO_SOURCE = "autoaudiosrc ! audioconvert ! audioresample ! audio/x-raw,rate=48000,channels=1"
TEST_AUDIO_SOURCE = "audiotestsrc is-live=true ! audioconvert ! audioresample ! audio/x-raw,rate=48000,channels=1"

VIDEO_ENCODER = ("queue ! vp8enc deadline=1 ! rtpvp8pay pt=96 ! "
                 "application/x-rtp,media=video,encoding-name=VP8,payload=96")
AUDIO_ENCODER = ("queue ! opusenc name=encoder ! rtpopuspay pt=111 ! "
                 "application/x-rtp,media=audio,encoding-name=OPUS,payload=111")


class GstEngine:
    """Owns the pipeline all tracks and peer connections live in."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.loop = loop or asyncio.get_event_loop()
        self.pipeline = Gst.Pipeline.new("p2pcall")
        bus = self.pipeline.get_bus()
        bus.add_signal_watch()
        bus.connect("message", self.on_bus_message)
        self._glib_loop = GLib.MainLoop()
        self._glib_thread = threading.Thread(target=self._glib_loop.run, daemon=True)
        self._glib_thread.start()
        self.pipeline.set_state(Gst.State.PLAYING)

    def on_bus_message(self, bus, msg):
        t = msg.type
        if t == Gst.MessageType.ERROR:
            err, dbg = msg.parse_error()
            logger.error(f"[GST][ERROR] {err} {dbg}")
        elif t == Gst.MessageType.EOS:
            logger.info("[GST] End-of-Stream")
        elif t == Gst.MessageType.STATE_CHANGED and msg.src == self.pipeline:
            old, new, pending = msg.parse_state_changed()
            logger.debug(f"[GST] Pipeline state: {old.value_nick} -> {new.value_nick}")

    def add(self, *elements) -> None:
        for e in elements:
            self.pipeline.add(e)
        for e in elements:
            e.sync_state_with_parent()

    def remove(self, *elements) -> None:
        for e in elements:
            e.set_state(Gst.State.NULL)
            self.pipeline.remove(e)

    def call_soon(self, fn: Callable, *args) -> None:
        self.loop.call_soon_threadsafe(fn, *args)

    def shutdown(self) -> None:
        self.pipeline.set_state(Gst.State.NULL)
        self._glib_loop.quit()


class GstTrack:
    """A raw local source bin. Disabling it drops buffers at its valve.

    The bin sits in the pipeline unstarted until a sender links it, so a live
    source never pushes into an unlinked pad.
    """

    def __init__(self, engine: GstEngine, kind: str, description: str):
        self.engine = engine
        self.kind = kind
        self.bin = Gst.parse_bin_from_description(description + " ! valve name=valve drop=false", True)
        self._valve = self.bin.get_by_name("valve")
        self._stopped = False
        engine.pipeline.add(self.bin)

    @property
    def src_pad(self):
        return self.bin.get_static_pad("src")

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def enabled(self) -> bool:
        return not self._valve.get_property("drop")

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._valve.set_property("drop", not value)

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        peer = self.src_pad.get_peer()
        self.engine.remove(self.bin)
        if peer is not None:
            peer.get_parent_element().release_request_pad(peer)


class GstRemoteTrack:
    def __init__(self, kind: str, pad):
        self.kind = kind
        self.pad = pad
        self.enabled = True

    def stop(self) -> None:
        pass


class GstSender:
    """Encoder branch feeding one webrtcbin sink pad; swaps sources via an input-selector.

    Every track handed to the sender stays linked to its own selector sink
    pad until the track is stopped; switching only moves ``active-pad``.
    """

    def __init__(self, engine: GstEngine, webrtc, track: GstTrack):
        self.engine = engine
        self.track = None
        self._pads: Dict[GstTrack, Any] = {}
        description = VIDEO_ENCODER if track.kind == "video" else AUDIO_ENCODER
        self.selector = Gst.ElementFactory.make("input-selector")
        self.selector.set_property("sync-streams", False)
        self.bin = Gst.parse_bin_from_description("valve name=gate drop=false ! " + description, True)
        self._gate = self.bin.get_by_name("gate")
        engine.add(self.selector, self.bin)
        self.selector.link(self.bin)
        self.bin.get_static_pad("src").link(webrtc.get_request_pad("sink_%u"))
        self._select(track)

    @property
    def elements(self):
        return [self.selector, self.bin]

    def _select(self, track: Optional[GstTrack]) -> None:
        self.track = track
        if track is None:
            self._gate.set_property("drop", True)
            return
        # Stopped tracks have already given their pad back.
        self._pads = {t: p for t, p in self._pads.items() if not t.stopped}
        sink = self._pads.get(track)
        if sink is None:
            sink = self.selector.get_request_pad("sink_%u")
            track.src_pad.link(sink)
            self._pads[track] = sink
            track.bin.sync_state_with_parent()
        self.selector.set_property("active-pad", sink)
        self._gate.set_property("drop", False)

    async def replace_track(self, track: Optional[GstTrack]) -> None:
        self._select(track)

    def get_parameters(self) -> Dict[str, Any]:
        encoder = self.bin.get_by_name("encoder")
        if encoder is None:
            return {}
        return {"encodings": [{"maxBitrate": encoder.get_property("bitrate")}]}

    async def set_parameters(self, params: Dict[str, Any]) -> None:
        encoder = self.bin.get_by_name("encoder")
        encodings = params.get("encodings") or []
        if encoder is not None and encodings and encodings[0].get("maxBitrate"):
            encoder.set_property("bitrate", int(encodings[0]["maxBitrate"]))


def _ice_urls(ice_servers: List[Dict[str, Any]]):
    """Translate W3C-style ICE server entries into webrtcbin stun/turn URIs."""
    stun, turns = None, []
    for server in ice_servers:
        urls = server.get("urls")
        for url in [urls] if isinstance(urls, str) else list(urls or []):
            scheme, _, rest = url.partition(":")
            rest = rest.split("?", 1)[0].lstrip("/")
            if scheme == "stun" and stun is None:
                stun = f"stun://{rest}"
            elif scheme in ("turn", "turns"):
                user = quote(str(server.get("username", "")), safe="")
                cred = quote(str(server.get("credential", "")), safe="")
                turns.append(f"{scheme}://{user}:{cred}@{rest}")
    return stun, turns


class GstPeerConnection:
    def __init__(self, engine: GstEngine, ice_servers: List[Dict[str, Any]],
                 on_ice_candidate: Callable, on_track: Callable):
        self.engine = engine
        self.on_ice_candidate = on_ice_candidate
        self.on_track = on_track
        self._senders: List[GstSender] = []
        self._ice_restart = False
        self._remote_elements = []

        self.webrtc = Gst.ElementFactory.make("webrtcbin")
        self.webrtc.set_property("bundle-policy", GstWebRTC.WebRTCBundlePolicy.MAX_BUNDLE)
        stun, turns = _ice_urls(ice_servers)
        if stun:
            self.webrtc.set_property("stun-server", stun)
        for turn in turns:
            self.webrtc.emit("add-turn-server", turn)

        # webrtcbin signals
        self.webrtc.connect("on-ice-candidate", self._on_ice_candidate)
        self.webrtc.connect("pad-added", self._on_incoming_stream)
        engine.add(self.webrtc)

    @property
    def signaling_state(self) -> str:
        return self.webrtc.get_property("signaling-state").value_nick

    # ---------- webrtcbin callbacks ----------
    def _on_ice_candidate(self, webrtc, mlineindex, candidate):
        ice = IceCandidate(candidate=candidate, sdp_mline_index=int(mlineindex))
        self.engine.call_soon(self.on_ice_candidate, ice)

    def _on_incoming_stream(self, webrtc, pad):
        if pad.get_direction() != Gst.PadDirection.SRC:
            return
        caps = pad.get_current_caps()
        s = caps.to_string() if caps else ""
        logger.info(f"[WEBRTC] Incoming stream caps: {s}")

        if "video" in s:
            chain = "queue ! rtpvp8depay ! vp8dec ! videoconvert ! autovideosink"
            kind = "video"
        elif "audio" in s:
            chain = "queue ! rtpopusdepay ! opusdec ! audioconvert ! audioresample ! autoaudiosink"
            kind = "audio"
        else:
            return
        decoder = Gst.parse_bin_from_description(chain, True)
        self.engine.add(decoder)
        pad.link(decoder.get_static_pad("sink"))
        self._remote_elements.append(decoder)
        self.engine.call_soon(self.on_track, GstRemoteTrack(kind, pad), pad)

    # ---------- promise plumbing ----------
    def _emit_async(self, signal: str, *args) -> "asyncio.Future":
        future = self.engine.loop.create_future()

        def on_done(promise, _, __):
            promise.wait()
            reply = promise.get_reply()
            self.engine.call_soon(_resolve, reply)

        def _resolve(reply):
            if future.done():
                return
            error = reply.get_value("error") if reply is not None and reply.has_field("error") else None
            if error is not None:
                future.set_exception(NegotiationError(f"{signal}: {error}"))
            else:
                future.set_result(reply)

        promise = Gst.Promise.new_with_change_func(on_done, None, None)
        self.webrtc.emit(signal, *args, promise)
        return future

    @staticmethod
    def _to_gst(description: SessionDescription):
        ret, sdpmsg = GstSdp.SDPMessage.new()
        GstSdp.sdp_message_parse_buffer(description.sdp.encode(), sdpmsg)
        sdp_type = GstWebRTC.WebRTCSDPType.ANSWER if description.type == "answer" else GstWebRTC.WebRTCSDPType.OFFER
        return GstWebRTC.WebRTCSessionDescription.new(sdp_type, sdpmsg)

    # ---------- capability ----------
    def add_track(self, track: GstTrack) -> GstSender:
        sender = GstSender(self.engine, self.webrtc, track)
        self._senders.append(sender)
        return sender

    def get_senders(self) -> List[GstSender]:
        return list(self._senders)

    def restart_ice(self) -> None:
        self._ice_restart = True

    async def create_offer(self, ice_restart: bool = False) -> SessionDescription:
        options = Gst.Structure.new_empty("offer-options")
        if ice_restart or self._ice_restart:
            options.set_value("ice-restart", True)
            self._ice_restart = False
        reply = await self._emit_async("create-offer", options)
        offer = reply.get_value("offer")
        return SessionDescription(type="offer", sdp=offer.sdp.as_text())

    async def create_answer(self) -> SessionDescription:
        reply = await self._emit_async("create-answer", None)
        answer = reply.get_value("answer")
        return SessionDescription(type="answer", sdp=answer.sdp.as_text())

    async def set_local_description(self, description: SessionDescription) -> None:
        await self._emit_async("set-local-description", self._to_gst(description))

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._emit_async("set-remote-description", self._to_gst(description))

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        self.webrtc.emit("add-ice-candidate", int(candidate.sdp_mline_index or 0), candidate.candidate)

    async def close(self) -> None:
        senders = [e for s in self._senders for e in s.elements]
        self.engine.remove(self.webrtc, *senders, *self._remote_elements)
        self._senders = []
        self._remote_elements = []


class GstMedia:
    def __init__(self, engine: GstEngine, use_camera: bool = True, use_mic: bool = True):
        self.engine = engine
        self.use_camera = use_camera
        self.use_mic = use_mic

    def _track(self, kind: str, description: str) -> GstTrack:
        try:
            return GstTrack(self.engine, kind, description)
        except GLib.Error as exc:
            raise MediaAcquisitionError(f"cannot open {kind} source: {exc}") from exc

    async def acquire_local_media(self, constraints: Dict[str, Any]) -> LocalMedia:
        audio = self._track("audio", AUDIO_SOURCE if self.use_mic else TEST_AUDIO_SOURCE)
        video = None
        if constraints.get("video", True):
            video = self._track("video", VIDEO_SOURCE if self.use_camera else TEST_VIDEO_SOURCE)
        return LocalMedia(audio_track=audio, video_track=video)

    async def acquire_display_media(self) -> GstTrack:
        return self._track("video", SCREEN_SOURCE)

    def peer_factory(self, ice_servers, on_ice_candidate, on_track) -> GstPeerConnection:
        return GstPeerConnection(self.engine, ice_servers, on_ice_candidate, on_track)
