"""Source switching in the GStreamer sender. Skipped without GStreamer."""

import asyncio

import pytest

try:
    from p2pcall.client.gst_media import TEST_VIDEO_SOURCE, GstEngine, GstSender, GstTrack
    from gi.repository import Gst
except (ImportError, ValueError) as exc:
    pytest.skip(f"GStreamer is not available: {exc}", allow_module_level=True)

REQUIRED = ("webrtcbin", "input-selector", "valve", "videotestsrc", "vp8enc", "rtpvp8pay")
missing = [name for name in REQUIRED if Gst.ElementFactory.find(name) is None]
if missing:
    pytest.skip(f"missing GStreamer elements: {', '.join(missing)}", allow_module_level=True)


@pytest.fixture
async def engine():
    e = GstEngine(asyncio.get_running_loop())
    yield e
    e.shutdown()


def sender_for(engine: GstEngine, track: GstTrack) -> GstSender:
    webrtc = Gst.ElementFactory.make("webrtcbin")
    engine.add(webrtc)
    return GstSender(engine, webrtc, track)


@pytest.mark.asyncio
async def test_track_is_not_started_before_it_is_linked(engine) -> None:
    camera = GstTrack(engine, "video", TEST_VIDEO_SOURCE)

    assert camera.src_pad.get_peer() is None
    assert camera.bin.get_state(0)[1] == Gst.State.NULL

    sender_for(engine, camera)
    assert camera.src_pad.get_peer() is not None


@pytest.mark.asyncio
async def test_screen_share_keeps_camera_linked(engine) -> None:
    camera = GstTrack(engine, "video", TEST_VIDEO_SOURCE)
    sender = sender_for(engine, camera)
    camera_pad = camera.src_pad.get_peer()

    screen = GstTrack(engine, "video", TEST_VIDEO_SOURCE)
    await sender.replace_track(screen)

    assert sender.track is screen
    assert camera.src_pad.get_peer() == camera_pad
    assert sender.selector.get_property("active-pad") == screen.src_pad.get_peer()
    assert sender.selector.get_property("n-pads") == 2

    await sender.replace_track(camera)
    screen.stop()

    assert sender.track is camera
    assert sender.selector.get_property("active-pad") == camera_pad
    assert sender.selector.get_property("n-pads") == 1


@pytest.mark.asyncio
async def test_replacing_with_nothing_closes_the_gate(engine) -> None:
    camera = GstTrack(engine, "video", TEST_VIDEO_SOURCE)
    sender = sender_for(engine, camera)
    gate = sender.bin.get_by_name("gate")

    await sender.replace_track(None)
    assert gate.get_property("drop") is True

    await sender.replace_track(camera)
    assert gate.get_property("drop") is False
    assert sender.selector.get_property("n-pads") == 1
