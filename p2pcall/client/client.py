#!/usr/bin/env python3
"""Console call client: GStreamer media, room-scoped signaling."""
import argparse
import asyncio
import logging
import sys

from p2pcall.client.capabilities import DISCONNECTED, LoggingStatusSink
from p2pcall.client.config import DEFAULT_SIGNALING_URL, CallConfig, load_turn, room_from_url
from p2pcall.client.controller import NegotiationController
from p2pcall.client.errors import CallError
from p2pcall.client.signaling import SignalingChannel
from p2pcall.utils.logging import configure_logging

logger = logging.getLogger(__name__)

COMMANDS = ("start", "hangup", "mute", "video", "share", "unshare", "restart", "quit")


class P2PClient:
    def __init__(self, config: CallConfig, use_camera=True, use_mic=True, ui=None):
        self.config = config
        self.use_camera = use_camera
        self.use_mic = use_mic
        self.ui = ui or LoggingStatusSink()

        self.channel = SignalingChannel(config.signaling_url, config.room)
        self.engine = None
        self.controller = None

    def build_controller(self):
        # Imported here so the rest of the package works without PyGObject.
        from p2pcall.client.gst_media import GstEngine, GstMedia

        self.engine = GstEngine(asyncio.get_running_loop())
        media = GstMedia(self.engine, use_camera=self.use_camera, use_mic=self.use_mic)
        self.controller = NegotiationController(
            room=self.config.room,
            send=self.channel.send,
            peer_factory=media.peer_factory,
            media=media,
            ui=self.ui,
            ice_servers=self.config.ice_servers,
            media_constraints=self.config.media_constraints,
        )
        return self.controller

    async def run(self, call=False):
        await self.channel.connect()
        self.ui.set_status(DISCONNECTED, "Ready")
        try:
            async with self.build_controller() as controller:
                listener = asyncio.ensure_future(self.channel.listen(controller.dispatch))
                try:
                    if call:
                        await self.command("start")
                    await self.console_loop(listener)
                finally:
                    listener.cancel()
        finally:
            await self.channel.close()
            if self.engine is not None:
                self.engine.shutdown()

    async def command(self, name):
        """Run one user intent; returns False when the client should exit."""
        c = self.controller
        try:
            if name == "start":
                await c.start_call()
            elif name == "hangup":
                await c.hangup()
            elif name == "mute":
                enabled = await c.toggle_mute()
                logger.info(f"[UI] {'Mute' if enabled else 'Unmute'}")
            elif name == "video":
                enabled = await c.toggle_video()
                logger.info(f"[UI] {'Video Off' if enabled else 'Video On'}")
            elif name == "share":
                await c.share_screen()
            elif name == "unshare":
                await c.stop_screen_share()
            elif name == "restart":
                await c.restart_ice()
            elif name == "quit":
                return False
            else:
                logger.warning(f"[UI] Unknown command {name!r}; expected one of {', '.join(COMMANDS)}")
        except CallError as e:
            logger.error(f"[UI] {name} failed: {e}")
        return True

    async def console_loop(self, listener):
        loop = asyncio.get_running_loop()
        while not listener.done():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                await listener
                return
            if not await self.command(line.strip().lower()):
                return


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="p2pcall console client")
    ap.add_argument("--server", default=DEFAULT_SIGNALING_URL, help="WS signaling URL")
    ap.add_argument("--room", help="room id")
    ap.add_argument("--url", help="page URL whose #fragment names the room")
    ap.add_argument("--turn", help='TURN json: {"urls": ..., "username": ..., "credential": ...}')
    ap.add_argument("--no-camera", action="store_true", help="use a test pattern instead of the camera")
    ap.add_argument("--no-mic", action="store_true", help="use a test tone instead of the microphone")
    ap.add_argument("--audio-only", action="store_true", help="do not send video")
    ap.add_argument("--call", action="store_true", help="start a call right after joining")
    ap.add_argument("--log-level", default="INFO")
    return ap.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    configure_logging(args.log_level)
    config = CallConfig(
        signaling_url=args.server,
        room=args.room or room_from_url(args.url),
        turn=load_turn(args.turn),
        video=not args.audio_only,
    )
    client = P2PClient(config, use_camera=not args.no_camera, use_mic=not args.no_mic)
    try:
        asyncio.run(client.run(call=args.call))
    except KeyboardInterrupt:
        pass
    except asyncio.TimeoutError:
        logger.error(f"[SIG] No join ack from {config.signaling_url} for room '{config.room}'")
        sys.exit(1)
    except OSError as e:
        logger.error(f"[SIG] Cannot reach {config.signaling_url}: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
