#!/usr/bin/env python3
"""Check that a signaling server is reachable and acknowledges joins"""
import argparse
import asyncio
import logging
import sys

import websockets
from websockets.exceptions import WebSocketException

from p2pcall import protocol
from p2pcall.utils.logging import configure_logging

logger = logging.getLogger(__name__)


async def check_connection(server_url: str, room: str = "probe", timeout: float = 5.0) -> bool:
    logger.info(f"Testing connection to {server_url}...")

    try:
        async with websockets.connect(server_url, open_timeout=timeout) as ws:
            logger.info("Connected to server")

            await ws.send(protocol.encode(protocol.join_frame(room)))
            logger.info(f"Sent join for room '{room}'")

            response = protocol.decode(await asyncio.wait_for(ws.recv(), timeout=timeout))
            logger.info(f"Received: {response}")

            if response.get("event") == protocol.EVENT_JOINED and response.get("room") == room:
                logger.info("Server acknowledged the join")
                return True
            logger.error(f"Unexpected response: {response}")
            return False

    except asyncio.TimeoutError:
        logger.error("Timed out. Server might not be running.")
        return False
    except (OSError, WebSocketException) as e:
        logger.error(f"Connection failed: {e}")
        return False
    except protocol.ProtocolError as e:
        logger.error(f"Server sent an unreadable frame: {e}")
        return False


def main(argv=None):
    ap = argparse.ArgumentParser(description="p2pcall signaling server check")
    ap.add_argument("--server", default="ws://localhost:3000")
    ap.add_argument("--room", default="probe")
    ap.add_argument("--timeout", type=float, default=5.0)
    args = ap.parse_args(argv)
    configure_logging()
    success = asyncio.run(check_connection(args.server, args.room, args.timeout))
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
