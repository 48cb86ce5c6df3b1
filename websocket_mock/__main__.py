"""
Run a standalone mock WebSocket server until interrupted
"""

import argparse
import asyncio
import logging

from .configuration import ConfigurationManager
from .constants import LOG_FORMAT, LOG_LEVEL_DEV, LOG_LEVEL_PROD
from .exceptions import WebSocketMockError
from .mock_server import MockWebSocketServer

logger = logging.getLogger("websocket_mock")


def parse_reply(value: str):
    """Parse a MESSAGE=REPLY pair for --reply"""
    message, sep, reply = value.partition("=")
    if not sep:
        raise argparse.ArgumentTypeError(f"Expected MESSAGE=REPLY, got {value!r}")
    return message, reply


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="WebSocket Mock Server")
    parser.add_argument("--host", help="Server host")
    parser.add_argument("--reply", action="append", type=parse_reply, default=[],
                        metavar="MESSAGE=REPLY", help="Auto-reply to a text message (repeatable)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def build_server(args) -> MockWebSocketServer:
    """Create an unstarted server from the environment and command line"""
    config = ConfigurationManager.load_from_environment()
    if args.host:
        config.host = args.host
    if args.debug:
        config.enable_detailed_logging = True

    server = MockWebSocketServer(config)
    for message, reply in args.reply:
        server.reply_with(message, reply)
    return server


async def wait_forever():
    await asyncio.Future()


async def main():
    """Main entry point for the mock server"""
    args = parse_args()

    logging.basicConfig(level=LOG_LEVEL_DEV if args.debug else LOG_LEVEL_PROD, format=LOG_FORMAT)

    server = build_server(args)
    try:
        await server.start()
    except WebSocketMockError as e:
        logger.error(f"Mock server failed to start: {e}")
        raise SystemExit(1)

    print(server.url, flush=True)
    try:
        await wait_forever()
    finally:
        await server.stop()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Mock server stopped by user")
