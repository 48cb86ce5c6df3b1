"""
Mock WebSocket Server for tests

This module provides the facade a test suite drives: start an isolated
WebSocket endpoint, look at who is connected, read what clients sent, push
frames to them and register automatic replies.

Features:
- Isolated instances: each server owns its port, client registry and rules
- Bounded port retry when a candidate port is already taken
- Client introspection: list, count, liveness
- Explicit sends that bypass the reply rules
- Exact and predicate reply rules with static or computed responses
- History queries bounded by a timeout, degrading to empty results
- Abrupt teardown of every connection on stop()

Example:

    async with MockWebSocketServer() as server:
        server.reply_with("ping", "pong")
        async with MockClient(server.url) as client:
            await client.send_message("ping")
            await client.wait_for_messages(1)
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Dict, List, Optional, Set

from .allocator import bind_listener, get_port_allocator
from .configuration import MockServerConfig
from .constants import URL_TEMPLATE
from .exceptions import ClientNotFoundError, ServerNotRunningError, WebSocketMockError
from .handler import ConnectionHandler
from .protocol import Frame, prepare_outbound
from .registry import ConnectionRegistry
from .rules import ReplyRuleStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientInfo:
    """Client information returned by list_clients()"""
    client_id: str
    alive: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "client_id": self.client_id,
            "alive": self.alive
        }


class MockWebSocketServer:
    """One isolated mock WebSocket server instance"""

    def __init__(self, config: Optional[MockServerConfig] = None):
        self.config = config or MockServerConfig.default()

        if self.config.enable_detailed_logging:
            logging.getLogger("websocket_mock").setLevel(logging.DEBUG)

        self.host = self.config.host
        self.path = self.config.path
        self.port: Optional[int] = None
        self.url: Optional[str] = None

        self.registry = ConnectionRegistry()
        self.rules = ReplyRuleStore()

        self._server = None
        self._handlers: Set[ConnectionHandler] = set()
        self._started_at: Optional[float] = None
        self._stopped = False

    @property
    def is_running(self) -> bool:
        return self._server is not None

    async def start(self) -> "MockWebSocketServer":
        """Bind the listener and return once it accepts connections"""
        if self._server is not None:
            raise WebSocketMockError("Server already started")
        if self._stopped:
            raise WebSocketMockError("A stopped server cannot be restarted")

        allocator = get_port_allocator(self.config.port_range_start, self.config.port_range_end)
        self._server, self.port = await bind_listener(
            self._handle_client_connection,
            self.host,
            allocator,
            max_attempts=self.config.max_bind_attempts,
            process_request=self._process_request,
            ping_interval=self.config.ping_interval,
        )
        self.url = URL_TEMPLATE.format(host=self.host, port=self.port, path=self.path)
        self._started_at = time.time()
        logger.info(f"Mock WebSocket server started at {self.url}")
        return self

    async def stop(self) -> None:
        """Drop every connection, close the listener and wait for teardown"""
        if self._server is None:
            logger.debug("stop() called on a server that is not running")
            return

        server, self._server = self._server, None
        self._stopped = True
        handlers = list(self._handlers)

        for handler in handlers:
            handler.abort()

        server.close()
        try:
            await asyncio.wait_for(server.wait_closed(), self.config.close_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Listener on port {self.port} did not close within {self.config.close_timeout}s")

        for handler in handlers:
            if not await handler.wait_closed(self.config.close_timeout):
                logger.warning(f"Client {handler.client_id} did not finish teardown")

        self.registry.clear()
        self._handlers.clear()
        logger.info(f"Mock WebSocket server on port {self.port} stopped")

    async def __aenter__(self) -> "MockWebSocketServer":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def _process_request(self, connection, request):
        """Reject upgrades on any path other than the configured one"""
        if request.path.split("?", 1)[0] != self.path:
            logger.debug(f"Rejecting upgrade on unknown path {request.path}")
            return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")
        return None

    async def _handle_client_connection(self, websocket) -> None:
        """Run one connection handler for the lifetime of the socket"""
        handler = ConnectionHandler(websocket, self.registry, self.rules)
        self._handlers.add(handler)
        try:
            await handler.run()
        except Exception as e:
            logger.error(f"Connection handler for {handler.client_id} failed: {e!r}")
        finally:
            self._handlers.discard(handler)

    def _require_running(self) -> None:
        if self._server is None:
            raise ServerNotRunningError("Mock server is not running; call start() first")

    def _lookup(self, client_id: str) -> ConnectionHandler:
        handler = self.registry.lookup(client_id)
        if handler is None:
            raise ClientNotFoundError(client_id)
        return handler

    # Introspection

    def is_connected(self) -> bool:
        return self.num_connections() > 0

    def num_connections(self) -> int:
        return len(self.registry.list())

    def list_clients(self) -> List[ClientInfo]:
        """Connected clients from a registry snapshot; alive reflects current liveness"""
        return [ClientInfo(entry.client_id, entry.alive) for entry in self.registry.list()]

    async def wait_for_clients(self, count: int = 1, timeout: float = 1.0,
                               interval: float = 0.01) -> bool:
        """Poll until exactly count clients are registered"""
        deadline = time.monotonic() + timeout
        while self.num_connections() != count:
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(interval)
        return True

    # Messaging

    def send_message(self, client_id: str, frame: Any) -> None:
        """Push a frame to one client, bypassing reply rules

        Raises InvalidPayloadError if the payload cannot be serialized and
        ClientNotFoundError if no client has that id.
        """
        self._require_running()
        outbound = prepare_outbound(frame)
        handler = self._lookup(client_id)
        handler.post_send(outbound)
        logger.debug(f"Queued {outbound.opcode.value} frame for client {client_id}")

    async def received_messages(self, client_id: Optional[str] = None) -> List[Frame]:
        """Frames received from one client, or from every connected client"""
        return await self._history("received", client_id)

    async def sent_messages(self, client_id: Optional[str] = None) -> List[Frame]:
        """Frames sent to one client, or to every connected client"""
        return await self._history("sent", client_id)

    async def _history(self, history: str, client_id: Optional[str]) -> List[Frame]:
        timeout = self.config.query_timeout
        if client_id is not None:
            handler = self._lookup(client_id)
            return await handler.query(history, timeout)

        handlers = [entry.handler for entry in self.registry.list()]
        results = await asyncio.gather(*(handler.query(history, timeout) for handler in handlers))
        return [frame for frames in results for frame in frames]

    # Reply rules

    def reply_with(self, matcher: Any, responder: Any) -> None:
        """Register an automatic reply for frames received from now on

        Predicates and transforms are called as fn(opcode, payload). Bare
        bytes match binary frames, other bare values match text frames.
        """
        self.rules.store(matcher, responder)

    def clear_replies(self) -> None:
        self.rules.clear()

    def get_status(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "running": self.is_running,
            "active_connections": self.num_connections(),
            "reply_rules": len(self.rules),
            "uptime": time.time() - self._started_at if self._started_at else 0.0
        }


async def start(config: Optional[MockServerConfig] = None) -> MockWebSocketServer:
    """Start a new mock server instance"""
    return await MockWebSocketServer(config).start()


async def stop(server: MockWebSocketServer) -> None:
    await server.stop()
