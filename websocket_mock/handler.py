"""
Connection handler: one worker per WebSocket client

Each connection runs a reader task that feeds a mailbox and a single owner
loop that drains it. The owner loop is the only code touching the received
and sent histories; the server reads them through bounded queries posted to
the same mailbox.

States: CONNECTING -> OPEN -> CLOSING -> CLOSED
"""

import asyncio
import base64
import logging
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from websockets.exceptions import ConnectionClosed

from .constants import CLIENT_ID_BYTES, QUERY_TIMEOUT
from .exceptions import QueryTimeoutError, WebSocketMockError
from .protocol import Frame, Opcode
from .registry import ConnectionRegistry
from .rules import ReplyRuleStore

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Connection handler lifecycle"""
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


def generate_client_id() -> str:
    """Random client id: CLIENT_ID_BYTES random bytes, base64 encoded"""
    return base64.b64encode(secrets.token_bytes(CLIENT_ID_BYTES)).decode("ascii")


# Mailbox commands

@dataclass
class _Inbound:
    frame: Frame


@dataclass
class _Send:
    frame: Frame


@dataclass
class _Query:
    history: str  # "received" or "sent"
    future: asyncio.Future = field(repr=False)


class _Shutdown:
    pass


_SHUTDOWN = _Shutdown()


class ConnectionHandler:
    """Owns one client connection, its histories and its auto-replies"""

    def __init__(self, websocket, registry: ConnectionRegistry, rules: ReplyRuleStore,
                 id_factory=generate_client_id):
        self.websocket = websocket
        self.registry = registry
        self.rules = rules
        self._id_factory = id_factory

        self.client_id: Optional[str] = None
        self.state = ConnectionState.CONNECTING

        self._received: List[Frame] = []
        self._sent: List[Frame] = []
        self._mailbox: asyncio.Queue = asyncio.Queue()
        self._closed = asyncio.Event()

    @property
    def is_alive(self) -> bool:
        return self.state is ConnectionState.OPEN

    @property
    def remote_address(self) -> str:
        address = getattr(self.websocket, "remote_address", None)
        if not address:
            return "unknown"
        return f"{address[0]}:{address[1]}"

    async def run(self) -> None:
        """Serve the connection until it closes or the instance tears it down"""
        self._open()
        reader = asyncio.create_task(self._read_loop())
        try:
            await self._process_mailbox()
        finally:
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
            self._close()

    def _open(self) -> None:
        client_id = self._id_factory()
        while not self.registry.register(client_id, self):
            client_id = self._id_factory()
        self.client_id = client_id
        self._received = []
        self._sent = []
        self.state = ConnectionState.OPEN
        logger.info(f"Client {client_id} connected from {self.remote_address}")

    def _close(self) -> None:
        self.state = ConnectionState.CLOSED
        if self.client_id is not None:
            self.registry.unregister(self.client_id)
        self._drain_mailbox()
        self._received = []
        self._sent = []
        self._closed.set()
        logger.info(f"Client {self.client_id} disconnected")

    async def _read_loop(self) -> None:
        try:
            async for data in self.websocket:
                self._mailbox.put_nowait(_Inbound(Frame.from_wire(data)))
        except ConnectionClosed as e:
            logger.debug(f"Client {self.client_id} connection closed: {e}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error reading from client {self.client_id}: {e}")
        finally:
            self._mailbox.put_nowait(_SHUTDOWN)

    async def _process_mailbox(self) -> None:
        while True:
            command = await self._mailbox.get()
            if command is _SHUTDOWN:
                self.state = ConnectionState.CLOSING
                return
            if self.state is not ConnectionState.OPEN:
                self._discard(command)
                continue
            try:
                await self._dispatch(command)
            except ConnectionClosed as e:
                logger.debug(f"Client {self.client_id} closed while sending: {e}")
                self.state = ConnectionState.CLOSING
                return

    async def _dispatch(self, command: Any) -> None:
        if isinstance(command, _Inbound):
            await self._handle_inbound(command.frame)
        elif isinstance(command, _Send):
            await self._transmit(command.frame)
        elif isinstance(command, _Query):
            history = self._received if command.history == "received" else self._sent
            if not command.future.done():
                command.future.set_result(list(history))

    async def _handle_inbound(self, frame: Frame) -> None:
        self._received.append(frame)
        logger.debug(f"Client {self.client_id} sent {frame.opcode.value} frame: {frame.payload!r}")

        try:
            reply = self.rules.match(frame)
        except WebSocketMockError as e:
            logger.error(f"Reply rule failed for client {self.client_id}: {e}")
            return
        except Exception as e:
            logger.error(f"Reply rule raised for client {self.client_id}: {e!r}")
            return

        if reply is not None:
            await self._transmit(reply)

    async def _transmit(self, frame: Frame) -> None:
        data = frame.to_wire()
        if frame.opcode is Opcode.PING:
            await self.websocket.ping(data)
        elif frame.opcode is Opcode.PONG:
            await self.websocket.pong(data)
        else:
            await self.websocket.send(data)
        self._sent.append(frame)
        logger.debug(f"Sent {frame.opcode.value} frame to client {self.client_id}")

    def _discard(self, command: Any) -> None:
        if isinstance(command, _Query) and not command.future.done():
            command.future.set_result([])

    def _drain_mailbox(self) -> None:
        while True:
            try:
                self._discard(self._mailbox.get_nowait())
            except asyncio.QueueEmpty:
                return

    # Interface used by the server

    def post_send(self, frame: Frame) -> None:
        """Queue an explicit send; no rule matching is applied"""
        self._mailbox.put_nowait(_Send(frame))

    async def query_received(self, timeout: float = QUERY_TIMEOUT) -> List[Frame]:
        return await self.query("received", timeout)

    async def query_sent(self, timeout: float = QUERY_TIMEOUT) -> List[Frame]:
        return await self.query("sent", timeout)

    async def query(self, history: str, timeout: float = QUERY_TIMEOUT) -> List[Frame]:
        """History copy from the owner loop; empty on timeout or close"""
        try:
            return await self._query(history, timeout)
        except QueryTimeoutError as e:
            logger.warning(str(e))
            return []

    async def _query(self, history: str, timeout: float) -> List[Frame]:
        if self.state is not ConnectionState.OPEN:
            return []
        future = asyncio.get_running_loop().create_future()
        self._mailbox.put_nowait(_Query(history, future))
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise QueryTimeoutError(
                f"Client {self.client_id} did not answer a {history} query within {timeout}s"
            )

    def abort(self) -> None:
        """Drop the connection without a close handshake"""
        if self.state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return
        self.state = ConnectionState.CLOSING
        transport = getattr(self.websocket, "transport", None)
        if transport is not None:
            transport.abort()
        self._mailbox.put_nowait(_SHUTDOWN)

    async def wait_closed(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._closed.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True
