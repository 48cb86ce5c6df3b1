"""
Mock WebSocket client

A small client for driving a mock server from tests: connects with retry
and backoff, records every frame it receives (decoded with the same rules as
the server), and lets a test wait for a number of frames instead of sleeping.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, List, Optional

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from .constants import (
    RETRY_ATTEMPTS, RETRY_DELAY, CONNECT_TIMEOUT, MESSAGE_WAIT_TIMEOUT
)
from .protocol import Frame, Opcode, prepare_outbound

logger = logging.getLogger(__name__)


class ClientState(Enum):
    """Client connection state"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class MockClient:
    """WebSocket client that records the frames a mock server sends it"""

    def __init__(self, url: str, max_connect_attempts: int = RETRY_ATTEMPTS,
                 retry_delay: float = RETRY_DELAY, backoff_multiplier: float = 2.0,
                 connect_timeout: float = CONNECT_TIMEOUT):
        self.url = url
        self.max_connect_attempts = max_connect_attempts
        self.retry_delay = retry_delay
        self.backoff_multiplier = backoff_multiplier
        self.connect_timeout = connect_timeout

        self.state = ClientState.DISCONNECTED
        self.websocket = None
        self.connection_attempts = 0
        self.last_error = ""

        self._received: List[Frame] = []
        self._sent: List[Frame] = []
        self._received_changed = asyncio.Condition()
        self._receive_task: Optional[asyncio.Task] = None

    async def connect(self) -> "MockClient":
        """Connect with retry and exponential backoff"""
        self.state = ClientState.CONNECTING

        for attempt in range(self.max_connect_attempts):
            self.connection_attempts += 1

            if attempt > 0:
                delay = self.retry_delay * (self.backoff_multiplier ** (attempt - 1))
                logger.debug(f"Waiting {delay:.2f}s before retry...")
                await asyncio.sleep(delay)

            try:
                self.websocket = await asyncio.wait_for(
                    connect(self.url, ping_interval=None),
                    timeout=self.connect_timeout
                )
            except asyncio.TimeoutError:
                self.last_error = f"Connection timeout on attempt {attempt + 1}"
                logger.warning(self.last_error)
                continue
            except (OSError, InvalidHandshake) as e:
                self.last_error = f"Connection failed on attempt {attempt + 1}: {e}"
                logger.warning(self.last_error)
                continue

            self.state = ClientState.CONNECTED
            self._receive_task = asyncio.create_task(self._receive_loop())
            logger.info(f"Connected to {self.url}")
            return self

        self.state = ClientState.FAILED
        logger.error(f"Failed to connect after {self.max_connect_attempts} attempts")
        raise ConnectionError(
            f"Failed to connect to {self.url} after {self.max_connect_attempts} attempts. "
            f"Last error: {self.last_error}"
        )

    async def _receive_loop(self) -> None:
        try:
            async for data in self.websocket:
                frame = Frame.from_wire(data)
                async with self._received_changed:
                    self._received.append(frame)
                    self._received_changed.notify_all()
                logger.debug(f"Received {frame.opcode.value} frame: {frame.payload!r}")
        except ConnectionClosed as e:
            logger.debug(f"Connection to {self.url} closed: {e}")
        finally:
            self.state = ClientState.DISCONNECTED

    async def send_message(self, frame: Any) -> None:
        """Send a frame; bare payloads are text frames"""
        if not self.is_connected():
            raise ConnectionError(f"Not connected to {self.url}")

        outbound = prepare_outbound(frame)
        data = outbound.to_wire()
        if outbound.opcode is Opcode.PING:
            await self.websocket.ping(data)
        elif outbound.opcode is Opcode.PONG:
            await self.websocket.pong(data)
        else:
            await self.websocket.send(data)
        self._sent.append(outbound)

    def received_messages(self) -> List[Frame]:
        return list(self._received)

    def sent_messages(self) -> List[Frame]:
        return list(self._sent)

    async def wait_for_messages(self, count: int = 1,
                                timeout: float = MESSAGE_WAIT_TIMEOUT) -> List[Frame]:
        """Wait until at least count frames arrived; returns what arrived either way"""
        deadline = time.monotonic() + timeout
        async with self._received_changed:
            while len(self._received) < count:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    await asyncio.wait_for(self._received_changed.wait(), remaining)
                except asyncio.TimeoutError:
                    break
            return list(self._received)

    def is_connected(self) -> bool:
        return self.state == ClientState.CONNECTED and self.websocket is not None

    async def wait_closed(self, timeout: float = MESSAGE_WAIT_TIMEOUT) -> bool:
        """Wait for the server side to drop the connection"""
        if self._receive_task is None:
            return True
        try:
            await asyncio.wait_for(asyncio.shield(self._receive_task), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def disconnect(self) -> None:
        """Close the connection and stop the receive task"""
        if self.websocket is not None:
            try:
                await self.websocket.close()
            except Exception as e:
                logger.warning(f"Error during disconnect: {e}")
        if self._receive_task is not None:
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None
        self.websocket = None
        self.state = ClientState.DISCONNECTED

    async def __aenter__(self) -> "MockClient":
        return await self.connect()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()
