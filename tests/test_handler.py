"""
Test suite for the per-connection handler

This test suite drives ConnectionHandler with an in-memory WebSocket double:
- Lifecycle: CONNECTING -> OPEN -> CLOSING -> CLOSED, registry bookkeeping
- Inbound frames recorded in arrival order
- Auto-replies from the rule store
- Explicit sends bypassing the rules
- Bounded history queries degrading to empty results
- Abrupt teardown
"""

import asyncio
import base64

import pytest
from unittest.mock import AsyncMock, Mock

from websocket_mock.handler import ConnectionHandler, ConnectionState, generate_client_id
from websocket_mock.protocol import Frame, Opcode
from websocket_mock.registry import ConnectionRegistry
from websocket_mock.rules import ReplyRuleStore


class FakeWebSocket:
    """In-memory stand-in for a websockets server connection"""

    def __init__(self):
        self.remote_address = ("127.0.0.1", 12345)
        self.send = AsyncMock()
        self.ping = AsyncMock()
        self.pong = AsyncMock()
        self.transport = Mock()
        self._incoming = asyncio.Queue()
        self.transport.abort.side_effect = self.disconnect

    def feed(self, data):
        self._incoming.put_nowait(data)

    def disconnect(self):
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        data = await self._incoming.get()
        if data is None:
            raise StopAsyncIteration
        return data


async def settle():
    await asyncio.sleep(0.01)


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def rules():
    return ReplyRuleStore()


@pytest.fixture
def websocket():
    return FakeWebSocket()


async def start_handler(websocket, registry, rules, **kwargs):
    handler = ConnectionHandler(websocket, registry, rules, **kwargs)
    task = asyncio.create_task(handler.run())
    await settle()
    return handler, task


class TestClientId:
    """Test cases for client id generation"""

    def test_client_id_is_base64_of_16_bytes(self):
        client_id = generate_client_id()
        assert len(base64.b64decode(client_id)) == 16

    def test_client_ids_are_unique(self):
        assert len({generate_client_id() for _ in range(1000)}) == 1000


class TestHandlerLifecycle:
    """Test cases for the handler state machine"""

    @pytest.mark.asyncio
    async def test_open_registers_client(self, websocket, registry, rules):
        handler = ConnectionHandler(websocket, registry, rules)
        assert handler.state is ConnectionState.CONNECTING
        assert not handler.is_alive

        task = asyncio.create_task(handler.run())
        await settle()

        assert handler.state is ConnectionState.OPEN
        assert handler.is_alive
        assert registry.lookup(handler.client_id) is handler

        websocket.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_socket_close_unregisters(self, websocket, registry, rules):
        handler, task = await start_handler(websocket, registry, rules)
        client_id = handler.client_id

        websocket.disconnect()
        await asyncio.wait_for(task, 1.0)

        assert handler.state is ConnectionState.CLOSED
        assert client_id not in registry
        assert await handler.wait_closed(0.1)

    @pytest.mark.asyncio
    async def test_colliding_id_is_regenerated(self, websocket, registry, rules):
        registry.register("taken", Mock())
        ids = iter(["taken", "fresh"])

        handler, task = await start_handler(websocket, registry, rules, id_factory=lambda: next(ids))

        assert handler.client_id == "fresh"
        websocket.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_abort_tears_down_without_handshake(self, websocket, registry, rules):
        handler, task = await start_handler(websocket, registry, rules)

        handler.abort()
        await asyncio.wait_for(task, 1.0)

        websocket.transport.abort.assert_called_once()
        assert handler.state is ConnectionState.CLOSED
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_queries_after_close_are_empty(self, websocket, registry, rules):
        handler, task = await start_handler(websocket, registry, rules)
        websocket.feed("hello")
        await settle()

        websocket.disconnect()
        await task

        assert await handler.query_received() == []
        assert await handler.query_sent() == []


class TestHandlerMessaging:
    """Test cases for inbound frames, auto-replies and explicit sends"""

    @pytest.mark.asyncio
    async def test_inbound_frames_recorded_in_order(self, websocket, registry, rules):
        handler, task = await start_handler(websocket, registry, rules)

        websocket.feed("first")
        websocket.feed('{"second": 2}')
        websocket.feed(b"\x03")
        await settle()

        assert await handler.query_received() == [
            Frame.text("first"),
            Frame.text({"second": 2}),
            Frame.binary(b"\x03"),
        ]
        websocket.send.assert_not_called()

        websocket.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_matching_rule_sends_reply(self, websocket, registry, rules):
        rules.store(("text", "ping"), ("text", "pong"))
        handler, task = await start_handler(websocket, registry, rules)

        websocket.feed("ping")
        websocket.feed("anything-else")
        await settle()

        websocket.send.assert_awaited_once_with("pong")
        assert await handler.query_sent() == [Frame.text("pong")]
        assert len(await handler.query_received()) == 2

        websocket.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_rule_added_later_is_not_retroactive(self, websocket, registry, rules):
        handler, task = await start_handler(websocket, registry, rules)

        websocket.feed("ping")
        await settle()
        rules.store("ping", "pong")
        websocket.feed("ping")
        await settle()

        websocket.send.assert_awaited_once_with("pong")

        websocket.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_explicit_send_bypasses_rules(self, websocket, registry, rules):
        rules.store("hello", "auto reply")
        handler, task = await start_handler(websocket, registry, rules)

        handler.post_send(Frame.text("hello"))
        await settle()

        websocket.send.assert_awaited_once_with("hello")
        assert await handler.query_sent() == [Frame.text("hello")]
        assert await handler.query_received() == []

        websocket.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_explicit_control_frames(self, websocket, registry, rules):
        handler, task = await start_handler(websocket, registry, rules)

        handler.post_send(Frame(Opcode.PING, "ping-data"))
        handler.post_send(Frame(Opcode.PONG, b"pong-data"))
        handler.post_send(Frame.binary(b"\x01\x02\x03"))
        await settle()

        websocket.ping.assert_awaited_once_with(b"ping-data")
        websocket.pong.assert_awaited_once_with(b"pong-data")
        websocket.send.assert_awaited_once_with(b"\x01\x02\x03")

        websocket.disconnect()
        await task

    @pytest.mark.asyncio
    async def test_failing_rule_keeps_connection_open(self, websocket, registry, rules):
        def broken(opcode, payload):
            raise RuntimeError("boom")

        rules.store(lambda opcode, payload: True, broken)
        handler, task = await start_handler(websocket, registry, rules)

        websocket.feed("trigger")
        await settle()

        assert handler.is_alive
        websocket.send.assert_not_called()
        assert await handler.query_received() == [Frame.text("trigger")]

        websocket.disconnect()
        await task


class TestHandlerQueries:
    """Test cases for bounded history queries"""

    @pytest.mark.asyncio
    async def test_query_times_out_to_empty(self, websocket, registry, rules):
        blocked = asyncio.Event()

        async def slow_send(data):
            await blocked.wait()

        websocket.send = AsyncMock(side_effect=slow_send)
        handler, task = await start_handler(websocket, registry, rules)

        handler.post_send(Frame.text("stuck"))
        await settle()

        assert await handler.query_received(timeout=0.05) == []

        blocked.set()
        await settle()
        assert await handler.query_sent(timeout=0.5) == [Frame.text("stuck")]

        websocket.disconnect()
        await task
