"""
Test suite for port allocation and listener binding

This test suite validates:
- Counter-based candidate ports inside the configured range
- Wrap-around at the end of the range
- Bounded retry on busy ports
- PortBindError once the attempt limit is reached
- Propagation of errors that are not about a busy port
"""

import errno
import socket

import pytest
from unittest.mock import AsyncMock, Mock, patch

from websocket_mock.allocator import (
    PortAllocator, bind_listener, get_port_allocator, is_retryable_bind_error
)
from websocket_mock.exceptions import PortBindError


async def _noop_handler(websocket):
    pass


class TestPortAllocator:
    """Test cases for PortAllocator"""

    def test_counter_increments_from_seed(self):
        allocator = PortAllocator(50000, 50010, seed_port=50003)
        assert [allocator.next_port() for _ in range(3)] == [50003, 50004, 50005]

    def test_counter_wraps_at_range_end(self):
        allocator = PortAllocator(50000, 50002, seed_port=50001)
        assert [allocator.next_port() for _ in range(4)] == [50001, 50002, 50000, 50001]

    def test_random_seed_inside_range(self):
        for _ in range(50):
            port = PortAllocator(51000, 51100).next_port()
            assert 51000 <= port <= 51100

    def test_invalid_range_rejected(self):
        with pytest.raises(ValueError):
            PortAllocator(60000, 50000)
        with pytest.raises(ValueError):
            PortAllocator(50000, 50010, seed_port=49999)

    def test_consecutive_ports_are_distinct(self):
        allocator = PortAllocator(50000, 63000)
        ports = [allocator.next_port() for _ in range(100)]
        assert len(set(ports)) == 100

    def test_process_wide_allocator_per_range(self):
        assert get_port_allocator(52000, 52100) is get_port_allocator(52000, 52100)
        assert get_port_allocator(52000, 52100) is not get_port_allocator(52000, 52200)


class TestBindListener:
    """Test cases for bind_listener retry behaviour"""

    def test_retryable_errors(self):
        assert is_retryable_bind_error(OSError(errno.EADDRINUSE, "in use"))
        assert is_retryable_bind_error(OSError(errno.EACCES, "denied"))
        assert not is_retryable_bind_error(OSError(errno.ENOENT, "missing"))

    @pytest.mark.asyncio
    async def test_retries_busy_ports_until_one_binds(self):
        allocator = PortAllocator(50000, 50010, seed_port=50000)
        server = Mock()
        serve = AsyncMock(side_effect=[
            OSError(errno.EADDRINUSE, "Address already in use"),
            OSError(errno.EADDRINUSE, "Address already in use"),
            server,
        ])

        with patch("websocket_mock.allocator.serve", serve):
            result, port = await bind_listener(_noop_handler, "localhost", allocator, max_attempts=5)

        assert result is server
        assert port == 50002
        assert serve.await_count == 3
        assert [c.args[2] for c in serve.await_args_list] == [50000, 50001, 50002]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        allocator = PortAllocator(50000, 50010, seed_port=50000)
        serve = AsyncMock(side_effect=OSError(errno.EADDRINUSE, "Address already in use"))

        with patch("websocket_mock.allocator.serve", serve):
            with pytest.raises(PortBindError) as exc_info:
                await bind_listener(_noop_handler, "localhost", allocator, max_attempts=3)

        assert exc_info.value.attempted_ports == [50000, 50001, 50002]
        assert serve.await_count == 3
        assert exc_info.value.last_error.errno == errno.EADDRINUSE

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        allocator = PortAllocator(50000, 50010, seed_port=50000)
        serve = AsyncMock(side_effect=OSError(errno.EADDRNOTAVAIL, "Cannot assign address"))

        with patch("websocket_mock.allocator.serve", serve):
            with pytest.raises(OSError) as exc_info:
                await bind_listener(_noop_handler, "localhost", allocator, max_attempts=3)

        assert not isinstance(exc_info.value, PortBindError)
        assert serve.await_count == 1

    @pytest.mark.asyncio
    async def test_real_busy_port_is_skipped(self):
        """A port held by another socket is skipped for the next candidate"""
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        busy_port = blocker.getsockname()[1]
        if busy_port >= 65535:
            blocker.close()
            pytest.skip("Ephemeral port at the top of the range")

        allocator = PortAllocator(busy_port, busy_port + 1, seed_port=busy_port)
        try:
            server, port = await bind_listener(_noop_handler, "127.0.0.1", allocator, max_attempts=2)
        except PortBindError:
            pytest.skip("Neighbouring port is also in use")
        finally:
            blocker.close()

        try:
            assert port == busy_port + 1
        finally:
            server.close()
            await server.wait_closed()
