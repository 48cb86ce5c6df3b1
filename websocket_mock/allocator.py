"""
Port allocation and listener binding

Candidate ports come from a counter seeded randomly inside the configured
range, so instances started in quick succession in one process never try the
same port. A busy port is retried with the next candidate up to a bounded
number of attempts.
"""

import errno
import logging
import random
import threading
from typing import Dict, Optional, Tuple, Callable, Awaitable, Any

from websockets.asyncio.server import serve, Server

from .constants import PORT_RANGE_START, PORT_RANGE_END, MAX_BIND_ATTEMPTS
from .exceptions import PortBindError

logger = logging.getLogger(__name__)

# Errors that mean "try another port"
RETRYABLE_BIND_ERRNOS = {errno.EADDRINUSE, errno.EACCES}


class PortAllocator:
    """Monotonic port counter over a fixed range, wrapping at the end"""

    def __init__(self, range_start: int = PORT_RANGE_START, range_end: int = PORT_RANGE_END,
                 seed_port: Optional[int] = None):
        if not 0 < range_start <= range_end <= 65535:
            raise ValueError(f"Invalid port range: {range_start}-{range_end}")
        self.range_start = range_start
        self.range_end = range_end
        self._lock = threading.Lock()
        if seed_port is None:
            seed_port = random.randint(range_start, range_end)
        if not range_start <= seed_port <= range_end:
            raise ValueError(f"Seed port {seed_port} outside {range_start}-{range_end}")
        self._next = seed_port

    def next_port(self) -> int:
        """Return the next candidate port"""
        with self._lock:
            port = self._next
            self._next = port + 1 if port < self.range_end else self.range_start
            return port


_allocators: Dict[Tuple[int, int], PortAllocator] = {}
_allocators_lock = threading.Lock()


def get_port_allocator(range_start: int = PORT_RANGE_START,
                       range_end: int = PORT_RANGE_END) -> PortAllocator:
    """Get the process-wide allocator for a port range"""
    key = (range_start, range_end)
    with _allocators_lock:
        allocator = _allocators.get(key)
        if allocator is None:
            allocator = PortAllocator(range_start, range_end)
            _allocators[key] = allocator
        return allocator


def is_retryable_bind_error(error: OSError) -> bool:
    return error.errno in RETRYABLE_BIND_ERRNOS


async def bind_listener(handler: Callable[..., Awaitable[Any]], host: str,
                        allocator: PortAllocator,
                        max_attempts: int = MAX_BIND_ATTEMPTS,
                        **serve_kwargs) -> Tuple[Server, int]:
    """Bind a websockets server on the first free candidate port

    Returns the running server and its port once the listener accepts
    connections. Raises PortBindError when every attempt hit a busy port.
    """
    attempted = []
    last_error: Optional[OSError] = None

    for attempt in range(max_attempts):
        port = allocator.next_port()
        attempted.append(port)
        try:
            server = await serve(handler, host, port, **serve_kwargs)
        except OSError as e:
            if not is_retryable_bind_error(e):
                raise
            last_error = e
            logger.warning(f"Port {port} unavailable on attempt {attempt + 1}/{max_attempts}: {e}")
            continue

        logger.debug(f"Listener bound on {host}:{port} after {attempt + 1} attempt(s)")
        return server, port

    logger.error(f"Failed to bind a listener after {max_attempts} attempts")
    raise PortBindError(attempted, last_error)
