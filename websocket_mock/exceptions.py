"""
Custom exceptions for the WebSocket mock server
"""

from typing import Iterable, Optional


class WebSocketMockError(Exception):
    """Base exception for the WebSocket mock server"""
    pass


class PortBindError(WebSocketMockError):
    """No candidate port could be bound within the attempt limit"""

    def __init__(self, attempted_ports: Iterable[int], last_error: Optional[BaseException] = None):
        self.attempted_ports = list(attempted_ports)
        self.last_error = last_error
        super().__init__(
            f"Failed to bind a listener after {len(self.attempted_ports)} attempts "
            f"(ports tried: {self.attempted_ports}). Last error: {last_error}"
        )


class ClientNotFoundError(WebSocketMockError):
    """No connected client with the given id"""

    def __init__(self, client_id: str):
        self.client_id = client_id
        super().__init__(f"Client not found: {client_id!r}")


class InvalidPayloadError(WebSocketMockError):
    """Payload cannot be canonically serialized, or the frame shape is unknown"""
    pass


class QueryTimeoutError(WebSocketMockError):
    """A connection handler did not answer a history query in time"""
    pass


class ConfigurationError(WebSocketMockError):
    """Configuration and setup errors"""
    pass


class ServerNotRunningError(WebSocketMockError):
    """Operation needs a started server instance"""
    pass
