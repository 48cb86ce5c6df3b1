"""
WebSocket mock server for testing WebSocket clients
"""

from .constants import *
from .exceptions import *
from .protocol import Frame, Opcode, canonicalize, coerce_frame
from .configuration import MockServerConfig, ConfigurationManager
from .rules import Exact, Predicate, Static, Transform, ReplyRuleStore
from .registry import ConnectionRegistry
from .handler import ConnectionHandler, ConnectionState
from .mock_server import MockWebSocketServer, ClientInfo, start, stop
from .client import MockClient, ClientState

__version__ = "0.1.0"
