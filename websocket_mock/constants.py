"""
Shared constants for the WebSocket mock server
"""

# Listener
DEFAULT_HOST = "localhost"
WEBSOCKET_PATH = "/ws"
URL_TEMPLATE = "ws://{host}:{port}{path}"

# Port allocation (counter seeded randomly inside this range)
PORT_RANGE_START = 50000
PORT_RANGE_END = 63000
MAX_BIND_ATTEMPTS = 10

# Connection handling
CLIENT_ID_BYTES = 16         # Random bytes behind each client id
QUERY_TIMEOUT = 1.0          # Seconds a history query may wait on a handler
CLOSE_TIMEOUT = 5.0          # Seconds stop() waits for handlers to finish
PING_INTERVAL = None         # Keepalive pings off by default
MAX_CONTROL_PAYLOAD = 125     # Bytes allowed in a ping or pong payload

# Mock client
RETRY_ATTEMPTS = 3
RETRY_DELAY = 0.1
CONNECT_TIMEOUT = 5.0
MESSAGE_WAIT_TIMEOUT = 1.0

# Logging
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_LEVEL_DEV = "DEBUG"
LOG_LEVEL_PROD = "INFO"
