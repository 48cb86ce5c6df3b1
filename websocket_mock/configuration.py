"""
Mock Server Configuration System

This module provides the configuration for mock server instances: where the
listener binds, how ports are picked, and the timeouts that bound history
queries and teardown.

Features:
- Dataclass configuration with validation
- Presets for everyday use and fast teardown in large suites
- Environment variable and JSON config file support
"""

import json
import os
import logging
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any
from pathlib import Path

from .constants import (
    DEFAULT_HOST, WEBSOCKET_PATH, PORT_RANGE_START, PORT_RANGE_END,
    MAX_BIND_ATTEMPTS, QUERY_TIMEOUT, CLOSE_TIMEOUT, PING_INTERVAL
)
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class MockServerConfig:
    """Complete mock server configuration"""
    host: str = DEFAULT_HOST
    path: str = WEBSOCKET_PATH
    port_range_start: int = PORT_RANGE_START
    port_range_end: int = PORT_RANGE_END
    max_bind_attempts: int = MAX_BIND_ATTEMPTS
    query_timeout: float = QUERY_TIMEOUT
    close_timeout: float = CLOSE_TIMEOUT
    ping_interval: Optional[float] = PING_INTERVAL
    enable_detailed_logging: bool = False

    def __post_init__(self):
        """Validate configuration fields"""
        if not self.host:
            raise ConfigurationError("Host is required")
        if not self.path.startswith("/"):
            raise ConfigurationError(f"Path must start with '/': {self.path!r}")
        if not 0 < self.port_range_start <= self.port_range_end <= 65535:
            raise ConfigurationError(
                f"Invalid port range: {self.port_range_start}-{self.port_range_end}"
            )
        if self.max_bind_attempts < 1:
            raise ConfigurationError("max_bind_attempts must be at least 1")
        if self.query_timeout <= 0:
            raise ConfigurationError("query_timeout must be positive")
        if self.close_timeout <= 0:
            raise ConfigurationError("close_timeout must be positive")
        if self.ping_interval is not None and self.ping_interval <= 0:
            raise ConfigurationError("ping_interval must be positive or None")

    @classmethod
    def default(cls):
        """Default configuration for test suites"""
        return cls()

    @classmethod
    def fast_teardown(cls):
        """Short timeouts for suites that start many instances"""
        return cls(query_timeout=0.25, close_timeout=1.0)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ConfigurationManager:
    """Manager for loading configuration from various sources"""

    ENV_PREFIX = "WS_MOCK_"

    @staticmethod
    def load_from_environment() -> MockServerConfig:
        """Load configuration from environment variables"""
        env = ConfigurationManager._read_env
        defaults = MockServerConfig()

        ping_interval = os.getenv("WS_MOCK_PING_INTERVAL")
        return MockServerConfig(
            host=env("HOST", defaults.host, str),
            path=env("PATH", defaults.path, str),
            port_range_start=env("PORT_RANGE_START", defaults.port_range_start, int),
            port_range_end=env("PORT_RANGE_END", defaults.port_range_end, int),
            max_bind_attempts=env("MAX_BIND_ATTEMPTS", defaults.max_bind_attempts, int),
            query_timeout=env("QUERY_TIMEOUT", defaults.query_timeout, float),
            close_timeout=env("CLOSE_TIMEOUT", defaults.close_timeout, float),
            ping_interval=ConfigurationManager._parse_optional_float("PING_INTERVAL", ping_interval),
            enable_detailed_logging=os.getenv(
                "WS_MOCK_ENABLE_DETAILED_LOGGING", "false").lower() == "true"
        )

    @staticmethod
    def load_from_file(config_file_path: str) -> MockServerConfig:
        """Load configuration from JSON file"""
        config_path = Path(config_file_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_file_path}")

        with open(config_path, 'r') as f:
            config_data = json.load(f)

        if not isinstance(config_data, dict):
            raise ConfigurationError(f"Configuration file must hold a JSON object: {config_file_path}")

        known = set(MockServerConfig.__dataclass_fields__)
        unknown = set(config_data) - known
        if unknown:
            logger.warning(f"Ignoring unknown configuration keys: {sorted(unknown)}")

        try:
            return MockServerConfig(**{k: v for k, v in config_data.items() if k in known})
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration in {config_file_path}: {e}")

    @staticmethod
    def _read_env(name: str, default, cast):
        raw = os.getenv(ConfigurationManager.ENV_PREFIX + name)
        if raw is None:
            return default
        try:
            return cast(raw)
        except ValueError:
            logger.warning(f"Invalid value for {ConfigurationManager.ENV_PREFIX + name}: {raw!r}, using {default!r}")
            return default

    @staticmethod
    def _parse_optional_float(name: str, raw: Optional[str]) -> Optional[float]:
        if raw is None or raw.lower() in ("", "none", "off"):
            return None
        try:
            return float(raw)
        except ValueError:
            logger.warning(f"Invalid value for {ConfigurationManager.ENV_PREFIX + name}: {raw!r}, using None")
            return None
