"""
Per-instance registry of connected clients
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistryEntry:
    """Snapshot of one registered connection"""
    client_id: str
    handler: Any

    @property
    def alive(self) -> bool:
        return bool(getattr(self.handler, "is_alive", False))


class ConnectionRegistry:
    """Thread-safe map of client id to connection handler

    Ids are remembered after unregistration so they are never handed out
    twice while the owning instance lives.
    """

    def __init__(self):
        self._entries: Dict[str, Any] = {}
        self._issued: Set[str] = set()
        self._lock = threading.Lock()

    def register(self, client_id: str, handler: Any) -> bool:
        """Register a handler; False if the id was already issued"""
        with self._lock:
            if client_id in self._issued:
                return False
            self._issued.add(client_id)
            self._entries[client_id] = handler
        logger.debug(f"Registered client {client_id}")
        return True

    def unregister(self, client_id: str) -> None:
        with self._lock:
            removed = self._entries.pop(client_id, None)
        if removed is not None:
            logger.debug(f"Unregistered client {client_id}")

    def lookup(self, client_id: str) -> Optional[Any]:
        with self._lock:
            return self._entries.get(client_id)

    def list(self) -> List[RegistryEntry]:
        """Point-in-time snapshot of all registered connections"""
        with self._lock:
            return [RegistryEntry(client_id, handler) for client_id, handler in self._entries.items()]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, client_id: str) -> bool:
        with self._lock:
            return client_id in self._entries
