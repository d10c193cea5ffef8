"""
Subscriber Registry for the webhook relay.

Tracks the subscriber channels that are currently open inside one relay
process. The registry is the single source of truth for "who receives
broadcasts right now".
"""

import asyncio
import logging
from typing import Any, Dict, List

from src.relay.models import SubscriberConnection

logger = logging.getLogger(__name__)


class SubscriberRegistry:
    """
    In-memory set of open subscriber connections.

    Responsibilities:
    - Connection registration and removal
    - Point-in-time snapshots for broadcast
    - Closing every channel on shutdown
    """

    def __init__(self):
        # Active connections: connection_id -> SubscriberConnection
        self._connections: Dict[str, SubscriberConnection] = {}
        self._lock = asyncio.Lock()

    async def register(self, connection: SubscriberConnection) -> None:
        """
        Add an open connection.

        Args:
            connection: Connection accepted by the channel-open handshake
        """
        async with self._lock:
            self._connections[connection.connection_id] = connection
            total = len(self._connections)

        logger.info(
            f"Registered connection {connection.connection_id} "
            f"(total connections: {total})"
        )

    async def unregister(self, connection: SubscriberConnection) -> bool:
        """
        Remove a connection. Removing an absent connection is a no-op.

        Returns:
            True if the connection was registered, False otherwise
        """
        async with self._lock:
            removed = self._connections.pop(connection.connection_id, None)
            total = len(self._connections)

        if removed is None:
            return False

        logger.info(
            f"Unregistered connection {connection.connection_id} "
            f"(remaining connections: {total})"
        )
        return True

    async def snapshot(self) -> List[SubscriberConnection]:
        """Return the connections registered at the time of the call."""
        async with self._lock:
            return list(self._connections.values())

    async def close_all(self, code: int = 1001, reason: str = "") -> int:
        """
        Close every open channel with a close frame and empty the registry.

        Returns:
            Number of connections that were closed
        """
        async with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()

        for connection in connections:
            try:
                await connection.close(code, reason)
            except Exception as e:
                logger.warning(
                    f"Error closing connection {connection.connection_id}: {e}"
                )

        if connections:
            logger.info(f"Closed {len(connections)} subscriber connection(s)")
        return len(connections)

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection: SubscriberConnection) -> bool:
        return connection.connection_id in self._connections

    def get_stats(self) -> Dict[str, Any]:
        """Get summary stats for logging."""
        return {
            "connections_count": len(self._connections),
            "connections": [c.to_dict() for c in self._connections.values()],
        }
