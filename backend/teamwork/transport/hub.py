"""Connection hub for push and poll clients.

The hub tracks every live connection of the process and fans out outbound
events, either to all connections or to the subscribers of one room.

Key features:
    - WebSocket and poll sessions behind one Connection interface
    - Per-connection room subscriptions and "currently viewing" room
    - Concurrent broadcasting with asyncio.gather()
    - Automatic dead connection cleanup
    - Idle poll session detection for the reaper task

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads.

Note:
    Presence, chat and sorter state live in the store, not here. The hub
    only knows who is connected right now and what they are subscribed to.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

from .connections import Connection, PollConnection

logger = logging.getLogger(__name__)


class ConnectionHub:
    """Registry of live connections and their room subscriptions."""

    def __init__(self) -> None:
        """Initialize empty hub."""
        # connection_id -> Connection
        self.connections: Dict[str, Connection] = {}
        # Awaited with each connection dropped after a failed send
        self._lost_handlers: List[Callable[[Connection], Awaitable[None]]] = []

    # =========================================================================
    # Registration
    # =========================================================================

    def register(self, connection: Connection) -> None:
        self.connections[connection.connection_id] = connection
        logger.info(
            f"[Hub] {connection.kind} connection {connection.connection_id} for user "
            f"{connection.user_id} registered ({len(self.connections)} live)"
        )

    def unregister(self, connection: Connection) -> bool:
        """Drop a connection and its subscriptions.

        Returns:
            True if this was the user's last live connection.
        """
        removed = self.connections.pop(connection.connection_id, None)
        connection.rooms.clear()
        connection.active_room = None
        if removed is not None:
            logger.info(
                f"[Hub] Connection {connection.connection_id} for user "
                f"{connection.user_id} unregistered ({len(self.connections)} live)"
            )
        return not self.is_connected(connection.user_id)

    def get(self, connection_id: str) -> Optional[Connection]:
        return self.connections.get(connection_id)

    def user_connections(self, user_id: str) -> List[Connection]:
        return [c for c in self.connections.values() if c.user_id == user_id]

    def is_connected(self, user_id: str) -> bool:
        return any(c.user_id == user_id for c in self.connections.values())

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(self, connection: Connection, room_id: str) -> None:
        """Receive future broadcasts for room_id (no history replay)."""
        connection.rooms.add(room_id)

    def subscribe_user(self, user_id: str, room_id: str) -> int:
        """Subscribe every live connection of a user; returns how many."""
        connections = self.user_connections(user_id)
        for conn in connections:
            conn.rooms.add(room_id)
        return len(connections)

    def view(self, connection: Connection, room_id: str) -> None:
        """Subscribe and mark room_id as the room the client has open."""
        connection.rooms.add(room_id)
        connection.active_room = room_id

    def is_viewing(self, user_id: str, room_id: str) -> bool:
        return any(
            c.user_id == user_id and c.active_room == room_id
            for c in self.connections.values()
        )

    def subscribers(self, room_id: str) -> Set[str]:
        """User ids with at least one connection subscribed to room_id."""
        return {c.user_id for c in self.connections.values() if room_id in c.rooms}

    def get_room_size(self, room_id: str) -> int:
        """Number of connections subscribed to room_id."""
        return sum(1 for c in self.connections.values() if room_id in c.rooms)

    # =========================================================================
    # Delivery
    # =========================================================================

    async def broadcast(self, message: dict, room_id: Optional[str] = None) -> None:
        """Send message to a room's subscribers, or to everyone when room_id is None.

        Connections whose send fails are dropped from the hub.
        """
        connections = [
            c for c in self.connections.values()
            if room_id is None or room_id in c.rooms
        ]
        if not connections:
            return

        results = await asyncio.gather(
            *[conn.send(message) for conn in connections],
            return_exceptions=True
        )

        failed_connections = [
            conn for conn, success in zip(connections, results)
            if success is not True
        ]
        await self._cleanup_connections(failed_connections)

    async def send_to(self, connection: Connection, message: dict) -> bool:
        ok = await connection.send(message)
        if not ok:
            await self._cleanup_connections([connection])
        return ok

    def add_lost_handler(self, handler: Callable[[Connection], Awaitable[None]]) -> None:
        """Register a coroutine called for every dead connection the hub drops."""
        self._lost_handlers.append(handler)

    async def _cleanup_connections(self, failed_connections: List[Connection]) -> None:
        dropped = []
        for conn in failed_connections:
            if self.connections.pop(conn.connection_id, None) is not None:
                logger.debug(f"[Hub] Removed dead connection {conn.connection_id}")
                dropped.append(conn)
        for conn in dropped:
            for handler in self._lost_handlers:
                try:
                    await handler(conn)
                except Exception as e:
                    logger.error(f"[Hub] Lost-connection handler failed for {conn.connection_id}: {e}")

    # =========================================================================
    # Poll sessions
    # =========================================================================

    def idle_poll_connections(self, now: float, timeout: float) -> List[PollConnection]:
        return [
            c for c in self.connections.values()
            if isinstance(c, PollConnection) and c.is_idle(now, timeout)
        ]

    def clear(self) -> None:
        """Forget every connection (used by tests and on shutdown).

        Lost-connection handlers stay registered.
        """
        self.connections.clear()


# Global singleton instance shared by the transports and services
hub = ConnectionHub()
