"""Connection kinds held by the hub.

A connection is one client session: a WebSocket, or a poll session that
buffers outbound events until the client fetches them. Each connection owns
its room subscriptions and the room it is currently viewing; nothing about
subscriptions lives outside the connection object.
"""
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable, Deque, List, Optional, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class Connection(ABC):
    """Base class for a live client session.

    Attributes:
        connection_id: Backend-generated identifier of this session.
        user_id: Authenticated user owning the session.
        rooms: Room ids this session receives broadcasts for.
        active_room: Room the client currently has open (suppresses unread).
    """

    kind: str = "abstract"

    def __init__(self, user_id: str) -> None:
        self.connection_id = str(uuid.uuid4())
        self.user_id = user_id
        self.rooms: Set[str] = set()
        self.active_room: Optional[str] = None
        self.closed = False

    @abstractmethod
    async def send(self, event: dict) -> bool:
        """Deliver one outbound event. Returns False if the session is dead."""

    async def close(self) -> None:
        self.closed = True

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.connection_id[:8]} user={self.user_id}>"


class WebSocketConnection(Connection):
    """Push connection backed by a FastAPI WebSocket."""

    kind = "push"

    def __init__(self, websocket: WebSocket, user_id: str) -> None:
        super().__init__(user_id)
        self.websocket = websocket

    async def send(self, event: dict) -> bool:
        if self.closed:
            return False
        try:
            await self.websocket.send_json(event)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection {self.connection_id}: {e}")
            return False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.websocket.close()
        except Exception as e:
            logger.debug(f"WebSocket already closed for {self.connection_id}: {e}")


class PollConnection(Connection):
    """Poll connection: events are buffered until the client fetches them.

    The buffer is bounded; when it overflows the oldest events are dropped
    and counted, matching the best-effort delivery of the push path.
    """

    kind = "poll"

    def __init__(
        self,
        user_id: str,
        buffer_size: int = 500,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(user_id)
        self._clock = clock
        self._buffer: Deque[dict] = deque(maxlen=buffer_size)
        self.last_poll = clock()
        self.dropped = 0

    async def send(self, event: dict) -> bool:
        if self.closed:
            return False
        if len(self._buffer) == self._buffer.maxlen:
            self.dropped += 1
            logger.warning(
                "[Poll] Buffer full for %s, dropping oldest event (dropped=%d)",
                self.connection_id, self.dropped,
            )
        self._buffer.append(event)
        return True

    def drain(self) -> List[dict]:
        """Return and clear buffered events; counts as client activity."""
        self.last_poll = self._clock()
        events = list(self._buffer)
        self._buffer.clear()
        return events

    def is_idle(self, now: float, timeout: float) -> bool:
        return now - self.last_poll > timeout

    async def close(self) -> None:
        self.closed = True
        self._buffer.clear()
