"""Per-user, per-room unread counters.

Counters only grow through ``increment``, a single upsert that adds one in
the store; concurrent deliveries therefore never lose an update. Clearing
deletes the row, so a missing row and a zero count mean the same thing.
"""
import logging
from typing import Dict, Iterable, List, Optional

import duckdb

from teamwork.store import Store
from teamwork.transport.hub import ConnectionHub, hub as default_hub

logger = logging.getLogger(__name__)


class UnreadTracker:
    """Unread counters stored in the ``unread`` table."""

    _instance: Optional["UnreadTracker"] = None

    def __init__(self, store: Optional[Store] = None, hub: Optional[ConnectionHub] = None) -> None:
        self._store = store
        self._hub = hub

    @classmethod
    def get_instance(cls) -> "UnreadTracker":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        cls._instance = None

    @property
    def store(self) -> Store:
        return self._store or Store.get_instance()

    @property
    def hub(self) -> ConnectionHub:
        return self._hub or default_hub

    def increment(self, user_id: str, room_id: str) -> None:
        self.store.execute(
            """
            INSERT INTO unread (user_id, room_id, unread_count) VALUES (?, ?, 1)
            ON CONFLICT (user_id, room_id)
            DO UPDATE SET unread_count = unread_count + 1
            """,
            [user_id, room_id],
        )

    def record_delivery(
        self, room_id: str, sender_id: str, recipients: Iterable[str]
    ) -> List[str]:
        """Bump counters for recipients that missed a message.

        Skips the sender and anyone with a connection viewing the room.
        Store errors are logged and swallowed; a lost increment is tolerated.

        Returns:
            The user ids whose counter was incremented.
        """
        bumped = []
        for user_id in sorted(set(recipients)):
            if user_id == sender_id or self.hub.is_viewing(user_id, room_id):
                continue
            try:
                self.increment(user_id, room_id)
                bumped.append(user_id)
            except duckdb.Error as e:
                logger.warning(f"[Unread] Increment failed for {user_id} in {room_id}: {e}")
        return bumped

    def clear(self, user_id: str, room_id: str) -> None:
        self.store.execute(
            "DELETE FROM unread WHERE user_id = ? AND room_id = ?", [user_id, room_id]
        )

    def clear_all(self, user_id: str) -> None:
        self.store.execute("DELETE FROM unread WHERE user_id = ?", [user_id])

    def get_count(self, user_id: str, room_id: str) -> int:
        row = self.store.fetchone(
            "SELECT unread_count FROM unread WHERE user_id = ? AND room_id = ?",
            [user_id, room_id],
        )
        return int(row[0]) if row else 0

    def get_counts(self, user_id: str) -> Dict[str, int]:
        rows = self.store.fetchall(
            "SELECT room_id, unread_count FROM unread WHERE user_id = ? AND unread_count > 0",
            [user_id],
        )
        return {room_id: int(count) for room_id, count in rows}

    def get_total(self, user_id: str) -> int:
        row = self.store.fetchone(
            "SELECT COALESCE(SUM(unread_count), 0) FROM unread WHERE user_id = ?", [user_id]
        )
        return int(row[0]) if row else 0
