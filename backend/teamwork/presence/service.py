"""Presence tracking: last-seen timestamps and the online set.

A user is online iff ``now - last_seen < online_window`` (30 s by default).
Records are never deleted; a transport disconnect back-dates ``last_seen`` by
``offline_backdate`` (60 s) so the user drops out of the online set at once
while the history stays in the table.

Heartbeats are best-effort: if the store rejects the write the timestamp is
kept in an in-memory map and the online set is computed from that map until
the store answers again. Neither path raises to the caller.
"""
import logging
import time
from typing import Callable, Dict, Optional, Set

import duckdb

from teamwork.config import get_config
from teamwork.store import Store
from teamwork.transport.events import PresenceUpdateEvent
from teamwork.transport.hub import ConnectionHub, hub as default_hub

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Upserts heartbeats into ``presence`` and broadcasts the online list."""

    _instance: Optional["PresenceTracker"] = None

    def __init__(
        self,
        store: Optional[Store] = None,
        hub: Optional[ConnectionHub] = None,
        clock: Callable[[], float] = time.time,
        online_window: Optional[float] = None,
        offline_backdate: Optional[float] = None,
    ) -> None:
        self._store = store
        self._hub = hub
        self._clock = clock
        self._online_window = online_window
        self._offline_backdate = offline_backdate
        # user_id -> last_seen, used only while the store is failing
        self._memory: Dict[str, float] = {}

    @classmethod
    def get_instance(cls) -> "PresenceTracker":
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

    @property
    def online_window(self) -> float:
        if self._online_window is not None:
            return self._online_window
        return get_config().presence.online_window_seconds

    @property
    def offline_backdate(self) -> float:
        if self._offline_backdate is not None:
            return self._offline_backdate
        return get_config().presence.offline_backdate_seconds

    # =========================================================================
    # Writes
    # =========================================================================

    def touch(self, user_id: str, seen_at: Optional[float] = None) -> None:
        """Upsert last_seen for user_id (defaults to now)."""
        seen_at = self._clock() if seen_at is None else seen_at
        try:
            self.store.execute(
                """
                INSERT INTO presence (user_id, last_seen) VALUES (?, ?)
                ON CONFLICT (user_id) DO UPDATE SET last_seen = EXCLUDED.last_seen
                """,
                [user_id, seen_at],
            )
        except duckdb.Error as e:
            logger.warning(f"[Presence] Store write failed for {user_id}, using memory: {e}")
            self._memory[user_id] = seen_at

    async def heartbeat(self, user_id: str) -> None:
        """Record a heartbeat and push the online list to every connection."""
        self.touch(user_id)
        await self.broadcast()

    async def mark_offline(self, user_id: str) -> None:
        """Back-date last_seen so the user is offline immediately."""
        self.touch(user_id, self._clock() - self.offline_backdate)
        logger.info(f"[Presence] {user_id} marked offline")
        await self.broadcast()

    # =========================================================================
    # Reads
    # =========================================================================

    def list_online(self) -> Set[str]:
        cutoff = self._clock() - self.online_window
        try:
            rows = self.store.fetchall(
                "SELECT user_id FROM presence WHERE last_seen > ?", [cutoff]
            )
            return {r[0] for r in rows}
        except duckdb.Error as e:
            logger.warning(f"[Presence] Store read failed, using memory: {e}")
            return {uid for uid, seen in self._memory.items() if seen > cutoff}

    def last_seen(self, user_id: str) -> Optional[float]:
        try:
            row = self.store.fetchone(
                "SELECT last_seen FROM presence WHERE user_id = ?", [user_id]
            )
        except duckdb.Error:
            return self._memory.get(user_id)
        return row[0] if row else None

    async def broadcast(self) -> None:
        event = PresenceUpdateEvent(userIds=sorted(self.list_online()))
        await self.hub.broadcast(event.model_dump())
