"""Room messaging channel: durable per-room message log with live fan-out.

Posting a message:
    1. validates sender and text (ValidationError, nothing stored)
    2. appends to the ``messages`` table (or the in-memory ring if the store
       rejects the insert)
    3. subscribes DM participants' live connections to the DM room
    4. broadcasts ``chat:message`` to the room's subscribers
    5. bumps unread counters for recipients not viewing the room

Reading history returns messages oldest-first, truncated to ``limit``.
"""
import logging
import time
from collections import deque
from typing import Callable, Deque, List, Optional, Set

import duckdb

from teamwork.config import get_config
from teamwork.directory.service import UserDirectory
from teamwork.errors import ValidationError
from teamwork.store import Store
from teamwork.transport.events import ChatMessageEvent
from teamwork.transport.hub import ConnectionHub, hub as default_hub
from .schemas import SYSTEM_SENDER, TEAM_ROOM, Message, dm_participants
from .unread import UnreadTracker

logger = logging.getLogger(__name__)


class RoomChannel:
    """Append-only message log per room, with broadcast and unread fan-out."""

    _instance: Optional["RoomChannel"] = None

    def __init__(
        self,
        store: Optional[Store] = None,
        hub: Optional[ConnectionHub] = None,
        unread: Optional[UnreadTracker] = None,
        directory: Optional[UserDirectory] = None,
        clock: Callable[[], float] = time.time,
        memory_size: Optional[int] = None,
    ) -> None:
        self._store = store
        self._hub = hub
        self._unread = unread
        self._directory = directory
        self._clock = clock
        size = memory_size or get_config().chat.memory_fallback_size
        # Best-effort log used only while the store is failing
        self._memory: Deque[Message] = deque(maxlen=size)

    @classmethod
    def get_instance(cls) -> "RoomChannel":
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
    def unread(self) -> UnreadTracker:
        return self._unread or UnreadTracker.get_instance()

    @property
    def directory(self) -> UserDirectory:
        return self._directory or UserDirectory.get_instance()

    # =========================================================================
    # Publish
    # =========================================================================

    async def post_message(self, room_id: str, sender_id: str, text: str) -> Message:
        """Append a message to room_id and deliver it.

        Raises:
            ValidationError: room, sender or text is empty.
        """
        room_id = (room_id or "").strip()
        sender_id = (sender_id or "").strip()
        text = (text or "").strip()
        if not room_id:
            raise ValidationError("roomId is required")
        if not sender_id:
            raise ValidationError("senderId is required")
        if not text:
            raise ValidationError("text is required")

        message = Message(roomId=room_id, senderId=sender_id, text=text, createdAt=self._clock())
        self._append(message)

        participants = dm_participants(room_id)
        if participants:
            for user_id in participants:
                if user_id != SYSTEM_SENDER:
                    self.hub.subscribe_user(user_id, room_id)

        logger.info(
            f"[Chat] {sender_id} -> {room_id} ({self.hub.get_room_size(room_id)} connections): "
            f"{text[:50]}"
        )
        await self.hub.broadcast(ChatMessageEvent(message=message).model_dump(), room_id)

        try:
            recipients = self.intended_recipients(room_id, sender_id)
        except duckdb.Error as e:
            logger.warning(f"[Chat] Could not resolve recipients of {room_id}, skipping unread: {e}")
            return message
        self.unread.record_delivery(room_id, sender_id, recipients)
        return message

    def _append(self, message: Message) -> None:
        try:
            self.store.execute(
                "INSERT INTO messages (room_id, sender_id, text, created_at) VALUES (?, ?, ?, ?)",
                [message.roomId, message.senderId, message.text, message.createdAt],
            )
        except duckdb.Error as e:
            logger.warning(f"[Chat] Store insert failed for {message.roomId}, keeping in memory: {e}")
            self._memory.append(message)

    def intended_recipients(self, room_id: str, sender_id: str) -> Set[str]:
        """Who a message in room_id is meant for (sender included).

        team   -> every user of the sender's team (all users for "system")
        dm:a:b -> both participants, minus "system"
        other  -> users with a live subscription to the room
        """
        if room_id == TEAM_ROOM:
            owner_id = None
            if sender_id != SYSTEM_SENDER:
                sender = self.directory.lookup_user(sender_id)
                if sender is not None:
                    owner_id = sender.ownerId or sender.id
            return {u.id for u in self.directory.list_users(owner_id=owner_id)}

        participants = dm_participants(room_id)
        if participants is not None:
            return {p for p in participants if p != SYSTEM_SENDER}

        return self.hub.subscribers(room_id)

    # =========================================================================
    # History
    # =========================================================================

    def list_messages(self, room_id: str, limit: Optional[int] = None) -> List[Message]:
        """Messages of room_id in ascending createdAt order, at most limit of them."""
        chat_cfg = get_config().chat
        if limit is None:
            limit = chat_cfg.default_history_limit
        if limit < 1:
            raise ValidationError("limit must be a positive integer")
        limit = min(limit, chat_cfg.max_history_limit)

        try:
            rows = self.store.fetchall(
                """
                SELECT room_id, sender_id, text, created_at FROM messages
                WHERE room_id = ?
                ORDER BY created_at ASC, id ASC
                LIMIT ?
                """,
                [room_id, limit],
            )
        except duckdb.Error as e:
            logger.warning(f"[Chat] Store read failed for {room_id}, serving memory: {e}")
            return [m for m in self._memory if m.roomId == room_id][:limit]

        return [
            Message(roomId=r[0], senderId=r[1], text=r[2], createdAt=r[3])
            for r in rows
        ]
