"""Pydantic schemas and room-id helpers for the messaging channel."""
import time
from typing import List, Optional

from pydantic import BaseModel, Field

# Well-known rooms and senders
TEAM_ROOM = "team"
SORTER_ROOM = "sorter"
SYSTEM_SENDER = "system"

DM_PREFIX = "dm:"
DM_SEPARATOR = ":"


def resolve_dm_room(user_a: str, user_b: str) -> str:
    """Deterministic direct-message room id for two participants.

    Both sides compute the same id without a lookup table:
    ``resolve_dm_room("u2", "u1") == resolve_dm_room("u1", "u2") == "dm:u1:u2"``.
    """
    return DM_PREFIX + DM_SEPARATOR.join(sorted([user_a, user_b]))


def dm_participants(room_id: str) -> Optional[List[str]]:
    """Inverse of resolve_dm_room; None when room_id is not a DM room.

    User ids are assumed not to contain the separator.
    """
    if not room_id.startswith(DM_PREFIX):
        return None
    parts = room_id[len(DM_PREFIX):].split(DM_SEPARATOR)
    if len(parts) != 2 or not all(parts):
        return None
    return parts


class Message(BaseModel):
    """One immutable entry of a room's log.

    Attributes:
        roomId: "team", "dm:<a>:<b>" or a named system room such as "sorter".
        senderId: Author user id, or "system" for server-authored messages.
        text: Message body.
        createdAt: Unix timestamp (seconds since epoch).
    """
    roomId: str
    senderId: str
    text: str
    createdAt: float = Field(default_factory=time.time)


class PostMessageInput(BaseModel):
    """REST body for posting into a room; the sender comes from the session."""
    text: str = ""


class RoomInput(BaseModel):
    """REST body naming a room (unread clear)."""
    roomId: str = ""
