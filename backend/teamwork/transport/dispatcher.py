"""Connection lifecycle and inbound event handling shared by both transports.

The WebSocket endpoint and the poll endpoints only move bytes; everything a
connection does is decided here, so a push client and a poll client observe
the same behaviour.

Connect:
    register -> ``connected`` -> subscribe ``team``, ``sorter`` and the
    system DM room -> view ``team`` -> heartbeat (broadcasts presence)
Disconnect:
    unregister -> if it was the user's last connection, mark offline
Lost (the hub dropped a connection whose send failed):
    if the user has no live connection left, mark offline
"""
import logging
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from teamwork.chat.schemas import SORTER_ROOM, SYSTEM_SENDER, TEAM_ROOM, resolve_dm_room
from teamwork.chat.service import RoomChannel
from teamwork.chat.unread import UnreadTracker
from teamwork.errors import TeamworkError, ValidationError
from teamwork.presence.service import PresenceTracker
from .connections import Connection
from .events import (
    ConnectedEvent,
    DirectSendEvent,
    ErrorEvent,
    HeartbeatEvent,
    JoinEvent,
    TeamSendEvent,
    inbound_adapter,
)
from .hub import ConnectionHub, hub as default_hub

logger = logging.getLogger(__name__)


class EventDispatcher:
    """Applies inbound events of one connection to the services."""

    def __init__(
        self,
        hub: Optional[ConnectionHub] = None,
        presence: Optional[PresenceTracker] = None,
        channel: Optional[RoomChannel] = None,
        unread: Optional[UnreadTracker] = None,
    ) -> None:
        self._hub = hub
        self._presence = presence
        self._channel = channel
        self._unread = unread

    @property
    def hub(self) -> ConnectionHub:
        return self._hub or default_hub

    @property
    def presence(self) -> PresenceTracker:
        return self._presence or PresenceTracker.get_instance()

    @property
    def channel(self) -> RoomChannel:
        return self._channel or RoomChannel.get_instance()

    @property
    def unread(self) -> UnreadTracker:
        return self._unread or UnreadTracker.get_instance()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def on_connect(self, connection: Connection) -> None:
        self.hub.register(connection)
        await self.hub.send_to(
            connection,
            ConnectedEvent(userId=connection.user_id, connectionId=connection.connection_id).model_dump(),
        )
        self.hub.subscribe(connection, TEAM_ROOM)
        self.hub.subscribe(connection, SORTER_ROOM)
        self.hub.subscribe(connection, resolve_dm_room(SYSTEM_SENDER, connection.user_id))
        self.hub.view(connection, TEAM_ROOM)
        await self.presence.heartbeat(connection.user_id)

    async def on_disconnect(self, connection: Connection) -> None:
        was_last = self.hub.unregister(connection)
        if was_last:
            await self.presence.mark_offline(connection.user_id)
        else:
            logger.info(
                f"[Transport] {connection.user_id} still has "
                f"{len(self.hub.user_connections(connection.user_id))} live connection(s)"
            )

    async def on_connection_lost(self, connection: Connection) -> None:
        """Called by the hub after it dropped a dead connection."""
        if not self.hub.is_connected(connection.user_id):
            await self.presence.mark_offline(connection.user_id)

    # =========================================================================
    # Inbound events
    # =========================================================================

    async def dispatch(self, connection: Connection, raw: Any) -> None:
        """Parse and handle one inbound payload.

        Domain errors are reported to the connection as an ``error`` event;
        the connection stays open.
        """
        try:
            try:
                event = inbound_adapter.validate_python(raw)
            except PydanticValidationError as e:
                kind = raw.get("type") if isinstance(raw, dict) else None
                raise ValidationError(f"Invalid event: {kind!r}", {"errors": e.error_count()})
            await self.handle(connection, event)
        except TeamworkError as e:
            logger.info(f"[Transport] {e.code} for {connection.user_id}: {e.message}")
            await self.hub.send_to(connection, ErrorEvent(error=e.message, code=e.code).model_dump())

    async def handle(self, connection: Connection, event) -> None:
        user_id = connection.user_id

        if isinstance(event, HeartbeatEvent):
            await self.presence.heartbeat(user_id)

        elif isinstance(event, TeamSendEvent):
            await self.channel.post_message(TEAM_ROOM, user_id, event.text)

        elif isinstance(event, DirectSendEvent):
            to_user_id = event.toUserId.strip()
            if not to_user_id:
                raise ValidationError("toUserId is required", {"field": "toUserId"})
            room_id = resolve_dm_room(user_id, to_user_id)
            self.hub.subscribe(connection, room_id)
            await self.channel.post_message(room_id, user_id, event.text)

        elif isinstance(event, JoinEvent):
            room_id = event.roomId.strip()
            if not room_id:
                raise ValidationError("roomId is required", {"field": "roomId"})
            self.hub.view(connection, room_id)
            self.unread.clear(user_id, room_id)
            logger.debug(f"[Transport] {user_id} joined {room_id}")

        else:
            raise ValidationError(f"Unsupported event: {type(event).__name__}")


# Global dispatcher used by the WebSocket and poll routers
dispatcher = EventDispatcher()
default_hub.add_lost_handler(dispatcher.on_connection_lost)
