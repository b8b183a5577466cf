"""Closed set of transport events.

Inbound events (client -> server) and outbound events (server -> client) are
pydantic models tagged by their ``type`` field. Both the WebSocket and the
poll transport carry exactly these shapes, so a client cannot tell which
transport it is on from the payloads alone.

Inbound:
    - presence:heartbeat
    - chat:team:send   {text}
    - chat:dm:send     {toUserId, text}
    - chat:join        {roomId}

Outbound:
    - connected        {userId, connectionId}
    - presence:update  {userIds}
    - chat:message     {message}
    - sorter:update    {pending}
    - error            {error, code}
"""
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from teamwork.chat.schemas import Message


# =============================================================================
# Inbound
# =============================================================================


class HeartbeatEvent(BaseModel):
    type: Literal["presence:heartbeat"] = "presence:heartbeat"


class TeamSendEvent(BaseModel):
    type: Literal["chat:team:send"] = "chat:team:send"
    text: str = ""


class DirectSendEvent(BaseModel):
    type: Literal["chat:dm:send"] = "chat:dm:send"
    toUserId: str = ""
    text: str = ""


class JoinEvent(BaseModel):
    type: Literal["chat:join"] = "chat:join"
    roomId: str = ""


InboundEvent = Annotated[
    Union[HeartbeatEvent, TeamSendEvent, DirectSendEvent, JoinEvent],
    Field(discriminator="type"),
]

inbound_adapter: TypeAdapter = TypeAdapter(InboundEvent)


# =============================================================================
# Outbound
# =============================================================================


class ConnectedEvent(BaseModel):
    type: Literal["connected"] = "connected"
    userId: str
    connectionId: str


class PresenceUpdateEvent(BaseModel):
    type: Literal["presence:update"] = "presence:update"
    userIds: List[str]


class ChatMessageEvent(BaseModel):
    type: Literal["chat:message"] = "chat:message"
    message: Message


class SorterUpdateEvent(BaseModel):
    type: Literal["sorter:update"] = "sorter:update"
    pending: List[str]


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    error: str
    code: Optional[str] = None


OutboundEvent = Annotated[
    Union[ConnectedEvent, PresenceUpdateEvent, ChatMessageEvent, SorterUpdateEvent, ErrorEvent],
    Field(discriminator="type"),
]

outbound_adapter: TypeAdapter = TypeAdapter(OutboundEvent)
