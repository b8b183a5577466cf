"""Chat and unread REST endpoints (the polling mirror of the push surface).

This module provides:
    - GET  /api/chat/{room_id}/messages: bounded history, oldest first
    - POST /api/chat/{room_id}/messages: post as the session user
    - GET  /api/chat/dm/{user_a}/{user_b}: deterministic DM room id
    - GET  /api/unread: per-room counts and total of the session user
    - GET  /api/unread/total: badge count
    - POST /api/unread/clear: clear one room
    - POST /api/unread/clearAll: clear every room
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from teamwork.directory.service import require_user_id
from teamwork.errors import ValidationError
from .schemas import PostMessageInput, RoomInput, resolve_dm_room
from .service import RoomChannel
from .unread import UnreadTracker

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/api/chat/dm/{user_a}/{user_b}")
async def get_dm_room(user_a: str, user_b: str) -> JSONResponse:
    return JSONResponse({"roomId": resolve_dm_room(user_a, user_b)})


@router.get("/api/chat/{room_id}/messages", dependencies=[Depends(require_user_id)])
async def list_messages(
    room_id: str,
    limit: Optional[int] = Query(None, description="Maximum number of messages (default 100)"),
) -> JSONResponse:
    """History of a room in ascending createdAt order.

    Example:
        GET /api/chat/team/messages?limit=200
    """
    messages = RoomChannel.get_instance().list_messages(room_id, limit)
    return JSONResponse({"messages": [m.model_dump() for m in messages]})


@router.post("/api/chat/{room_id}/messages")
async def post_message(
    room_id: str,
    body: PostMessageInput,
    user_id: str = Depends(require_user_id),
) -> JSONResponse:
    """Post into a room; the sender is always the session user."""
    message = await RoomChannel.get_instance().post_message(room_id, user_id, body.text)
    return JSONResponse({"message": message.model_dump()})


# =============================================================================
# Unread
# =============================================================================


@router.get("/api/unread")
async def get_unread(user_id: str = Depends(require_user_id)) -> JSONResponse:
    tracker = UnreadTracker.get_instance()
    counts = tracker.get_counts(user_id)
    return JSONResponse({"counts": counts, "total": sum(counts.values())})


@router.get("/api/unread/total")
async def get_unread_total(user_id: str = Depends(require_user_id)) -> JSONResponse:
    return JSONResponse({"total": UnreadTracker.get_instance().get_total(user_id)})


@router.post("/api/unread/clear")
async def clear_unread(body: RoomInput, user_id: str = Depends(require_user_id)) -> JSONResponse:
    room_id = body.roomId.strip()
    if not room_id:
        raise ValidationError("roomId is required", {"field": "roomId"})
    UnreadTracker.get_instance().clear(user_id, room_id)
    return JSONResponse({"ok": True})


@router.post("/api/unread/clearAll")
async def clear_all_unread(user_id: str = Depends(require_user_id)) -> JSONResponse:
    UnreadTracker.get_instance().clear_all(user_id)
    return JSONResponse({"ok": True})
