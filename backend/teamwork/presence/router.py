"""Presence REST endpoints used by polling clients."""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from teamwork.directory.service import require_user_id
from .service import PresenceTracker

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/api/presence/heartbeat")
async def heartbeat(user_id: str = Depends(require_user_id)) -> JSONResponse:
    await PresenceTracker.get_instance().heartbeat(user_id)
    return JSONResponse({"ok": True})


@router.get("/api/presence/online")
async def list_online() -> JSONResponse:
    online = PresenceTracker.get_instance().list_online()
    return JSONResponse({"userIds": sorted(online)})
