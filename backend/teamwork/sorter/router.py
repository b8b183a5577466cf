"""Sorter REST endpoints: queue, distribution and claims.

This module provides:
    - GET  /api/sorter: pending snapshot
    - POST /api/sorter: enqueue lines
    - POST /api/sorter/clear: drop every unsent value
    - POST /api/sorter/distribute: reserve batches for the recipient pool
    - GET  /api/sorter/assignments: the session user's assignments
    - POST /api/sorter/claim: claim the session user's oldest pending batch
    - POST /api/sorter/assign: send values to one user immediately
    - GET  /api/sorter/recent: latest assignments (audit)

Mutations require a session; role checks belong to the auth side.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from teamwork.directory.service import require_user_id
from .claims import ClaimProtocol
from .distribution import DistributionEngine
from .queue import WorkQueue
from .schemas import AssignInput, DistributeInput, EnqueueInput

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/api/sorter")
async def list_pending(unsent: bool = Query(False)) -> JSONResponse:
    """Values awaiting distribution, oldest first.

    Assigned values (reserved in a batch but not yet claimed) are excluded,
    matching the ``sorter:update`` snapshot. ``?unsent=true`` lists every
    value whose status is not ``sent`` instead.
    """
    queue = WorkQueue.get_instance()
    values = queue.list_unsent() if unsent else queue.list_pending()
    return JSONResponse({"pending": values})


@router.post("/api/sorter", dependencies=[Depends(require_user_id)])
async def add_lines(body: EnqueueInput) -> JSONResponse:
    inserted = await WorkQueue.get_instance().enqueue(body.lines)
    return JSONResponse({"ok": True, "inserted": inserted})


@router.post("/api/sorter/clear", dependencies=[Depends(require_user_id)])
async def clear_pending() -> JSONResponse:
    removed = await WorkQueue.get_instance().clear_pending()
    return JSONResponse({"ok": True, "removed": removed})


@router.post("/api/sorter/distribute", dependencies=[Depends(require_user_id)])
async def distribute(body: DistributeInput) -> JSONResponse:
    """Distribute pending values over the eligible recipients.

    Example:
        POST /api/sorter/distribute {"perUser": 5, "target": "online"}
    """
    result = await DistributionEngine.get_instance().distribute(
        body.perUser,
        target=body.target,
        selected_ids=body.selectedIds,
        roles=body.roles,
        owner_id=body.ownerId,
    )
    return JSONResponse(result.model_dump(mode="json"))


@router.get("/api/sorter/assignments")
async def list_assignments(
    status: Optional[str] = Query(None, description="pending or sent"),
    user_id: str = Depends(require_user_id),
) -> JSONResponse:
    assignments = ClaimProtocol.get_instance().list_assignments(user_id, status)
    return JSONResponse({"assignments": [a.model_dump(mode="json") for a in assignments]})


@router.post("/api/sorter/claim")
async def claim(user_id: str = Depends(require_user_id)) -> JSONResponse:
    values = await ClaimProtocol.get_instance().claim(user_id)
    return JSONResponse({"ok": True, "values": values})


@router.post("/api/sorter/assign", dependencies=[Depends(require_user_id)])
async def assign_direct(body: AssignInput) -> JSONResponse:
    values = await ClaimProtocol.get_instance().assign_direct(body.userId, body.count)
    return JSONResponse({"ok": True, "values": values})


@router.get("/api/sorter/recent")
async def recent_assignments(
    limit: Optional[int] = Query(None, description="Maximum number of entries"),
) -> JSONResponse:
    assignments = ClaimProtocol.get_instance().recent_assignments(limit)
    return JSONResponse({"assignments": [a.model_dump(mode="json") for a in assignments]})
