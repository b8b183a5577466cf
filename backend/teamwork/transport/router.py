"""Transport endpoints: WebSocket push channel and its polling emulation.

This module provides:
    - WebSocket /ws: push channel
    - POST   /api/transport/poll: open a poll session
    - GET    /api/transport/poll/{connection_id}: fetch buffered events
    - POST   /api/transport/poll/{connection_id}/events: send one inbound event
    - DELETE /api/transport/poll/{connection_id}: close a poll session

Both paths authenticate with the session resolver and hand every payload to
the shared EventDispatcher. A poll session belongs to the user who opened
it; another user's session id is answered with 404.
"""
import asyncio
import json
import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from teamwork.config import get_config
from teamwork.directory.service import SessionResolver, require_user_id
from .connections import PollConnection, WebSocketConnection
from .dispatcher import dispatcher
from .events import ErrorEvent
from .hub import hub

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """Push channel.

    The session is read from the ``session`` cookie or the ``token`` query
    parameter. Unauthenticated handshakes are closed with 1008.
    """
    user_id = SessionResolver.get_instance().resolve_user_from_request(websocket)
    if not user_id:
        logger.warning("[WS] Rejecting connection without a valid session")
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    await websocket.accept()
    connection = WebSocketConnection(websocket, user_id)
    await dispatcher.on_connect(connection)
    logger.info(f"[WS] {user_id} connected as {connection.connection_id}")

    try:
        while True:
            text = await websocket.receive_text()
            try:
                data = json.loads(text)
            except json.JSONDecodeError:
                await hub.send_to(
                    connection, ErrorEvent(error="Invalid JSON", code="VALIDATION_ERROR").model_dump()
                )
                continue
            if isinstance(data, dict):
                logger.debug(f"[WS] {user_id} received: type={data.get('type', '?')}")
            await dispatcher.dispatch(connection, data)
    except WebSocketDisconnect:
        logger.info(f"[WS] {user_id} disconnected ({connection.connection_id})")
    finally:
        connection.closed = True
        await dispatcher.on_disconnect(connection)


# =============================================================================
# Poll emulation
# =============================================================================


def _poll_connection(connection_id: str, user_id: str) -> Optional[PollConnection]:
    connection = hub.get(connection_id)
    if not isinstance(connection, PollConnection) or connection.user_id != user_id:
        return None
    return connection


def _unknown_session() -> JSONResponse:
    return JSONResponse({"error": "Unknown poll session", "code": "NOT_FOUND"}, status_code=404)


@router.post("/api/transport/poll")
async def open_poll(user_id: str = Depends(require_user_id)) -> JSONResponse:
    """Open a poll session; the first fetch returns the ``connected`` event."""
    transport_cfg = get_config().transport
    connection = PollConnection(user_id, buffer_size=transport_cfg.poll_buffer_size)
    await dispatcher.on_connect(connection)
    logger.info(f"[Poll] {user_id} opened session {connection.connection_id}")
    return JSONResponse({
        "connectionId": connection.connection_id,
        "pollInterval": transport_cfg.poll_interval_seconds,
    })


@router.get("/api/transport/poll/{connection_id}")
async def fetch_events(connection_id: str, user_id: str = Depends(require_user_id)) -> JSONResponse:
    connection = _poll_connection(connection_id, user_id)
    if connection is None:
        return _unknown_session()
    return JSONResponse({"events": connection.drain()})


@router.post("/api/transport/poll/{connection_id}/events")
async def post_event(
    connection_id: str, request: Request, user_id: str = Depends(require_user_id)
) -> JSONResponse:
    """Apply one inbound event; replies with the events buffered meanwhile."""
    connection = _poll_connection(connection_id, user_id)
    if connection is None:
        return _unknown_session()
    try:
        data = await request.json()
    except json.JSONDecodeError:
        data = None
    await dispatcher.dispatch(connection, data)
    return JSONResponse({"events": connection.drain()})


@router.delete("/api/transport/poll/{connection_id}")
async def close_poll(connection_id: str, user_id: str = Depends(require_user_id)) -> JSONResponse:
    connection = _poll_connection(connection_id, user_id)
    if connection is None:
        return _unknown_session()
    await connection.close()
    await dispatcher.on_disconnect(connection)
    logger.info(f"[Poll] {user_id} closed session {connection_id}")
    return JSONResponse({"ok": True})


async def reap_idle_poll_sessions() -> int:
    """Disconnect poll sessions that have not fetched within the idle timeout."""
    timeout = get_config().transport.poll_idle_timeout_seconds
    idle = hub.idle_poll_connections(time.time(), timeout)
    for connection in idle:
        logger.info(f"[Poll] Reaping idle session {connection.connection_id} of {connection.user_id}")
        await connection.close()
        await dispatcher.on_disconnect(connection)
    return len(idle)


async def run_poll_reaper() -> None:
    """Background task started by the app lifespan."""
    interval = get_config().transport.reap_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            await reap_idle_poll_sessions()
        except Exception as e:
            logger.error(f"[Poll] Reaper pass failed: {e}")
