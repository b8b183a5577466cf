"""Client side of the transport layer: push first, polling as fallback.

State machine:

    CONNECTING --push opened------------------> PUSH_ACTIVE
    CONNECTING --timeout / error--------------> POLL_ACTIVE
    PUSH_ACTIVE --channel dropped-------------> POLL_ACTIVE
    any --close()-----------------------------> CLOSED

Falling back is never raised to the caller; it is logged and the event
stream simply continues over the poll session. While connected, a
``presence:heartbeat`` is sent every ``heartbeat_interval`` seconds.

Usage:
    client = TransportClient("http://localhost:8000", token)
    await client.connect()
    async for event in client.events():
        ...
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import AsyncIterator, Callable, List, Optional, Union

import httpx
import websockets
from pydantic import BaseModel

from .events import HeartbeatEvent, outbound_adapter

logger = logging.getLogger(__name__)

MIN_POLL_INTERVAL = 2.0
MAX_POLL_INTERVAL = 5.0


class TransportState(str, Enum):
    CONNECTING = "connecting"
    PUSH_ACTIVE = "push_active"
    POLL_ACTIVE = "poll_active"
    CLOSED = "closed"


def clamp_poll_interval(seconds: float) -> float:
    return max(MIN_POLL_INTERVAL, min(MAX_POLL_INTERVAL, float(seconds)))


class Transport(ABC):
    """One way of exchanging events with the server."""

    kind: str = "abstract"

    @abstractmethod
    async def open(self) -> None:
        """Establish the channel; raises on failure."""

    @abstractmethod
    async def send(self, event: dict) -> None:
        ...

    @abstractmethod
    async def receive(self) -> List[dict]:
        """Wait for the next batch of outbound events (may be empty)."""

    @abstractmethod
    async def close(self) -> None:
        ...


class PushTransport(Transport):
    """WebSocket channel at ``/ws`` authenticated with ``?token=``."""

    kind = "push"

    def __init__(self, base_url: str, token: str) -> None:
        ws_base = base_url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
        self.url = f"{ws_base.rstrip('/')}/ws?token={token}"
        self._ws = None

    async def open(self) -> None:
        self._ws = await websockets.connect(self.url)

    async def send(self, event: dict) -> None:
        await self._ws.send(json.dumps(event))

    async def receive(self) -> List[dict]:
        raw = await self._ws.recv()
        return [json.loads(raw)]

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None


class PollTransport(Transport):
    """Poll session against ``/api/transport/poll``.

    Events returned by ``send`` (buffered while the request was handled) are
    kept and handed out by the next ``receive`` without waiting.
    """

    kind = "poll"

    def __init__(
        self,
        base_url: str,
        token: str,
        poll_interval: float = MIN_POLL_INTERVAL,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.poll_interval = clamp_poll_interval(poll_interval)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url)
        self._headers = {"Authorization": f"Bearer {token}"}
        self.connection_id: Optional[str] = None
        self._pending: List[dict] = []

    async def open(self) -> None:
        resp = await self._client.post("/api/transport/poll", headers=self._headers)
        resp.raise_for_status()
        data = resp.json()
        self.connection_id = data["connectionId"]
        if "pollInterval" in data:
            self.poll_interval = clamp_poll_interval(data["pollInterval"])

    async def send(self, event: dict) -> None:
        resp = await self._client.post(
            f"/api/transport/poll/{self.connection_id}/events",
            json=event,
            headers=self._headers,
        )
        resp.raise_for_status()
        self._pending.extend(resp.json().get("events", []))

    async def receive(self) -> List[dict]:
        if self._pending:
            events, self._pending = self._pending, []
            return events
        await asyncio.sleep(self.poll_interval)
        resp = await self._client.get(
            f"/api/transport/poll/{self.connection_id}", headers=self._headers
        )
        resp.raise_for_status()
        return resp.json().get("events", [])

    async def close(self) -> None:
        try:
            if self.connection_id is not None:
                await self._client.delete(
                    f"/api/transport/poll/{self.connection_id}", headers=self._headers
                )
        except httpx.HTTPError as e:
            logger.debug(f"[Client] Poll session close failed: {e}")
        finally:
            self.connection_id = None
            if self._owns_client:
                await self._client.aclose()


class TransportClient:
    """Keeps one live transport and exposes a single event stream."""

    def __init__(
        self,
        base_url: str,
        token: str,
        connect_timeout: float = 5.0,
        poll_interval: float = MIN_POLL_INTERVAL,
        heartbeat_interval: float = 10.0,
        push_factory: Optional[Callable[[], Transport]] = None,
        poll_factory: Optional[Callable[[], Transport]] = None,
    ) -> None:
        self.base_url = base_url
        self.connect_timeout = connect_timeout
        self.poll_interval = clamp_poll_interval(poll_interval)
        self.heartbeat_interval = heartbeat_interval
        self._push_factory = push_factory or (lambda: PushTransport(base_url, token))
        self._poll_factory = poll_factory or (
            lambda: PollTransport(base_url, token, self.poll_interval)
        )
        self.state = TransportState.CLOSED
        self._transport: Optional[Transport] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    @property
    def transport(self) -> Optional[Transport]:
        return self._transport

    async def connect(self) -> TransportState:
        """Open push, or poll if push does not come up within connect_timeout."""
        self.state = TransportState.CONNECTING
        push = self._push_factory()
        try:
            await asyncio.wait_for(push.open(), timeout=self.connect_timeout)
        except Exception as e:
            logger.warning(f"[Client] Push unavailable ({type(e).__name__}: {e}), falling back to polling")
            await self._fall_back_to_poll()
        else:
            self._transport = push
            self.state = TransportState.PUSH_ACTIVE
            logger.info("[Client] Push channel active")

        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        return self.state

    async def _fall_back_to_poll(self) -> None:
        poll = self._poll_factory()
        await poll.open()
        self._transport = poll
        self.state = TransportState.POLL_ACTIVE
        logger.info("[Client] Poll session active")

    async def send(self, event: Union[BaseModel, dict]) -> None:
        if isinstance(event, BaseModel):
            event = event.model_dump()
        if self._transport is None or self.state == TransportState.CLOSED:
            raise RuntimeError("Transport is not connected")
        try:
            await self._transport.send(event)
        except Exception as e:
            if self.state != TransportState.PUSH_ACTIVE:
                raise
            logger.warning(f"[Client] Push send failed ({e}), falling back to polling")
            await self._drop_push()
            await self._transport.send(event)

    async def events(self) -> AsyncIterator:
        """Yield parsed outbound events until close() is called."""
        while self.state in (TransportState.PUSH_ACTIVE, TransportState.POLL_ACTIVE):
            try:
                batch = await self._transport.receive()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self.state == TransportState.CLOSED:
                    break
                if self.state == TransportState.PUSH_ACTIVE:
                    logger.warning(f"[Client] Push channel dropped ({e}), falling back to polling")
                    await self._drop_push()
                else:
                    logger.warning(f"[Client] Poll failed ({e}), retrying in {self.poll_interval}s")
                    await asyncio.sleep(self.poll_interval)
                continue
            for raw in batch:
                yield outbound_adapter.validate_python(raw)

    async def _drop_push(self) -> None:
        push = self._transport
        try:
            await push.close()
        except Exception as e:
            logger.debug(f"[Client] Closing dead push channel: {e}")
        await self._fall_back_to_poll()

    async def _heartbeat_loop(self) -> None:
        while self.state != TransportState.CLOSED:
            await asyncio.sleep(self.heartbeat_interval)
            if self.state == TransportState.CLOSED:
                break
            try:
                await self.send(HeartbeatEvent())
            except Exception as e:
                logger.debug(f"[Client] Heartbeat failed: {e}")

    async def close(self) -> None:
        self.state = TransportState.CLOSED
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
        if self._transport is not None:
            await self._transport.close()
            self._transport = None
        logger.info("[Client] Closed")
