"""Tests for the push-first / poll-fallback transport client."""
import asyncio

import httpx
import pytest

from teamwork.main import app
from teamwork.transport.client import (
    PollTransport,
    PushTransport,
    Transport,
    TransportClient,
    TransportState,
    clamp_poll_interval,
)
from teamwork.transport.events import ConnectedEvent, PresenceUpdateEvent


class FakeTransport(Transport):
    """Scripted transport: receive() pops batches, exceptions are raised."""

    def __init__(self, kind, fail_open=False, hang=False, batches=None, fail_send=False):
        self.kind = kind
        self.fail_open = fail_open
        self.hang = hang
        self.fail_send = fail_send
        self.batches = list(batches or [])
        self.sent = []
        self.closed = False

    async def open(self):
        if self.hang:
            await asyncio.sleep(10)
        if self.fail_open:
            raise ConnectionRefusedError("refused")

    async def send(self, event):
        if self.fail_send:
            raise ConnectionResetError("gone")
        self.sent.append(event)

    async def receive(self):
        if self.batches:
            batch = self.batches.pop(0)
            if isinstance(batch, Exception):
                raise batch
            return batch
        await asyncio.sleep(0.01)
        return []

    async def close(self):
        self.closed = True


def make_client(push, poll, **kwargs):
    kwargs.setdefault("heartbeat_interval", 60)
    return TransportClient(
        "http://test", "token",
        push_factory=lambda: push,
        poll_factory=lambda: poll,
        **kwargs,
    )


CONNECTED = {"type": "connected", "userId": "s1", "connectionId": "c1"}
PRESENCE = {"type": "presence:update", "userIds": ["s1"]}


class TestStateMachine:

    @pytest.mark.asyncio
    async def test_push_preferred(self):
        push, poll = FakeTransport("push"), FakeTransport("poll")
        client = make_client(push, poll)
        assert await client.connect() == TransportState.PUSH_ACTIVE
        assert client.transport is push
        await client.close()
        assert client.state == TransportState.CLOSED
        assert push.closed

    @pytest.mark.asyncio
    async def test_push_error_falls_back_without_raising(self):
        push, poll = FakeTransport("push", fail_open=True), FakeTransport("poll")
        client = make_client(push, poll)
        assert await client.connect() == TransportState.POLL_ACTIVE
        assert client.transport is poll
        await client.close()

    @pytest.mark.asyncio
    async def test_push_timeout_falls_back(self):
        push, poll = FakeTransport("push", hang=True), FakeTransport("poll")
        client = make_client(push, poll, connect_timeout=0.05)
        assert await client.connect() == TransportState.POLL_ACTIVE
        await client.close()

    @pytest.mark.asyncio
    async def test_dropped_push_channel_continues_on_poll(self):
        push = FakeTransport("push", batches=[[CONNECTED], ConnectionResetError("dropped")])
        poll = FakeTransport("poll", batches=[[CONNECTED, PRESENCE]])
        client = make_client(push, poll)
        await client.connect()

        received = []
        async for event in client.events():
            received.append(event)
            if len(received) == 3:
                break

        assert client.state == TransportState.POLL_ACTIVE
        assert push.closed
        assert isinstance(received[0], ConnectedEvent)
        assert isinstance(received[2], PresenceUpdateEvent)
        await client.close()

    @pytest.mark.asyncio
    async def test_failed_push_send_is_retried_on_poll(self):
        push = FakeTransport("push", fail_send=True)
        poll = FakeTransport("poll")
        client = make_client(push, poll)
        await client.connect()

        await client.send({"type": "chat:team:send", "text": "hi"})

        assert client.state == TransportState.POLL_ACTIVE
        assert poll.sent == [{"type": "chat:team:send", "text": "hi"}]
        await client.close()

    @pytest.mark.asyncio
    async def test_heartbeats_are_sent_periodically(self):
        push, poll = FakeTransport("push"), FakeTransport("poll")
        client = make_client(push, poll, heartbeat_interval=0.01)
        await client.connect()
        await asyncio.sleep(0.08)
        await client.close()
        assert {"type": "presence:heartbeat"} in push.sent

    @pytest.mark.asyncio
    async def test_send_after_close_raises(self):
        client = make_client(FakeTransport("push"), FakeTransport("poll"))
        await client.connect()
        await client.close()
        with pytest.raises(RuntimeError):
            await client.send({"type": "presence:heartbeat"})


class TestHelpers:

    @pytest.mark.parametrize("given,expected", [(0.5, 2.0), (3, 3.0), (10, 5.0)])
    def test_poll_interval_is_clamped(self, given, expected):
        assert clamp_poll_interval(given) == expected

    def test_push_url_uses_ws_scheme(self):
        assert PushTransport("http://localhost:8000", "abc").url == "ws://localhost:8000/ws?token=abc"
        assert PushTransport("https://dash.example", "abc").url == "wss://dash.example/ws?token=abc"


class TestPollTransportAgainstApp:

    @pytest.mark.asyncio
    async def test_open_send_receive(self, make_user):
        token = make_user("s1")
        http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")
        transport = PollTransport("http://test", token, client=http)

        await transport.open()
        assert transport.connection_id
        await transport.send({"type": "chat:team:send", "text": "over http"})

        events = await transport.receive()
        types = [e["type"] for e in events]
        assert types[:2] == ["connected", "presence:update"]
        assert events[-1]["type"] == "chat:message"
        assert events[-1]["message"]["text"] == "over http"

        await transport.close()
        await http.aclose()
