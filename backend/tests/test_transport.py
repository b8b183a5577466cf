"""Tests for the server side of the transport layer (WebSocket, poll, hub)."""
import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from teamwork.chat.unread import UnreadTracker
from teamwork.main import app
from teamwork.presence.service import PresenceTracker
from teamwork.transport.connections import PollConnection
from teamwork.transport.dispatcher import EventDispatcher
from teamwork.transport.events import inbound_adapter, DirectSendEvent
from teamwork.transport.hub import ConnectionHub, hub
from teamwork.transport.router import reap_idle_poll_sessions


client = TestClient(app)


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def receive_until(ws, event_type):
    """Read events until one of event_type arrives; returns it."""
    while True:
        data = ws.receive_json()
        if data["type"] == event_type:
            return data


def event_types(events):
    return [e["type"] for e in events]


class TestEvents:

    def test_inbound_union_dispatches_on_type(self):
        event = inbound_adapter.validate_python(
            {"type": "chat:dm:send", "toUserId": "u2", "text": "hi"}
        )
        assert isinstance(event, DirectSendEvent)

    def test_unknown_type_rejected(self):
        from pydantic import ValidationError as PydanticValidationError

        with pytest.raises(PydanticValidationError):
            inbound_adapter.validate_python({"type": "chat:delete"})


class TestWebSocket:

    def test_rejects_without_session(self):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws") as ws:
                ws.receive_json()
        assert exc.value.code == 1008

    def test_connect_sends_connected_then_presence(self, make_user):
        token = make_user("s1")
        with client.websocket_connect(f"/ws?token={token}") as ws:
            connected = ws.receive_json()
            assert connected["type"] == "connected"
            assert connected["userId"] == "s1"
            assert connected["connectionId"]

            presence = ws.receive_json()
            assert presence == {"type": "presence:update", "userIds": ["s1"]}

    def test_team_message_reaches_both_clients(self, make_user):
        t1 = make_user("s1")
        t2 = make_user("s2")
        with client.websocket_connect(f"/ws?token={t1}") as ws1, \
             client.websocket_connect(f"/ws?token={t2}") as ws2:
            receive_until(ws1, "connected")
            receive_until(ws2, "connected")

            ws1.send_json({"type": "chat:team:send", "text": "hello team"})

            m1 = receive_until(ws1, "chat:message")
            m2 = receive_until(ws2, "chat:message")
            assert m1 == m2
            assert m1["message"]["roomId"] == "team"
            assert m1["message"]["senderId"] == "s1"

    def test_dm_reaches_recipient_and_counts_unread(self, make_user):
        t1 = make_user("s1")
        t2 = make_user("s2")
        with client.websocket_connect(f"/ws?token={t1}") as ws1, \
             client.websocket_connect(f"/ws?token={t2}") as ws2:
            receive_until(ws1, "connected")
            receive_until(ws2, "connected")

            ws1.send_json({"type": "chat:dm:send", "toUserId": "s2", "text": "psst"})
            delivered = receive_until(ws2, "chat:message")
            assert delivered["message"]["roomId"] == "dm:s1:s2"

            # Events of one connection are handled in order, so the error
            # reply to this follow-up means the DM fan-out has finished.
            ws1.send_json({"type": "chat:join"})
            receive_until(ws1, "error")

            assert UnreadTracker.get_instance().get_count("s2", "dm:s1:s2") == 1
            assert UnreadTracker.get_instance().get_count("s1", "dm:s1:s2") == 0

    def test_invalid_event_returns_error_and_keeps_connection(self, make_user):
        token = make_user("s1")
        with client.websocket_connect(f"/ws?token={token}") as ws:
            receive_until(ws, "connected")

            ws.send_json({"type": "chat:team:send", "text": "   "})
            error = receive_until(ws, "error")
            assert error["code"] == "VALIDATION_ERROR"

            ws.send_json({"type": "bogus"})
            assert receive_until(ws, "error")["code"] == "VALIDATION_ERROR"

            ws.send_text("not json")
            assert receive_until(ws, "error")["error"] == "Invalid JSON"

            ws.send_json({"type": "chat:team:send", "text": "still here"})
            assert receive_until(ws, "chat:message")["message"]["text"] == "still here"

    def test_disconnect_marks_user_offline(self, make_user):
        token = make_user("s1")
        with client.websocket_connect(f"/ws?token={token}") as ws:
            receive_until(ws, "connected")
            assert "s1" in PresenceTracker.get_instance().list_online()
        assert "s1" not in PresenceTracker.get_instance().list_online()
        assert not hub.is_connected("s1")


class TestPollTransport:

    def test_open_requires_session(self):
        assert client.post("/api/transport/poll").status_code == 401

    def test_open_fetch_and_send(self, make_user):
        token = make_user("s1")
        opened = client.post("/api/transport/poll", headers=auth(token)).json()
        cid = opened["connectionId"]
        assert opened["pollInterval"] == 2

        events = client.get(f"/api/transport/poll/{cid}", headers=auth(token)).json()["events"]
        assert event_types(events) == ["connected", "presence:update"]
        assert events[0]["connectionId"] == cid

        # Drained: nothing new until something happens
        assert client.get(f"/api/transport/poll/{cid}", headers=auth(token)).json() == {"events": []}

        reply = client.post(
            f"/api/transport/poll/{cid}/events",
            json={"type": "chat:team:send", "text": "via poll"},
            headers=auth(token),
        ).json()
        assert event_types(reply["events"]) == ["chat:message"]
        assert reply["events"][0]["message"]["text"] == "via poll"

    def test_errors_come_back_as_events(self, make_user):
        token = make_user("s1")
        cid = client.post("/api/transport/poll", headers=auth(token)).json()["connectionId"]
        reply = client.post(
            f"/api/transport/poll/{cid}/events", json={"type": "chat:join"}, headers=auth(token)
        ).json()
        assert reply["events"][-1]["type"] == "error"
        assert reply["events"][-1]["code"] == "VALIDATION_ERROR"

    def test_session_belongs_to_its_user(self, make_user):
        t1 = make_user("s1")
        t2 = make_user("s2")
        cid = client.post("/api/transport/poll", headers=auth(t1)).json()["connectionId"]
        response = client.get(f"/api/transport/poll/{cid}", headers=auth(t2))
        assert response.status_code == 404

    def test_push_and_poll_clients_share_rooms(self, make_user):
        t1 = make_user("s1")
        t2 = make_user("s2")
        cid = client.post("/api/transport/poll", headers=auth(t2)).json()["connectionId"]
        with client.websocket_connect(f"/ws?token={t1}") as ws:
            receive_until(ws, "connected")
            ws.send_json({"type": "chat:team:send", "text": "push to poll"})
            receive_until(ws, "chat:message")

        events = client.get(f"/api/transport/poll/{cid}", headers=auth(t2)).json()["events"]
        messages = [e for e in events if e["type"] == "chat:message"]
        assert messages[0]["message"]["text"] == "push to poll"

    def test_close_marks_offline(self, make_user):
        token = make_user("s1")
        cid = client.post("/api/transport/poll", headers=auth(token)).json()["connectionId"]
        assert client.delete(f"/api/transport/poll/{cid}", headers=auth(token)).json() == {"ok": True}
        assert "s1" not in PresenceTracker.get_instance().list_online()
        assert client.get(f"/api/transport/poll/{cid}", headers=auth(token)).status_code == 404


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_connect_subscribes_team_and_system_dm(self):
        dispatcher = EventDispatcher()
        conn = PollConnection("s1")
        await dispatcher.on_connect(conn)
        assert conn.rooms == {"team", "sorter", "dm:s1:system"}
        assert conn.active_room == "team"

    @pytest.mark.asyncio
    async def test_other_live_connection_keeps_user_online(self):
        dispatcher = EventDispatcher()
        first = PollConnection("s1")
        second = PollConnection("s1")
        await dispatcher.on_connect(first)
        await dispatcher.on_connect(second)

        await dispatcher.on_disconnect(first)
        assert "s1" in PresenceTracker.get_instance().list_online()

        await dispatcher.on_disconnect(second)
        assert "s1" not in PresenceTracker.get_instance().list_online()

    @pytest.mark.asyncio
    async def test_reaper_disconnects_idle_poll_sessions(self):
        dispatcher = EventDispatcher()
        idle = PollConnection("s1")
        fresh = PollConnection("s2")
        await dispatcher.on_connect(idle)
        await dispatcher.on_connect(fresh)
        idle.last_poll = time.time() - 120

        reaped = await reap_idle_poll_sessions()

        assert reaped == 1
        assert hub.get(idle.connection_id) is None
        assert hub.get(fresh.connection_id) is fresh
        assert PresenceTracker.get_instance().list_online() == {"s2"}


class TestHub:

    @pytest.mark.asyncio
    async def test_broadcast_to_room_and_cleanup(self, connect):
        alive = connect("s1", "team")
        dead = connect("s2", "team", alive=False)
        outside = connect("s3")

        await hub.broadcast({"type": "sorter:update", "pending": []}, "team")

        assert alive.of_type("sorter:update") == [{"type": "sorter:update", "pending": []}]
        assert outside.events == []
        assert hub.get(dead.connection_id) is None

    @pytest.mark.asyncio
    async def test_dropped_connection_marks_user_offline(self, connect):
        presence = PresenceTracker.get_instance()
        presence.touch("s2")
        connect("s1", "team")
        connect("s2", "team", alive=False)

        await hub.broadcast({"type": "sorter:update", "pending": []}, "team")

        assert "s2" not in presence.list_online()

    @pytest.mark.asyncio
    async def test_dropped_connection_keeps_user_with_other_connection_online(self, connect):
        presence = PresenceTracker.get_instance()
        presence.touch("s2")
        connect("s2", "team", alive=False)
        connect("s2")

        await hub.broadcast({"type": "sorter:update", "pending": []}, "team")

        assert "s2" in presence.list_online()

    def test_unregister_reports_last_connection(self):
        local = ConnectionHub()
        a = PollConnection("s1")
        b = PollConnection("s1")
        local.register(a)
        local.register(b)
        assert local.unregister(a) is False
        assert local.unregister(b) is True

    @pytest.mark.asyncio
    async def test_poll_buffer_drops_oldest_when_full(self):
        conn = PollConnection("s1", buffer_size=2)
        for i in range(3):
            await conn.send({"type": "sorter:update", "pending": [str(i)]})
        assert [e["pending"] for e in conn.drain()] == [["1"], ["2"]]
        assert conn.dropped == 1
