"""Tests for the sorter work queue."""
import pytest
from fastapi.testclient import TestClient

from teamwork.main import app
from teamwork.sorter.queue import WorkQueue, normalize_lines
from teamwork.sorter.schemas import QueueStatus


client = TestClient(app)


def auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def queue():
    return WorkQueue.get_instance()


class TestNormalizeLines:

    def test_trims_drops_empty_and_dedupes_in_order(self):
        assert normalize_lines([" b ", "a", "", "a", "  ", "c", "b"]) == ["b", "a", "c"]

    def test_dedupe_is_case_sensitive(self):
        assert normalize_lines(["A", "a"]) == ["A", "a"]


class TestEnqueue:

    @pytest.mark.asyncio
    async def test_scenario_dedupes_within_call(self, queue):
        inserted = await queue.enqueue(["b", "a", "a", "c"])
        assert inserted == 3
        assert queue.list_pending() == ["b", "a", "c"]

    @pytest.mark.asyncio
    async def test_dedupes_across_calls(self, queue):
        await queue.enqueue(["1", "2"])
        inserted = await queue.enqueue(["2", "3", "1"])
        assert inserted == 1
        assert queue.list_pending() == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_sent_values_are_not_requeued(self, queue):
        await queue.enqueue(["x", "y"])
        taken = queue.take_pending(1)
        queue.mark_sent(taken)

        assert await queue.enqueue(["x"]) == 0
        assert queue.status_of("x") == QueueStatus.SENT
        assert queue.list_pending() == ["y"]

    @pytest.mark.asyncio
    async def test_broadcasts_snapshot_to_everyone(self, queue, connect):
        conn = connect("anyone")
        await queue.enqueue(["9", "8"])
        assert conn.of_type("sorter:update")[-1] == {"type": "sorter:update", "pending": ["9", "8"]}


class TestTakeAndClear:

    @pytest.mark.asyncio
    async def test_take_pending_marks_oldest_assigned(self, queue):
        await queue.enqueue(["1", "2", "3"])
        assert queue.take_pending(2) == ["1", "2"]
        assert queue.status_of("1") == QueueStatus.ASSIGNED
        assert queue.list_pending() == ["3"]
        assert queue.list_unsent() == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_take_never_retakes(self, queue):
        await queue.enqueue(["1", "2", "3"])
        first = queue.take_pending(2)
        second = queue.take_pending(2)
        assert first == ["1", "2"]
        assert second == ["3"]
        assert queue.take_pending(5) == []

    @pytest.mark.asyncio
    async def test_take_straight_to_sent(self, queue):
        await queue.enqueue(["1", "2"])
        assert queue.take_pending(1, QueueStatus.SENT) == ["1"]
        assert queue.status_of("1") == QueueStatus.SENT

    @pytest.mark.asyncio
    async def test_clear_pending_keeps_sent(self, queue, connect):
        conn = connect("anyone")
        await queue.enqueue(["1", "2", "3"])
        queue.mark_sent(queue.take_pending(1))

        removed = await queue.clear_pending()

        assert removed == 2
        assert queue.list_unsent() == []
        assert queue.status_of("1") == QueueStatus.SENT
        assert conn.of_type("sorter:update")[-1]["pending"] == []


class TestQueueAPI:

    def test_add_and_list(self, make_user):
        token = make_user("scraper1", "scraper")
        response = client.post(
            "/api/sorter", json={"lines": ["b", "a", "a", "c"]}, headers=auth(token)
        )
        assert response.json() == {"ok": True, "inserted": 3}
        assert client.get("/api/sorter").json() == {"pending": ["b", "a", "c"]}

    def test_listing_excludes_assigned_unless_unsent_requested(self, queue, make_user):
        token = make_user("scraper1", "scraper")
        client.post("/api/sorter", json={"lines": ["1", "2", "3"]}, headers=auth(token))
        queue.take_pending(1)
        queue.mark_sent(queue.take_pending(1))

        assert client.get("/api/sorter").json() == {"pending": ["3"]}
        assert client.get("/api/sorter?unsent=true").json() == {"pending": ["1", "3"]}

    def test_add_requires_session(self):
        assert client.post("/api/sorter", json={"lines": ["1"]}).status_code == 401

    def test_clear(self, make_user):
        token = make_user("admin1", "admin")
        client.post("/api/sorter", json={"lines": ["1", "2"]}, headers=auth(token))
        response = client.post("/api/sorter/clear", headers=auth(token))
        assert response.json() == {"ok": True, "removed": 2}
        assert client.get("/api/sorter").json() == {"pending": []}
