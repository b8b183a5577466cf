"""Shared test fixtures and configuration for backend tests.

Every test runs against a fresh in-memory DuckDB store, an empty connection
hub and freshly created service singletons.
"""
from typing import List

import pytest
from fastapi.testclient import TestClient

from teamwork.chat.service import RoomChannel
from teamwork.chat.unread import UnreadTracker
from teamwork.config import StorageSettings, TeamworkConfig, set_config
from teamwork.directory.schemas import UserRole
from teamwork.directory.service import SessionResolver, UserDirectory
from teamwork.main import app
from teamwork.presence.service import PresenceTracker
from teamwork.sorter.claims import ClaimProtocol
from teamwork.sorter.distribution import DistributionEngine
from teamwork.sorter.queue import WorkQueue
from teamwork.store import Store
from teamwork.transport.connections import Connection
from teamwork.transport.hub import hub

_SINGLETONS = (
    UserDirectory,
    SessionResolver,
    PresenceTracker,
    RoomChannel,
    UnreadTracker,
    WorkQueue,
    DistributionEngine,
    ClaimProtocol,
)


class RecordingConnection(Connection):
    """In-process connection that keeps every event it is sent."""

    kind = "test"

    def __init__(self, user_id: str, alive: bool = True) -> None:
        super().__init__(user_id)
        self.alive = alive
        self.events: List[dict] = []

    async def send(self, event: dict) -> bool:
        if not self.alive:
            return False
        self.events.append(event)
        return True

    def of_type(self, event_type: str) -> List[dict]:
        return [e for e in self.events if e.get("type") == event_type]


@pytest.fixture(autouse=True)
def teamwork_state():
    """Use an in-memory store and clean singletons for each test."""
    set_config(TeamworkConfig(storage=StorageSettings(db_path=":memory:")))
    Store.reset_instance()
    Store.get_instance(db_path=":memory:")
    for service in _SINGLETONS:
        service.reset_instance()
    hub.clear()
    yield
    hub.clear()
    for service in _SINGLETONS:
        service.reset_instance()
    Store.reset_instance()
    set_config(None)


@pytest.fixture
def api_client():
    """Provide a TestClient for the main FastAPI app."""
    return TestClient(app)


@pytest.fixture
def make_user():
    """Create a directory user and return a session token for it."""
    def _make(user_id, role=UserRole.SELLER, *, blocked=False, owner_id=None, name=None):
        UserDirectory.get_instance().add_user(
            user_id, name or user_id, role, blocked=blocked, owner_id=owner_id
        )
        return SessionResolver.get_instance().issue_session(user_id)
    return _make


@pytest.fixture
def connect():
    """Register a RecordingConnection on the hub, subscribed to the given rooms."""
    def _connect(user_id, *rooms, viewing=None, alive=True):
        conn = RecordingConnection(user_id, alive=alive)
        hub.register(conn)
        for room_id in rooms:
            hub.subscribe(conn, room_id)
        if viewing is not None:
            hub.view(conn, viewing)
        return conn
    return _connect