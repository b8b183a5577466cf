"""User directory and session resolver.

Both are owned by the auth / user-management side of the dashboard; the
realtime core only reads from them. ``add_user`` and ``issue_session`` exist
so seed scripts and tests can populate the tables the collaborator owns.
"""
import logging
import secrets
import time
from typing import Iterable, List, Optional

from starlette.requests import HTTPConnection, Request

from teamwork.errors import NotAuthenticatedError
from teamwork.store import Store, placeholders
from .schemas import User, UserRole

logger = logging.getLogger(__name__)

SESSION_COOKIE = "session"

_USER_COLUMNS = "id, name, role, blocked, owner_id"


def _row_to_user(row: tuple) -> User:
    return User(id=row[0], name=row[1], role=UserRole(row[2]), blocked=bool(row[3]), ownerId=row[4])


class UserDirectory:
    """Lookups against the ``users`` table."""

    _instance: Optional["UserDirectory"] = None

    def __init__(self, store: Optional[Store] = None) -> None:
        self._store = store

    @classmethod
    def get_instance(cls) -> "UserDirectory":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        cls._instance = None

    @property
    def store(self) -> Store:
        return self._store or Store.get_instance()

    def lookup_user(self, user_id: str) -> Optional[User]:
        row = self.store.fetchone(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", [user_id])
        return _row_to_user(row) if row else None

    def list_users(self, owner_id: Optional[str] = None) -> List[User]:
        if owner_id is None:
            rows = self.store.fetchall(
                f"SELECT {_USER_COLUMNS} FROM users ORDER BY created_at ASC, id ASC"
            )
        else:
            rows = self.store.fetchall(
                f"SELECT {_USER_COLUMNS} FROM users WHERE owner_id = ? OR id = ? "
                "ORDER BY created_at ASC, id ASC",
                [owner_id, owner_id],
            )
        return [_row_to_user(r) for r in rows]

    def list_users_by_role(
        self, roles: Iterable[str], owner_id: Optional[str] = None
    ) -> List[User]:
        """List users holding any of *roles*, oldest account first.

        Blocked users are included; callers decide whether they are eligible.
        """
        roles = [UserRole(r).value for r in roles]
        if not roles:
            return []
        sql = (
            f"SELECT {_USER_COLUMNS} FROM users "
            f"WHERE role IN ({placeholders(len(roles))})"
        )
        params: list = list(roles)
        if owner_id is not None:
            sql += " AND owner_id = ?"
            params.append(owner_id)
        sql += " ORDER BY created_at ASC, id ASC"
        return [_row_to_user(r) for r in self.store.fetchall(sql, params)]

    def add_user(
        self,
        user_id: str,
        name: str,
        role: UserRole,
        *,
        blocked: bool = False,
        owner_id: Optional[str] = None,
    ) -> User:
        self.store.execute(
            """
            INSERT INTO users (id, name, role, blocked, owner_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                name = EXCLUDED.name,
                role = EXCLUDED.role,
                blocked = EXCLUDED.blocked,
                owner_id = EXCLUDED.owner_id
            """,
            [user_id, name, UserRole(role).value, blocked, owner_id, time.time()],
        )
        return User(id=user_id, name=name, role=UserRole(role), blocked=blocked, ownerId=owner_id)


class SessionResolver:
    """Maps a request (HTTP or WebSocket) to the authenticated user id.

    The token is read from the ``session`` cookie, an ``Authorization:
    Bearer`` header, or a ``token`` query parameter (browsers cannot set
    headers on a WebSocket handshake).
    """

    _instance: Optional["SessionResolver"] = None

    def __init__(self, store: Optional[Store] = None) -> None:
        self._store = store

    @classmethod
    def get_instance(cls) -> "SessionResolver":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        cls._instance = None

    @property
    def store(self) -> Store:
        return self._store or Store.get_instance()

    @staticmethod
    def _extract_token(conn: HTTPConnection) -> Optional[str]:
        token = conn.cookies.get(SESSION_COOKIE)
        if token:
            return token
        auth = conn.headers.get("authorization", "")
        if auth.lower().startswith("bearer "):
            return auth[7:].strip() or None
        return conn.query_params.get("token") or None

    def resolve_user_from_request(self, conn: HTTPConnection) -> Optional[str]:
        token = self._extract_token(conn)
        if not token:
            return None
        row = self.store.fetchone("SELECT user_id FROM sessions WHERE token = ?", [token])
        return row[0] if row else None

    def issue_session(self, user_id: str) -> str:
        token = secrets.token_urlsafe(24)
        self.store.execute(
            "INSERT INTO sessions (token, user_id, created_at) VALUES (?, ?, ?)",
            [token, user_id, time.time()],
        )
        return token


def require_user_id(request: Request) -> str:
    """FastAPI dependency: the session user id, or NotAuthenticatedError."""
    user_id = SessionResolver.get_instance().resolve_user_from_request(request)
    if not user_id:
        raise NotAuthenticatedError()
    return user_id
