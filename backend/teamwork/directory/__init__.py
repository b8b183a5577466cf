"""Read-only boundary to the user directory and session store."""

from .schemas import User, UserRole
from .service import SessionResolver, UserDirectory, require_user_id

__all__ = [
    "User",
    "UserRole",
    "UserDirectory",
    "SessionResolver",
    "require_user_id",
]
