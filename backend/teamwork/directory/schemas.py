"""Pydantic schemas for users borrowed from the directory."""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class UserRole(str, Enum):
    """Team role of a user.

    Attributes:
        ADMIN: Team owner; runs distributions and direct assignments.
        SCRAPER: Produces lines for the sorter queue.
        SELLER: Default recipient of distributed batches.
        SALESMAN: Recipient that auto-claims when an announce arrives.
    """
    ADMIN = "admin"
    SCRAPER = "scraper"
    SELLER = "seller"
    SALESMAN = "salesman"


class User(BaseModel):
    """A directory user as seen by the realtime core (read-only)."""
    id: str
    name: str = ""
    role: UserRole
    blocked: bool = False
    ownerId: Optional[str] = Field(default=None, description="Team owner (admin) id")
