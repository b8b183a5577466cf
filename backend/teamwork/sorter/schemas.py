"""Pydantic schemas for the work queue, distribution and claims."""
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class QueueStatus(str, Enum):
    """Lifecycle of a queue item; status only moves forward."""
    PENDING = "pending"
    ASSIGNED = "assigned"
    SENT = "sent"


class AssignmentStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"


class DistributionTarget(str, Enum):
    ONLINE = "online"
    ALL = "all"


class Assignment(BaseModel):
    """A batch of queue values reserved for (or delivered to) one user.

    Attributes:
        id: Store-generated identifier, increasing with creation order.
        userId: Recipient.
        values: Queue values in batch (FIFO) order.
        status: pending until claimed, sent afterwards.
        createdAt: Unix timestamp of the distribution pass.
        sentAt: Unix timestamp of delivery, None while pending.
    """
    id: int
    userId: str
    values: List[str]
    status: AssignmentStatus
    createdAt: float
    sentAt: Optional[float] = None


class DistributionResult(BaseModel):
    """Outcome of one distribution pass."""
    perUser: int
    total: int
    recipients: List[str]
    assignments: List[Assignment] = Field(default_factory=list)
    remaining: int = 0


# =============================================================================
# REST bodies
#
# Fields are loose; the services validate them and raise ValidationError.
# =============================================================================


class EnqueueInput(BaseModel):
    lines: List[str] = Field(default_factory=list)


class DistributeInput(BaseModel):
    perUser: Any = None
    target: str = DistributionTarget.ONLINE.value
    selectedIds: Optional[List[str]] = None
    roles: Optional[List[str]] = None
    ownerId: Optional[str] = None


class AssignInput(BaseModel):
    userId: str = ""
    count: Any = None
