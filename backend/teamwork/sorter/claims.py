"""Assignment claim protocol.

An Assignment has a single transition, ``pending -> sent``. ``claim`` performs
it with one conditional UPDATE that selects the user's oldest pending
assignment and flips it only if it is still pending, so of two concurrent
claims exactly one gets the batch and the other sees NoAssignmentError.

Delivery of a batch (claimed or directly assigned) is a message from
``system`` into the user's system DM room whose text is the values joined by
newlines, followed by a refreshed pending snapshot.
"""
import logging
import time
from typing import Callable, List, Optional, Tuple

from teamwork.chat.schemas import SYSTEM_SENDER, Message, resolve_dm_room
from teamwork.chat.service import RoomChannel
from teamwork.config import get_config
from teamwork.directory.service import UserDirectory
from teamwork.errors import NoAssignmentError, ValidationError
from teamwork.store import Store
from .distribution import parse_positive_int
from .queue import WorkQueue
from .schemas import Assignment, AssignmentStatus, QueueStatus

logger = logging.getLogger(__name__)

_ASSIGNMENT_COLUMNS = "id, user_id, batch, status, created_at, sent_at"


def _row_to_assignment(row: tuple) -> Assignment:
    return Assignment(
        id=row[0],
        userId=row[1],
        values=list(row[2] or []),
        status=AssignmentStatus(row[3]),
        createdAt=row[4],
        sentAt=row[5],
    )


class ClaimProtocol:
    """Turns reserved batches into delivered direct messages."""

    _instance: Optional["ClaimProtocol"] = None

    def __init__(
        self,
        store: Optional[Store] = None,
        queue: Optional[WorkQueue] = None,
        channel: Optional[RoomChannel] = None,
        directory: Optional[UserDirectory] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._queue = queue
        self._channel = channel
        self._directory = directory
        self._clock = clock

    @classmethod
    def get_instance(cls) -> "ClaimProtocol":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        cls._instance = None

    @property
    def store(self) -> Store:
        return self._store or Store.get_instance()

    @property
    def queue(self) -> WorkQueue:
        return self._queue or WorkQueue.get_instance()

    @property
    def channel(self) -> RoomChannel:
        return self._channel or RoomChannel.get_instance()

    @property
    def directory(self) -> UserDirectory:
        return self._directory or UserDirectory.get_instance()

    # =========================================================================
    # Claim
    # =========================================================================

    def take_assignment(self, user_id: str) -> Optional[Tuple[int, List[str]]]:
        """Flip the user's oldest pending assignment to sent.

        Returns:
            (assignment id, values), or None when nothing is pending.
        """
        row = self.store.fetchone(
            """
            UPDATE sorter_assignments SET status = 'sent', sent_at = ?
            WHERE id = (
                SELECT id FROM sorter_assignments
                WHERE user_id = ? AND status = 'pending'
                ORDER BY id ASC
                LIMIT 1
            )
            AND status = 'pending'
            RETURNING id, batch
            """,
            [self._clock(), user_id],
        )
        if row is None:
            return None
        return row[0], list(row[1] or [])

    async def claim(self, user_id: str) -> List[str]:
        """Claim the oldest pending batch of user_id and deliver it.

        Raises:
            NoAssignmentError: Nothing pending for the user.
        """
        # The assignment and its queue items flip to sent together or not at all
        with self.store.transaction():
            taken = self.take_assignment(user_id)
            if taken is not None:
                self.queue.mark_sent(taken[1])
        if taken is None:
            raise NoAssignmentError()
        assignment_id, values = taken
        logger.info(f"[Sorter] {user_id} claimed assignment {assignment_id} ({len(values)} values)")

        await self._deliver(user_id, values)
        await self.queue.broadcast_snapshot()
        return values

    # =========================================================================
    # Direct assignment
    # =========================================================================

    async def assign_direct(self, user_id: str, count) -> List[str]:
        """Send count oldest pending values to user_id right away.

        A sent Assignment is recorded for the audit list. An empty queue
        yields [] and no message.

        Raises:
            ValidationError: count is not a positive integer, or unknown user.
        """
        count = parse_positive_int(count, "count")
        user_id = (user_id or "").strip()
        if not user_id or self.directory.lookup_user(user_id) is None:
            raise ValidationError("Unknown user", {"field": "userId"})

        values = self.queue.take_pending(count, QueueStatus.SENT)
        if not values:
            logger.info(f"[Sorter] Direct assign to {user_id}: queue empty")
            return []

        now = self._clock()
        self.store.execute(
            """
            INSERT INTO sorter_assignments (user_id, batch, status, created_at, sent_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            [user_id, values, AssignmentStatus.SENT.value, now, now],
        )
        logger.info(f"[Sorter] Directly assigned {len(values)} values to {user_id}")

        await self._deliver(user_id, values)
        await self.queue.broadcast_snapshot()
        return values

    async def _deliver(self, user_id: str, values: List[str]) -> Message:
        room_id = resolve_dm_room(SYSTEM_SENDER, user_id)
        return await self.channel.post_message(room_id, SYSTEM_SENDER, "\n".join(values))

    # =========================================================================
    # Audit
    # =========================================================================

    def list_assignments(
        self, user_id: str, status: Optional[str] = None
    ) -> List[Assignment]:
        """Assignments of user_id, oldest first, optionally filtered by status."""
        sql = f"SELECT {_ASSIGNMENT_COLUMNS} FROM sorter_assignments WHERE user_id = ?"
        params: list = [user_id]
        if status is not None:
            try:
                status = AssignmentStatus(status).value
            except ValueError:
                raise ValidationError("status must be 'pending' or 'sent'", {"field": "status"})
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY id ASC"
        return [_row_to_assignment(r) for r in self.store.fetchall(sql, params)]

    def recent_assignments(self, limit: Optional[int] = None) -> List[Assignment]:
        """Most recent assignments across all users, newest first."""
        if limit is None:
            limit = get_config().sorter.recent_limit
        limit = parse_positive_int(limit, "limit")
        rows = self.store.fetchall(
            f"SELECT {_ASSIGNMENT_COLUMNS} FROM sorter_assignments ORDER BY id DESC LIMIT ?",
            [limit],
        )
        return [_row_to_assignment(r) for r in rows]
