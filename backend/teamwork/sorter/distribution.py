"""Distribution engine: splits pending queue items across a recipient pool.

A pass resolves the pool, takes up to ``per_user * len(pool)`` of the oldest
pending items in one atomic step, deals them round-robin (item *i* goes to
recipient ``i % len(pool)``) and stores one pending Assignment per recipient
with a non-empty batch. Recipients claim their batch later through the claim
protocol, prompted by an announcement in the ``sorter`` room.
"""
import json
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional

from teamwork.chat.schemas import SORTER_ROOM, SYSTEM_SENDER
from teamwork.chat.service import RoomChannel
from teamwork.config import get_config
from teamwork.directory.schemas import UserRole
from teamwork.directory.service import UserDirectory
from teamwork.errors import NoRecipientsError, ValidationError
from teamwork.presence.service import PresenceTracker
from teamwork.store import Store
from .queue import WorkQueue
from .schemas import Assignment, AssignmentStatus, DistributionResult, DistributionTarget

logger = logging.getLogger(__name__)

ANNOUNCE_TYPE = "sorter:announce"


def round_robin(values: List[str], recipients: List[str]) -> Dict[str, List[str]]:
    """Deal values over recipients in order; batch sizes differ by at most one."""
    batches: Dict[str, List[str]] = {user_id: [] for user_id in recipients}
    for i, value in enumerate(values):
        batches[recipients[i % len(recipients)]].append(value)
    return batches


def parse_positive_int(value, field: str) -> int:
    """Coerce a request field to a positive int or raise ValidationError."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be a positive integer", {"field": field})
    if value < 1:
        raise ValidationError(f"{field} must be a positive integer", {"field": field})
    return value


class DistributionEngine:
    """Resolves the recipient pool and reserves batches for it."""

    _instance: Optional["DistributionEngine"] = None

    def __init__(
        self,
        store: Optional[Store] = None,
        queue: Optional[WorkQueue] = None,
        presence: Optional[PresenceTracker] = None,
        directory: Optional[UserDirectory] = None,
        channel: Optional[RoomChannel] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._queue = queue
        self._presence = presence
        self._directory = directory
        self._channel = channel
        self._clock = clock

    @classmethod
    def get_instance(cls) -> "DistributionEngine":
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
    def presence(self) -> PresenceTracker:
        return self._presence or PresenceTracker.get_instance()

    @property
    def directory(self) -> UserDirectory:
        return self._directory or UserDirectory.get_instance()

    @property
    def channel(self) -> RoomChannel:
        return self._channel or RoomChannel.get_instance()

    # =========================================================================
    # Pool
    # =========================================================================

    def resolve_pool(
        self,
        target: str = DistributionTarget.ONLINE.value,
        selected_ids: Optional[Iterable[str]] = None,
        roles: Optional[Iterable[str]] = None,
        owner_id: Optional[str] = None,
    ) -> List[str]:
        """Eligible, non-blocked recipients in directory order.

        Args:
            target: "online" keeps only users the presence tracker sees online.
            selected_ids: When given, keep only these users.
            roles: Eligible roles; defaults to ``sorter.eligible_roles``.
            owner_id: When given, keep only members of this owner's team.

        Raises:
            ValidationError: Unknown target or role.
        """
        try:
            target = DistributionTarget(target)
        except ValueError:
            raise ValidationError("target must be 'online' or 'all'", {"field": "target"})

        roles = list(roles) if roles else get_config().sorter.eligible_roles
        try:
            roles = [UserRole(r).value for r in roles]
        except ValueError:
            raise ValidationError(f"Unknown role in {roles}", {"field": "roles"})

        pool = [
            u.id for u in self.directory.list_users_by_role(roles, owner_id=owner_id)
            if not u.blocked
        ]
        if target == DistributionTarget.ONLINE:
            online = self.presence.list_online()
            pool = [user_id for user_id in pool if user_id in online]
        if selected_ids is not None:
            selected = set(selected_ids)
            pool = [user_id for user_id in pool if user_id in selected]
        return pool

    # =========================================================================
    # Distribution
    # =========================================================================

    async def distribute(
        self,
        per_user,
        target: str = DistributionTarget.ONLINE.value,
        selected_ids: Optional[Iterable[str]] = None,
        roles: Optional[Iterable[str]] = None,
        owner_id: Optional[str] = None,
    ) -> DistributionResult:
        """Reserve up to per_user pending items for every pool member.

        Raises:
            ValidationError: per_user is not a positive integer, or bad target/roles.
            NoRecipientsError: The resolved pool is empty (queue untouched).
        """
        per_user = parse_positive_int(per_user, "perUser")
        pool = self.resolve_pool(target, selected_ids, roles, owner_id)
        if not pool:
            raise NoRecipientsError()

        taken = self.queue.take_pending(per_user * len(pool))
        if not taken:
            logger.info(f"[Sorter] Distribution over {len(pool)} recipients: queue empty")
            return DistributionResult(perUser=per_user, total=0, recipients=pool)

        now = self._clock()
        assignments = []
        for user_id, batch in round_robin(taken, pool).items():
            if batch:
                assignments.append(self._persist(user_id, batch, now))

        logger.info(
            f"[Sorter] Distributed {len(taken)} values to {len(assignments)} of "
            f"{len(pool)} recipients (perUser={per_user}, target={target})"
        )

        announcement = json.dumps({
            "type": ANNOUNCE_TYPE,
            "perUser": per_user,
            "total": len(taken),
            "ts": now,
        })
        await self.channel.post_message(SORTER_ROOM, SYSTEM_SENDER, announcement)
        await self.queue.broadcast_snapshot()

        return DistributionResult(
            perUser=per_user,
            total=len(taken),
            recipients=pool,
            assignments=assignments,
            remaining=self.queue.count_pending(),
        )

    def _persist(self, user_id: str, batch: List[str], created_at: float) -> Assignment:
        row = self.store.fetchone(
            """
            INSERT INTO sorter_assignments (user_id, batch, status, created_at)
            VALUES (?, ?, ?, ?)
            RETURNING id
            """,
            [user_id, batch, AssignmentStatus.PENDING.value, created_at],
        )
        return Assignment(
            id=row[0],
            userId=user_id,
            values=batch,
            status=AssignmentStatus.PENDING,
            createdAt=created_at,
        )
