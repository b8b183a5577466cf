"""Work queue of opaque text lines ("numbers") awaiting distribution.

Values are unique across the whole queue (exact, case-sensitive match);
re-adding a known value is a no-op whatever its status. Items move
``pending -> assigned -> sent`` or straight ``pending -> sent``, never back.

The take-and-mark helpers are single conditional UPDATE statements, so two
distribution passes (or a pass and a direct assignment) racing on the same
items can never both take one of them.
"""
import logging
import time
from typing import Callable, Iterable, List, Optional

from teamwork.store import Store, placeholders
from teamwork.transport.events import SorterUpdateEvent
from teamwork.transport.hub import ConnectionHub, hub as default_hub
from .schemas import QueueStatus

logger = logging.getLogger(__name__)


def normalize_lines(lines: Iterable[str]) -> List[str]:
    """Trim, drop empty lines and dedupe, keeping first-seen order."""
    seen = set()
    result = []
    for line in lines:
        value = str(line).strip()
        if value and value not in seen:
            seen.add(value)
            result.append(value)
    return result


class WorkQueue:
    """FIFO queue stored in ``sorter_queue`` (ordered by insertion sequence)."""

    _instance: Optional["WorkQueue"] = None

    def __init__(
        self,
        store: Optional[Store] = None,
        hub: Optional[ConnectionHub] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._hub = hub
        self._clock = clock

    @classmethod
    def get_instance(cls) -> "WorkQueue":
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
    def hub(self) -> ConnectionHub:
        return self._hub or default_hub

    # =========================================================================
    # Producers
    # =========================================================================

    async def enqueue(self, lines: Iterable[str]) -> int:
        """Insert new values as pending and broadcast the snapshot.

        Returns:
            Number of values actually inserted.
        """
        values = normalize_lines(lines)
        inserted = self.add(values)
        logger.info(f"[Sorter] Enqueued {inserted} of {len(values)} values")
        await self.broadcast_snapshot()
        return inserted

    def add(self, values: List[str]) -> int:
        if not values:
            return 0
        now = self._clock()
        with self.store.lock:
            existing = {
                r[0] for r in self.store.fetchall(
                    f"SELECT value FROM sorter_queue WHERE value IN ({placeholders(len(values))})",
                    values,
                )
            }
            new_values = [v for v in values if v not in existing]
            # executemany keeps row order, so seq follows first-seen order
            self.store.executemany(
                """
                INSERT INTO sorter_queue (value, status, created_at) VALUES (?, 'pending', ?)
                ON CONFLICT (value) DO NOTHING
                """,
                [(v, now) for v in new_values],
            )
        return len(new_values)

    async def clear_pending(self) -> int:
        """Delete every item that is not sent yet. Irreversible."""
        with self.store.lock:
            row = self.store.fetchone(
                "SELECT COUNT(*) FROM sorter_queue WHERE status != ?", [QueueStatus.SENT.value]
            )
            self.store.execute(
                "DELETE FROM sorter_queue WHERE status != ?", [QueueStatus.SENT.value]
            )
        removed = int(row[0]) if row else 0
        logger.info(f"[Sorter] Cleared {removed} unsent values")
        await self.broadcast_snapshot()
        return removed

    # =========================================================================
    # Reads
    # =========================================================================

    def list_pending(self) -> List[str]:
        """Values awaiting distribution, oldest first."""
        rows = self.store.fetchall(
            "SELECT value FROM sorter_queue WHERE status = ? ORDER BY seq ASC",
            [QueueStatus.PENDING.value],
        )
        return [r[0] for r in rows]

    def list_unsent(self) -> List[str]:
        """Values not delivered yet (pending or assigned), oldest first."""
        rows = self.store.fetchall(
            "SELECT value FROM sorter_queue WHERE status != ? ORDER BY seq ASC",
            [QueueStatus.SENT.value],
        )
        return [r[0] for r in rows]

    def count_pending(self) -> int:
        row = self.store.fetchone(
            "SELECT COUNT(*) FROM sorter_queue WHERE status = ?", [QueueStatus.PENDING.value]
        )
        return int(row[0]) if row else 0

    def status_of(self, value: str) -> Optional[QueueStatus]:
        row = self.store.fetchone("SELECT status FROM sorter_queue WHERE value = ?", [value])
        return QueueStatus(row[0]) if row else None

    # =========================================================================
    # Transitions
    # =========================================================================

    def take_pending(self, count: int, status: QueueStatus = QueueStatus.ASSIGNED) -> List[str]:
        """Atomically move up to count oldest pending items to status.

        Only strictly pending items are taken; the returned values are in
        queue order.
        """
        if count < 1:
            return []
        now = self._clock()
        if status == QueueStatus.SENT:
            set_clause = "status = 'sent', assigned_at = ?, sent_at = ?"
            params = [now, now]
        else:
            set_clause = "status = 'assigned', assigned_at = ?"
            params = [now]
        rows = self.store.fetchall(
            f"""
            UPDATE sorter_queue SET {set_clause}
            WHERE value IN (
                SELECT value FROM sorter_queue
                WHERE status = 'pending'
                ORDER BY seq ASC
                LIMIT ?
            )
            AND status = 'pending'
            RETURNING value, seq
            """,
            params + [count],
        )
        return [value for value, _ in sorted(rows, key=lambda r: r[1])]

    def mark_sent(self, values: List[str]) -> None:
        if not values:
            return
        now = self._clock()
        self.store.execute(
            f"""
            UPDATE sorter_queue SET status = 'sent', sent_at = ?
            WHERE value IN ({placeholders(len(values))}) AND status != 'sent'
            """,
            [now] + list(values),
        )

    async def broadcast_snapshot(self) -> None:
        event = SorterUpdateEvent(pending=self.list_pending())
        await self.hub.broadcast(event.model_dump())
