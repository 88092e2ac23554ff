"""
Locking capacity guard - serializes admissions per resource.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from regqueue.models.queue_settings import QueueSettings
from regqueue.services.interfaces.capacity_guard import CapacityGuard


class LockingGuard(CapacityGuard):
    """
    SELECT ... FOR UPDATE on the resource's settings row.

    Every admission and promotion for the resource waits on the same row
    lock until its transaction commits, so count + admit is atomic and the
    cap is strict. Lanes of one resource share the lock.

    SQLite ignores FOR UPDATE; it already serializes writers.

    Use when:
    - Caps must never be exceeded (downstream hard limits)
    - Per-resource admission rate is modest
    """

    name = "locking"

    async def acquire(self, db: AsyncSession, resource_id: str, lane: str) -> None:
        await db.execute(
            select(QueueSettings.id)
            .where(QueueSettings.resource_id == resource_id)
            .with_for_update()
        )
