"""
Occupancy and ordering queries shared by admission, sweeping and stats.

One definition of "occupying a slot" is used everywhere: status is active
AND expires_at is still in the future. The status column alone is never
trusted, because the sweeper flips lapsed rows to expired only on its
next pass.
"""

import math
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from regqueue.models.queue_entry import QueueEntry, EntryStatus
from regqueue.schemas.queue import LanePolicy


def live_active_clause(now: datetime):
    return and_(
        QueueEntry.status == EntryStatus.ACTIVE,
        QueueEntry.expires_at > now,
    )


async def count_live_active(db: AsyncSession, resource_id: str, lane: str, now: datetime) -> int:
    result = await db.execute(
        select(func.count(QueueEntry.id)).where(
            QueueEntry.resource_id == resource_id,
            QueueEntry.lane == lane,
            live_active_clause(now),
        )
    )
    return result.scalar_one()


async def count_waiting_ahead(
    db: AsyncSession,
    resource_id: str,
    lane: str,
    entry: Optional[QueueEntry] = None,
) -> int:
    """
    Waiters in the lane that arrived before ``entry``.

    A session with no entry yet is behind every current waiter. Arrival
    ties are broken by row id so every process computes the same order.
    """
    query = select(func.count(QueueEntry.id)).where(
        QueueEntry.resource_id == resource_id,
        QueueEntry.lane == lane,
        QueueEntry.status == EntryStatus.WAITING,
    )
    if entry is not None:
        query = query.where(
            or_(
                QueueEntry.entered_queue_at < entry.entered_queue_at,
                and_(
                    QueueEntry.entered_queue_at == entry.entered_queue_at,
                    QueueEntry.id < entry.id,
                ),
            )
        )
    result = await db.execute(query)
    return result.scalar_one()


def estimate_wait_minutes(position: int, policy: LanePolicy) -> int:
    """
    Slots turn over every ``session_timeout`` seconds and ``max_concurrent``
    sessions are served per turnover.
    """
    return math.ceil(position * (policy.session_timeout / 60 / policy.max_concurrent))
