"""
Queue statistics for the admin monitoring dashboard.

Active counts use the same live predicate as admission (occupancy.py), so
the dashboard never shows a lane as full while admission still lets
sessions in, or the other way round.
"""

from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from regqueue.core.clock import utcnow
from regqueue.core.metrics import record_lane_occupancy
from regqueue.models.queue_entry import QueueEntry, EntryStatus
from regqueue.schemas.queue import LaneStats, QueueStats
from regqueue.services.occupancy import live_active_clause
from regqueue.services.settings_service import find_settings


async def _count_by_lane(db: AsyncSession, resource_id: str, *criteria) -> dict[str, int]:
    result = await db.execute(
        select(QueueEntry.lane, func.count(QueueEntry.id))
        .where(QueueEntry.resource_id == resource_id, *criteria)
        .group_by(QueueEntry.lane)
    )
    return {lane: count for lane, count in result.all()}


async def get_stats(db: AsyncSession, resource_id: str) -> Optional[QueueStats]:
    """
    Live per-lane counts and caps, or None if the queue was never configured.
    """
    settings = await find_settings(db, resource_id)
    if settings is None:
        return None

    now = utcnow()
    active = await _count_by_lane(db, resource_id, live_active_clause(now))
    waiting = await _count_by_lane(db, resource_id, QueueEntry.status == EntryStatus.WAITING)

    lanes = []
    for lane, policy in settings.lanes.items():
        stats = LaneStats(
            lane=lane,
            active=active.get(lane, 0),
            waiting=waiting.get(lane, 0),
            max_concurrent=policy.max_concurrent,
        )
        record_lane_occupancy(resource_id, lane, stats.active, stats.waiting)
        lanes.append(stats)

    return QueueStats(
        resource_id=resource_id,
        lanes=lanes,
        total_active=sum(s.active for s in lanes),
        total_waiting=sum(s.waiting for s in lanes),
    )
