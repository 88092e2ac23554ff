"""
Reconciliation sweeper: expire stale sessions, promote waiters.

A session that closes the tab without reporting completion keeps its row
active until expires_at. Admission already ignores lapsed rows, but nobody
waiting is promoted until something runs a sweep. The host process runs
one every SWEEP_INTERVAL_SECONDS, and administrators can trigger the
expire step for one resource ("clear stuck sessions").

TWO PHASES
==========

1. Expire: conditional bulk UPDATEs flip every active row whose
   expires_at has passed to expired: enabled resources one at a time
   under their capacity guard, then the rest in one statement. Never
   read-then-write, so concurrent sweeps cannot lose updates.

2. Promote: for every enabled, in-window resource and each of its lanes,
   hand the free slots to the oldest waiters by entered_queue_at. Each
   promotion is a conditional UPDATE guarded on status = 'waiting', so two
   overlapping sweeps never promote the same row twice.

sweep() is idempotent and safe to run concurrently or redundantly.
"""

import asyncio
import time
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from regqueue.core.clock import utcnow
from regqueue.core.logging import get_logger
from regqueue.core.metrics import record_sweep, sweep_duration, sweep_failures
from regqueue.db.session import session_scope
from regqueue.models.queue_entry import QueueEntry, EntryStatus
from regqueue.models.queue_settings import QueueSettings
from regqueue.schemas.queue import QueueSettingsData, SweepResult
from regqueue.services.occupancy import count_live_active
from regqueue.services.settings_service import find_settings, is_queue_active
from regqueue.services.strategy_factory import get_capacity_guard

logger = get_logger(__name__)


async def _expire_lapsed(
    db: AsyncSession,
    now: datetime,
    resource_id: Optional[str] = None,
    exclude: Sequence[str] = (),
) -> int:
    stmt = update(QueueEntry).where(
        QueueEntry.status == EntryStatus.ACTIVE,
        QueueEntry.expires_at < now,
    )
    if resource_id is not None:
        stmt = stmt.where(QueueEntry.resource_id == resource_id)
    if exclude:
        stmt = stmt.where(QueueEntry.resource_id.not_in(exclude))
    result = await db.execute(
        stmt.values(status=EntryStatus.EXPIRED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def _acquire(db: AsyncSession, settings: QueueSettingsData) -> None:
    guard = get_capacity_guard()
    for lane in sorted(settings.lanes):
        await guard.acquire(db, settings.resource_id, lane)


async def _promote_lane(
    db: AsyncSession,
    settings: QueueSettingsData,
    lane: str,
    now: datetime,
) -> int:
    policy = settings.lanes[lane]

    spots = policy.max_concurrent - await count_live_active(db, settings.resource_id, lane, now)
    if spots <= 0:
        return 0

    result = await db.execute(
        select(QueueEntry.id)
        .where(
            QueueEntry.resource_id == settings.resource_id,
            QueueEntry.lane == lane,
            QueueEntry.status == EntryStatus.WAITING,
        )
        .order_by(QueueEntry.entered_queue_at.asc(), QueueEntry.id.asc())
        .limit(spots)
    )
    next_in_line = list(result.scalars().all())

    expires_at = now + timedelta(seconds=policy.session_timeout)
    promoted = 0
    for entry_id in next_in_line:
        update_result = await db.execute(
            update(QueueEntry)
            .where(QueueEntry.id == entry_id, QueueEntry.status == EntryStatus.WAITING)
            .values(
                status=EntryStatus.ACTIVE,
                admitted_at=now,
                expires_at=expires_at,
                queue_position=None,
                extension_used=False,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        # 0 rows: another sweep or an abandon got there first
        promoted += update_result.rowcount

    if promoted:
        logger.info(
            "queue_promoted",
            resource_id=settings.resource_id,
            lane=lane,
            promoted=promoted,
            spots=spots,
        )
    return promoted


async def promote_waiting(db: AsyncSession, settings: QueueSettingsData, now: datetime) -> int:
    """Fill free slots in every lane of one resource. No-op outside the active window."""
    if not is_queue_active(settings, now):
        return 0
    await _acquire(db, settings)
    promoted = 0
    for lane in settings.lanes:
        promoted += await _promote_lane(db, settings, lane, now)
    return promoted


async def sweep(db: AsyncSession) -> SweepResult:
    """Expire lapsed sessions everywhere, then promote waiters into freed slots."""
    now = utcnow()

    # Same lock order as admission: by resource_id, guard before entry writes
    result = await db.execute(
        select(QueueSettings.resource_id)
        .where(QueueSettings.queue_enabled.is_(True))
        .order_by(QueueSettings.resource_id)
    )
    enabled = list(result.scalars().all())

    expired = 0
    admitted = 0
    for resource_id in enabled:
        settings = await find_settings(db, resource_id)
        if settings is None:
            continue
        await _acquire(db, settings)
        expired += await _expire_lapsed(db, now, resource_id=resource_id)
        admitted += await promote_waiting(db, settings, now)

    # Queue off: nothing is admitted there, so no guard is needed
    expired += await _expire_lapsed(db, now, exclude=enabled)

    record_sweep(expired, admitted)
    if expired or admitted:
        logger.info("sweep_completed", expired=expired, admitted=admitted)
    else:
        logger.debug("sweep_completed", expired=0, admitted=0)
    return SweepResult(expired_count=expired, admitted_count=admitted)


async def clear_stuck_sessions(db: AsyncSession, resource_id: str, promote: bool = True) -> int:
    """
    Administrator action: expire lapsed active sessions of one resource.

    With ``promote`` (the default) waiters are moved into the freed slots
    right away instead of on the next scheduled sweep. Returns the number
    of sessions expired.
    """
    now = utcnow()
    settings = await find_settings(db, resource_id)
    if settings is not None:
        await _acquire(db, settings)
    expired = await _expire_lapsed(db, now, resource_id=resource_id)

    admitted = 0
    if promote and settings is not None:
        admitted = await promote_waiting(db, settings, now)

    record_sweep(expired, admitted)
    logger.info("queue_stuck_sessions_cleared", resource_id=resource_id, expired=expired, admitted=admitted)
    return expired


async def run_sweeper(interval_seconds: float) -> None:
    """
    Sweep forever, one transaction per pass.

    A failed pass is logged and retried on the next tick; cancelling the
    task stops the loop.
    """
    logger.info("sweeper_started", interval_seconds=interval_seconds)
    try:
        while True:
            started = time.perf_counter()
            try:
                async with session_scope() as db:
                    await sweep(db)
            except Exception as e:
                sweep_failures.inc()
                logger.error("sweep_failed", error=str(e), exc_info=True)
            finally:
                sweep_duration.observe(time.perf_counter() - started)
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("sweeper_stopped")
        raise
