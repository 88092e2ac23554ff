"""
Admission controller for the registration queue.

Called on every page load of the registration flow with a stable,
caller-generated session id. Decides whether the session may fill out the
registration now or has to wait, and reports its place in line.

STATE MACHINE
=============

  waiting -> active -> completed          (happy path)
  active -> expired                       (timeout; lazily or by the sweeper)
  waiting | active -> abandoned           (explicit signal from the flow)
  expired | abandoned -> waiting          (re-entry on the next check)

CONCURRENCY
===========

Processes share nothing but the entry table. Occupancy is counted on every
decision and entries are written with a single upsert keyed by session id,
so two first requests for the same session cannot create two rows.

Count-then-upsert is not atomic by itself: two checks racing for the last
slot can both admit. The configured CapacityGuard decides whether that is
tolerated (optimistic, soft cap) or serialized (locking, strict cap).
Guards are always taken before the entry row is written and in resource
order, the same order the sweeper uses.

Positions are advisory. They are recomputed from entered_queue_at on every
check and poll, and only cached in queue_position.
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from regqueue.core.clock import utcnow
from regqueue.core.config import get_settings
from regqueue.core.exceptions import QueueError, NotFound, InvalidState, AlreadyUsed, NotAllowed
from regqueue.core.logging import get_logger
from regqueue.core.metrics import admission_latency, record_admission, record_extension, record_transition
from regqueue.db.dialect import insert_for
from regqueue.models.queue_entry import QueueEntry, EntryStatus
from regqueue.schemas.queue import (
    AdmissionResult,
    EntryContext,
    ExtensionResult,
    QueueSettingsData,
)
from regqueue.services.occupancy import count_live_active, count_waiting_ahead, estimate_wait_minutes
from regqueue.services.settings_service import default_settings, find_settings, is_queue_active, lane_policy
from regqueue.services.strategy_factory import get_capacity_guard

logger = get_logger(__name__)


async def get_entry(db: AsyncSession, session_id: str) -> Optional[QueueEntry]:
    """Load an entry, always refreshed from the store."""
    result = await db.execute(
        select(QueueEntry)
        .where(QueueEntry.session_id == session_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _is_live(entry: QueueEntry, now) -> bool:
    return (
        entry.status == EntryStatus.ACTIVE
        and entry.expires_at is not None
        and entry.expires_at > now
    )


def _active_result(entry: QueueEntry, settings: QueueSettingsData) -> AdmissionResult:
    return AdmissionResult(
        allowed=True,
        session_id=entry.session_id,
        status=EntryStatus.ACTIVE,
        expires_at=entry.expires_at,
        extension_allowed=settings.allow_time_extension and not entry.extension_used,
        extension_used=entry.extension_used,
    )


async def _acquire_in_order(db: AsyncSession, lanes: list) -> None:
    """
    Take the capacity guard for each (resource_id, lane), sorted by
    resource_id, before any entry row is written. The sweeper locks in the
    same order, so the two never wait on each other in a cycle.
    """
    guard = get_capacity_guard()
    for resource_id, lane in sorted(set(lanes)):
        await guard.acquire(db, resource_id, lane)


async def _requeue(db: AsyncSession, entry: QueueEntry, resource_id: str, lane: str, now) -> None:
    """
    Put an expired, abandoned or lapsed entry back to waiting.

    Seniority is kept unless REQUEUE_PRESERVES_SENIORITY is off. A session
    that shows up under another resource or lane always starts at the back.
    """
    moved = entry.resource_id != resource_id or entry.lane != lane
    previous = entry.status

    entry.status = EntryStatus.WAITING
    entry.queue_position = None
    entry.admitted_at = None
    entry.expires_at = None
    entry.extension_used = False
    if moved or not get_settings().REQUEUE_PRESERVES_SENIORITY:
        entry.entered_queue_at = now
    entry.resource_id = resource_id
    entry.lane = lane
    await db.flush()

    logger.info(
        "queue_requeued",
        session_id=entry.session_id,
        resource_id=resource_id,
        lane=lane,
        previous_status=previous,
        moved=moved,
    )


async def _upsert_entry(
    db: AsyncSession,
    *,
    session_id: str,
    resource_id: str,
    lane: str,
    context: Optional[EntryContext],
    now,
    state: dict,
) -> None:
    """
    Create or overwrite the session's entry in one statement.

    entered_queue_at and the audit context are only written on creation.
    """
    context = context or EntryContext()
    insert = insert_for(db)
    stmt = insert(QueueEntry).values(
        session_id=session_id,
        resource_id=resource_id,
        lane=lane,
        user_id=context.user_id,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        entered_queue_at=now,
        created_at=now,
        updated_at=now,
        **state,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["session_id"],
        set_={**state, "resource_id": resource_id, "lane": lane, "updated_at": now},
    )
    await db.execute(stmt)


async def check_admission(
    db: AsyncSession,
    resource_id: str,
    session_id: str,
    lane: str,
    context: Optional[EntryContext] = None,
) -> AdmissionResult:
    """
    Decide whether the session may proceed into registration now.

    Returns admitted (status active, with expires_at) or queued (status
    waiting, with position and wait estimate). Never raises for a missing
    entry; raises UnknownLane if the lane is not configured.
    """
    with admission_latency.time():
        return await _check_admission(db, resource_id, session_id, lane, context)


async def _check_admission(
    db: AsyncSession,
    resource_id: str,
    session_id: str,
    lane: str,
    context: Optional[EntryContext],
) -> AdmissionResult:
    now = utcnow()
    settings = await find_settings(db, resource_id)

    # Disabled or outside the window: full bypass, no entry is read or written
    if not is_queue_active(settings, now):
        record_admission("bypassed")
        return AdmissionResult(allowed=True, session_id=session_id, status=EntryStatus.ACTIVE)

    policy = lane_policy(settings, lane)
    entry = await get_entry(db, session_id)

    guarded = [(resource_id, lane)]
    requeue = False
    if entry is not None:
        same_lane = entry.resource_id == resource_id and entry.lane == lane

        if same_lane and _is_live(entry, now):
            record_admission("replayed")
            return _active_result(entry, settings)

        if same_lane and entry.status == EntryStatus.COMPLETED:
            record_admission("replayed")
            return AdmissionResult(allowed=True, session_id=session_id, status=EntryStatus.COMPLETED)

        requeue = entry.status != EntryStatus.WAITING or not same_lane
        if requeue:
            # Rewriting the entry also touches its old lane
            guarded.append((entry.resource_id, entry.lane))

    await _acquire_in_order(db, guarded)
    if requeue:
        await _requeue(db, entry, resource_id, lane, now)

    occupancy = await count_live_active(db, resource_id, lane, now)

    if occupancy < policy.max_concurrent:
        expires_at = now + timedelta(seconds=policy.session_timeout)
        await _upsert_entry(
            db,
            session_id=session_id,
            resource_id=resource_id,
            lane=lane,
            context=context,
            now=now,
            state={
                "status": EntryStatus.ACTIVE,
                "admitted_at": now,
                "expires_at": expires_at,
                "queue_position": None,
                "extension_used": False,
            },
        )
        record_admission("admitted")
        logger.info(
            "queue_admitted",
            resource_id=resource_id,
            session_id=session_id,
            lane=lane,
            occupancy=occupancy + 1,
            max_concurrent=policy.max_concurrent,
        )
        return AdmissionResult(
            allowed=True,
            session_id=session_id,
            status=EntryStatus.ACTIVE,
            expires_at=expires_at,
            extension_allowed=settings.allow_time_extension,
            extension_used=False,
        )

    position = await count_waiting_ahead(db, resource_id, lane, entry) + 1
    estimate = estimate_wait_minutes(position, policy)
    await _upsert_entry(
        db,
        session_id=session_id,
        resource_id=resource_id,
        lane=lane,
        context=context,
        now=now,
        state={"status": EntryStatus.WAITING, "queue_position": position},
    )
    record_admission("waiting")
    logger.info(
        "queue_waiting",
        resource_id=resource_id,
        session_id=session_id,
        lane=lane,
        position=position,
        estimated_wait_minutes=estimate,
    )
    return AdmissionResult(
        allowed=False,
        session_id=session_id,
        status=EntryStatus.WAITING,
        queue_position=position,
        estimated_wait_minutes=estimate,
        waiting_room_message=settings.waiting_room_message or None,
    )


async def get_status(
    db: AsyncSession,
    resource_id: str,
    session_id: str,
    lane: str,
) -> Optional[AdmissionResult]:
    """
    Read-only status for polling waiting rooms.

    Never admits: promotion happens only in check_admission and the
    sweeper. Recomputed positions are cached on the entry. Returns None
    when the session has no entry under this resource.
    """
    entry = await get_entry(db, session_id)
    if entry is None or entry.resource_id != resource_id:
        return None

    now = utcnow()
    settings = await find_settings(db, resource_id) or default_settings(resource_id)

    if _is_live(entry, now):
        return _active_result(entry, settings)

    if entry.status == EntryStatus.WAITING:
        if lane != entry.lane:
            logger.debug("queue_status_lane_mismatch", session_id=session_id, requested=lane, actual=entry.lane)

        position = await count_waiting_ahead(db, resource_id, entry.lane, entry) + 1
        if entry.queue_position != position:
            entry.queue_position = position
            await db.flush()

        policy = settings.lanes.get(entry.lane)
        return AdmissionResult(
            allowed=False,
            session_id=session_id,
            status=EntryStatus.WAITING,
            queue_position=position,
            estimated_wait_minutes=estimate_wait_minutes(position, policy) if policy else None,
            waiting_room_message=settings.waiting_room_message or None,
        )

    # An active row past expires_at is expired even before the sweeper runs
    status = EntryStatus.EXPIRED if entry.status == EntryStatus.ACTIVE else entry.status
    return AdmissionResult(
        allowed=status == EntryStatus.COMPLETED,
        session_id=session_id,
        status=status,
    )


async def extend_session(db: AsyncSession, session_id: str) -> datetime:
    """
    Grant the one-time extension for an active session.

    The new expiry is max(expires_at, now) + extension_duration: a session
    a moment from expiry still gets the full extension, and one that lapsed
    but has not been swept yet can still be rescued.

    Raises:
        NotFound: no entry for the session
        InvalidState: the entry is not active
        AlreadyUsed: the extension was already granted
        NotAllowed: the resource does not allow extensions
    """
    try:
        new_expires_at = await _extend_session(db, session_id)
    except QueueError as e:
        record_extension(e.code)
        logger.info("queue_extension_refused", session_id=session_id, reason=e.code)
        raise

    record_extension("granted")
    logger.info("queue_extension_granted", session_id=session_id, new_expires_at=new_expires_at.isoformat())
    return new_expires_at


async def _extend_session(db: AsyncSession, session_id: str) -> datetime:
    entry = await get_entry(db, session_id)
    if entry is None:
        raise NotFound(session_id=session_id)
    if entry.status != EntryStatus.ACTIVE:
        raise InvalidState(session_id=session_id, status=entry.status)
    if entry.extension_used:
        raise AlreadyUsed(session_id=session_id)

    settings = await find_settings(db, entry.resource_id)
    if settings is None or not settings.allow_time_extension:
        raise NotAllowed(session_id=session_id, resource_id=entry.resource_id)

    now = utcnow()
    base = max(entry.expires_at or now, now)
    new_expires_at = base + timedelta(seconds=settings.extension_duration)

    # Guarded so a double click cannot extend twice
    result = await db.execute(
        update(QueueEntry)
        .where(
            QueueEntry.id == entry.id,
            QueueEntry.status == EntryStatus.ACTIVE,
            QueueEntry.extension_used.is_(False),
        )
        .values(expires_at=new_expires_at, extension_used=True, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise AlreadyUsed(session_id=session_id)
    return new_expires_at


async def request_extension(db: AsyncSession, session_id: str) -> ExtensionResult:
    """extend_session as a result object, for "give me more time" buttons."""
    try:
        new_expires_at = await extend_session(db, session_id)
    except QueueError as e:
        return ExtensionResult(success=False, error=e.code, message=e.message)
    return ExtensionResult(success=True, new_expires_at=new_expires_at)


async def _set_status(db: AsyncSession, session_id: str, values: dict) -> bool:
    result = await db.execute(
        update(QueueEntry)
        .where(QueueEntry.session_id == session_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def mark_completed(db: AsyncSession, session_id: str) -> bool:
    """
    Record a finished registration.

    A missing entry is not an error: the queue may have been bypassed when
    the session started. Returns whether an entry was updated.
    """
    now = utcnow()
    changed = await _set_status(
        db,
        session_id,
        {"status": EntryStatus.COMPLETED, "completed_at": now, "updated_at": now},
    )
    if changed:
        record_transition(EntryStatus.COMPLETED)
        logger.info("queue_session_completed", session_id=session_id)
    return changed


async def mark_abandoned(db: AsyncSession, session_id: str) -> bool:
    """Record that the session left the flow. Idempotent; missing entries are ignored."""
    changed = await _set_status(
        db,
        session_id,
        {"status": EntryStatus.ABANDONED, "updated_at": utcnow()},
    )
    if changed:
        record_transition(EntryStatus.ABANDONED)
        logger.info("queue_session_abandoned", session_id=session_id)
    return changed
