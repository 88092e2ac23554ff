"""
Queue settings store.

Settings are read on every admission check and written rarely by an
administrator. Rows are created lazily with defaults on the first ``get``
and upserted on ``update``; they are never deleted.

The controller and stats reporter use ``find_settings`` (no create), so a
resource that was never configured stays a full bypass and reports no stats.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from regqueue.core.exceptions import UnknownLane
from regqueue.core.logging import get_logger
from regqueue.db.dialect import insert_for
from regqueue.db.session import on_commit
from regqueue.models.queue_settings import (
    QueueSettings,
    DEFAULT_LANES,
    DEFAULT_ALLOW_EXTENSION,
    DEFAULT_EXTENSION_DURATION,
)
from regqueue.schemas.queue import LanePolicy, QueueSettingsData, QueueSettingsUpdate
from regqueue.services import cache_service

logger = get_logger(__name__)

# Lanes added through update_settings start from this policy
DEFAULT_LANE_POLICY = {"max_concurrent": 10, "session_timeout": 600}


def default_settings(resource_id: str) -> QueueSettingsData:
    """Defaults for a resource with no row; the queue is disabled."""
    return QueueSettingsData(
        resource_id=resource_id,
        queue_enabled=False,
        lanes={name: LanePolicy(**policy) for name, policy in DEFAULT_LANES.items()},
        allow_time_extension=DEFAULT_ALLOW_EXTENSION,
        extension_duration=DEFAULT_EXTENSION_DURATION,
    )


def is_queue_active(settings: Optional[QueueSettingsData], now: datetime) -> bool:
    """
    The gate applies only when enabled and inside the optional window.
    Outside it every request bypasses the queue entirely.
    """
    if settings is None or not settings.queue_enabled:
        return False
    if settings.active_window_start is not None and now < settings.active_window_start:
        return False
    if settings.active_window_end is not None and now > settings.active_window_end:
        return False
    return True


def lane_policy(settings: QueueSettingsData, lane: str) -> LanePolicy:
    policy = settings.lanes.get(lane)
    if policy is None:
        raise UnknownLane(
            f"Registration type '{lane}' is not configured for {settings.resource_id}",
            resource_id=settings.resource_id,
            lane=lane,
        )
    return policy


async def _load_row(db: AsyncSession, resource_id: str) -> Optional[QueueSettings]:
    result = await db.execute(
        select(QueueSettings)
        .where(QueueSettings.resource_id == resource_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_settings(db: AsyncSession, resource_id: str) -> Optional[QueueSettingsData]:
    """Read-only lookup, served from the Redis cache when available."""
    cached = await cache_service.get_cached_settings(resource_id)
    if cached is not None:
        return cached

    row = await _load_row(db, resource_id)
    if row is None:
        return None

    data = QueueSettingsData.model_validate(row)
    await cache_service.set_cached_settings(data)
    return data


async def get_settings(db: AsyncSession, resource_id: str) -> QueueSettingsData:
    """Get settings, creating the default row if the resource has none."""
    existing = await find_settings(db, resource_id)
    if existing is not None:
        return existing

    defaults = default_settings(resource_id)
    insert = insert_for(db)
    # Concurrent first reads race here; the loser's insert is a no-op
    await db.execute(
        insert(QueueSettings)
        .values(
            resource_id=resource_id,
            queue_enabled=defaults.queue_enabled,
            lanes={name: p.model_dump() for name, p in defaults.lanes.items()},
            allow_time_extension=defaults.allow_time_extension,
            extension_duration=defaults.extension_duration,
        )
        .on_conflict_do_nothing(index_elements=["resource_id"])
    )
    row = await _load_row(db, resource_id)
    logger.info("queue_settings_created", resource_id=resource_id)
    return QueueSettingsData.model_validate(row)


def _clamp(value: Optional[int]) -> Optional[int]:
    return None if value is None else max(1, int(value))


def _merge_lanes(current: dict, updates: dict) -> dict:
    """
    Apply per-lane updates. Lanes are added or changed, never removed:
    waiting sessions in a removed lane would be stranded, since the sweeper
    only promotes configured lanes.
    """
    merged = {name: dict(policy) for name, policy in current.items()}
    for name, update in updates.items():
        policy = merged.setdefault(name, dict(DEFAULT_LANE_POLICY))
        if update.max_concurrent is not None:
            policy["max_concurrent"] = _clamp(update.max_concurrent)
        if update.session_timeout is not None:
            policy["session_timeout"] = _clamp(update.session_timeout)
    return merged


async def update_settings(
    db: AsyncSession,
    resource_id: str,
    changes: QueueSettingsUpdate,
) -> QueueSettingsData:
    """
    Upsert the explicitly provided fields.

    Existing rows keep every field not in ``changes``; new rows take the
    defaults for them. Caps, timeouts and the extension duration are
    clamped to at least one.
    """
    provided = changes.model_fields_set
    row = await _load_row(db, resource_id)

    if row is None:
        await get_settings(db, resource_id)
        row = await _load_row(db, resource_id)

    if "queue_enabled" in provided and changes.queue_enabled is not None:
        row.queue_enabled = changes.queue_enabled
    if "allow_time_extension" in provided and changes.allow_time_extension is not None:
        row.allow_time_extension = changes.allow_time_extension
    if "extension_duration" in provided and changes.extension_duration is not None:
        row.extension_duration = _clamp(changes.extension_duration)
    if "lanes" in provided and changes.lanes:
        # Reassign so the JSON column is flagged dirty
        row.lanes = _merge_lanes(row.lanes or {}, changes.lanes)
    if "active_window_start" in provided:
        row.active_window_start = changes.active_window_start
    if "active_window_end" in provided:
        row.active_window_end = changes.active_window_end
    if "waiting_room_message" in provided:
        row.waiting_room_message = changes.waiting_room_message or None

    await db.flush()
    await db.refresh(row)
    await cache_service.invalidate_settings(resource_id)
    # Again after commit: a reader in between may have re-cached the old row
    on_commit(db, lambda: cache_service.invalidate_settings(resource_id))

    data = QueueSettingsData.model_validate(row)
    logger.info(
        "queue_settings_updated",
        resource_id=resource_id,
        fields=sorted(provided),
        queue_enabled=data.queue_enabled,
    )
    return data
