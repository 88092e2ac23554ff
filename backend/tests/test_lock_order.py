"""
Lock ordering under the locking capacity guard.

Admission and the sweeper must take capacity guards in resource_id order
and before writing any queue entry, otherwise a sweep and a check that
touch the same entry can wait on each other. SQLite ignores FOR UPDATE,
so these tests record the order of guard acquisitions and entry writes.
"""

import pytest
from sqlalchemy import event

from regqueue.schemas.queue import QueueSettingsUpdate
from regqueue.services.admission_service import check_admission
from regqueue.services.interfaces import LockingGuard
from regqueue.services.settings_service import update_settings
from regqueue.services.strategy_factory import set_capacity_guard
from regqueue.services.sweeper_service import clear_stuck_sessions, sweep
from tests.conftest import RESOURCE_ID

OTHER_RESOURCE = "evt-autumn-retreat"  # sorts before RESOURCE_ID


class RecordingGuard(LockingGuard):
    def __init__(self, log: list):
        self.log = log

    async def acquire(self, db, resource_id, lane):
        self.log.append(("acquire", resource_id))
        await super().acquire(db, resource_id, lane)


@pytest.fixture
def lock_log(engine):
    log = []

    def _record(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith(("UPDATE QUEUE_ENTRIES", "INSERT INTO QUEUE_ENTRIES")):
            log.append(("write", None))

    event.listen(engine.sync_engine, "before_cursor_execute", _record)
    set_capacity_guard(RecordingGuard(log))
    yield log
    event.remove(engine.sync_engine, "before_cursor_execute", _record)


def acquired(log) -> list:
    return [resource_id for kind, resource_id in log if kind == "acquire"]


def assert_guards_before_writes(log):
    kinds = [kind for kind, _ in log]
    assert "write" in kinds
    first_write = kinds.index("write")
    assert kinds[0] == "acquire"
    assert "acquire" not in kinds[first_write:]


@pytest.mark.asyncio
async def test_lane_change_locks_before_requeue(db_session, enable_queue, lock_log):
    await enable_queue(group=(1, 600), individual=(1, 600))
    await check_admission(db_session, RESOURCE_ID, "holder", "group")
    await check_admission(db_session, RESOURCE_ID, "mover", "group")

    lock_log.clear()
    result = await check_admission(db_session, RESOURCE_ID, "mover", "individual")

    assert result.allowed is True
    assert_guards_before_writes(lock_log)


@pytest.mark.asyncio
async def test_resource_change_locks_both_in_order(db_session, enable_queue, lock_log):
    await enable_queue(group=(1, 600))
    await enable_queue(OTHER_RESOURCE, group=(1, 600))
    await check_admission(db_session, RESOURCE_ID, "holder", "group")
    await check_admission(db_session, RESOURCE_ID, "mover", "group")

    lock_log.clear()
    await check_admission(db_session, OTHER_RESOURCE, "mover", "group")

    assert_guards_before_writes(lock_log)
    assert acquired(lock_log) == [OTHER_RESOURCE, RESOURCE_ID]


@pytest.mark.asyncio
async def test_expired_re_entry_locks_before_requeue(db_session, enable_queue, clock, lock_log):
    await enable_queue(group=(1, 60))
    await check_admission(db_session, RESOURCE_ID, "returning", "group")
    clock.advance(61)

    lock_log.clear()
    await check_admission(db_session, RESOURCE_ID, "returning", "group")

    assert_guards_before_writes(lock_log)


@pytest.mark.asyncio
async def test_sweep_locks_resources_in_order(db_session, enable_queue, clock, lock_log):
    # Created in reverse order so insertion order differs from resource order
    await enable_queue(group=(1, 60))
    await enable_queue(OTHER_RESOURCE, group=(1, 60))
    for resource_id in (RESOURCE_ID, OTHER_RESOURCE):
        await check_admission(db_session, resource_id, f"{resource_id}-holder", "group")
        await check_admission(db_session, resource_id, f"{resource_id}-waiter", "group")
    clock.advance(61)

    lock_log.clear()
    result = await sweep(db_session)

    assert result.expired_count == 2
    assert result.admitted_count == 2
    assert lock_log[0][0] == "acquire"
    resources = acquired(lock_log)
    assert resources == sorted(resources)
    assert set(resources) == {RESOURCE_ID, OTHER_RESOURCE}


@pytest.mark.asyncio
async def test_sweep_without_enabled_resources_still_expires(db_session, enable_queue, clock, lock_log):
    await enable_queue(group=(1, 60))
    await check_admission(db_session, RESOURCE_ID, "holder", "group")
    clock.advance(61)

    await update_settings(db_session, RESOURCE_ID, QueueSettingsUpdate(queue_enabled=False))
    lock_log.clear()
    result = await sweep(db_session)

    assert result.expired_count == 1
    assert acquired(lock_log) == []


@pytest.mark.asyncio
async def test_clear_stuck_sessions_locks_first(db_session, enable_queue, clock, lock_log):
    await enable_queue(group=(1, 60))
    await check_admission(db_session, RESOURCE_ID, "stuck", "group")
    await check_admission(db_session, RESOURCE_ID, "next", "group")
    clock.advance(61)

    lock_log.clear()
    assert await clear_stuck_sessions(db_session, RESOURCE_ID) == 1

    assert lock_log[0] == ("acquire", RESOURCE_ID)
    assert acquired(lock_log) == [RESOURCE_ID] * len(acquired(lock_log))
