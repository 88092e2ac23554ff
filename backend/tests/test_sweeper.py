"""
Tests for the reconciliation sweeper and the stuck-session admin action.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta

import pytest

from regqueue.models.queue_entry import EntryStatus
from regqueue.schemas.queue import QueueSettingsUpdate
from regqueue.services import sweeper_service
from regqueue.services.admission_service import (
    check_admission,
    get_entry,
    mark_abandoned,
    mark_completed,
)
from regqueue.services.settings_service import update_settings
from regqueue.services.sweeper_service import clear_stuck_sessions, run_sweeper, sweep
from tests.conftest import RESOURCE_ID, START


@pytest.mark.asyncio
async def test_admit_expire_reclaim(db_session, enable_queue, clock):
    """Timeout 1s: after 2s one sweep expires S1 and promotes S2."""
    await enable_queue(group=(1, 1))
    await check_admission(db_session, RESOURCE_ID, "S1", "group")
    await check_admission(db_session, RESOURCE_ID, "S2", "group")

    clock.advance(2)
    result = await sweep(db_session)

    assert result.expired_count == 1
    assert result.admitted_count == 1
    s1 = await get_entry(db_session, "S1")
    s2 = await get_entry(db_session, "S2")
    assert s1.status == EntryStatus.EXPIRED
    assert s2.status == EntryStatus.ACTIVE
    assert s2.admitted_at == clock.now()
    assert s2.expires_at == clock.now() + timedelta(seconds=1)
    assert s2.queue_position is None


@pytest.mark.asyncio
async def test_promotion_after_completion(db_session, enable_queue, clock):
    await enable_queue(group=(1, 600))
    await check_admission(db_session, RESOURCE_ID, "S1", "group")
    await check_admission(db_session, RESOURCE_ID, "S2", "group")
    await mark_completed(db_session, "S1")

    result = await sweep(db_session)
    assert result.expired_count == 0
    assert result.admitted_count == 1

    s2 = await check_admission(db_session, RESOURCE_ID, "S2", "group")
    assert s2.allowed is True
    assert s2.expires_at == START + timedelta(seconds=600)


@pytest.mark.asyncio
async def test_promotion_is_fifo(db_session, enable_queue, clock):
    await enable_queue(group=(2, 600))
    await check_admission(db_session, RESOURCE_ID, "holder-1", "group")
    await check_admission(db_session, RESOURCE_ID, "holder-2", "group")
    for session_id in ("first", "second", "third"):
        clock.advance(1)
        await check_admission(db_session, RESOURCE_ID, session_id, "group")

    await mark_completed(db_session, "holder-1")
    await mark_abandoned(db_session, "holder-2")
    result = await sweep(db_session)

    assert result.admitted_count == 2
    assert (await get_entry(db_session, "first")).status == EntryStatus.ACTIVE
    assert (await get_entry(db_session, "second")).status == EntryStatus.ACTIVE
    assert (await get_entry(db_session, "third")).status == EntryStatus.WAITING


@pytest.mark.asyncio
async def test_repeated_sweeps_do_not_double_promote(db_session, enable_queue, clock):
    await enable_queue(group=(1, 600))
    await check_admission(db_session, RESOURCE_ID, "S1", "group")
    await check_admission(db_session, RESOURCE_ID, "S2", "group")
    await check_admission(db_session, RESOURCE_ID, "S3", "group")
    await mark_completed(db_session, "S1")

    first = await sweep(db_session)
    second = await sweep(db_session)

    assert first.admitted_count == 1
    assert second.admitted_count == 0
    assert second.expired_count == 0
    assert (await get_entry(db_session, "S3")).status == EntryStatus.WAITING


@pytest.mark.asyncio
async def test_no_promotion_when_disabled_or_outside_window(db_session, enable_queue, clock):
    await enable_queue(group=(1, 60))
    await enable_queue("evt-later", group=(1, 60))
    for resource_id in (RESOURCE_ID, "evt-later"):
        await check_admission(db_session, resource_id, f"{resource_id}-holder", "group")
        await check_admission(db_session, resource_id, f"{resource_id}-waiter", "group")

    await update_settings(db_session, RESOURCE_ID, QueueSettingsUpdate(queue_enabled=False))
    await update_settings(
        db_session,
        "evt-later",
        QueueSettingsUpdate(active_window_end=START + timedelta(seconds=30)),
    )

    clock.advance(61)
    result = await sweep(db_session)

    # Expiry is global, promotion only where the queue applies
    assert result.expired_count == 2
    assert result.admitted_count == 0
    assert (await get_entry(db_session, f"{RESOURCE_ID}-waiter")).status == EntryStatus.WAITING
    assert (await get_entry(db_session, "evt-later-waiter")).status == EntryStatus.WAITING


@pytest.mark.asyncio
async def test_promotion_covers_every_lane(db_session, enable_queue, clock):
    await enable_queue(group=(1, 60), individual=(1, 60))
    for lane in ("group", "individual"):
        await check_admission(db_session, RESOURCE_ID, f"{lane}-1", lane)
        await check_admission(db_session, RESOURCE_ID, f"{lane}-2", lane)

    clock.advance(61)
    result = await sweep(db_session)
    assert result.expired_count == 2
    assert result.admitted_count == 2


@pytest.mark.asyncio
async def test_sweep_with_nothing_to_do(db_session):
    result = await sweep(db_session)
    assert result.expired_count == 0
    assert result.admitted_count == 0


@pytest.mark.asyncio
async def test_clear_stuck_sessions_is_scoped(db_session, enable_queue, clock):
    await enable_queue(group=(1, 60))
    await enable_queue("evt-other", group=(1, 60))
    await check_admission(db_session, RESOURCE_ID, "mine", "group")
    await check_admission(db_session, "evt-other", "theirs", "group")

    clock.advance(61)
    assert await clear_stuck_sessions(db_session, RESOURCE_ID) == 1

    assert (await get_entry(db_session, "mine")).status == EntryStatus.EXPIRED
    assert (await get_entry(db_session, "theirs")).status == EntryStatus.ACTIVE


@pytest.mark.asyncio
async def test_clear_stuck_sessions_promotes_immediately(db_session, enable_queue, clock):
    await enable_queue(group=(1, 60))
    await check_admission(db_session, RESOURCE_ID, "stuck", "group")
    await check_admission(db_session, RESOURCE_ID, "next", "group")

    clock.advance(61)
    assert await clear_stuck_sessions(db_session, RESOURCE_ID) == 1
    assert (await get_entry(db_session, "next")).status == EntryStatus.ACTIVE


@pytest.mark.asyncio
async def test_clear_stuck_sessions_without_promotion(db_session, enable_queue, clock):
    await enable_queue(group=(1, 60))
    await check_admission(db_session, RESOURCE_ID, "stuck", "group")
    await check_admission(db_session, RESOURCE_ID, "next", "group")

    clock.advance(61)
    assert await clear_stuck_sessions(db_session, RESOURCE_ID, promote=False) == 1
    assert (await get_entry(db_session, "next")).status == EntryStatus.WAITING


@pytest.mark.asyncio
async def test_clear_leaves_live_sessions(db_session, enable_queue, clock):
    await enable_queue(group=(2, 600))
    await check_admission(db_session, RESOURCE_ID, "live", "group")
    clock.advance(30)
    assert await clear_stuck_sessions(db_session, RESOURCE_ID) == 0
    assert (await get_entry(db_session, "live")).status == EntryStatus.ACTIVE


class TestRunSweeper:
    @pytest.fixture
    def scoped_session(self, db_session, monkeypatch):
        @asynccontextmanager
        async def _scope():
            yield db_session
            await db_session.flush()

        monkeypatch.setattr(sweeper_service, "session_scope", _scope)

    @pytest.mark.asyncio
    async def test_loop_promotes_until_cancelled(self, db_session, enable_queue, scoped_session):
        await enable_queue(group=(1, 600))
        await check_admission(db_session, RESOURCE_ID, "S1", "group")
        await check_admission(db_session, RESOURCE_ID, "S2", "group")
        await mark_completed(db_session, "S1")

        task = asyncio.create_task(run_sweeper(0.01))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert (await get_entry(db_session, "S2")).status == EntryStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_failed_pass_does_not_stop_loop(self, monkeypatch, scoped_session):
        calls = []

        async def flaky_sweep(db):
            calls.append(db)
            if len(calls) == 1:
                raise RuntimeError("database went away")

        monkeypatch.setattr(sweeper_service, "sweep", flaky_sweep)

        task = asyncio.create_task(run_sweeper(0.01))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(calls) >= 2
