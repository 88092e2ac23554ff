"""
Tests for the per-lane statistics reporter.
"""

import pytest

from regqueue.services.admission_service import check_admission, mark_completed
from regqueue.services.occupancy import count_live_active
from regqueue.services.settings_service import get_settings
from regqueue.services.stats_service import get_stats
from tests.conftest import RESOURCE_ID


@pytest.mark.asyncio
async def test_unconfigured_resource_has_no_stats(db_session):
    assert await get_stats(db_session, "evt-never-configured") is None


@pytest.mark.asyncio
async def test_configured_but_empty(db_session):
    await get_settings(db_session, RESOURCE_ID)
    stats = await get_stats(db_session, RESOURCE_ID)

    assert stats is not None
    assert stats.total_active == 0
    assert stats.total_waiting == 0
    assert stats.lane("group").max_concurrent == 10
    assert stats.lane("individual").max_concurrent == 40


@pytest.mark.asyncio
async def test_counts_per_lane(db_session, enable_queue, clock):
    await enable_queue(group=(1, 600), individual=(2, 420))
    for session_id in ("g1", "g2", "g3"):
        clock.advance(1)
        await check_admission(db_session, RESOURCE_ID, session_id, "group")
    for session_id in ("i1", "i2"):
        clock.advance(1)
        await check_admission(db_session, RESOURCE_ID, session_id, "individual")

    stats = await get_stats(db_session, RESOURCE_ID)

    group = stats.lane("group")
    assert (group.active, group.waiting, group.max_concurrent) == (1, 2, 1)
    individual = stats.lane("individual")
    assert (individual.active, individual.waiting, individual.max_concurrent) == (2, 0, 2)
    assert stats.total_active == 3
    assert stats.total_waiting == 2


@pytest.mark.asyncio
async def test_finished_sessions_are_not_counted(db_session, enable_queue):
    await enable_queue(group=(2, 600))
    await check_admission(db_session, RESOURCE_ID, "done", "group")
    await check_admission(db_session, RESOURCE_ID, "busy", "group")
    await mark_completed(db_session, "done")

    stats = await get_stats(db_session, RESOURCE_ID)
    assert stats.lane("group").active == 1


@pytest.mark.asyncio
async def test_lapsed_session_not_counted_before_sweep(db_session, enable_queue, clock):
    """The dashboard and admission agree on what occupies a slot."""
    await enable_queue(group=(1, 60))
    await check_admission(db_session, RESOURCE_ID, "S1", "group")

    clock.advance(61)
    stats = await get_stats(db_session, RESOURCE_ID)

    assert stats.lane("group").active == 0
    assert stats.lane("group").active == await count_live_active(
        db_session, RESOURCE_ID, "group", clock.now()
    )

    # And admission sees the free slot too
    result = await check_admission(db_session, RESOURCE_ID, "S2", "group")
    assert result.allowed is True
