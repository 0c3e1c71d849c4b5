"""
Test the backward indexer: mode selection, frontier movement, failures.
"""

import pytest

from mdw_sync.core.exceptions import IndexerError, MiddlewareError
from mdw_sync.indexer.indexer_service import IndexerService
from mdw_sync.indexer.reorg_service import ReorgService
from mdw_sync.indexer.state import get_sync_state
from mdw_sync.indexer.types import SyncDirection, SyncMode
from mdw_sync.models import KeyBlock, Tx

from tests.fakes import FakeMiddlewareClient, RecordingPlugin, count_rows


def make_indexer(services, **overrides):
    options = dict(
        bulk_mode_threshold=10,
        bulk_mode_batch_blocks=5,
        parallel_workers=2,
        backfill_batch_blocks=4,
        sync_interval=0,
    )
    options.update(overrides)
    reorg = ReorgService(services.client, services.batch_processor, reorg_depth=5)
    return IndexerService(services.client, services.block_sync, reorg, **options)


@pytest.mark.asyncio
async def test_plan_ranges_uses_bulk_mode_above_threshold(build_services):
    services = await build_services()
    indexer = make_indexer(
        services,
        bulk_mode_threshold=100,
        bulk_mode_batch_blocks=1000,
        parallel_workers=6,
        backfill_batch_blocks=50,
    )

    plan = indexer.plan_ranges(5000)

    assert plan.mode == SyncMode.BULK
    assert plan.batch_size == 1000
    assert plan.workers == 6
    assert plan.ranges[0] == (4001, 5000)
    assert plan.ranges[-1] == (1, 1000)
    assert plan.lowest_height == 1


@pytest.mark.asyncio
async def test_plan_ranges_normal_mode_at_or_below_threshold(build_services):
    services = await build_services()
    indexer = make_indexer(services, bulk_mode_threshold=100, backfill_batch_blocks=50)

    plan = indexer.plan_ranges(100)

    assert plan.mode == SyncMode.NORMAL
    assert plan.ranges == [(51, 100)]
    assert plan.workers == 1


@pytest.mark.asyncio
async def test_plan_ranges_are_disjoint_and_descending(build_services):
    services = await build_services()
    indexer = make_indexer(services, bulk_mode_threshold=1, bulk_mode_batch_blocks=7, parallel_workers=4)

    plan = indexer.plan_ranges(20)

    assert plan.ranges == [(14, 20), (7, 13), (1, 6)]


@pytest.mark.asyncio
async def test_backward_sync_runs_to_completion(build_services):
    """The frontier only decreases and reaches zero; every height ends up stored."""
    plugin = RecordingPlugin()
    services = await build_services([plugin], chain=FakeMiddlewareClient(tip=30))
    indexer = make_indexer(services)

    frontiers = []
    modes = []
    while await indexer.sync_tick():
        state = await get_sync_state()
        frontiers.append(state.backward_synced_height)
        modes.append(state.is_bulk_mode)

    state = await get_sync_state()
    frontiers.append(state.backward_synced_height)

    assert frontiers == sorted(frontiers, reverse=True)
    assert frontiers[0] == 20
    assert frontiers[-1] == 0
    assert modes[0] is True
    assert state.is_bulk_mode is False
    assert state.is_backfill_complete
    assert state.last_synced_height == 30
    assert state.indexer_head_height == 30

    assert await count_rows(KeyBlock) == 30
    assert await count_rows(Tx) == 30
    assert len(set(plugin.hashes(SyncDirection.BACKWARD))) == 30

    # Nothing left to do
    assert await indexer.sync_tick() is False


@pytest.mark.asyncio
async def test_failed_range_does_not_move_frontier(build_services):
    services = await build_services()
    services.client.fail_heights.add(9)
    indexer = make_indexer(services, bulk_mode_threshold=100, backfill_batch_blocks=4)

    with pytest.raises(MiddlewareError):
        await indexer.sync_tick()

    state = await get_sync_state()
    assert state.backward_synced_height == 10

    services.client.fail_heights.clear()
    assert await indexer.sync_tick() is True
    state = await get_sync_state()
    assert state.backward_synced_height == 6


@pytest.mark.asyncio
async def test_failed_bulk_wave_does_not_move_frontier(build_services):
    services = await build_services()
    services.client.fail_heights.add(2)
    indexer = make_indexer(services, bulk_mode_threshold=1, bulk_mode_batch_blocks=5, parallel_workers=2)

    with pytest.raises(IndexerError):
        await indexer.sync_tick()

    state = await get_sync_state()
    assert state.backward_synced_height == 10


@pytest.mark.asyncio
async def test_tick_is_skipped_while_another_runs(build_services):
    services = await build_services()
    indexer = make_indexer(services)

    async with indexer._lock:
        assert await indexer.sync_tick() is False

    assert await get_sync_state() is None

