"""
Test plugin fan-out: isolation, dead letters, directional height bookkeeping.
"""

import pytest
from sqlalchemy import delete

from mdw_sync.core.database import get_async_session
from mdw_sync.indexer.types import SyncDirection
from mdw_sync.models import PluginFailedTransaction, PluginSyncState, Tx
from mdw_sync.plugins.batch_processor import PluginOutcome
from mdw_sync.plugins.matching import PluginFilter

from tests.fakes import RecordingPlugin, count_rows


async def stored_txs(services, start, end):
    await services.block_sync.sync_block_range(start, end, direction=None)
    hashes = [h for height in range(start, end + 1) for h in services.client.tx_hashes(height)]
    return await services.block_sync._load_transactions(hashes)


async def get_state(name):
    async with get_async_session() as session:
        return await session.get(PluginSyncState, name)


@pytest.mark.asyncio
async def test_failing_plugin_does_not_affect_siblings(build_services):
    failing = RecordingPlugin(name="failing", version=3, fail=True)
    healthy = RecordingPlugin(name="healthy")
    services = await build_services([failing, healthy])
    txs = await stored_txs(services, 1, 3)

    outcomes = await services.batch_processor.process_batch(txs, SyncDirection.BACKWARD)

    assert outcomes == {"failing": PluginOutcome.FAILED, "healthy": PluginOutcome.SUCCESS}
    assert len(healthy.hashes()) == 6

    async with get_async_session() as session:
        failed = await session.get(PluginFailedTransaction, ("failing", txs[0].hash))
    assert failed.version == 3
    assert "cannot process batch" in failed.error_message
    assert "RuntimeError" in failed.error_trace
    assert await count_rows(PluginFailedTransaction) == 6

    assert (await get_state("healthy")).backward_synced_height == 3
    assert (await get_state("failing")).last_synced_height == 0


@pytest.mark.asyncio
async def test_missing_state_skips_and_predicate_less_filter_matches_nothing(build_services):
    no_state = RecordingPlugin(name="no_state")
    structural_only = RecordingPlugin(name="structural", filters=[PluginFilter(type="contract_call")])
    no_filters = RecordingPlugin(name="no_filters", filters=[])
    services = await build_services([no_state, structural_only, no_filters])
    txs = await stored_txs(services, 1, 2)

    async with get_async_session() as session:
        await session.execute(delete(PluginSyncState).where(PluginSyncState.plugin_name == "no_state"))
    services.batch_processor.invalidate_cache()

    outcomes = await services.batch_processor.process_batch(txs, SyncDirection.BACKWARD)

    assert outcomes == {
        "no_state": PluginOutcome.SKIPPED,
        "structural": PluginOutcome.NO_MATCH,
        "no_filters": PluginOutcome.NO_MATCH,
    }
    assert no_state.batches == structural_only.batches == no_filters.batches == []


@pytest.mark.asyncio
async def test_direction_decides_which_heights_move(build_services):
    plugin = RecordingPlugin()
    services = await build_services([plugin])
    txs = await stored_txs(services, 1, 6)
    by_height = {}
    for tx in txs:
        by_height.setdefault(tx.block_height, []).append(tx)

    await services.batch_processor.process_batch(by_height[4], SyncDirection.LIVE)
    state = await get_state(plugin.name)
    assert (state.last_synced_height, state.backward_synced_height, state.live_synced_height) == (4, None, 4)

    await services.batch_processor.process_batch(by_height[2], SyncDirection.BACKWARD)
    state = await get_state(plugin.name)
    assert (state.last_synced_height, state.backward_synced_height, state.live_synced_height) == (2, 2, 4)

    await services.batch_processor.process_batch(by_height[6], SyncDirection.UPGRADE)
    state = await get_state(plugin.name)
    assert (state.last_synced_height, state.backward_synced_height, state.live_synced_height) == (6, 2, 4)

    await services.batch_processor.process_batch(by_height[5], SyncDirection.REORG)
    state = await get_state(plugin.name)
    assert (state.last_synced_height, state.backward_synced_height, state.live_synced_height) == (5, 2, 4)


@pytest.mark.asyncio
async def test_predicate_selects_per_plugin(build_services):
    even = RecordingPlugin(name="even", filters=[PluginFilter(predicate=lambda tx: tx.block_height % 2 == 0)])
    services = await build_services([even])
    txs = await stored_txs(services, 1, 4)

    await services.batch_processor.process_batch(txs, SyncDirection.BACKWARD)

    assert {tx_hash.split("_")[2] for tx_hash in even.hashes()} == {"2", "4"}


@pytest.mark.asyncio
async def test_reorg_notification_is_isolated(build_services):
    failing = RecordingPlugin(name="failing")
    healthy = RecordingPlugin(name="healthy")

    async def broken_on_reorg(removed_hashes):
        raise RuntimeError("boom")

    failing.on_reorg = broken_on_reorg
    services = await build_services([failing, healthy])

    await services.batch_processor.handle_reorg(["th_x", "th_y"])
    await services.batch_processor.handle_reorg([])

    assert healthy.reorgs == [["th_x", "th_y"]]


@pytest.mark.asyncio
async def test_empty_batch_is_a_no_op(build_services):
    plugin = RecordingPlugin()
    services = await build_services([plugin])

    assert await services.batch_processor.process_batch([], SyncDirection.LIVE) == {}
    assert await count_rows(Tx) == 0
