"""
Test reorg detection and repair.
"""

import pytest
from sqlalchemy import update

from mdw_sync.core.database import get_async_session
from mdw_sync.indexer.reorg_service import ReorgService
from mdw_sync.indexer.state import ensure_sync_state, get_sync_state, raise_sync_heights
from mdw_sync.models import KeyBlock, MicroBlock, PluginSyncState, Tx

from tests.fakes import RecordingPlugin, count_rows


async def synced_chain(build_services, plugins, tip=10):
    services = await build_services(plugins)
    await services.block_sync.sync_block_range(1, tip, backward=True)
    await ensure_sync_state(tip)
    await raise_sync_heights(last_synced_height=tip, live_synced_height=tip)
    return services


@pytest.mark.asyncio
async def test_no_reorg_when_hashes_match(build_services):
    plugin = RecordingPlugin()
    services = await synced_chain(build_services, [plugin])
    reorg = ReorgService(services.client, services.batch_processor, reorg_depth=5)

    assert await reorg.find_divergence(10, 10) is None
    assert await reorg.check_and_handle_reorg(10) is False
    assert plugin.reorgs == []


@pytest.mark.asyncio
async def test_reorg_purges_and_rewinds(build_services):
    plugin = RecordingPlugin()
    services = await synced_chain(build_services, [plugin])
    old_hashes = services.client.tx_hashes(10)
    services.client.fork_from(10)
    reorg = ReorgService(services.client, services.batch_processor, reorg_depth=5)

    assert await reorg.check_and_handle_reorg(10) is True

    assert await count_rows(KeyBlock, KeyBlock.height >= 10) == 0
    assert await count_rows(MicroBlock, MicroBlock.height >= 10) == 0
    assert await count_rows(Tx, Tx.block_height >= 10) == 0
    assert await count_rows(Tx) == 18

    # The removed set is exactly what plugins were told about
    assert len(plugin.reorgs) == 1
    assert sorted(plugin.reorgs[0]) == sorted(old_hashes)

    state = await get_sync_state()
    assert state.last_synced_height == 9
    assert state.live_synced_height == 9
    assert state.last_synced_hash is None

    async with get_async_session() as session:
        plugin_state = await session.get(PluginSyncState, plugin.name)
    assert plugin_state.last_synced_height == 9
    assert plugin_state.backward_synced_height == 9


@pytest.mark.asyncio
async def test_deeper_fork_is_repaired_from_its_lowest_height(build_services):
    plugin = RecordingPlugin()
    services = await synced_chain(build_services, [plugin])
    old_hashes = [h for height in (8, 9, 10) for h in services.client.tx_hashes(height)]
    services.client.fork_from(8)
    reorg = ReorgService(services.client, services.batch_processor, reorg_depth=5)

    assert await reorg.find_divergence(10, 10) == 8
    assert await reorg.check_and_handle_reorg(10) is True
    assert await reorg.check_and_handle_reorg(10) is False

    assert reorg.reorgs_handled == 1
    assert len(plugin.reorgs) == 1
    assert sorted(plugin.reorgs[0]) == sorted(old_hashes)
    assert await count_rows(KeyBlock) == 7
    assert (await get_sync_state()).last_synced_height == 7


@pytest.mark.asyncio
async def test_plugin_heights_below_divergence_are_kept(build_services):
    plugin = RecordingPlugin()
    services = await synced_chain(build_services, [plugin])
    async with get_async_session() as session:
        await session.execute(
            update(PluginSyncState)
            .where(PluginSyncState.plugin_name == plugin.name)
            .values(last_synced_height=5, backward_synced_height=5, live_synced_height=None)
        )

    reorg = ReorgService(services.client, services.batch_processor, reorg_depth=5)
    await reorg.handle_reorg(8)

    async with get_async_session() as session:
        plugin_state = await session.get(PluginSyncState, plugin.name)
    assert plugin_state.last_synced_height == 5
    assert plugin_state.backward_synced_height == 5
    assert plugin_state.live_synced_height is None


@pytest.mark.asyncio
async def test_plugin_reorg_failure_does_not_undo_purge(build_services):
    failing = RecordingPlugin(name="failing")
    healthy = RecordingPlugin(name="healthy")

    async def broken_on_reorg(removed_hashes):
        raise RuntimeError("reorg hook failed")

    failing.on_reorg = broken_on_reorg
    services = await synced_chain(build_services, [failing, healthy])

    reorg = ReorgService(services.client, services.batch_processor, reorg_depth=5)
    removed = await reorg.handle_reorg(9)

    assert len(removed) == 4
    assert await count_rows(Tx, Tx.block_height >= 9) == 0
    assert sorted(healthy.reorgs[0]) == sorted(removed)
