"""
Test range sync through BlockSyncService.
"""

import pytest
from sqlalchemy.exc import SQLAlchemyError

from mdw_sync.indexer.types import SyncDirection
from mdw_sync.models import KeyBlock, MicroBlock, Tx

from tests.fakes import RecordingPlugin, count_rows


@pytest.mark.asyncio
async def test_sync_block_range_is_idempotent(build_services):
    """Syncing the same range twice leaves one row per entity."""
    plugin = RecordingPlugin()
    services = await build_services([plugin])

    first = await services.block_sync.sync_block_range(1, 5, backward=True)
    second = await services.block_sync.sync_block_range(1, 5, backward=True)

    assert await count_rows(KeyBlock) == 5
    assert await count_rows(MicroBlock) == 5
    assert await count_rows(Tx) == 10
    assert first == second
    assert sorted(first[3]) == sorted(services.client.tx_hashes(3))

    # Delivery is at-least-once: both passes reach the plugin
    assert len(plugin.hashes(SyncDirection.BACKWARD)) == 20
    # Only the first pass creates rows
    assert services.events.created_count == 10


@pytest.mark.asyncio
async def test_normal_path_emits_created_events(build_services):
    services = await build_services()
    created = []

    async def on_created(txs):
        created.extend(tx.hash for tx in txs)

    services.events.subscribe(on_created)
    await services.block_sync.sync_block_range(1, 2)

    assert sorted(created) == sorted(services.client.tx_hashes(1) + services.client.tx_hashes(2))


@pytest.mark.asyncio
async def test_bulk_path_dispatches_existing_rows_without_events(build_services):
    """Conflicting rows count as already applied but are still dispatched."""
    plugin = RecordingPlugin()
    services = await build_services([plugin])

    await services.block_sync.sync_block_range(1, 3, direction=None)
    created_before = services.events.created_count

    await services.block_sync.sync_block_range(1, 3, backward=True, bulk=True)

    assert await count_rows(Tx) == 6
    assert sorted(plugin.hashes(SyncDirection.BACKWARD)) == sorted(
        h for height in (1, 2, 3) for h in services.client.tx_hashes(height)
    )
    assert services.events.created_count == created_before


@pytest.mark.asyncio
async def test_bulk_failure_falls_back_to_per_item_save(build_services, monkeypatch):
    plugin = RecordingPlugin()
    services = await build_services([plugin])

    async def failing_bulk_upsert(rows, direction):
        raise SQLAlchemyError("bulk insert failed")

    monkeypatch.setattr(services.block_sync, "bulk_upsert_transactions", failing_bulk_upsert)

    synced = await services.block_sync.sync_block_range(4, 6, backward=True, bulk=True)

    assert await count_rows(Tx) == 6
    assert set(synced) == {4, 5, 6}
    assert len(plugin.hashes(SyncDirection.BACKWARD)) == 6
    # The fallback is the normal path, which emits events
    assert services.events.created_count == 6


@pytest.mark.asyncio
async def test_key_block_upsert_replaces_hash_at_same_height(build_services):
    services = await build_services()
    await services.block_sync.sync_blocks(1, 3)

    services.client.fork_from(3)
    await services.block_sync.sync_blocks(1, 3)

    assert await count_rows(KeyBlock) == 3
    assert await count_rows(KeyBlock, KeyBlock.hash == "kh_b_3") == 1


@pytest.mark.asyncio
async def test_normalized_transaction_columns(build_services):
    services = await build_services()
    await services.block_sync.sync_block_range(2, 2)

    hashes = services.client.tx_hashes(2)
    txs = await services.block_sync._load_transactions(hashes)

    assert [tx.hash for tx in txs] == hashes
    assert txs[0].type == "ContractCallTx"
    assert txs[0].contract_id == "ct_token"
    assert txs[0].function == "transfer"
    assert txs[0].block_hash == "mh_a_2"
    assert txs[0].raw["type"] == "ContractCallTx"
    assert txs[0].data is None
