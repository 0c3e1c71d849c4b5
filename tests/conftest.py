"""
Shared fixtures: a per-test SQLite database and wired sync services.
"""

from types import SimpleNamespace

import pytest

from mdw_sync.core.database import DatabaseManager, close_database, init_database
from mdw_sync.indexer.events import TxEventBus
from mdw_sync.plugins.batch_processor import PluginBatchProcessorService
from mdw_sync.plugins.failed_transactions import PluginFailedTransactionService
from mdw_sync.plugins.registry import PluginRegistryService
from mdw_sync.services.block_sync_service import BlockSyncService
from mdw_sync.services.micro_block_service import MicroBlockService

from tests.fakes import FakeMiddlewareClient


@pytest.fixture(autouse=True)
async def database(tmp_path):
    """Fresh SQLite database with all tables for every test."""
    await init_database(f"sqlite+aiosqlite:///{tmp_path / 'mdw_sync.db'}")
    await DatabaseManager.create_tables()
    yield
    await close_database()


@pytest.fixture
def client():
    return FakeMiddlewareClient(tip=10, txs_per_height=2)


@pytest.fixture
def build_services(client):
    """Factory wiring the sync services around a plugin list."""

    async def _build(plugins=(), bootstrap=True, chain=None):
        chain = chain or client
        registry = PluginRegistryService(plugins)
        if bootstrap:
            await registry.bootstrap()
        failed_transactions = PluginFailedTransactionService(registry, batch_size=50)
        batch_processor = PluginBatchProcessorService(registry, failed_transactions)
        events = TxEventBus()
        micro_blocks = MicroBlockService(chain, parallel_batch_size=2)
        block_sync = BlockSyncService(chain, micro_blocks, batch_processor, events)
        return SimpleNamespace(
            client=chain,
            registry=registry,
            failed_transactions=failed_transactions,
            batch_processor=batch_processor,
            events=events,
            micro_blocks=micro_blocks,
            block_sync=block_sync,
        )

    return _build
