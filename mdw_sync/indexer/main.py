"""
Main entry point for the sync engine.

Wires the middleware clients, the plugin registry and the sync services,
then runs the backward loop, the live tailer and the periodic checkers as
independent asyncio tasks.
"""

import asyncio
import signal
from typing import Any, Dict, List, Optional, Sequence

import structlog

from mdw_sync.core.config import settings
from mdw_sync.core.database import close_database, init_database, is_database_initialized
from mdw_sync.core.logging import setup_logging
from mdw_sync.plugins.base import Plugin
from mdw_sync.plugins.batch_processor import PluginBatchProcessorService
from mdw_sync.plugins.failed_transactions import PluginFailedTransactionService
from mdw_sync.plugins.registry import PluginRegistryService, load_plugins
from mdw_sync.scheduler.task_scheduler import TaskScheduler
from mdw_sync.services.block_sync_service import BlockSyncService
from mdw_sync.services.micro_block_service import MicroBlockService
from mdw_sync.services.middleware_client import MiddlewareClient, close_middleware_client, get_middleware_client
from mdw_sync.services.sync_health import SyncHealthService
from mdw_sync.services.websocket_client import MiddlewareWebSocketClient

from .block_validation import BlockValidationService
from .events import TxEventBus
from .indexer_service import IndexerService
from .live_indexer import LiveIndexerService
from .reorg_service import ReorgService


logger = structlog.get_logger(__name__)


class IndexerMain:
    """Sync engine coordinator."""

    def __init__(
        self,
        plugins: Optional[Sequence[Plugin]] = None,
        client: Optional[MiddlewareClient] = None,
        websocket: Optional[MiddlewareWebSocketClient] = None,
    ):
        self._plugins = plugins
        self.client = client
        self.websocket = websocket

        self.events = TxEventBus()
        self.registry: Optional[PluginRegistryService] = None
        self.failed_transactions: Optional[PluginFailedTransactionService] = None
        self.batch_processor: Optional[PluginBatchProcessorService] = None
        self.micro_blocks: Optional[MicroBlockService] = None
        self.block_sync: Optional[BlockSyncService] = None
        self.reorg: Optional[ReorgService] = None
        self.indexer: Optional[IndexerService] = None
        self.live_indexer: Optional[LiveIndexerService] = None
        self.block_validation: Optional[BlockValidationService] = None
        self.sync_health: Optional[SyncHealthService] = None
        self.task_scheduler: Optional[TaskScheduler] = None

        self.initialized = False
        self.running = False
        self.tasks: List[asyncio.Task] = []

    async def initialize(self):
        """Build every service and bootstrap plugin sync states."""
        if self.initialized:
            return

        try:
            logger.info("Initializing sync engine")
            if not is_database_initialized():
                await init_database()

            self.client = self.client or get_middleware_client()
            self.websocket = self.websocket or MiddlewareWebSocketClient()

            plugins = self._plugins if self._plugins is not None else load_plugins(settings.plugins)
            self.registry = PluginRegistryService(plugins)
            self.failed_transactions = PluginFailedTransactionService(self.registry, settings.plugin_batch_size)
            self.batch_processor = PluginBatchProcessorService(self.registry, self.failed_transactions)

            self.micro_blocks = MicroBlockService(self.client)
            self.block_sync = BlockSyncService(self.client, self.micro_blocks, self.batch_processor, self.events)
            self.reorg = ReorgService(self.client, self.batch_processor)
            self.indexer = IndexerService(self.client, self.block_sync, self.reorg)
            self.live_indexer = LiveIndexerService(
                self.client,
                self.websocket,
                self.block_sync,
                self.micro_blocks,
                self.batch_processor,
                self.events,
            )
            self.block_validation = BlockValidationService(self.client, self.block_sync, self.batch_processor)
            self.sync_health = SyncHealthService(self.registry, self.failed_transactions, self.live_indexer)
            self.task_scheduler = TaskScheduler(self.block_validation, self.failed_transactions, self.sync_health)

            version_changes = await self.registry.bootstrap()
            self.batch_processor.invalidate_cache()
            await self.task_scheduler.initialize()

            for change in version_changes:
                plugin = self.registry.require_plugin(change.plugin_name)
                self.tasks.append(asyncio.create_task(self._resync_plugin(plugin)))

            self.initialized = True
            logger.info("Sync engine initialized", plugins=len(plugins), version_changes=len(version_changes))

        except Exception as e:
            logger.error("Failed to initialize sync engine", error=str(e))
            raise

    async def _resync_plugin(self, plugin: Plugin):
        try:
            await plugin.sync_historical_transactions(settings.plugin_batch_size, self.failed_transactions)
        except Exception as e:
            logger.error("Plugin resync failed", plugin=plugin.name, error=str(e))

    async def start(self):
        """Start all loops and wait until they finish."""
        if not self.initialized:
            await self.initialize()

        logger.info("Starting sync engine")
        self.running = True

        self.tasks.append(asyncio.create_task(self.indexer.start()))
        self.tasks.append(asyncio.create_task(self.live_indexer.start()))
        if settings.scheduler_enabled:
            self.tasks.append(asyncio.create_task(self.task_scheduler.start()))

        logger.info("Sync engine started")
        await asyncio.gather(*self.tasks, return_exceptions=True)

    async def stop(self):
        """Stop all loops and release connections."""
        if not self.running and not self.tasks:
            return

        logger.info("Stopping sync engine")
        self.running = False

        if self.indexer:
            await self.indexer.stop()
        if self.task_scheduler:
            await self.task_scheduler.stop()
        if self.live_indexer:
            await self.live_indexer.stop()

        for task in self.tasks:
            if not task.done():
                task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks = []

        await close_middleware_client()
        logger.info("Sync engine stopped")

    async def get_status(self) -> Dict[str, Any]:
        status = await self.sync_health.get_health() if self.sync_health else {}
        status["scheduler"] = await self.task_scheduler.health_check() if self.task_scheduler else None
        status["running"] = self.running
        return status


_indexer_main: Optional[IndexerMain] = None


def get_indexer_main() -> IndexerMain:
    """Get the global sync engine instance."""
    global _indexer_main
    if _indexer_main is None:
        _indexer_main = IndexerMain()
    return _indexer_main


async def main():
    """Run the sync engine as a standalone process."""
    setup_logging()

    indexer = get_indexer_main()
    loop = asyncio.get_running_loop()

    def signal_handler(signum, frame):
        logger.info("Received signal, shutting down", signal=signum)
        loop.create_task(indexer.stop())

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await indexer.initialize()
        await indexer.start()
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down")
    except Exception as e:
        logger.error("Sync engine failed", error=str(e))
        raise
    finally:
        await indexer.stop()
        await close_database()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
