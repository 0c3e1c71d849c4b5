"""
Fan-out of persisted transaction batches to every plugin, with failure isolation.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

import structlog
from sqlalchemy import update

from mdw_sync.core.database import get_async_session
from mdw_sync.indexer.types import SyncDirection
from mdw_sync.models.plugin_sync_state import PluginSyncState
from mdw_sync.models.tx import Tx

from .base import Plugin
from .failed_transactions import PluginFailedTransactionService
from .matching import filter_batch
from .registry import PluginRegistryService


logger = structlog.get_logger(__name__)


class PluginOutcome:
    SKIPPED = "skipped"
    NO_MATCH = "no_match"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class PluginStateSnapshot:
    """Cached view of a plugin's sync-state row."""
    plugin_name: str
    version: int


class PluginBatchProcessorService:
    """
    Delivers each batch to all plugins concurrently and waits for all of them.

    One plugin's failure never reaches its siblings or the caller: the
    matched transactions are dead-lettered at the plugin's current version.
    """

    def __init__(
        self,
        registry: PluginRegistryService,
        failed_transactions: PluginFailedTransactionService,
    ):
        self.logger = logger.bind(service="plugin_batch_processor")
        self.registry = registry
        self.failed_transactions = failed_transactions
        self._state_cache: Dict[str, PluginStateSnapshot] = {}

    def invalidate_cache(self, plugin_name: Optional[str] = None):
        if plugin_name is None:
            self._state_cache.clear()
        else:
            self._state_cache.pop(plugin_name, None)

    async def _get_state(self, plugin_name: str) -> Optional[PluginStateSnapshot]:
        cached = self._state_cache.get(plugin_name)
        if cached is not None:
            return cached

        async with get_async_session() as session:
            state = await session.get(PluginSyncState, plugin_name)
        if state is None:
            return None

        snapshot = PluginStateSnapshot(plugin_name=state.plugin_name, version=state.version)
        self._state_cache[plugin_name] = snapshot
        return snapshot

    async def process_batch(self, txs: Sequence[Tx], direction: SyncDirection) -> Dict[str, str]:
        """
        Deliver a batch to every plugin.

        Returns:
            Outcome per plugin name
        """
        plugins = self.registry.get_plugins()
        if not txs or not plugins:
            return {}

        results = await asyncio.gather(
            *[self._process_for_plugin(plugin, txs, direction) for plugin in plugins],
            return_exceptions=True,
        )

        outcomes = {}
        for plugin, result in zip(plugins, results):
            if isinstance(result, BaseException):
                self.logger.error("Plugin fan-out error", plugin=plugin.name, error=str(result))
                outcomes[plugin.name] = PluginOutcome.FAILED
            else:
                outcomes[plugin.name] = result
        return outcomes

    async def _process_for_plugin(
        self,
        plugin: Plugin,
        txs: Sequence[Tx],
        direction: SyncDirection,
    ) -> str:
        state = await self._get_state(plugin.name)
        if state is None:
            self.logger.debug("Plugin sync state missing, skipping batch", plugin=plugin.name)
            return PluginOutcome.SKIPPED

        matched = filter_batch(txs, plugin.filters())
        if not matched:
            return PluginOutcome.NO_MATCH

        try:
            await plugin.process_batch(matched, direction)
        except Exception as e:
            self.logger.error(
                "Plugin failed to process batch",
                plugin=plugin.name,
                count=len(matched),
                direction=direction.value,
                error=str(e),
            )
            await self.failed_transactions.record_failures(
                plugin.name,
                [tx.hash for tx in matched],
                e,
                state.version,
            )
            return PluginOutcome.FAILED

        max_height = max(tx.block_height for tx in matched)
        values = {"last_synced_height": max_height}
        if direction.advances_frontier:
            values[f"{direction.value}_synced_height"] = max_height

        async with get_async_session() as session:
            await session.execute(
                update(PluginSyncState)
                .where(PluginSyncState.plugin_name == plugin.name)
                .values(**values)
            )

        self.logger.debug(
            "Plugin processed batch",
            plugin=plugin.name,
            count=len(matched),
            direction=direction.value,
            height=max_height,
        )
        return PluginOutcome.SUCCESS

    async def handle_reorg(self, removed_hashes: Sequence[str]):
        """Notify every plugin of removed transactions, unfiltered."""
        if not removed_hashes:
            return

        plugins = self.registry.get_plugins()
        results = await asyncio.gather(
            *[plugin.on_reorg(list(removed_hashes)) for plugin in plugins],
            return_exceptions=True,
        )
        for plugin, result in zip(plugins, results):
            if isinstance(result, BaseException):
                self.logger.error("Plugin failed to handle reorg", plugin=plugin.name, error=str(result))
            else:
                self.logger.debug("Plugin notified of reorg", plugin=plugin.name, removed=len(removed_hashes))
