"""
Reorg detection against the middleware and transactional repair.
"""

import asyncio
from typing import Dict, List, Optional

import structlog
from sqlalchemy import delete, select, update

from mdw_sync.core.config import settings
from mdw_sync.core.database import get_async_session
from mdw_sync.models.key_block import KeyBlock
from mdw_sync.models.micro_block import MicroBlock
from mdw_sync.models.plugin_sync_state import PluginSyncState
from mdw_sync.models.sync_state import SyncState, GLOBAL_SYNC_STATE_ID
from mdw_sync.models.tx import Tx
from mdw_sync.plugins.batch_processor import PluginBatchProcessorService
from mdw_sync.services.middleware_client import MiddlewareClient


logger = structlog.get_logger(__name__)


class ReorgService:
    """
    Compares stored key-block hashes of the recent window with the middleware.

    On divergence at height d, everything at or above d is purged in one
    store transaction, frontiers are rewound to d - 1, then plugins are
    told which transactions disappeared.
    """

    def __init__(
        self,
        client: MiddlewareClient,
        batch_processor: PluginBatchProcessorService,
        reorg_depth: Optional[int] = None,
    ):
        self.logger = logger.bind(service="reorg")
        self.client = client
        self.batch_processor = batch_processor
        self.reorg_depth = reorg_depth or settings.reorg_depth
        self._lock = asyncio.Lock()
        self.reorgs_handled = 0

    async def _stored_hashes(self, start_height: int, end_height: int) -> Dict[int, str]:
        async with get_async_session() as session:
            result = await session.execute(
                select(KeyBlock.height, KeyBlock.hash)
                .where(KeyBlock.height.between(start_height, end_height))
            )
            return {height: block_hash for height, block_hash in result.all()}

    async def find_divergence(self, tip_height: int, last_synced_height: int) -> Optional[int]:
        """
        Compare the window max(1, tip - depth) .. min(tip, last synced).

        Returns:
            Lowest height in the window whose stored hash differs from the
            middleware's, or None. Repairing from there removes a fork of
            any depth within the window in one pass.
        """
        start_height = max(1, tip_height - self.reorg_depth)
        end_height = min(tip_height, last_synced_height)
        if end_height < start_height:
            return None

        stored = await self._stored_hashes(start_height, end_height)
        if not stored:
            return None

        remote = {
            int(block["height"]): block["hash"]
            for block in await self.client.get_key_blocks(start_height, end_height)
        }

        for height in range(start_height, end_height + 1):
            stored_hash = stored.get(height)
            remote_hash = remote.get(height)
            if stored_hash is None or remote_hash is None:
                continue
            if stored_hash != remote_hash:
                self.logger.warning(
                    "Reorg detected",
                    height=height,
                    stored_hash=stored_hash,
                    remote_hash=remote_hash,
                )
                return height
        return None

    async def check_and_handle_reorg(self, tip_height: int) -> bool:
        """
        Detect and repair a reorg in the recent window.

        Returns:
            Whether a reorg was found and repaired
        """
        if self._lock.locked():
            return False

        async with self._lock:
            async with get_async_session() as session:
                state = await session.get(SyncState, GLOBAL_SYNC_STATE_ID)
            if state is None:
                self.logger.debug("No sync state yet, skipping reorg check")
                return False

            divergence = await self.find_divergence(tip_height, state.last_synced_height or 0)
            if divergence is None:
                return False

            await self.handle_reorg(divergence)
            return True

    async def handle_reorg(self, divergence_height: int) -> List[str]:
        """
        Purge everything at or above ``divergence_height`` and rewind frontiers.

        The purge commits or rolls back as a whole. Plugin notification runs
        after commit and its failures are only logged.

        Returns:
            Hashes of the removed transactions
        """
        new_height = divergence_height - 1
        self.logger.info("Handling reorg", divergence_height=divergence_height)

        async with get_async_session() as session:
            result = await session.execute(select(Tx.hash).where(Tx.block_height >= divergence_height))
            removed = list(result.scalars().all())

            await session.execute(delete(Tx).where(Tx.block_height >= divergence_height))
            await session.execute(delete(MicroBlock).where(MicroBlock.height >= divergence_height))
            await session.execute(delete(KeyBlock).where(KeyBlock.height >= divergence_height))

            await session.execute(
                update(SyncState)
                .where(SyncState.id == GLOBAL_SYNC_STATE_ID)
                .values(last_synced_height=new_height, last_synced_hash=None)
            )
            await session.execute(
                update(SyncState)
                .where(SyncState.id == GLOBAL_SYNC_STATE_ID, SyncState.live_synced_height > new_height)
                .values(live_synced_height=new_height)
            )

            for column in (
                PluginSyncState.last_synced_height,
                PluginSyncState.backward_synced_height,
                PluginSyncState.live_synced_height,
            ):
                await session.execute(
                    update(PluginSyncState)
                    .where(column > new_height)
                    .values({column.key: new_height})
                )

        self.reorgs_handled += 1
        self.logger.info(
            "Reorg handled",
            divergence_height=divergence_height,
            removed_transactions=len(removed),
        )

        if removed:
            try:
                await self.batch_processor.handle_reorg(removed)
            except Exception as e:
                self.logger.error("Plugin reorg notification failed", error=str(e))

        return removed
