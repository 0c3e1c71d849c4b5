"""
Periodic re-validation of the recent block window.
"""

import asyncio
from typing import List, Optional, Sequence

import structlog
from sqlalchemy import delete, select

from mdw_sync.core.config import settings
from mdw_sync.core.database import get_async_session
from mdw_sync.models.tx import Tx
from mdw_sync.plugins.batch_processor import PluginBatchProcessorService
from mdw_sync.services.block_sync_service import BlockSyncService
from mdw_sync.services.middleware_client import MiddlewareClient

from .types import SyncDirection


logger = structlog.get_logger(__name__)


class BlockValidationService:
    """
    Re-syncs the last ``reorg_depth`` heights and reconciles stored transactions.

    Stored transactions the middleware no longer reports at their height are
    deleted and reported to plugins as removed; the surviving ones are
    dispatched again.
    """

    def __init__(
        self,
        client: MiddlewareClient,
        block_sync: BlockSyncService,
        batch_processor: PluginBatchProcessorService,
        reorg_depth: Optional[int] = None,
    ):
        self.logger = logger.bind(service="block_validation")
        self.client = client
        self.block_sync = block_sync
        self.batch_processor = batch_processor
        self.reorg_depth = reorg_depth or settings.reorg_depth
        self._lock = asyncio.Lock()

        self.runs = 0
        self.stale_removed = 0

    async def _stored_hashes(self, height: int) -> List[str]:
        async with get_async_session() as session:
            result = await session.execute(select(Tx.hash).where(Tx.block_height == height))
            return list(result.scalars().all())

    async def _load(self, hashes: Sequence[str]) -> List[Tx]:
        async with get_async_session() as session:
            result = await session.execute(
                select(Tx)
                .where(Tx.hash.in_(list(hashes)))
                .order_by(Tx.micro_index, Tx.micro_time)
            )
            return list(result.scalars().all())

    async def validate_height(self, height: int, fresh_hashes: Sequence[str]) -> List[str]:
        """
        Reconcile one height against the freshly synced hashes.

        Returns:
            Stale hashes that were deleted
        """
        fresh = set(fresh_hashes)
        stale = [h for h in await self._stored_hashes(height) if h not in fresh]

        if stale:
            async with get_async_session() as session:
                await session.execute(delete(Tx).where(Tx.hash.in_(stale)))
            self.stale_removed += len(stale)
            self.logger.warning("Removed stale transactions", height=height, count=len(stale))
            await self.batch_processor.handle_reorg(stale)

        if fresh:
            survivors = await self._load(list(fresh))
            if survivors:
                await self.batch_processor.process_batch(survivors, SyncDirection.BACKWARD)

        return stale

    async def validate_recent_blocks(self) -> Optional[int]:
        """
        Run one validation pass over the recent window.

        Returns:
            Number of stale transactions removed, or None when a pass was
            already in progress
        """
        if self._lock.locked():
            self.logger.debug("Validation already running, skipping")
            return None

        async with self._lock:
            tip = await self.client.get_tip_height()
            start_height = max(1, tip - self.reorg_depth)
            self.logger.info("Validating recent blocks", start_height=start_height, end_height=tip)

            fresh_by_height = await self.block_sync.sync_block_range(
                start_height,
                tip,
                direction=None,
            )

            removed = 0
            for height in range(start_height, tip + 1):
                try:
                    stale = await self.validate_height(height, fresh_by_height.get(height, []))
                    removed += len(stale)
                except Exception as e:
                    self.logger.error("Failed to validate height", height=height, error=str(e))

            self.runs += 1
            self.logger.info("Block validation complete", removed=removed)
            return removed
