"""
Micro block fetch-and-persist.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import select

from mdw_sync.core.config import settings
from mdw_sync.core.database import chunked, get_async_session, upsert
from mdw_sync.core.exceptions import MiddlewareError
from mdw_sync.models.key_block import KeyBlock
from mdw_sync.models.micro_block import MicroBlock

from .converters import normalize_micro_block
from .middleware_client import MiddlewareClient


logger = structlog.get_logger(__name__)

SAVE_BATCH_SIZE = 1000


class MicroBlockService:
    """Fetches micro blocks from the middleware and upserts them by hash."""

    def __init__(self, client: MiddlewareClient, parallel_batch_size: Optional[int] = None):
        self.logger = logger.bind(service="micro_block_service")
        self.client = client
        self.parallel_batch_size = parallel_batch_size or settings.micro_blocks_parallel_batch_size

    async def fetch_micro_blocks_for_key_block(self, key_block_hash: str) -> List[Dict[str, Any]]:
        micro_blocks = await self.client.get_micro_blocks(key_block_hash)
        return [normalize_micro_block(mb) for mb in micro_blocks]

    async def save_micro_blocks(self, rows: Sequence[Dict[str, Any]]) -> int:
        if not rows:
            return 0
        async with get_async_session() as session:
            for chunk in chunked(list(rows), SAVE_BATCH_SIZE):
                await upsert(session, MicroBlock, chunk, ["hash"], skip_unchanged=True)
        return len(rows)

    async def sync_micro_blocks(self, start_height: int, end_height: int) -> int:
        """
        Fetch and upsert the micro blocks of every stored key block in range.

        Key blocks are fetched in small concurrent sub-batches; any failure
        fails the whole range.
        """
        async with get_async_session() as session:
            result = await session.execute(
                select(KeyBlock.hash)
                .where(KeyBlock.height.between(start_height, end_height))
                .order_by(KeyBlock.height)
            )
            key_block_hashes = list(result.scalars().all())

        if not key_block_hashes:
            return 0

        rows: List[Dict[str, Any]] = []
        for batch in chunked(key_block_hashes, self.parallel_batch_size):
            results = await asyncio.gather(
                *[self.fetch_micro_blocks_for_key_block(h) for h in batch]
            )
            for micro_blocks in results:
                rows.extend(micro_blocks)

        saved = await self.save_micro_blocks(rows)
        self.logger.debug(
            "Synced micro blocks",
            count=saved,
            key_blocks=len(key_block_hashes),
            start_height=start_height,
            end_height=end_height,
        )
        return saved

    async def sync_micro_blocks_for_key_block(self, key_block_hash: str) -> int:
        rows = await self.fetch_micro_blocks_for_key_block(key_block_hash)
        return await self.save_micro_blocks(rows)

    async def ensure_micro_block_exists(self, micro_block_hash: str, fallback_height: Optional[int] = None) -> bool:
        """Make sure a micro block row exists, fetching it when missing."""
        async with get_async_session() as session:
            existing = await session.get(MicroBlock, micro_block_hash)
        if existing is not None:
            return True

        try:
            micro_block = await self.client.get_micro_block(micro_block_hash)
        except MiddlewareError as e:
            self.logger.error("Failed to fetch micro block", hash=micro_block_hash, error=str(e))
            return False

        if micro_block is None:
            self.logger.error("Micro block not found in middleware", hash=micro_block_hash)
            return False

        # Concurrent transactions of one micro block may race here; upsert absorbs it
        await self.save_micro_blocks([normalize_micro_block(micro_block, fallback_height)])
        self.logger.debug("Saved micro block ahead of transaction", hash=micro_block_hash)
        return True
