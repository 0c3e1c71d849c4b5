"""
Fetch-and-persist of key blocks, micro blocks and transactions for a height range.

Two transaction write paths exist:

- normal: per-item upsert, dispatch to plugins, explicit "created" events
  for rows that did not exist before;
- bulk: chunked multi-row upsert, each chunk re-read and dispatched to
  plugins straight away, no events. Conflicts count as already applied and
  are still dispatched. An unexpected store failure falls back to the
  normal path for that page.
"""

from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from mdw_sync.core.database import chunked, get_async_session, upsert
from mdw_sync.indexer.events import TxEventBus
from mdw_sync.indexer.types import SyncDirection
from mdw_sync.models.key_block import KeyBlock
from mdw_sync.models.tx import PLUGIN_SIDECAR_COLUMNS, Tx
from mdw_sync.plugins.batch_processor import PluginBatchProcessorService

from .converters import normalize_key_block, normalize_tx
from .micro_block_service import MicroBlockService
from .middleware_client import MiddlewareClient


logger = structlog.get_logger(__name__)

SAVE_BATCH_SIZE = 1000
BULK_INSERT_BATCH_SIZE = 500

HashesByHeight = Dict[int, List[str]]


def _dedupe(rows: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return list({row["hash"]: row for row in rows}.values())


def _tx_update_columns(row: Dict[str, Any]) -> List[str]:
    return [key for key in row if key != "hash" and key not in PLUGIN_SIDECAR_COLUMNS]


class BlockSyncService:
    """Idempotent range sync against the middleware."""

    def __init__(
        self,
        client: MiddlewareClient,
        micro_blocks: MicroBlockService,
        batch_processor: PluginBatchProcessorService,
        events: TxEventBus,
    ):
        self.logger = logger.bind(service="block_sync")
        self.client = client
        self.micro_blocks = micro_blocks
        self.batch_processor = batch_processor
        self.events = events

    async def sync_blocks(self, start_height: int, end_height: int) -> int:
        """Fetch and upsert (on height) all key blocks in range."""
        blocks = await self.client.get_key_blocks(start_height, end_height)
        rows = [normalize_key_block(block) for block in blocks]
        await self.save_key_blocks(rows)
        if rows:
            self.logger.debug("Synced key blocks", count=len(rows), start_height=start_height, end_height=end_height)
        return len(rows)

    async def save_key_blocks(self, rows: Sequence[Dict[str, Any]]):
        if not rows:
            return
        rows = list({row["height"]: row for row in rows}.values())
        async with get_async_session() as session:
            for chunk in chunked(rows, SAVE_BATCH_SIZE):
                await upsert(session, KeyBlock, chunk, ["height"], skip_unchanged=True)

    async def upsert_key_block(self, block: Dict[str, Any]) -> Dict[str, Any]:
        row = normalize_key_block(block)
        await self.save_key_blocks([row])
        return row

    async def sync_micro_blocks(self, start_height: int, end_height: int) -> int:
        return await self.micro_blocks.sync_micro_blocks(start_height, end_height)

    async def save_transactions(self, rows: Sequence[Dict[str, Any]]) -> Tuple[List[Tx], List[Tx]]:
        """
        Per-item upsert path.

        Returns:
            (saved transactions, transactions that did not exist before)
        """
        rows = _dedupe(rows)
        if not rows:
            return [], []
        hashes = [row["hash"] for row in rows]

        async with get_async_session() as session:
            result = await session.execute(select(Tx.hash).where(Tx.hash.in_(hashes)))
            existing = set(result.scalars().all())

            for row in rows:
                await upsert(session, Tx, [row], ["hash"], _tx_update_columns(row), skip_unchanged=True)

        saved = await self._load_transactions(hashes)
        created = [tx for tx in saved if tx.hash not in existing]
        return saved, created

    async def bulk_upsert_transactions(
        self,
        rows: Sequence[Dict[str, Any]],
        direction: Optional[SyncDirection] = SyncDirection.BACKWARD,
    ) -> List[Tx]:
        """Chunked multi-row upsert; each chunk is dispatched as soon as it is stored."""
        saved_all: List[Tx] = []

        for chunk in chunked(_dedupe(rows), BULK_INSERT_BATCH_SIZE):
            hashes = [row["hash"] for row in chunk]
            async with get_async_session() as session:
                await upsert(session, Tx, chunk, ["hash"], _tx_update_columns(chunk[0]))

            saved = await self._load_transactions(hashes)
            if len(saved) < len(hashes):
                found = {tx.hash for tx in saved}
                self.logger.warning(
                    "Transactions missing after bulk upsert",
                    expected=len(hashes),
                    found=len(saved),
                    missing=[h for h in hashes if h not in found][:10],
                )

            if saved and direction is not None:
                await self.batch_processor.process_batch(saved, direction)
            saved_all.extend(saved)

        return saved_all

    async def _load_transactions(self, hashes: Sequence[str]) -> List[Tx]:
        async with get_async_session() as session:
            result = await session.execute(
                select(Tx)
                .where(Tx.hash.in_(list(hashes)))
                .order_by(Tx.block_height, Tx.micro_index, Tx.micro_time)
            )
            return list(result.scalars().all())

    async def _save_page_normal(
        self,
        rows: Sequence[Dict[str, Any]],
        direction: Optional[SyncDirection],
    ) -> List[Tx]:
        saved, created = await self.save_transactions(rows)
        if saved and direction is not None:
            await self.batch_processor.process_batch(saved, direction)
        if created:
            await self.events.emit_created(created)
        return saved

    async def sync_transactions(
        self,
        start_height: int,
        end_height: int,
        backward: bool = False,
        bulk: bool = False,
        direction: Optional[SyncDirection] = SyncDirection.BACKWARD,
    ) -> HashesByHeight:
        """
        Page through the range's transactions and persist them.

        Args:
            backward: Fetch pages newest first
            bulk: Use the bulk write path
            direction: Plugin dispatch direction, None to skip dispatch

        Returns:
            Stored transaction hashes keyed by block height
        """
        hashes_by_height: HashesByHeight = defaultdict(list)

        async for page in self.client.iter_transactions(start_height, end_height, backward=backward):
            if not page:
                continue
            rows = [normalize_tx(tx) for tx in page]

            if bulk:
                try:
                    saved = await self.bulk_upsert_transactions(rows, direction)
                except SQLAlchemyError as e:
                    self.logger.error(
                        "Bulk upsert failed, falling back to per-item save",
                        count=len(rows),
                        error=str(e),
                    )
                    saved = await self._save_page_normal(rows, direction)
            else:
                saved = await self._save_page_normal(rows, direction)

            if len(saved) < len(_dedupe(rows)):
                self.logger.warning("Some transactions were not saved", expected=len(rows), saved=len(saved))

            for tx in saved:
                hashes_by_height[tx.block_height].append(tx.hash)

        return dict(hashes_by_height)

    async def sync_block_range(
        self,
        start_height: int,
        end_height: int,
        backward: bool = False,
        bulk: bool = False,
        direction: Optional[SyncDirection] = SyncDirection.BACKWARD,
    ) -> HashesByHeight:
        """Sync key blocks, micro blocks and transactions of one range."""
        await self.sync_blocks(start_height, end_height)
        await self.sync_micro_blocks(start_height, end_height)
        return await self.sync_transactions(
            start_height,
            end_height,
            backward=backward,
            bulk=bulk,
            direction=direction,
        )
