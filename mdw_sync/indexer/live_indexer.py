"""
Live forward tailer driven by middleware push notifications.
"""

import asyncio
from collections import deque
from datetime import datetime
from typing import Any, Dict, Optional, Set

import structlog

from mdw_sync.core.config import settings
from mdw_sync.plugins.batch_processor import PluginBatchProcessorService
from mdw_sync.services.block_sync_service import BlockSyncService
from mdw_sync.services.converters import is_self_spend, normalize_tx
from mdw_sync.services.micro_block_service import MicroBlockService
from mdw_sync.services.middleware_client import MiddlewareClient
from mdw_sync.services.websocket_client import (
    CHANNEL_KEY_BLOCKS,
    CHANNEL_TRANSACTIONS,
    MiddlewareWebSocketClient,
)

from .events import TxEventBus
from .state import ensure_sync_state, get_sync_state, raise_sync_heights, update_sync_state
from .types import IndexerStatus, LiveSyncStats, SyncDirection


logger = structlog.get_logger(__name__)

DEDUP_WINDOW = 100


class LiveIndexerService:
    """
    Subscribes to new transactions and new key-block headers.

    New transactions are deduplicated over the last 100 hashes, persisted
    and dispatched to plugins at once. Key-block headers advance the live
    frontier; a header arriving past a gap first syncs the missing heights.
    Headers run in their own tasks, one at a time, so a long catch-up never
    holds up the websocket reader.
    """

    def __init__(
        self,
        client: MiddlewareClient,
        websocket: MiddlewareWebSocketClient,
        block_sync: BlockSyncService,
        micro_blocks: MicroBlockService,
        batch_processor: PluginBatchProcessorService,
        events: TxEventBus,
        forward_catchup_batch_blocks: Optional[int] = None,
    ):
        self.logger = logger.bind(service="live_indexer")
        self.client = client
        self.websocket = websocket
        self.block_sync = block_sync
        self.micro_blocks = micro_blocks
        self.batch_processor = batch_processor
        self.events = events
        self.forward_catchup_batch_blocks = forward_catchup_batch_blocks or settings.forward_catchup_batch_blocks

        self.status = IndexerStatus.STOPPED
        self.stats = LiveSyncStats()
        self._recent: deque = deque(maxlen=DEDUP_WINDOW)
        self._recent_set = set()
        self._catchup_lock = asyncio.Lock()
        self._key_block_tasks: Set[asyncio.Task] = set()

    def is_active(self) -> bool:
        """Both subscriptions are held on a live connection."""
        return (
            self.websocket.is_connected
            and self.websocket.is_subscribed(CHANNEL_TRANSACTIONS)
            and self.websocket.is_subscribed(CHANNEL_KEY_BLOCKS)
        )

    async def start(self):
        self.status = IndexerStatus.STARTING
        self.stats.start_time = datetime.utcnow()

        await self.websocket.subscribe(CHANNEL_TRANSACTIONS, self.handle_transaction)
        await self.websocket.subscribe(CHANNEL_KEY_BLOCKS, self.on_key_block)
        await self.websocket.start()
        self.status = IndexerStatus.RUNNING
        self.logger.info("Live indexer started")

        try:
            tip = await self.client.get_tip_height()
            await ensure_sync_state(tip)
            await self.catch_up(tip)
        except Exception as e:
            self.stats.errors += 1
            self.logger.error("Initial live catch-up failed", error=str(e))

    async def stop(self):
        self.status = IndexerStatus.STOPPING
        for channel in (CHANNEL_TRANSACTIONS, CHANNEL_KEY_BLOCKS):
            try:
                await self.websocket.unsubscribe(channel)
            except Exception as e:
                self.logger.warning("Failed to unsubscribe", channel=channel, error=str(e))

        pending = list(self._key_block_tasks)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        await self.websocket.stop()
        self.status = IndexerStatus.STOPPED
        self.logger.info("Live indexer stopped")

    def _remember(self, tx_hash: str) -> bool:
        """Record a hash; False when it is already in the dedup window."""
        if tx_hash in self._recent_set:
            return False
        if len(self._recent) == self._recent.maxlen:
            self._recent_set.discard(self._recent[0])
        self._recent.append(tx_hash)
        self._recent_set.add(tx_hash)
        return True

    def _forget(self, tx_hash: str):
        self._recent_set.discard(tx_hash)
        if tx_hash in self._recent:
            self._recent.remove(tx_hash)

    async def handle_transaction(self, payload: Dict[str, Any]):
        """Persist and dispatch one pushed transaction."""
        tx_hash = (payload or {}).get("hash")
        if not tx_hash:
            return

        self.stats.transactions_received += 1
        self.stats.last_event_time = datetime.utcnow()

        if not self._remember(tx_hash):
            self.stats.duplicates_skipped += 1
            return

        if is_self_spend(payload):
            self.stats.self_spends_dropped += 1
            self.logger.debug("Dropping self spend", tx_hash=tx_hash)
            return

        try:
            row = normalize_tx(payload)
            if row["block_hash"]:
                await self.micro_blocks.ensure_micro_block_exists(row["block_hash"], row["block_height"])

            saved, created = await self.block_sync.save_transactions([row])
            if saved:
                await self.batch_processor.process_batch(saved, SyncDirection.LIVE)
            if created:
                await self.events.emit_created(created)
            self.stats.transactions_stored += 1

        except Exception as e:
            # Let a redelivery of the same hash try again
            self._forget(tx_hash)
            self.stats.errors += 1
            self.logger.error("Failed to process live transaction", tx_hash=tx_hash, error=str(e))

    def _schedule_key_block(self, payload: Dict[str, Any]) -> asyncio.Task:
        task = asyncio.create_task(self.handle_key_block(payload))
        self._key_block_tasks.add(task)
        task.add_done_callback(self._key_block_tasks.discard)
        return task

    async def on_key_block(self, payload: Dict[str, Any]):
        """Websocket handler; key blocks are processed off the reader loop."""
        self._schedule_key_block(payload)

    async def handle_key_block(self, payload: Dict[str, Any]):
        """Persist a new key block and advance the live frontier."""
        if not payload or payload.get("height") is None:
            return

        height = int(payload["height"])
        block_hash = payload.get("hash")
        self.stats.key_blocks_received += 1
        self.stats.last_event_time = datetime.utcnow()

        try:
            async with self._catchup_lock:
                state = await ensure_sync_state(height)
                if height - state.live_synced_height > 1:
                    await self._sync_forward(state.live_synced_height + 1, height - 1)

                block = await self.client.get_key_block(block_hash or height) or payload
                await self.block_sync.upsert_key_block(block)
                await self.micro_blocks.sync_micro_blocks_for_key_block(block.get("hash", block_hash))

                await raise_sync_heights(live_synced_height=height, tip_height=height, last_synced_height=height)
                await update_sync_state(last_synced_hash=block.get("hash", block_hash))
            self.logger.info("Live key block synced", height=height)

        except Exception as e:
            self.stats.errors += 1
            self.logger.error("Failed to process live key block", height=height, error=str(e))

    async def catch_up(self, target_height: int) -> int:
        """
        Sync heights between the live frontier and ``target_height`` forward.

        Waits for any catch-up or key block already in progress, then starts
        from the frontier that one left behind.

        Returns:
            Number of heights synced
        """
        async with self._catchup_lock:
            state = await get_sync_state()
            if state is None or state.live_synced_height is None:
                return 0
            return await self._sync_forward(state.live_synced_height + 1, target_height)

    async def _sync_forward(self, start: int, target_height: int) -> int:
        synced = 0
        if start <= target_height:
            self.logger.info("Live catch-up", from_height=start, to_height=target_height)

        while start <= target_height:
            end = min(target_height, start + self.forward_catchup_batch_blocks - 1)
            await self.block_sync.sync_block_range(start, end, direction=SyncDirection.LIVE)
            await raise_sync_heights(live_synced_height=end, last_synced_height=end)
            self.stats.catchup_ranges += 1
            synced += end - start + 1
            start = end + 1

        return synced
