"""
Backward sync: walks from the chain tip toward genesis.

Each tick runs ReorgCheck -> FetchTip -> ComputeMode -> FetchRange ->
PersistRange -> AdvanceFrontier. The frontier only moves after every range
of the tick has been persisted.
"""

import asyncio
from datetime import datetime
from typing import Optional, Tuple

import structlog

from mdw_sync.core.config import settings
from mdw_sync.core.exceptions import IndexerError
from mdw_sync.services.block_sync_service import BlockSyncService
from mdw_sync.services.middleware_client import MiddlewareClient

from .reorg_service import ReorgService
from .state import ensure_sync_state, raise_sync_heights, update_sync_state
from .types import BackwardSyncStats, IndexerStatus, RangePlan, SyncDirection, SyncMode


logger = structlog.get_logger(__name__)


class IndexerService:
    """Owns the global backward frontier and the bulk/normal mode decision."""

    def __init__(
        self,
        client: MiddlewareClient,
        block_sync: BlockSyncService,
        reorg: ReorgService,
        bulk_mode_threshold: Optional[int] = None,
        bulk_mode_batch_blocks: Optional[int] = None,
        parallel_workers: Optional[int] = None,
        backfill_batch_blocks: Optional[int] = None,
        sync_interval: Optional[float] = None,
    ):
        self.logger = logger.bind(service="indexer")
        self.client = client
        self.block_sync = block_sync
        self.reorg = reorg

        self.bulk_mode_threshold = settings.bulk_mode_threshold if bulk_mode_threshold is None else bulk_mode_threshold
        self.bulk_mode_batch_blocks = bulk_mode_batch_blocks or settings.bulk_mode_batch_blocks
        self.parallel_workers = parallel_workers or settings.parallel_workers
        self.backfill_batch_blocks = backfill_batch_blocks or settings.backfill_batch_blocks
        self.sync_interval = settings.sync_interval_seconds if sync_interval is None else sync_interval

        self.status = IndexerStatus.STOPPED
        self.stats = BackwardSyncStats()
        self._lock = asyncio.Lock()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def plan_ranges(self, remaining: int) -> RangePlan:
        """
        Split the work below the frontier into disjoint ranges, highest first.

        Bulk mode applies when more than ``bulk_mode_threshold`` heights remain.
        """
        if remaining > self.bulk_mode_threshold:
            mode, batch_size, workers = SyncMode.BULK, self.bulk_mode_batch_blocks, self.parallel_workers
        else:
            mode, batch_size, workers = SyncMode.NORMAL, self.backfill_batch_blocks, 1

        ranges = []
        end = remaining
        while end >= 1 and len(ranges) < workers:
            start = max(1, end - batch_size + 1)
            ranges.append((start, end))
            end = start - 1

        return RangePlan(mode=mode, batch_size=batch_size, workers=workers, ranges=ranges)

    async def _sync_range(self, height_range: Tuple[int, int], bulk: bool):
        start, end = height_range
        await self.block_sync.sync_block_range(
            start,
            end,
            backward=True,
            bulk=bulk,
            direction=SyncDirection.BACKWARD,
        )
        self.stats.ranges_synced += 1
        self.stats.blocks_synced += end - start + 1
        self.logger.debug("Synced range", start_height=start, end_height=end, bulk=bulk)

    async def _run_wave(self, plan: RangePlan):
        """Run all ranges of a bulk wave and wait for every one of them."""
        results = await asyncio.gather(
            *[self._sync_range(r, bulk=True) for r in plan.ranges],
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            raise IndexerError(
                f"Bulk wave failed in {len(errors)} of {len(plan.ranges)} ranges",
                {"ranges": plan.ranges, "error": str(errors[0])},
            ) from errors[0]

    async def sync_tick(self) -> bool:
        """
        Run one backward tick.

        Returns:
            Whether more backfill work remains
        """
        if self._lock.locked():
            self.logger.debug("Backward tick already running, skipping")
            return False

        async with self._lock:
            self.stats.ticks += 1
            self.stats.last_tick_time = datetime.utcnow()

            tip = await self.client.get_tip_height()
            await ensure_sync_state(tip)

            if await self.reorg.check_and_handle_reorg(tip):
                self.stats.reorgs_detected += 1
                self.logger.warning("Reorg repaired before backward tick")

            state = await ensure_sync_state(tip)
            await raise_sync_heights(tip_height=tip, indexer_head_height=tip)

            remaining = state.backward_synced_height or 0
            if remaining <= 0:
                if state.is_bulk_mode:
                    await update_sync_state(is_bulk_mode=False)
                self.logger.debug("Backfill complete")
                return False

            plan = self.plan_ranges(remaining)
            is_bulk = plan.mode == SyncMode.BULK
            if state.is_bulk_mode != is_bulk:
                await update_sync_state(is_bulk_mode=is_bulk)
                self.logger.info(
                    "Backward sync mode changed",
                    mode=plan.mode.value,
                    remaining=remaining,
                    batch_size=plan.batch_size,
                    workers=plan.workers,
                )

            if is_bulk:
                await self._run_wave(plan)
            else:
                await self._sync_range(plan.ranges[0], bulk=False)

            new_frontier = plan.lowest_height - 1
            highest = max(end for _, end in plan.ranges)
            await update_sync_state(backward_synced_height=new_frontier)
            await raise_sync_heights(last_synced_height=highest)
            self.stats.last_synced_height = plan.lowest_height

            self.logger.info(
                "Backward tick complete",
                mode=plan.mode.value,
                synced_from=plan.lowest_height,
                synced_to=highest,
                remaining=new_frontier,
            )
            return new_frontier > 0

    async def start(self):
        """Run ticks until stopped, re-ticking at once while work remains."""
        if self._running:
            self.logger.warning("Backward indexer already running")
            return

        self._running = True
        self.status = IndexerStatus.RUNNING
        self.stats.start_time = datetime.utcnow()
        self.logger.info("Starting backward indexer")

        try:
            while self._running:
                more_work = False
                try:
                    more_work = await self.sync_tick()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.stats.errors += 1
                    self.logger.error("Backward tick failed", error=str(e))

                await asyncio.sleep(0 if more_work else self.sync_interval)
        finally:
            self._running = False
            self.status = IndexerStatus.STOPPED
            self.logger.info("Backward indexer stopped")

    async def stop(self):
        self.status = IndexerStatus.STOPPING
        self._running = False
