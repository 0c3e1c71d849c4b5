"""
Plugin contract and the default plugin base class.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, List, Optional, Sequence

import structlog
from sqlalchemy import Select, select, update

from mdw_sync.core.database import get_async_session
from mdw_sync.indexer.types import SyncDirection
from mdw_sync.models.plugin_sync_state import PluginSyncState
from mdw_sync.models.tx import Tx

from .matching import PluginFilter, apply_structural_filters, matches_structural_filters

if TYPE_CHECKING:
    from .failed_transactions import PluginFailedTransactionService


logger = structlog.get_logger(__name__)

# Marks a sidecar whose decoder raised
DECODE_FAILED = object()


class Plugin(ABC):
    """
    A versioned consumer of mirrored transactions.

    Delivery is at-least-once: implementations must be idempotent per
    (plugin, tx hash). Bumping ``version`` resets the plugin's progress.
    """

    name: str = ""
    version: int = 1

    def start_from_height(self) -> int:
        return 1

    @abstractmethod
    def filters(self) -> List[PluginFilter]:
        """Filters selecting the transactions this plugin consumes."""

    @abstractmethod
    async def process_batch(self, txs: Sequence[Tx], direction: SyncDirection) -> None:
        """Process matched transactions. Raising marks the whole batch failed."""

    async def on_reorg(self, removed_hashes: Sequence[str]) -> None:
        """Transactions with these hashes were removed from the store."""

    def get_update_queries(self) -> List[Select]:
        return []

    async def update_transactions(self, batch_size: int = 100) -> int:
        return 0

    async def sync_historical_transactions(
        self,
        batch_size: int = 100,
        failed_transactions: Optional["PluginFailedTransactionService"] = None,
    ) -> int:
        return 0


class BasePlugin(Plugin):
    """
    Plugin with sidecar enrichment and per-transaction processing.

    Before processing, ``decode_data`` and ``decode_logs`` results are written
    under this plugin's key of ``Tx.data`` / ``Tx.logs`` as
    ``{"_version": version, "data": decoded}``. A decoder that raises leaves
    the previous entry in place, so the transaction stays stale and
    ``update_transactions`` decodes it again.
    """

    def __init__(self):
        self.logger = logger.bind(plugin=self.name)

    async def decode_data(self, tx: Tx) -> Optional[Any]:
        return None

    async def decode_logs(self, tx: Tx) -> Optional[Any]:
        return None

    @abstractmethod
    async def process_transaction(self, tx: Tx, direction: SyncDirection) -> None:
        """Process a single transaction."""

    async def process_batch(self, txs: Sequence[Tx], direction: SyncDirection) -> None:
        if not txs:
            return
        await self.enrich_transactions(txs)
        for tx in txs:
            await self.process_transaction(tx, direction)

    async def on_reorg(self, removed_hashes: Sequence[str]) -> None:
        self.logger.info("Reorg removed transactions", count=len(removed_hashes))

    async def _decode(self, tx: Tx):
        data = logs = DECODE_FAILED
        try:
            data = await self.decode_data(tx)
        except Exception as e:
            self.logger.warning("Failed to decode tx data", tx_hash=tx.hash, error=str(e))
        try:
            logs = await self.decode_logs(tx)
        except Exception as e:
            self.logger.warning("Failed to decode tx logs", tx_hash=tx.hash, error=str(e))
        return data, logs

    async def enrich_transactions(self, txs: Sequence[Tx]) -> None:
        """Write decoded sidecar entries for this plugin. Failures are non-fatal."""
        decoded = [(tx, *await self._decode(tx)) for tx in txs]

        try:
            async with get_async_session() as session:
                for tx, data, logs in decoded:
                    row = await session.get(Tx, tx.hash, with_for_update=True)
                    if row is None:
                        continue

                    values = {}
                    if data is not DECODE_FAILED:
                        values["data"] = self._with_entry(row.data, data)
                    if logs is not DECODE_FAILED and logs is not None:
                        values["logs"] = self._with_entry(row.logs, logs)
                    if not values:
                        continue

                    await session.execute(update(Tx).where(Tx.hash == tx.hash).values(**values))
                    for column, sidecar in values.items():
                        setattr(tx, column, sidecar)
        except Exception as e:
            self.logger.error("Failed to store decoded sidecars", count=len(txs), error=str(e))

    def _with_entry(self, sidecar: Optional[dict], value: Any) -> dict:
        updated = dict(sidecar or {})
        updated[self.name] = {"_version": self.version, "data": value}
        return updated

    def is_stale(self, tx: Tx) -> bool:
        return tx.sidecar_version("data", self.name) != self.version

    def get_update_queries(self) -> List[Select]:
        """Queries over stored transactions this plugin may need to re-decode."""
        query = apply_structural_filters(
            select(Tx).order_by(Tx.block_height, Tx.micro_time, Tx.hash),
            [f for f in self.filters() if f.is_structural],
        )
        return [query] if query is not None else []

    async def update_transactions(self, batch_size: int = 100) -> int:
        """
        Reprocess stored transactions whose sidecar version is out of date.

        Returns:
            Number of transactions reprocessed
        """
        filters = self.filters()
        processed = 0

        for query in self.get_update_queries():
            offset = 0
            while True:
                async with get_async_session() as session:
                    result = await session.execute(query.offset(offset).limit(batch_size))
                    page = list(result.scalars().all())

                if not page:
                    break
                offset += len(page)

                stale = [tx for tx in page if self.is_stale(tx) and matches_structural_filters(tx, filters)]
                if stale:
                    await self.process_batch(stale, SyncDirection.UPGRADE)
                    processed += len(stale)

                if len(page) < batch_size:
                    break

        self.logger.info("Version upgrade backfill completed", processed=processed, version=self.version)
        return processed

    async def sync_historical_transactions(
        self,
        batch_size: int = 100,
        failed_transactions: Optional["PluginFailedTransactionService"] = None,
    ) -> int:
        """
        Catch up from the store above this plugin's last synced height.

        A page the plugin fails on is dead-lettered through
        ``failed_transactions`` and paging continues; without a dead-letter
        store the error propagates.

        Returns:
            Number of transactions processed
        """
        async with get_async_session() as session:
            state = await session.get(PluginSyncState, self.name)

        if state is None or not state.is_active:
            self.logger.warning("Plugin sync state not found or inactive")
            return 0

        filters = self.filters()
        query = apply_structural_filters(
            select(Tx)
            .where(Tx.block_height > state.last_synced_height)
            .order_by(Tx.block_height, Tx.micro_time, Tx.hash),
            filters,
        )
        if query is None:
            return 0

        processed = 0
        offset = 0
        self.logger.info("Starting historical sync", from_height=state.last_synced_height + 1)

        while True:
            async with get_async_session() as session:
                result = await session.execute(query.offset(offset).limit(batch_size))
                page = list(result.scalars().all())

            if not page:
                break
            offset += len(page)

            matched = [tx for tx in page if matches_structural_filters(tx, filters)]
            if matched:
                try:
                    await self.process_batch(matched, SyncDirection.BACKWARD)
                    processed += len(matched)
                except Exception as e:
                    if failed_transactions is None:
                        raise
                    self.logger.error("Historical sync page failed", count=len(matched), error=str(e))
                    await failed_transactions.record_failures(
                        self.name, [tx.hash for tx in matched], e, self.version
                    )

            async with get_async_session() as session:
                await session.execute(
                    update(PluginSyncState)
                    .where(PluginSyncState.plugin_name == self.name)
                    .values(last_synced_height=max(tx.block_height for tx in page))
                )

            if len(page) < batch_size:
                break

        self.logger.info("Historical sync completed", processed=processed)
        return processed
