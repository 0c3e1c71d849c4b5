"""
Dead-letter store for plugin failures and version-triggered replay.
"""

import traceback
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import structlog
from sqlalchemy import delete, func, select, update

from mdw_sync.core.config import settings
from mdw_sync.core.database import chunked, get_async_session, upsert
from mdw_sync.core.exceptions import FailedTransactionNotFoundError
from mdw_sync.indexer.types import SyncDirection
from mdw_sync.models.plugin_failed_transaction import PluginFailedTransaction
from mdw_sync.models.tx import Tx

from .base import Plugin
from .registry import PluginRegistryService


logger = structlog.get_logger(__name__)

# Replays are out-of-band reprocessing and never move a frontier
REPLAY_DIRECTION = SyncDirection.UPGRADE


@dataclass
class RetryResult:
    """Outcome of replaying dead letters."""
    succeeded: int = 0
    failed: int = 0
    missing: int = 0

    def merge(self, other: "RetryResult") -> "RetryResult":
        return RetryResult(
            self.succeeded + other.succeeded,
            self.failed + other.failed,
            self.missing + other.missing,
        )


def _format_trace(error: BaseException) -> str:
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


def _ordered(txs: Sequence[Tx]) -> List[Tx]:
    return sorted(txs, key=lambda tx: (tx.block_height, tx.micro_index, tx.micro_time, tx.hash))


class PluginFailedTransactionService:
    """Records per-plugin failures and replays them."""

    def __init__(self, registry: PluginRegistryService, batch_size: Optional[int] = None):
        self.logger = logger.bind(service="plugin_failed_transactions")
        self.registry = registry
        self.batch_size = batch_size or settings.plugin_batch_size

    async def record_failure(
        self,
        plugin_name: str,
        tx_hash: str,
        error: BaseException,
        version: int,
    ):
        """Upsert the (plugin, tx) dead letter, replacing any earlier failure."""
        await self.record_failures(plugin_name, [tx_hash], error, version)

    async def record_failures(
        self,
        plugin_name: str,
        tx_hashes: Sequence[str],
        error: BaseException,
        version: int,
    ):
        message = str(error) or type(error).__name__
        trace = _format_trace(error)
        rows = [
            {
                "plugin_name": plugin_name,
                "tx_hash": tx_hash,
                "version": version,
                "error_message": message,
                "error_trace": trace,
            }
            for tx_hash in dict.fromkeys(tx_hashes)
        ]
        async with get_async_session() as session:
            for chunk in chunked(rows, 500):
                await upsert(session, PluginFailedTransaction, chunk, ["plugin_name", "tx_hash"])

    async def get_failed_transactions(
        self,
        plugin_name: str,
        limit: int = 100,
        offset: int = 0,
    ) -> List[PluginFailedTransaction]:
        async with get_async_session() as session:
            result = await session.execute(
                select(PluginFailedTransaction)
                .where(PluginFailedTransaction.plugin_name == plugin_name)
                .order_by(PluginFailedTransaction.created_at, PluginFailedTransaction.tx_hash)
                .offset(offset)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def count_failed_transactions(self) -> Dict[str, int]:
        async with get_async_session() as session:
            result = await session.execute(
                select(PluginFailedTransaction.plugin_name, func.count())
                .group_by(PluginFailedTransaction.plugin_name)
            )
            return {name: count for name, count in result.all()}

    async def _load_transactions(self, hashes: Sequence[str]) -> List[Tx]:
        async with get_async_session() as session:
            result = await session.execute(select(Tx).where(Tx.hash.in_(list(hashes))))
            return list(result.scalars().all())

    async def _delete(self, plugin_name: str, hashes: Sequence[str]):
        if not hashes:
            return
        async with get_async_session() as session:
            await session.execute(
                delete(PluginFailedTransaction).where(
                    PluginFailedTransaction.plugin_name == plugin_name,
                    PluginFailedTransaction.tx_hash.in_(list(hashes)),
                )
            )

    async def _replay_chunk(
        self,
        plugin: Plugin,
        hashes: Sequence[str],
        new_version: int,
    ) -> RetryResult:
        txs = await self._load_transactions(hashes)
        found = {tx.hash for tx in txs}
        missing = [h for h in hashes if h not in found]

        if missing:
            # Removed by a reorg or validation pass since the failure
            self.logger.warning(
                "Dropping dead letters for removed transactions",
                plugin=plugin.name,
                count=len(missing),
            )
            await self._delete(plugin.name, missing)

        if not txs:
            return RetryResult(missing=len(missing))

        try:
            await plugin.process_batch(_ordered(txs), REPLAY_DIRECTION)
        except Exception as e:
            async with get_async_session() as session:
                await session.execute(
                    update(PluginFailedTransaction)
                    .where(
                        PluginFailedTransaction.plugin_name == plugin.name,
                        PluginFailedTransaction.tx_hash.in_(list(found)),
                    )
                    .values(
                        version=new_version,
                        error_message=str(e) or type(e).__name__,
                        error_trace=_format_trace(e),
                    )
                )
            self.logger.error(
                "Dead letter replay failed",
                plugin=plugin.name,
                count=len(txs),
                new_version=new_version,
                error=str(e),
            )
            return RetryResult(failed=len(txs), missing=len(missing))

        await self._delete(plugin.name, list(found))
        return RetryResult(succeeded=len(txs), missing=len(missing))

    async def retry_failed_transactions(
        self,
        plugin_name: str,
        old_version: int,
        new_version: int,
    ) -> RetryResult:
        """
        Replay failures recorded at ``old_version`` in fixed-size chunks.

        A chunk's success deletes its rows; a failure moves them to
        ``new_version`` with the new error.
        """
        plugin = self.registry.require_plugin(plugin_name)

        async with get_async_session() as session:
            result = await session.execute(
                select(PluginFailedTransaction.tx_hash)
                .where(
                    PluginFailedTransaction.plugin_name == plugin_name,
                    PluginFailedTransaction.version == old_version,
                )
                .order_by(PluginFailedTransaction.tx_hash)
            )
            hashes = list(result.scalars().all())

        total = RetryResult()
        for chunk in chunked(hashes, self.batch_size):
            total = total.merge(await self._replay_chunk(plugin, chunk, new_version))

        self.logger.info(
            "Replayed dead letters",
            plugin=plugin_name,
            old_version=old_version,
            new_version=new_version,
            succeeded=total.succeeded,
            failed=total.failed,
            missing=total.missing,
        )
        return total

    async def retry_failed_transaction(self, plugin_name: str, tx_hash: str) -> bool:
        """Replay one dead letter at the plugin's current version."""
        plugin = self.registry.require_plugin(plugin_name)

        async with get_async_session() as session:
            row = await session.get(PluginFailedTransaction, (plugin_name, tx_hash))
        if row is None:
            raise FailedTransactionNotFoundError(plugin_name, tx_hash)

        result = await self._replay_chunk(plugin, [tx_hash], plugin.version)
        return result.succeeded == 1

    async def check_and_retry_version_mismatches(self) -> Dict[str, RetryResult]:
        """Replay every failure recorded at a version other than the plugin's declared one."""
        results: Dict[str, RetryResult] = {}

        for plugin in self.registry.get_plugins():
            async with get_async_session() as session:
                result = await session.execute(
                    select(PluginFailedTransaction.version)
                    .where(
                        PluginFailedTransaction.plugin_name == plugin.name,
                        PluginFailedTransaction.version != plugin.version,
                    )
                    .distinct()
                )
                stale_versions = sorted(result.scalars().all())

            for stale_version in stale_versions:
                self.logger.info(
                    "Found dead letters from an older plugin version",
                    plugin=plugin.name,
                    stale_version=stale_version,
                    version=plugin.version,
                )
                outcome = await self.retry_failed_transactions(plugin.name, stale_version, plugin.version)
                results[plugin.name] = results.get(plugin.name, RetryResult()).merge(outcome)

        return results
