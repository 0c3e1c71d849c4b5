"""
Transaction "created" events.

Call sites that persist transactions outside bulk mode emit explicitly; the
bulk backfill path never emits.
"""

from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Sequence

import structlog

from mdw_sync.models.tx import Tx


logger = structlog.get_logger(__name__)

CreatedCallback = Callable[[Sequence[Tx]], Awaitable[None]]


class TxEventBus:
    """In-process fan-out of newly created transactions."""

    def __init__(self):
        self._subscribers: List[CreatedCallback] = []
        self.created_count = 0
        self.last_created_at: Optional[datetime] = None

    def subscribe(self, callback: CreatedCallback):
        self._subscribers.append(callback)

    def unsubscribe(self, callback: CreatedCallback):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    async def emit_created(self, txs: Sequence[Tx]):
        """Notify subscribers; a failing subscriber is logged and skipped."""
        if not txs:
            return

        self.created_count += len(txs)
        self.last_created_at = datetime.utcnow()

        for callback in list(self._subscribers):
            try:
                await callback(txs)
            except Exception as e:
                logger.error("Tx created subscriber failed", error=str(e), count=len(txs))
