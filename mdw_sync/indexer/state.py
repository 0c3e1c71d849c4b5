"""
Access to the global sync-state row.
"""

from typing import Any, Optional

from sqlalchemy import case, or_, update

from mdw_sync.core.database import get_async_session, upsert
from mdw_sync.models.sync_state import SyncState, GLOBAL_SYNC_STATE_ID


async def get_sync_state() -> Optional[SyncState]:
    async with get_async_session() as session:
        return await session.get(SyncState, GLOBAL_SYNC_STATE_ID)


async def ensure_sync_state(tip_height: int) -> SyncState:
    """
    Return the global row, creating it on first boot.

    Both frontiers start at the tip observed by whichever loop boots first,
    so the backfill and the live tailer meet without a gap.
    """
    async with get_async_session() as session:
        await upsert(
            session,
            SyncState,
            [{
                "id": GLOBAL_SYNC_STATE_ID,
                "last_synced_height": 0,
                "tip_height": tip_height,
                "is_bulk_mode": False,
                "backward_synced_height": tip_height,
                "live_synced_height": tip_height,
                "indexer_head_height": tip_height,
            }],
            ["id"],
            update_columns=[],
        )
        state = await session.get(SyncState, GLOBAL_SYNC_STATE_ID)

        # Rows written before the directional frontiers existed
        if state.backward_synced_height is None:
            state.backward_synced_height = tip_height
        if state.live_synced_height is None:
            state.live_synced_height = max(state.last_synced_height or 0, tip_height)
        return state


async def update_sync_state(**values: Any):
    async with get_async_session() as session:
        await session.execute(
            update(SyncState).where(SyncState.id == GLOBAL_SYNC_STATE_ID).values(**values)
        )


async def raise_sync_heights(**heights: int):
    """Move height columns up to the given values, never down."""
    values = {}
    for name, height in heights.items():
        column = getattr(SyncState, name)
        values[name] = case(
            (or_(column.is_(None), column < height), height),
            else_=column,
        )
    await update_sync_state(**values)
