"""
SyncState model - global frontiers of the sync engine.
"""

from typing import Optional

from sqlalchemy import String, BigInteger, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


GLOBAL_SYNC_STATE_ID = "global"


class SyncState(BaseModel, TimestampMixin):
    """
    Singleton row (id = "global") holding the sync frontiers.

    backward_synced_height is the highest height the backfill has not yet
    synced and only decreases, except on reorg rewind. live_synced_height is
    the highest height persisted by the live tailer and only increases,
    except on reorg rewind.
    """

    __tablename__ = "sync_state"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=GLOBAL_SYNC_STATE_ID)

    last_synced_height: Mapped[int] = mapped_column(BigInteger, default=0, comment="Legacy frontier")
    last_synced_hash: Mapped[Optional[str]] = mapped_column(String(128))
    tip_height: Mapped[int] = mapped_column(BigInteger, default=0, comment="Last seen chain tip")
    is_bulk_mode: Mapped[bool] = mapped_column(Boolean, default=False)

    backward_synced_height: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        comment="Next height the backfill will sync, 0 when complete"
    )
    live_synced_height: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        comment="Highest height persisted by the live tailer"
    )
    indexer_head_height: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        comment="Highest tip observed by the backward indexer"
    )

    @property
    def is_backfill_complete(self) -> bool:
        return self.backward_synced_height is not None and self.backward_synced_height <= 0

    def __repr__(self) -> str:
        return (
            f"<SyncState(backward={self.backward_synced_height}, "
            f"live={self.live_synced_height}, tip={self.tip_height})>"
        )
