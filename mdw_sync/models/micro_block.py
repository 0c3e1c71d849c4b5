"""
MicroBlock model - micro blocks belonging to a generation.
"""

from typing import Optional

from sqlalchemy import String, Integer, BigInteger, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class MicroBlock(BaseModel, TimestampMixin):
    """Micro block header."""

    __tablename__ = "micro_blocks"

    hash: Mapped[str] = mapped_column(String(128), primary_key=True, comment="Micro block hash")

    height: Mapped[int] = mapped_column(BigInteger, comment="Generation height")

    prev_hash: Mapped[Optional[str]] = mapped_column(String(128))
    prev_key_hash: Mapped[Optional[str]] = mapped_column(
        String(128),
        comment="Key block this micro block belongs to"
    )
    state_hash: Mapped[Optional[str]] = mapped_column(String(128))

    time: Mapped[Optional[int]] = mapped_column(BigInteger, comment="Block time in ms")
    transactions_count: Mapped[int] = mapped_column(Integer, default=0)
    flags: Mapped[Optional[str]] = mapped_column(String(64))
    version: Mapped[Optional[int]] = mapped_column(Integer)
    gas: Mapped[Optional[int]] = mapped_column(BigInteger)
    micro_block_index: Mapped[Optional[int]] = mapped_column(Integer)
    pof_hash: Mapped[Optional[str]] = mapped_column(String(128))
    signature: Mapped[Optional[str]] = mapped_column(String(256))
    txs_hash: Mapped[Optional[str]] = mapped_column(String(128))

    __table_args__ = (
        Index("idx_micro_blocks_height", "height"),
        Index("idx_micro_blocks_prev_key_hash", "prev_key_hash"),
    )

    def __repr__(self) -> str:
        return f"<MicroBlock(height={self.height}, hash={self.hash})>"
