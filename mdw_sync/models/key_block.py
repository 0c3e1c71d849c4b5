"""
KeyBlock model - generation headers mirrored from the middleware.
"""

from typing import Optional, List

from sqlalchemy import String, Integer, BigInteger, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, JSONType


class KeyBlock(BaseModel, TimestampMixin):
    """Key block (generation) header."""

    __tablename__ = "key_blocks"

    hash: Mapped[str] = mapped_column(String(128), primary_key=True, comment="Key block hash")

    height: Mapped[int] = mapped_column(
        BigInteger,
        unique=True,
        comment="Generation height"
    )

    prev_hash: Mapped[Optional[str]] = mapped_column(String(128), comment="Previous block hash")
    prev_key_hash: Mapped[Optional[str]] = mapped_column(String(128), comment="Previous key block hash")
    state_hash: Mapped[Optional[str]] = mapped_column(String(128))
    beneficiary: Mapped[Optional[str]] = mapped_column(String(128))
    miner: Mapped[Optional[str]] = mapped_column(String(128))

    time: Mapped[Optional[int]] = mapped_column(BigInteger, comment="Block time in ms")

    transactions_count: Mapped[int] = mapped_column(Integer, default=0)
    micro_blocks_count: Mapped[int] = mapped_column(Integer, default=0)

    beneficiary_reward: Mapped[Optional[str]] = mapped_column(String(64), comment="Reward as decimal string")
    flags: Mapped[Optional[str]] = mapped_column(String(64))
    info: Mapped[Optional[str]] = mapped_column(String(128))
    nonce: Mapped[Optional[str]] = mapped_column(String(64), comment="Nonce as decimal string")
    pow: Mapped[Optional[List[int]]] = mapped_column(JSONType)
    target: Mapped[Optional[int]] = mapped_column(BigInteger)
    version: Mapped[Optional[int]] = mapped_column(Integer)

    __table_args__ = (
        Index("idx_key_blocks_prev_key_hash", "prev_key_hash"),
    )

    def __repr__(self) -> str:
        return f"<KeyBlock(height={self.height}, hash={self.hash})>"
