"""
Tx model - mirrored transactions plus per-plugin sidecar maps.
"""

from typing import Optional, Dict, Any, List

from sqlalchemy import String, Integer, BigInteger, Text, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, JSONType


# Columns owned by plugins; the sync engine never overwrites them on upsert
PLUGIN_SIDECAR_COLUMNS = ("data", "logs")


class Tx(BaseModel, TimestampMixin):
    """
    A mirrored transaction.

    ``data`` and ``logs`` are maps keyed by plugin name, each entry shaped
    ``{"_version": int, "data": ...}``. A plugin writes only its own key.
    """

    __tablename__ = "txs"

    hash: Mapped[str] = mapped_column(String(128), primary_key=True, comment="Transaction hash")

    block_hash: Mapped[str] = mapped_column(String(128), default="", comment="Micro block hash")
    block_height: Mapped[int] = mapped_column(BigInteger, comment="Generation height")
    micro_index: Mapped[int] = mapped_column(BigInteger, default=0, comment="Index within micro block")
    micro_time: Mapped[int] = mapped_column(BigInteger, default=0, comment="Micro block time in ms")

    type: Mapped[str] = mapped_column(String(64), default="", comment="Transaction type, e.g. SpendTx")
    contract_id: Mapped[Optional[str]] = mapped_column(String(128))
    function: Mapped[Optional[str]] = mapped_column(String(128), comment="Called contract entrypoint")
    caller_id: Mapped[Optional[str]] = mapped_column(String(128))
    sender_id: Mapped[Optional[str]] = mapped_column(String(128))
    recipient_id: Mapped[Optional[str]] = mapped_column(String(128))
    payload: Mapped[Optional[str]] = mapped_column(Text, comment="Decoded SpendTx payload")

    signatures: Mapped[Optional[List[str]]] = mapped_column(JSONType)
    encoded_tx: Mapped[Optional[str]] = mapped_column(Text)
    raw: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, comment="Inner transaction body")
    version: Mapped[int] = mapped_column(Integer, default=1)

    data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, comment="Decoded data per plugin")
    logs: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, comment="Decoded logs per plugin")

    __table_args__ = (
        Index("idx_txs_block_height", "block_height"),
        Index("idx_txs_type", "type"),
        Index("idx_txs_function", "function"),
        Index("idx_txs_contract_id", "contract_id"),
        Index("idx_txs_caller_id", "caller_id"),
        Index("idx_txs_order", "block_height", "micro_index", "micro_time"),
    )

    def sidecar_version(self, column: str, plugin_name: str) -> Optional[int]:
        """Version a plugin last wrote into the ``data`` or ``logs`` sidecar."""
        entry = (getattr(self, column) or {}).get(plugin_name)
        if not isinstance(entry, dict):
            return None
        return entry.get("_version")

    def __repr__(self) -> str:
        return f"<Tx(hash={self.hash}, height={self.block_height}, type={self.type})>"
