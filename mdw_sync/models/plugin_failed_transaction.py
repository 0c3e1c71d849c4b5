"""
PluginFailedTransaction model - dead letters per plugin.
"""

from typing import Optional

from sqlalchemy import String, Integer, Text, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class PluginFailedTransaction(BaseModel, TimestampMixin):
    """A transaction a plugin failed to process, kept for later replay."""

    __tablename__ = "plugin_failed_transaction"

    plugin_name: Mapped[str] = mapped_column(String(128), primary_key=True)
    tx_hash: Mapped[str] = mapped_column(String(128), primary_key=True)

    version: Mapped[int] = mapped_column(Integer, comment="Plugin version at failure time")
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    error_trace: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("idx_plugin_failed_tx_plugin_version", "plugin_name", "version"),
    )

    def __repr__(self) -> str:
        return f"<PluginFailedTransaction(plugin={self.plugin_name}, tx={self.tx_hash}, v={self.version})>"
