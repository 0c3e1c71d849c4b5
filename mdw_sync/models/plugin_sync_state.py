"""
PluginSyncState model - per-plugin progress and version.
"""

from typing import Optional

from sqlalchemy import String, Integer, BigInteger, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class PluginSyncState(BaseModel, TimestampMixin):
    """Sync progress of one plugin. A version bump forces a full resync."""

    __tablename__ = "plugin_sync_state"

    plugin_name: Mapped[str] = mapped_column(String(128), primary_key=True)

    version: Mapped[int] = mapped_column(Integer, default=1, comment="Declared plugin version")

    last_synced_height: Mapped[int] = mapped_column(BigInteger, default=0)
    backward_synced_height: Mapped[Optional[int]] = mapped_column(BigInteger)
    live_synced_height: Mapped[Optional[int]] = mapped_column(BigInteger)
    start_from_height: Mapped[int] = mapped_column(BigInteger, default=0)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    def __repr__(self) -> str:
        return f"<PluginSyncState(plugin={self.plugin_name}, version={self.version})>"
