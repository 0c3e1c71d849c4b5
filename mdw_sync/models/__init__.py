"""
Database models for the sync engine.

Contains SQLAlchemy models that mirror middleware chain data and track
global and per-plugin sync progress.
"""

from .base import Base, BaseModel, TimestampMixin
from .key_block import KeyBlock
from .micro_block import MicroBlock
from .tx import Tx, PLUGIN_SIDECAR_COLUMNS
from .sync_state import SyncState, GLOBAL_SYNC_STATE_ID
from .plugin_sync_state import PluginSyncState
from .plugin_failed_transaction import PluginFailedTransaction

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "KeyBlock",
    "MicroBlock",
    "Tx",
    "PLUGIN_SIDECAR_COLUMNS",
    "SyncState",
    "GLOBAL_SYNC_STATE_ID",
    "PluginSyncState",
    "PluginFailedTransaction",
]
