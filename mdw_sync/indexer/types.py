"""
Core types for the sync engine.
"""

from datetime import datetime
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class IndexerStatus(Enum):
    """Status of a sync loop."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class SyncDirection(str, Enum):
    """Why a batch is being delivered to plugins."""
    BACKWARD = "backward"
    LIVE = "live"
    REORG = "reorg"
    UPGRADE = "upgrade"

    @property
    def advances_frontier(self) -> bool:
        return self in (SyncDirection.BACKWARD, SyncDirection.LIVE)


class SyncMode(str, Enum):
    """Backward sync mode chosen per tick."""
    BULK = "bulk"
    NORMAL = "normal"


@dataclass
class RangePlan:
    """Height ranges one backward tick will process."""
    mode: SyncMode
    batch_size: int
    workers: int
    ranges: list

    @property
    def lowest_height(self) -> int:
        return min(start for start, _ in self.ranges)


@dataclass
class BackwardSyncStats:
    """Statistics for the backward indexer."""
    ticks: int = 0
    ranges_synced: int = 0
    blocks_synced: int = 0
    errors: int = 0
    reorgs_detected: int = 0
    last_synced_height: Optional[int] = None
    last_tick_time: Optional[datetime] = None
    start_time: Optional[datetime] = None


@dataclass
class LiveSyncStats:
    """Statistics for the live tailer."""
    transactions_received: int = 0
    transactions_stored: int = 0
    duplicates_skipped: int = 0
    self_spends_dropped: int = 0
    key_blocks_received: int = 0
    catchup_ranges: int = 0
    errors: int = 0
    last_event_time: Optional[datetime] = None
    start_time: Optional[datetime] = None
