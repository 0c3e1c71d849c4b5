"""
Sync progress and health reporting.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from mdw_sync.core.config import settings
from mdw_sync.indexer.state import get_sync_state
from mdw_sync.models.sync_state import SyncState


logger = structlog.get_logger(__name__)

STATUS_HEALTHY = "healthy"
STATUS_WARNING = "warning"
STATUS_CRITICAL = "critical"


@dataclass
class SyncProgress:
    """Progress of both frontiers against the last seen tip."""
    tip_height: int
    backward_synced_height: Optional[int]
    live_synced_height: Optional[int]
    backward_progress: float
    live_progress: float
    lag: int
    status: str
    is_bulk_mode: bool
    is_backfill_complete: bool
    live_active: Optional[bool] = None
    plugins: List[Dict[str, Any]] = field(default_factory=list)
    failed_transactions: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def classify_lag(lag: int, warning: int, critical: int) -> str:
    if lag >= critical:
        return STATUS_CRITICAL
    if lag >= warning:
        return STATUS_WARNING
    return STATUS_HEALTHY


def compute_progress(
    state: SyncState,
    lag_warning: Optional[int] = None,
    lag_critical: Optional[int] = None,
) -> SyncProgress:
    """
    Derive progress percentages and a status from the global sync state.

    Backward progress counts the heights between the tip and the backward
    frontier; live progress is the live frontier relative to the tip.
    """
    lag_warning = settings.health_lag_warning if lag_warning is None else lag_warning
    lag_critical = settings.health_lag_critical if lag_critical is None else lag_critical

    tip = state.tip_height or 0
    backward = state.backward_synced_height
    live = state.live_synced_height

    if tip <= 0:
        backward_progress = live_progress = 0.0
    else:
        remaining = max(backward or 0, 0)
        backward_progress = round(min(100.0, (tip - remaining) / tip * 100), 2)
        live_progress = round(min(100.0, (live or 0) / tip * 100), 2)

    lag = max(0, tip - (live or 0))

    return SyncProgress(
        tip_height=tip,
        backward_synced_height=backward,
        live_synced_height=live,
        backward_progress=backward_progress,
        live_progress=live_progress,
        lag=lag,
        status=classify_lag(lag, lag_warning, lag_critical),
        is_bulk_mode=bool(state.is_bulk_mode),
        is_backfill_complete=state.is_backfill_complete,
    )


class SyncHealthService:
    """Assembles the full health report: frontiers, tailer, plugins, dead letters."""

    def __init__(self, registry=None, failed_transactions=None, live_indexer=None):
        self.logger = logger.bind(service="sync_health")
        self.registry = registry
        self.failed_transactions = failed_transactions
        self.live_indexer = live_indexer

    async def get_health(self) -> Dict[str, Any]:
        state = await get_sync_state()
        if state is None:
            return {
                "status": STATUS_CRITICAL,
                "message": "Sync has not started",
                "plugins": [],
                "failed_transactions": {},
            }

        progress = compute_progress(state)

        if self.live_indexer is not None:
            progress.live_active = self.live_indexer.is_active()
            if not progress.live_active and progress.status == STATUS_HEALTHY:
                progress.status = STATUS_WARNING

        if self.registry is not None:
            progress.plugins = [
                {
                    "name": plugin_state.plugin_name,
                    "version": plugin_state.version,
                    "last_synced_height": plugin_state.last_synced_height,
                    "backward_synced_height": plugin_state.backward_synced_height,
                    "live_synced_height": plugin_state.live_synced_height,
                    "is_active": plugin_state.is_active,
                }
                for plugin_state in await self.registry.get_sync_states()
            ]

        if self.failed_transactions is not None:
            progress.failed_transactions = await self.failed_transactions.count_failed_transactions()

        return progress.to_dict()

    async def log_health(self):
        """Log a one-line health summary."""
        health = await self.get_health()
        log = self.logger.warning if health["status"] != STATUS_HEALTHY else self.logger.info
        log(
            "Sync health",
            status=health["status"],
            tip_height=health.get("tip_height"),
            backward_progress=health.get("backward_progress"),
            live_progress=health.get("live_progress"),
            lag=health.get("lag"),
            failed_transactions=sum(health["failed_transactions"].values()),
        )
