"""
Test sync progress and health reporting.
"""

import pytest

from mdw_sync.indexer.live_indexer import LiveIndexerService
from mdw_sync.indexer.state import ensure_sync_state, update_sync_state
from mdw_sync.models import SyncState
from mdw_sync.services.sync_health import (
    STATUS_CRITICAL,
    STATUS_HEALTHY,
    STATUS_WARNING,
    SyncHealthService,
    classify_lag,
    compute_progress,
)

from tests.fakes import FakeWebSocket, RecordingPlugin


def make_state(**values):
    defaults = dict(
        tip_height=1000,
        backward_synced_height=250,
        live_synced_height=995,
        last_synced_height=995,
        is_bulk_mode=True,
    )
    defaults.update(values)
    return SyncState(**defaults)


@pytest.mark.parametrize("lag,expected", [
    (0, STATUS_HEALTHY),
    (9, STATUS_HEALTHY),
    (10, STATUS_WARNING),
    (99, STATUS_WARNING),
    (100, STATUS_CRITICAL),
])
def test_classify_lag(lag, expected):
    assert classify_lag(lag, warning=10, critical=100) == expected


def test_compute_progress():
    progress = compute_progress(make_state(), lag_warning=10, lag_critical=100)

    assert progress.backward_progress == 75.0
    assert progress.live_progress == 99.5
    assert progress.lag == 5
    assert progress.status == STATUS_HEALTHY
    assert progress.is_bulk_mode is True
    assert progress.is_backfill_complete is False


def test_compute_progress_complete_backfill_and_zero_tip():
    done = compute_progress(make_state(backward_synced_height=0, live_synced_height=1000))
    assert done.backward_progress == 100.0
    assert done.is_backfill_complete

    empty = compute_progress(make_state(tip_height=0, backward_synced_height=0, live_synced_height=0))
    assert empty.backward_progress == 0.0
    assert empty.live_progress == 0.0
    assert empty.lag == 0


@pytest.mark.asyncio
async def test_health_before_first_sync():
    health = await SyncHealthService().get_health()

    assert health["status"] == STATUS_CRITICAL
    assert health["message"] == "Sync has not started"


@pytest.mark.asyncio
async def test_health_report_includes_plugins_and_dead_letters(build_services):
    services = await build_services([RecordingPlugin()])
    await ensure_sync_state(100)
    await update_sync_state(backward_synced_height=40)
    await services.failed_transactions.record_failure("recorder", "th_1", RuntimeError("x"), 1)

    health = await SyncHealthService(services.registry, services.failed_transactions).get_health()

    assert health["status"] == STATUS_HEALTHY
    assert health["backward_progress"] == 60.0
    assert health["plugins"][0]["name"] == "recorder"
    assert health["failed_transactions"] == {"recorder": 1}


@pytest.mark.asyncio
async def test_inactive_live_tailer_degrades_health(build_services):
    services = await build_services()
    await ensure_sync_state(100)
    live = LiveIndexerService(
        services.client,
        FakeWebSocket(),
        services.block_sync,
        services.micro_blocks,
        services.batch_processor,
        services.events,
    )

    health = await SyncHealthService(live_indexer=live).get_health()

    assert health["live_active"] is False
    assert health["status"] == STATUS_WARNING
