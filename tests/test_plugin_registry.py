"""
Test plugin loading and sync-state bootstrap.
"""

import pytest
from sqlalchemy import update

from mdw_sync.core.database import get_async_session
from mdw_sync.core.exceptions import PluginError, PluginNotFoundError
from mdw_sync.models import PluginSyncState
from mdw_sync.plugins.registry import PluginRegistryService, VersionChange, load_plugins

from tests.fakes import RecordingPlugin, TokenPlugin, CONTRACT_ID


async def get_state(name):
    async with get_async_session() as session:
        return await session.get(PluginSyncState, name)


@pytest.mark.asyncio
async def test_bootstrap_seeds_missing_rows():
    registry = PluginRegistryService([RecordingPlugin(start_height=50), TokenPlugin()])

    changes = await registry.bootstrap()

    assert changes == []
    state = await get_state("recorder")
    assert state.version == 1
    assert state.last_synced_height == 49
    assert state.start_from_height == 50
    assert state.backward_synced_height is None
    assert state.live_synced_height is None
    assert state.is_active
    assert [s.plugin_name for s in await registry.get_sync_states()] == ["recorder", "token"]


@pytest.mark.asyncio
async def test_version_bump_resets_only_that_plugin():
    await PluginRegistryService([RecordingPlugin(), TokenPlugin()]).bootstrap()
    async with get_async_session() as session:
        await session.execute(
            update(PluginSyncState).values(last_synced_height=40, backward_synced_height=30, live_synced_height=40)
        )

    registry = PluginRegistryService([RecordingPlugin(version=2), TokenPlugin()])
    changes = await registry.bootstrap()

    assert changes == [VersionChange("recorder", 1, 2)]
    bumped = await get_state("recorder")
    assert bumped.version == 2
    assert bumped.last_synced_height == 0
    assert bumped.backward_synced_height is None
    assert bumped.live_synced_height is None

    untouched = await get_state("token")
    assert untouched.version == 1
    assert untouched.last_synced_height == 40
    assert untouched.backward_synced_height == 30


@pytest.mark.asyncio
async def test_bootstrap_backfills_directional_heights():
    await PluginRegistryService([RecordingPlugin()]).bootstrap()
    async with get_async_session() as session:
        await session.execute(update(PluginSyncState).values(last_synced_height=25))

    await PluginRegistryService([RecordingPlugin()]).bootstrap()

    state = await get_state("recorder")
    assert state.backward_synced_height == 25
    assert state.live_synced_height == 25


def test_load_plugins_from_paths():
    plugins = load_plugins(["tests.fakes:RecordingPlugin", "tests.fakes:TokenPlugin"])

    assert [p.name for p in plugins] == ["recorder", "token"]


@pytest.mark.parametrize("path", [
    "tests.fakes",
    "tests.fakes:MissingPlugin",
    "tests.missing_module:Plugin",
    "tests.fakes:make_tx",
])
def test_load_plugins_rejects_bad_paths(path):
    with pytest.raises(PluginError):
        load_plugins([path])


def test_registry_lookup_and_filter_aggregates():
    registry = PluginRegistryService([RecordingPlugin(), TokenPlugin()])

    assert registry.get_plugin_by_name("token").name == "token"
    assert registry.get_plugin_by_name("nope") is None
    with pytest.raises(PluginNotFoundError):
        registry.require_plugin("nope")

    assert registry.get_unique_contract_ids() == {CONTRACT_ID}
    assert registry.get_unique_types() == {"contract_call"}
    assert registry.get_unique_functions() == set()


def test_duplicate_plugin_names_are_rejected():
    with pytest.raises(PluginError):
        PluginRegistryService([RecordingPlugin(), RecordingPlugin()])
