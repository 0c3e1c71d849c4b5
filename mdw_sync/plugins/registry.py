"""
Plugin registry: explicit plugin list, sync-state bootstrap and version management.
"""

import importlib
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set

import structlog
from sqlalchemy import select

from mdw_sync.core.database import get_async_session
from mdw_sync.core.exceptions import PluginError, PluginNotFoundError
from mdw_sync.models.plugin_sync_state import PluginSyncState

from .base import Plugin
from .matching import PluginFilter


logger = structlog.get_logger(__name__)


@dataclass
class VersionChange:
    """A plugin whose declared version differs from the stored one."""
    plugin_name: str
    old_version: int
    new_version: int


def load_plugins(paths: Sequence[str]) -> List[Plugin]:
    """
    Instantiate plugins from ``"package.module:ClassName"`` entries.

    Raises:
        PluginError: When an entry cannot be imported or is not a Plugin
    """
    plugins = []
    for path in paths:
        module_name, _, class_name = path.partition(":")
        if not module_name or not class_name:
            raise PluginError(f"Invalid plugin path: {path}", {"path": path})
        try:
            plugin_class = getattr(importlib.import_module(module_name), class_name)
        except (ImportError, AttributeError) as e:
            raise PluginError(f"Cannot load plugin {path}: {e}", {"path": path}) from e

        if not isinstance(plugin_class, type) or not issubclass(plugin_class, Plugin):
            raise PluginError(f"{path} does not implement Plugin", {"path": path})
        plugins.append(plugin_class())
    return plugins


class PluginRegistryService:
    """Holds the plugin set and owns one sync-state row per plugin."""

    def __init__(self, plugins: Sequence[Plugin] = ()):
        self.logger = logger.bind(service="plugin_registry")
        self._plugins: Dict[str, Plugin] = {}
        for plugin in plugins:
            self.register(plugin)

    def register(self, plugin: Plugin):
        if not plugin.name:
            raise PluginError("Plugin has no name", {"plugin": type(plugin).__name__})
        if plugin.name in self._plugins:
            raise PluginError(f"Duplicate plugin name: {plugin.name}", {"plugin_name": plugin.name})
        self._plugins[plugin.name] = plugin

    def get_plugins(self) -> List[Plugin]:
        return list(self._plugins.values())

    def get_plugin_by_name(self, name: str) -> Optional[Plugin]:
        return self._plugins.get(name)

    def require_plugin(self, name: str) -> Plugin:
        plugin = self.get_plugin_by_name(name)
        if plugin is None:
            raise PluginNotFoundError(name)
        return plugin

    def get_all_filters(self) -> List[PluginFilter]:
        return [f for plugin in self._plugins.values() for f in plugin.filters()]

    def get_unique_contract_ids(self) -> Set[str]:
        return {cid for f in self.get_all_filters() for cid in f.contract_ids}

    def get_unique_functions(self) -> Set[str]:
        return {fn for f in self.get_all_filters() for fn in f.functions}

    def get_unique_types(self) -> Set[str]:
        return {f.type for f in self.get_all_filters() if f.type is not None}

    async def bootstrap(self) -> List[VersionChange]:
        """
        Create or reconcile the sync-state row of every registered plugin.

        - missing row: seeded at start_from_height - 1, directional heights unset
        - version mismatch: store the new version and reset to start_from_height - 1
        - matching version with unset directional heights: backfill them from
          last_synced_height

        Returns:
            The version changes applied
        """
        changes: List[VersionChange] = []

        async with get_async_session() as session:
            result = await session.execute(
                select(PluginSyncState).where(PluginSyncState.plugin_name.in_(list(self._plugins)))
            )
            existing = {state.plugin_name: state for state in result.scalars().all()}

            for plugin in self._plugins.values():
                start = plugin.start_from_height()
                state = existing.get(plugin.name)

                if state is None:
                    session.add(PluginSyncState(
                        plugin_name=plugin.name,
                        version=plugin.version,
                        last_synced_height=start - 1,
                        backward_synced_height=None,
                        live_synced_height=None,
                        start_from_height=start,
                        is_active=True,
                    ))
                    self.logger.info("Created plugin sync state", plugin=plugin.name, start_from_height=start)
                    continue

                if state.version != plugin.version:
                    changes.append(VersionChange(plugin.name, state.version, plugin.version))
                    state.version = plugin.version
                    state.last_synced_height = start - 1
                    state.backward_synced_height = None
                    state.live_synced_height = None
                    state.start_from_height = start
                    self.logger.warning(
                        "Plugin version changed, forcing full resync",
                        plugin=plugin.name,
                        old_version=changes[-1].old_version,
                        new_version=plugin.version,
                    )
                    continue

                if state.backward_synced_height is None or state.live_synced_height is None:
                    if state.backward_synced_height is None:
                        state.backward_synced_height = state.last_synced_height
                    if state.live_synced_height is None:
                        state.live_synced_height = state.last_synced_height
                    self.logger.info(
                        "Backfilled plugin directional heights",
                        plugin=plugin.name,
                        height=state.last_synced_height,
                    )

        self.logger.info("Plugin registry bootstrapped", plugins=len(self._plugins), version_changes=len(changes))
        return changes

    async def get_sync_states(self) -> List[PluginSyncState]:
        async with get_async_session() as session:
            result = await session.execute(select(PluginSyncState).order_by(PluginSyncState.plugin_name))
            return list(result.scalars().all())
