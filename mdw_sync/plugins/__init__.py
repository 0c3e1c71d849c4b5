"""
Plugin contract, registry and fan-out.
"""

from .matching import PluginFilter
from .base import Plugin, BasePlugin
from .registry import PluginRegistryService, VersionChange, load_plugins
from .failed_transactions import PluginFailedTransactionService, RetryResult
from .batch_processor import PluginBatchProcessorService, PluginOutcome

__all__ = [
    "PluginFilter",
    "Plugin",
    "BasePlugin",
    "PluginRegistryService",
    "VersionChange",
    "load_plugins",
    "PluginFailedTransactionService",
    "RetryResult",
    "PluginBatchProcessorService",
    "PluginOutcome",
]
