#!/usr/bin/env python3
"""
Database management script for the sync engine.
"""

import asyncio
import sys

import typer
from rich.console import Console
from rich.table import Table

from alembic.config import Config
from alembic import command
from mdw_sync.core.database import init_database, close_database, DatabaseManager
from mdw_sync.core.logging import setup_logging, get_logger
from mdw_sync.indexer.state import get_sync_state
from mdw_sync.plugins.failed_transactions import PluginFailedTransactionService
from mdw_sync.plugins.registry import PluginRegistryService
from mdw_sync.services.sync_health import compute_progress

console = Console()
logger = get_logger(__name__)
app = typer.Typer(help="Database management commands")


@app.command()
def init():
    """Initialize database with tables."""
    async def _init():
        setup_logging()
        await init_database()
        await DatabaseManager.create_tables()
        await close_database()
        console.print("Database initialized successfully")

    asyncio.run(_init())


@app.command()
def upgrade(revision: str = "head"):
    """Apply migrations."""
    command.upgrade(Config("alembic.ini"), revision)
    console.print(f"Database upgraded to: {revision}")


@app.command()
def downgrade(revision: str):
    """Downgrade database to specific revision."""
    command.downgrade(Config("alembic.ini"), revision)
    console.print(f"Database downgraded to: {revision}")


@app.command()
def current():
    """Show current database revision."""
    command.current(Config("alembic.ini"))


@app.command()
def reset():
    """Reset database (drop all tables)."""
    confirm = typer.confirm("Are you sure you want to drop all tables?")
    if not confirm:
        console.print("Operation cancelled")
        return

    async def _reset():
        setup_logging()
        await init_database()
        await DatabaseManager.drop_tables()
        await close_database()
        console.print("All tables dropped")

    asyncio.run(_reset())


@app.command()
def health():
    """Check database health."""
    async def _health():
        setup_logging()
        await init_database()
        is_healthy = await DatabaseManager.health_check()
        await close_database()
        return is_healthy

    if asyncio.run(_health()):
        console.print("Database is healthy")
    else:
        console.print("[red]Database health check failed[/red]")
        sys.exit(1)


@app.command()
def status():
    """Show sync frontiers, plugin states and dead-letter counts."""
    async def _status():
        setup_logging()
        await init_database()

        state = await get_sync_state()
        plugin_states = await PluginRegistryService().get_sync_states()
        failed = await PluginFailedTransactionService(PluginRegistryService()).count_failed_transactions()

        await close_database()
        return state, plugin_states, failed

    state, plugin_states, failed = asyncio.run(_status())

    if state is None:
        console.print("Sync has not started")
    else:
        progress = compute_progress(state)
        table = Table(title="Sync Status")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Tip height", str(progress.tip_height))
        table.add_row("Backward frontier", str(progress.backward_synced_height))
        table.add_row("Live frontier", str(progress.live_synced_height))
        table.add_row("Backward progress", f"{progress.backward_progress}%")
        table.add_row("Live progress", f"{progress.live_progress}%")
        table.add_row("Lag", str(progress.lag))
        table.add_row("Bulk mode", str(progress.is_bulk_mode))
        table.add_row("Status", progress.status)
        console.print(table)

    plugins = Table(title="Plugins")
    plugins.add_column("Plugin", style="cyan")
    plugins.add_column("Version")
    plugins.add_column("Last synced")
    plugins.add_column("Backward")
    plugins.add_column("Live")
    plugins.add_column("Failed", style="red")
    for plugin_state in plugin_states:
        plugins.add_row(
            plugin_state.plugin_name,
            str(plugin_state.version),
            str(plugin_state.last_synced_height),
            str(plugin_state.backward_synced_height),
            str(plugin_state.live_synced_height),
            str(failed.get(plugin_state.plugin_name, 0)),
        )
    console.print(plugins)


if __name__ == "__main__":
    app()
