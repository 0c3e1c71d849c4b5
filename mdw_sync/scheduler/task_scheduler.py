"""
Task scheduler for the periodic sync checkers.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from mdw_sync.core.config import settings


logger = structlog.get_logger(__name__)


class ScheduledTask:
    """Represents a scheduled task."""

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        enabled: bool = True,
        run_immediately: bool = False
    ):
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self.enabled = enabled
        self.last_run = None
        self.next_run = datetime.utcnow()
        self.run_count = 0
        self.error_count = 0
        self.last_error = None

        if not run_immediately:
            self.next_run = datetime.utcnow() + timedelta(seconds=interval_seconds)

    def should_run(self) -> bool:
        """Check if task should run now."""
        return self.enabled and datetime.utcnow() >= self.next_run

    def schedule_next_run(self):
        self.next_run = datetime.utcnow() + timedelta(seconds=self.interval_seconds)

    async def run(self):
        """Execute the task, rescheduling it whatever the outcome."""
        try:
            logger.debug("Running scheduled task", task=self.name)

            start_time = datetime.utcnow()
            await self.func()
            duration = (datetime.utcnow() - start_time).total_seconds()

            self.last_run = start_time
            self.run_count += 1
            self.schedule_next_run()

            logger.debug("Task completed", task=self.name, duration=duration, run_count=self.run_count)

        except Exception as e:
            self.error_count += 1
            self.last_error = str(e)
            self.schedule_next_run()
            raise


class TaskScheduler:
    """
    Runs block validation, failed-transaction replay and health reporting.

    Each service is optional; tasks are only registered for the ones given.
    """

    def __init__(
        self,
        block_validation=None,
        failed_transactions=None,
        sync_health=None,
        loop_interval: float = 10,
    ):
        self.block_validation = block_validation
        self.failed_transactions = failed_transactions
        self.sync_health = sync_health

        self.tasks: Dict[str, ScheduledTask] = {}
        self.running = False
        self.loop_interval = loop_interval

    async def initialize(self):
        logger.info("Initializing task scheduler")
        self._register_default_tasks()
        logger.info("Task scheduler initialized", tasks=len(self.tasks))

    def _register_default_tasks(self):
        if self.block_validation is not None:
            self.register_task(
                "block_validation",
                self.block_validation.validate_recent_blocks,
                interval_seconds=settings.validation_interval_seconds,
            )

        if self.failed_transactions is not None:
            self.register_task(
                "failed_transaction_retry",
                self.failed_transactions.check_and_retry_version_mismatches,
                interval_seconds=settings.failed_tx_retry_interval_seconds,
                run_immediately=True,
            )

        if self.sync_health is not None:
            self.register_task(
                "health_report",
                self.sync_health.log_health,
                interval_seconds=settings.health_report_interval_seconds,
            )

    def register_task(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        enabled: bool = True,
        run_immediately: bool = False
    ):
        """Register a new scheduled task."""
        self.tasks[name] = ScheduledTask(
            name=name,
            func=func,
            interval_seconds=interval_seconds,
            enabled=enabled,
            run_immediately=run_immediately
        )
        logger.info("Registered task", task=name, interval_seconds=interval_seconds)

    def enable_task(self, name: str):
        if name in self.tasks:
            self.tasks[name].enabled = True
            logger.info("Enabled task", task=name)

    def disable_task(self, name: str):
        if name in self.tasks:
            self.tasks[name].enabled = False
            logger.info("Disabled task", task=name)

    async def start(self):
        """Start the task scheduler."""
        logger.info("Starting task scheduler")
        self.running = True

        while self.running:
            try:
                await self.run_pending_tasks()
                await asyncio.sleep(self.loop_interval)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Task scheduler loop error", error=str(e))
                await asyncio.sleep(self.loop_interval)

        logger.info("Task scheduler stopped")

    async def stop(self):
        logger.info("Stopping task scheduler")
        self.running = False

    async def run_pending_tasks(self):
        """Run all due tasks concurrently."""
        pending_tasks = [task for task in self.tasks.values() if task.should_run()]
        if not pending_tasks:
            return

        logger.debug("Running pending tasks", count=len(pending_tasks))
        results = await asyncio.gather(*[task.run() for task in pending_tasks], return_exceptions=True)

        for task, result in zip(pending_tasks, results):
            if isinstance(result, Exception):
                logger.error("Task failed", task=task.name, error=str(result), error_count=task.error_count)

    async def health_check(self) -> Dict[str, Any]:
        """Get health status of task scheduler."""
        total_tasks = len(self.tasks)
        tasks_with_errors = sum(1 for task in self.tasks.values() if task.error_count > 0)

        task_statuses = {}
        for name, task in self.tasks.items():
            task_statuses[name] = {
                "enabled": task.enabled,
                "last_run": task.last_run.isoformat() if task.last_run else None,
                "next_run": task.next_run.isoformat(),
                "run_count": task.run_count,
                "error_count": task.error_count,
                "last_error": task.last_error
            }

        return {
            "healthy": self.running and tasks_with_errors < max(1, total_tasks * 0.5),
            "running": self.running,
            "total_tasks": total_tasks,
            "tasks_with_errors": tasks_with_errors,
            "tasks": task_statuses
        }

    def get_task(self, name: str) -> Optional[ScheduledTask]:
        return self.tasks.get(name)
