"""Scheduler service - recurring system scans and periodic update checks.

Scan schedule:
- A cron expression (5 fields) configured by the server through ``scanInterval``
- Replacing the schedule removes the old job before adding the new one
- A fire while the previous scheduled scan is still queued/running is skipped,
  never queued behind it
- No catch-up after downtime: the next fire is computed from the current time
"""
import logging
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .config_store import ConfigStore
from .task_runner import PendingTask, ScanInProgressError, TaskRunner

logger = logging.getLogger(__name__)

SCAN_JOB_ID = "scheduled_scan"
UPDATE_JOB_ID = "update_check"
SCHEDULED_SCAN_TYPE = "system"


class SchedulerService:
    """Fires the task runner on the server-configured cron schedule."""

    def __init__(self, runner: TaskRunner, store: ConfigStore):
        self.runner = runner
        self.store = store
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.cron_expression: Optional[str] = None
        self._current: Optional[PendingTask] = None
        self._running = False

    def start(self):
        """Start the scheduler."""
        if self._running:
            return
        self.scheduler = AsyncIOScheduler()
        self.scheduler.start()
        self._running = True
        logger.info("Scheduler started")

    def stop(self):
        """Stop the scheduler."""
        if self.scheduler and self._running:
            self.scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Scheduler stopped")

    @staticmethod
    def parse(cron_expression: str) -> CronTrigger:
        """Validate a crontab expression.

        Raises:
            ValueError: the expression is not a valid 5-field crontab.
        """
        return CronTrigger.from_crontab(cron_expression)

    async def reschedule(self, cron_expression: str):
        """Replace the scan schedule and persist it.

        The expression is validated before the old job is touched, so an
        invalid expression leaves the current schedule running.
        """
        trigger = self.parse(cron_expression)

        if self.scheduler is not None:
            if self.scheduler.get_job(SCAN_JOB_ID):
                self.scheduler.remove_job(SCAN_JOB_ID)
            self.scheduler.add_job(
                self.fire,
                trigger=trigger,
                id=SCAN_JOB_ID,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=1,
            )

        self.cron_expression = cron_expression
        await self.store.set("scanInterval", cron_expression)
        logger.info(f"Scheduled scans with cron expression: {cron_expression}")

    async def restore(self):
        """Re-install the persisted schedule after a restart."""
        cron_expression = await self.store.get("scanInterval")
        if not cron_expression:
            return
        try:
            await self.reschedule(cron_expression)
        except ValueError as e:
            logger.error(f"Stored scan schedule '{cron_expression}' is invalid: {e}")

    async def fire(self) -> Optional[PendingTask]:
        """Start a scheduled scan unless the previous one is still outstanding."""
        if self._current is not None and not self._current.terminal:
            logger.warning(
                f"Skipping scheduled scan: previous scan {self._current.id} is still {self._current.status.value}"
            )
            return None

        try:
            self._current = self.runner.submit(SCHEDULED_SCAN_TYPE)
        except ScanInProgressError as e:
            logger.warning(f"Skipping scheduled scan: {e}")
            return None

        logger.info(f"Running scheduled scan (ID: {self._current.id})")
        return self._current

    def schedule_update_checks(self, hours: float, callback: Callable[[], Awaitable[None]]):
        """Run ``callback`` every ``hours`` hours."""
        if self.scheduler is None or hours <= 0:
            return
        self.scheduler.add_job(
            callback,
            trigger=IntervalTrigger(hours=hours),
            id=UPDATE_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Update checks every {hours}h")
