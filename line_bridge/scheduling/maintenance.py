"""APScheduler setup for periodic bridge housekeeping."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

if TYPE_CHECKING:
    from line_bridge.config.loader import AppConfig

logger = logging.getLogger(__name__)

MISFIRE_GRACE_TIME = 300  # 5 minutes
PRUNE_JOB_ID = "mapping_prune"


class MaintenanceScheduler:
    """Runs the message-mapping prune job on an interval."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self._scheduler = AsyncIOScheduler(
            job_defaults={
                "misfire_grace_time": MISFIRE_GRACE_TIME,
                "coalesce": True,
                "max_instances": 1,
            }
        )
        self._prune_callback: Optional[Any] = None

    @property
    def scheduler(self) -> AsyncIOScheduler:
        return self._scheduler

    def set_prune_callback(self, callback: Any) -> None:
        """Set the async callable that prunes old message mappings."""
        self._prune_callback = callback

    def setup_jobs(self) -> None:
        """Configure all scheduled jobs."""
        self._setup_prune_job()
        logger.info("All scheduled jobs configured")

    def _setup_prune_job(self) -> None:
        if not self._prune_callback:
            logger.warning("No prune callback set, skipping mapping prune job")
            return

        interval = self._config.settings.maintenance_interval_minutes
        self._scheduler.add_job(
            self._prune_callback,
            trigger=IntervalTrigger(minutes=interval),
            id=PRUNE_JOB_ID,
            name="Message Mapping Prune",
            replace_existing=True,
        )
        logger.info("Mapping prune scheduled every %d minutes", interval)

    def start(self) -> None:
        """Start the scheduler."""
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Scheduler started")

    def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=True)
            logger.info("Scheduler stopped")
