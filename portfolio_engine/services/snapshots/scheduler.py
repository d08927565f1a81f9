# portfolio_engine/services/snapshots/scheduler.py
"""
Daily trigger for the snapshot job, on APScheduler.

Fires once a day at settings.daily_snapshot_time in the reference zone
(default 01:00 Europe/Madrid), opens a session and runs the job. A run
that fails is logged; the cron trigger keeps firing on later days.

max_instances=1 keeps APScheduler from overlapping two firings; the job's
own lock additionally covers run_now() calls from other threads.

Usage:
    scheduler = DailySnapshotScheduler(job)
    scheduler.start()          # no-op when DAILY_SNAPSHOT_ENABLED=false
    ...
    scheduler.run_now()        # ad hoc run in the caller's thread
    scheduler.stop()
"""

import logging
from collections.abc import Callable
from datetime import date, datetime

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from portfolio_engine.config import Settings, settings
from portfolio_engine.database import SessionLocal, session_scope
from portfolio_engine.services.constants import DAILY_SNAPSHOT_JOB_NAME
from portfolio_engine.services.snapshots.job import DailySnapshotJob, SnapshotRunResult

logger = logging.getLogger(__name__)

# A firing missed by less than this (process asleep, restart) still runs
MISFIRE_GRACE_SECONDS = 6 * 60 * 60


class DailySnapshotScheduler:
    """
    Schedules DailySnapshotJob with an APScheduler BackgroundScheduler.

    Attributes:
        _job: The job to run
        _session_factory: Creates the session used by each run
        _settings: Source of enabled flag, time of day and zone
    """

    def __init__(
            self,
            job: DailySnapshotJob,
            session_factory: Callable[[], Session] = SessionLocal,
            app_settings: Settings | None = None,
    ) -> None:
        self._job = job
        self._session_factory = session_factory
        self._settings = app_settings or settings
        self._scheduler: BackgroundScheduler | None = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def next_run(self) -> datetime | None:
        if self._scheduler is None:
            return None
        scheduled = self._scheduler.get_job(DAILY_SNAPSHOT_JOB_NAME)
        return scheduled.next_run_time if scheduled else None

    def build_trigger(self) -> CronTrigger:
        hour, minute = self._settings.snapshot_hour_minute
        return CronTrigger(hour=hour, minute=minute, timezone=self._settings.snapshot_zone)

    def start(self) -> bool:
        """
        Start the daily trigger.

        Returns:
            False when disabled by configuration or already started
        """
        if not self._settings.daily_snapshot_enabled:
            logger.info("Daily snapshot scheduler disabled by configuration")
            return False
        if self.is_running:
            return False

        self._scheduler = BackgroundScheduler(timezone=self._settings.snapshot_zone)
        self._scheduler.add_job(
            self._on_trigger,
            trigger=self.build_trigger(),
            id=DAILY_SNAPSHOT_JOB_NAME,
            name="Daily portfolio snapshot",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=MISFIRE_GRACE_SECONDS,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            f"Daily snapshot scheduled at {self._settings.daily_snapshot_time} "
            f"{self._settings.snapshot_timezone} (next run {self.next_run})"
        )
        return True

    def stop(self) -> None:
        if self._scheduler is not None:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Daily snapshot scheduler stopped")

    def reload(self, app_settings: Settings | None = None) -> bool:
        """Restart with new settings (time of day, zone, enabled flag)."""
        self.stop()
        if app_settings is not None:
            self._settings = app_settings
        return self.start()

    def run_now(self, today: date | None = None) -> SnapshotRunResult:
        """Run the job synchronously in the caller's thread."""
        with session_scope(self._session_factory) as db:
            return self._job.run(db, today=today)

    def _on_trigger(self) -> None:
        try:
            result = self.run_now()
        except Exception as e:
            logger.exception(f"Scheduled snapshot crashed: {e}")
            return
        if not result.ok:
            logger.warning(f"Scheduled snapshot ended with {result.outcome.value}: {result.reason}")
