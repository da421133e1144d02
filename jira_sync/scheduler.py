"""
Sync Scheduler Module
Runs the syncer periodically on a background APScheduler job.
"""

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

import pytz
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from jira_sync.syncer import SyncReport
from jira_sync.utils.helpers import format_duration
from jira_sync.utils.logger import get_logger

logger = get_logger(__name__)

STATE_IDLE = 'IDLE'
STATE_RUNNING = 'RUNNING'
STATE_STOPPED = 'STOPPED'

JOB_ID = 'jira_sync'


class SyncScheduler:
    """
    Periodic sync driver.

    The first run starts immediately; later runs follow the interval.
    Runs never overlap: a tick that arrives while a run is in progress
    is skipped. A failed run is logged and counted, and the schedule
    keeps going.
    """

    def __init__(
        self,
        run_fn: Callable[[], SyncReport],
        interval: timedelta,
        cancel_event: threading.Event = None
    ):
        """
        Initialize the scheduler.

        Args:
            run_fn: Executes one sync run
            interval: Time between run starts
            cancel_event: Set on stop so an in-flight run winds down
        """
        if interval.total_seconds() <= 0:
            raise ValueError("Scheduler interval must be positive")

        self.run_fn = run_fn
        self.interval = interval
        self.cancel_event = cancel_event or threading.Event()

        self._scheduler = BackgroundScheduler(timezone=pytz.UTC)
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._state = STATE_IDLE
        self._started = False
        self._last_run_at: Optional[datetime] = None
        self._last_report: Optional[SyncReport] = None
        self._sync_count = 0
        self._error_count = 0

    @property
    def state(self) -> str:
        """IDLE, RUNNING or STOPPED."""
        with self._lock:
            return self._state

    @property
    def status(self) -> Dict:
        """Snapshot of scheduler progress."""
        with self._lock:
            report = self._last_report
            return {
                'state': self._state,
                'interval_seconds': int(self.interval.total_seconds()),
                'last_run_at': self._last_run_at.isoformat() if self._last_run_at else None,
                'sync_count': self._sync_count,
                'error_count': self._error_count,
                'last_report': {
                    'run_id': report.run_id,
                    'sync_type': report.sync_type,
                    'projects_synced': report.projects_synced,
                    'issues_synced': report.issues_synced,
                    'failed_projects': list(report.failed_projects),
                    'duration_seconds': report.duration_seconds
                } if report else None
            }

    def start(self) -> None:
        """Schedule the job and start the background scheduler."""
        if self._started:
            logger.warning("Scheduler is already running")
            return

        self._scheduler.add_job(
            func=self._run_job,
            trigger=IntervalTrigger(seconds=self.interval.total_seconds()),
            id=JOB_ID,
            next_run_time=datetime.now(pytz.UTC),
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._scheduler.start()
        self._started = True
        logger.info(f"Sync scheduler started (interval: {format_duration(self.interval.total_seconds())})")

    def run_forever(self) -> None:
        """Start and block until stop() is called."""
        self.start()
        self._stop_event.wait()
        self._shutdown()

    def stop(self) -> None:
        """Stop scheduling and cancel the in-flight run. Safe to call repeatedly."""
        if self._stop_event.is_set():
            return
        logger.info("Stopping sync scheduler")
        self._stop_event.set()
        self.cancel_event.set()
        with self._lock:
            self._state = STATE_STOPPED

    def _shutdown(self) -> None:
        if self._started and self._scheduler.running:
            self._scheduler.shutdown(wait=True)
        logger.info("Sync scheduler stopped")

    def shutdown(self) -> None:
        """Stop and wait for the in-flight run to finish."""
        self.stop()
        self._shutdown()

    def _run_job(self) -> None:
        """One scheduled tick."""
        if self._stop_event.is_set():
            return

        with self._lock:
            self._state = STATE_RUNNING

        try:
            logger.info("Starting scheduled sync")
            report = self.run_fn()
        except Exception as e:
            with self._lock:
                self._error_count += 1
            logger.error(f"Scheduled sync failed: {e}")
        else:
            with self._lock:
                self._sync_count += 1
                self._last_report = report
            if report.failed_projects:
                logger.warning(
                    f"Scheduled sync completed with {report.error_count} failed projects: "
                    f"{', '.join(report.failed_projects)}"
                )
        finally:
            with self._lock:
                self._last_run_at = datetime.now(pytz.UTC)
                if self._state != STATE_STOPPED:
                    self._state = STATE_IDLE
