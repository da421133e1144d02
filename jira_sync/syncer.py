"""
Syncer Module
Orchestrates full and delta synchronization from Jira into the store.
"""

import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait as wait_futures
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Generator, List, Optional, Tuple

import pytz

from jira_sync.config_manager import DEFAULT_WORKER_COUNT, ConfigManager
from jira_sync.database.connection import DatabaseConnection
from jira_sync.database.models import (
    SYNC_STATUS_FAILURE, SYNC_STATUS_SUCCESS, SYNC_TYPE_DELTA, SYNC_TYPE_FULL
)
from jira_sync.database.repository import StoreError, SyncRepository
from jira_sync.jira_client import JiraAPIError, JiraClient
from jira_sync.metrics import MetricsRecorder, NoopRecorder, SyncResult, create_recorder
from jira_sync.normalizer import convert_issue, convert_project
from jira_sync.utils.helpers import format_duration, load_timezone
from jira_sync.utils.logger import get_logger
from jira_sync.utils.retry import DEFAULT_RETRY, OperationCancelled, RetryConfig, with_retry

logger = get_logger(__name__)

DELTA_FALLBACK = timedelta(hours=1)
JQL_TIMESTAMP_FORMAT = '%Y/%m/%d %H:%M'

_CLOSED = object()


class SyncError(Exception):
    """A sync run failed; the message names the failing stage."""

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage}: {cause}")


class ProjectNotFoundError(SyncError):
    """The requested project has never been synced into the store."""

    def __init__(self, project_key: str):
        self.project_key = project_key
        super().__init__('find project', LookupError(f"project {project_key} not found"))


@dataclass
class SyncReport:
    """Counters accumulated by one run."""
    run_id: int
    sync_type: str
    projects_synced: int = 0
    issues_synced: int = 0
    failed_projects: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def error_count(self) -> int:
        """Projects whose issues could not be fetched."""
        return len(self.failed_projects)


def format_jql_timestamp(moment: datetime, tz: pytz.BaseTzInfo) -> str:
    """Render an instant as the naive "YYYY/MM/DD HH:MM" JQL form in tz."""
    return moment.astimezone(tz).strftime(JQL_TIMESTAMP_FORMAT)


class Syncer:
    """
    Jira -> store synchronization engine.

    Full sync upserts every project, fans out per-project issue searches
    over a bounded worker pool, then upserts all issues. Delta sync
    fetches issues updated since the last successful delta run. Both
    modes write exactly one finalized sync_logs row per started run.
    """

    def __init__(
        self,
        jira: JiraClient,
        repo: SyncRepository,
        worker_count: int = DEFAULT_WORKER_COUNT,
        recorder: MetricsRecorder = None,
        tz: pytz.BaseTzInfo = None,
        now_fn: Callable[[], datetime] = None,
        cancel_event: threading.Event = None,
        retry_config: RetryConfig = DEFAULT_RETRY,
        sleep_fn: Callable[[float], None] = None,
        delta_fallback: timedelta = DELTA_FALLBACK
    ):
        """
        Initialize the syncer.

        Args:
            jira: Jira client (anything with fetch_projects, fetch_issues_for_project,
                fetch_issues_updated_since)
            repo: Store gateway
            worker_count: Maximum concurrent per-project fetches; <= 0 uses the default
            recorder: Metrics sink, no-op by default
            tz: Operator calendar timezone for delay status and delta JQL
            now_fn: Returns the current aware datetime (tests)
            cancel_event: Shared cancellation signal
            retry_config: Backoff policy for store operations
            sleep_fn: Replacement for store retry waits (tests)
            delta_fallback: Delta window when no successful delta run exists
        """
        self.jira = jira
        self.repo = repo
        self.worker_count = worker_count if worker_count and worker_count > 0 else DEFAULT_WORKER_COUNT
        self.recorder = recorder or NoopRecorder()
        self.tz = tz or load_timezone('Asia/Tokyo')
        self._now_fn = now_fn or (lambda: datetime.now(pytz.UTC))
        self.cancel_event = cancel_event or threading.Event()
        self.retry_config = retry_config
        self._sleep_fn = sleep_fn
        self.delta_fallback = delta_fallback

    def run(self, mode: str) -> SyncReport:
        """Run a 'full' or 'delta' sync."""
        if mode == 'delta':
            return self.run_delta_sync()
        if mode == 'full':
            return self.run_full_sync()
        raise ValueError(f"Unknown sync mode: {mode!r}")

    def _now(self) -> datetime:
        return self._now_fn().astimezone(self.tz)

    def _store(self, operation: str, fn: Callable, *args, cancellable: bool = True):
        """Run a store operation with retry, wrapping failures as SyncError."""
        try:
            return with_retry(
                operation,
                lambda: fn(*args),
                self.retry_config,
                cancel_event=self.cancel_event if cancellable else None,
                sleep_fn=self._sleep_fn
            )
        except (StoreError, OperationCancelled) as e:
            raise SyncError(operation, e) from e

    # ========================================
    # Run Log Guard
    # ========================================

    @contextmanager
    def _run_log(self, sync_type: str) -> Generator[SyncReport, None, None]:
        """
        Start a run log and guarantee its finalization.

        The body fills in the yielded report. On exit the run is finalized
        SUCCESS, or FAILURE with the error message if the body raised. A
        finalization failure is logged and never replaces the body's error.
        """
        started = time.monotonic()
        logger.info(f"{sync_type} sync started")

        try:
            run_id = self.repo.start_run_log(sync_type)
        except StoreError as e:
            raise SyncError('start sync log', e) from e

        report = SyncReport(run_id=run_id, sync_type=sync_type)
        error: Optional[BaseException] = None
        try:
            yield report
        except BaseException as e:
            error = e
            raise
        finally:
            report.duration_seconds = time.monotonic() - started
            status = SYNC_STATUS_FAILURE if error is not None else SYNC_STATUS_SUCCESS
            message = (str(error) or type(error).__name__) if error is not None else None

            try:
                self._store(
                    'finish sync log', self.repo.finish_run_log,
                    run_id, status, report.projects_synced, report.issues_synced, message,
                    cancellable=False
                )
            except SyncError as finish_error:
                logger.error(f"Failed to finish sync log {run_id}: {finish_error}")

            log = logger.error if error is not None else logger.info
            log(
                f"{sync_type} sync finished: status={status}, "
                f"projects_synced={report.projects_synced}, "
                f"issues_synced={report.issues_synced}, "
                f"failed_projects={report.error_count}, "
                f"duration={format_duration(report.duration_seconds)}"
                + (f", error={message}" if message else '')
            )
            self._record(report, success=error is None)

    def _record(self, report: SyncReport, success: bool) -> None:
        """Hand the run outcome to the metrics recorder."""
        result = SyncResult(
            sync_type=report.sync_type,
            success=success,
            duration=report.duration_seconds,
            projects_synced=report.projects_synced,
            issues_synced=report.issues_synced
        )
        try:
            self.recorder.record_sync(result)
        except Exception as e:
            logger.warning(f"Metrics recorder failed: {e}")

    # ========================================
    # Full Sync
    # ========================================

    def run_full_sync(self) -> SyncReport:
        """
        Sync every project and all of their issues.

        Returns:
            SyncReport for the finalized SUCCESS run

        Raises:
            SyncError: After the run has been finalized as FAILURE
        """
        with self._run_log(SYNC_TYPE_FULL) as report:
            logger.info("Fetching projects from Jira")
            try:
                jira_projects = self.jira.fetch_projects()
            except (JiraAPIError, OperationCancelled) as e:
                raise SyncError('get projects', e) from e

            projects = [convert_project(p) for p in jira_projects]
            report.projects_synced = self._store('upsert projects', self.repo.upsert_projects, projects)

            project_id_map = self._store('get project id map', self.repo.get_project_id_map)

            raw_issues, failed_projects = self._fetch_issues_parallel(jira_projects)
            report.failed_projects = failed_projects
            logger.info(f"Fetched {len(raw_issues)} issues from {len(jira_projects)} projects")

            issues = self._normalize_issues(raw_issues)
            report.issues_synced = self._store(
                'upsert issues', self.repo.upsert_issues, issues, project_id_map
            )

        return report

    def _fetch_issues_parallel(self, projects: List[Dict]) -> Tuple[List[Dict], List[str]]:
        """
        Fetch issues for all projects over a bounded worker pool.

        Per-project failures are logged as warnings and contribute no
        issues. Successful page sets flow through a queue that is closed
        once every worker has finished.

        Returns:
            (all issues, keys of projects that failed)
        """
        if not projects:
            return [], []

        results: queue.Queue = queue.Queue()
        semaphore = threading.BoundedSemaphore(self.worker_count)

        def fetch(project: Dict) -> Optional[str]:
            key = project.get('key')
            with semaphore:
                if self.cancel_event.is_set():
                    return None
                try:
                    issues = self.jira.fetch_issues_for_project(key)
                except OperationCancelled:
                    return None
                except JiraAPIError as e:
                    logger.warning(f"Failed to fetch issues for project {key}: {e}")
                    return key
                results.put(issues)
                return None

        def close_when_done(futures) -> None:
            wait_futures(futures)
            results.put(_CLOSED)

        all_issues: List[Dict] = []
        with ThreadPoolExecutor(max_workers=self.worker_count,
                                thread_name_prefix='issue-fetch') as pool:
            futures = [pool.submit(fetch, project) for project in projects]
            threading.Thread(target=close_when_done, args=(futures,), daemon=True).start()

            while True:
                page = results.get()
                if page is _CLOSED:
                    break
                all_issues.extend(page)

        failed_projects = []
        for future in futures:
            exc = future.exception()
            if exc is not None:
                raise SyncError('fetch issues', exc) from exc
            if future.result() is not None:
                failed_projects.append(future.result())

        return all_issues, failed_projects

    def _normalize_issues(self, raw_issues: List[Dict]) -> List:
        """Normalize issues against one shared "now"."""
        now = self._now()
        try:
            return [convert_issue(issue, now) for issue in raw_issues]
        except (AttributeError, TypeError, ValueError) as e:
            raise SyncError('normalize issues', e) from e

    # ========================================
    # Single Project Sync
    # ========================================

    def run_project_sync(self, project_key: str) -> SyncReport:
        """
        Re-sync all issues of one already-known project.

        Recorded as a FULL run so the delta watermark is never advanced
        by a partial sync. The project row itself is not refreshed.

        Raises:
            ProjectNotFoundError: If the key is not in the store (no run is logged)
            SyncError: After the run has been finalized as FAILURE
        """
        if not self._store('find project', self.repo.has_project, project_key):
            raise ProjectNotFoundError(project_key)

        with self._run_log(SYNC_TYPE_FULL) as report:
            project_id_map = self._store('get project id map', self.repo.get_project_id_map)

            logger.info(f"Fetching issues for project {project_key}")
            try:
                raw_issues = self.jira.fetch_issues_for_project(project_key)
            except (JiraAPIError, OperationCancelled) as e:
                raise SyncError('fetch issues', e) from e
            logger.info(f"Fetched {len(raw_issues)} issues for project {project_key}")

            issues = self._normalize_issues(raw_issues)
            report.issues_synced = self._store(
                'upsert issues', self.repo.upsert_issues, issues, project_id_map
            )

        return report

    # ========================================
    # Delta Sync
    # ========================================

    def run_delta_sync(self) -> SyncReport:
        """
        Sync issues updated since the last successful delta run.

        Without a previous successful delta run, the window starts
        delta_fallback (one hour by default) before now. projects_synced is always 0.

        Returns:
            SyncReport for the finalized SUCCESS run

        Raises:
            SyncError: After the run has been finalized as FAILURE
        """
        with self._run_log(SYNC_TYPE_DELTA) as report:
            last_success = self._store(
                'get last successful sync time',
                self.repo.get_last_successful_run_at, SYNC_TYPE_DELTA
            )

            if last_success is None:
                since = self._now() - self.delta_fallback
                logger.info(
                    f"No previous delta sync found, falling back to "
                    f"{format_duration(self.delta_fallback.total_seconds())} ago"
                )
            else:
                since = last_success

            since_text = format_jql_timestamp(since, self.tz)
            logger.info(f"Fetching issues updated since {since_text} ({self.tz.zone})")

            try:
                raw_issues = self.jira.fetch_issues_updated_since(since_text)
            except (JiraAPIError, OperationCancelled) as e:
                raise SyncError('search delta issues', e) from e

            logger.info(f"Fetched {len(raw_issues)} delta issues")
            if not raw_issues:
                return report

            project_id_map = self._store('get project id map', self.repo.get_project_id_map)
            issues = self._normalize_issues(raw_issues)
            report.issues_synced = self._store(
                'upsert issues', self.repo.upsert_issues, issues, project_id_map
            )

        return report


def create_syncer(
    config: ConfigManager = None,
    db: DatabaseConnection = None,
    cancel_event: threading.Event = None
) -> Syncer:
    """
    Wire a Syncer from configuration.

    Raises:
        ConfigurationError: If required settings are missing or invalid
    """
    config = config or ConfigManager()
    cancel_event = cancel_event or threading.Event()

    jira = JiraClient.from_config(config, cancel_event=cancel_event)
    repo = SyncRepository(db or DatabaseConnection(config.get_database_url()))
    sync_config = config.get_sync_config()

    return Syncer(
        jira,
        repo,
        worker_count=config.get_worker_count(),
        recorder=create_recorder(config.get_metrics_namespace()),
        tz=load_timezone(config.get_timezone_name()),
        cancel_event=cancel_event,
        delta_fallback=timedelta(minutes=int(sync_config.get('delta_fallback_minutes') or 60))
    )
