"""
Sync Repository Module
Idempotent upserts for projects and issues plus the sync_logs run lifecycle.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import (
    DataError,
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    OperationalError,
    ProgrammingError,
    SQLAlchemyError,
    TimeoutError as SQLAlchemyTimeoutError,
)
from sqlalchemy.orm import Session

from jira_sync.database.connection import DatabaseConnection
from jira_sync.database.models import Issue, Project, SyncLog, SYNC_STATUS_RUNNING, SYNC_STATUS_SUCCESS
from jira_sync.normalizer import IssueRecord, ProjectRecord
from jira_sync.utils.helpers import as_utc, chunk_list, utc_now
from jira_sync.utils.logger import get_logger

logger = get_logger(__name__)

UPSERT_BATCH_SIZE = 500
ERROR_MESSAGE_MAX_LENGTH = 1000

_PROJECT_UPDATE_COLUMNS = ('key', 'name', 'lead_account_id', 'lead_email')

_ISSUE_UPDATE_COLUMNS = (
    'jira_issue_key', 'project_id', 'summary', 'status', 'status_category',
    'due_date', 'assignee_name', 'assignee_account_id', 'delay_status',
    'priority', 'issue_type', 'last_updated_at',
)


class StoreError(Exception):
    """Raised when a store operation fails."""

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        self.retryable = retryable

    @classmethod
    def wrap(cls, operation: str, error: SQLAlchemyError) -> 'StoreError':
        """Wrap a SQLAlchemy error, classifying it as transient or permanent."""
        return cls(f"{operation}: {error}", retryable=_is_transient(error))


def _is_transient(error: SQLAlchemyError) -> Optional[bool]:
    """True for connection-level failures, False for errors a retry cannot fix."""
    if isinstance(error, (DisconnectionError, OperationalError, SQLAlchemyTimeoutError)):
        return True
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return True
    if isinstance(error, (IntegrityError, DataError, ProgrammingError)):
        return False
    return None


class SyncRepository:
    """
    Store gateway used by the syncer.

    Every public method runs in its own transaction and raises StoreError
    on database failure.
    """

    def __init__(self, db: DatabaseConnection):
        """Initialize with a database connection."""
        self.db = db

    @staticmethod
    def _insert(session: Session, model):
        """Dialect-specific INSERT supporting ON CONFLICT."""
        dialect = session.get_bind().dialect.name
        if dialect == 'postgresql':
            return pg_insert(model)
        if dialect == 'sqlite':
            return sqlite_insert(model)
        raise StoreError(f"Unsupported database dialect for upsert: {dialect}", retryable=False)

    def _upsert(
        self,
        session: Session,
        model,
        rows: List[Dict],
        conflict_column: str,
        update_columns: Iterable[str]
    ) -> int:
        """Batched INSERT ... ON CONFLICT DO UPDATE; returns rows affected."""
        affected = 0
        for chunk in chunk_list(rows, UPSERT_BATCH_SIZE):
            stmt = self._insert(session, model).values(chunk)
            set_ = {column: stmt.excluded[column] for column in update_columns}
            set_['updated_at'] = func.now()
            stmt = stmt.on_conflict_do_update(index_elements=[conflict_column], set_=set_)
            result = session.execute(stmt)
            affected += max(result.rowcount or 0, 0)
        return affected

    # ========================================
    # Project & Issue Upserts
    # ========================================

    def upsert_projects(self, records: List[ProjectRecord]) -> int:
        """
        Insert or update projects keyed by jira_project_id.

        Returns:
            Rows affected (0 without touching the database for empty input)
        """
        if not records:
            return 0

        # Last occurrence wins; one statement must not hit the same key twice
        rows_by_id: Dict[str, Dict] = {}
        for record in records:
            rows_by_id[record.jira_project_id] = {
                'jira_project_id': record.jira_project_id,
                'key': record.key,
                'name': record.name,
                'lead_account_id': record.lead_account_id or '',
                'lead_email': record.lead_email or ''
            }

        try:
            with self.db.session_scope() as session:
                affected = self._upsert(
                    session, Project, list(rows_by_id.values()),
                    'jira_project_id', _PROJECT_UPDATE_COLUMNS
                )
        except SQLAlchemyError as e:
            raise StoreError.wrap('upsert projects', e) from e

        logger.debug(f"Upserted {affected} projects")
        return affected

    def upsert_issues(self, records: List[IssueRecord], project_id_map: Dict[str, int]) -> int:
        """
        Insert or update issues keyed by jira_issue_id.

        Issues whose jira_project_id is not in project_id_map are skipped.

        Args:
            records: Normalized issues
            project_id_map: jira_project_id -> projects.id

        Returns:
            Rows affected (0 without touching the database when nothing remains)
        """
        rows_by_id: Dict[str, Dict] = {}
        skipped = 0
        for record in records:
            project_id = project_id_map.get(record.jira_project_id)
            if project_id is None:
                skipped += 1
                continue
            rows_by_id[record.jira_issue_id] = {
                'jira_issue_id': record.jira_issue_id,
                'jira_issue_key': record.jira_issue_key,
                'project_id': project_id,
                'summary': record.summary,
                'status': record.status,
                'status_category': record.status_category,
                'due_date': record.due_date,
                'assignee_name': record.assignee_name or '',
                'assignee_account_id': record.assignee_account_id or '',
                'delay_status': record.delay_status,
                'priority': record.priority or '',
                'issue_type': record.issue_type,
                'last_updated_at': as_utc(record.last_updated_at)
            }

        if skipped:
            logger.debug(f"Skipped {skipped} issues belonging to unknown projects")

        if not rows_by_id:
            return 0

        try:
            with self.db.session_scope() as session:
                affected = self._upsert(
                    session, Issue, list(rows_by_id.values()),
                    'jira_issue_id', _ISSUE_UPDATE_COLUMNS
                )
        except SQLAlchemyError as e:
            raise StoreError.wrap('upsert issues', e) from e

        logger.debug(f"Upserted {affected} issues")
        return affected

    def get_project_id_map(self) -> Dict[str, int]:
        """Map jira_project_id -> projects.id for every known project."""
        try:
            with self.db.session_scope() as session:
                rows = session.query(Project.jira_project_id, Project.id).all()
        except SQLAlchemyError as e:
            raise StoreError.wrap('get project id map', e) from e
        return {jira_id: project_id for jira_id, project_id in rows}

    def has_project(self, key: str) -> bool:
        """Whether a project with this Jira key has been synced."""
        try:
            with self.db.session_scope() as session:
                row = session.query(Project.id).filter(Project.key == key).first()
        except SQLAlchemyError as e:
            raise StoreError.wrap('find project', e) from e
        return row is not None

    # ========================================
    # Run Log Lifecycle
    # ========================================

    def start_run_log(self, sync_type: str) -> int:
        """Create a RUNNING sync_logs row and return its id."""
        try:
            with self.db.session_scope() as session:
                run = SyncLog(
                    sync_type=sync_type,
                    status=SYNC_STATUS_RUNNING,
                    executed_at=utc_now()
                )
                session.add(run)
                session.flush()
                run_id = run.id
        except SQLAlchemyError as e:
            raise StoreError.wrap('start sync log', e) from e
        return run_id

    def finish_run_log(
        self,
        run_id: int,
        status: str,
        projects_synced: int,
        issues_synced: int,
        error_message: Optional[str] = None
    ) -> None:
        """
        Finalize a sync_logs row. Safe to call more than once.

        duration_seconds is completed_at - executed_at in whole seconds.
        """
        if error_message:
            error_message = error_message[:ERROR_MESSAGE_MAX_LENGTH]
        else:
            error_message = None

        try:
            with self.db.session_scope() as session:
                run = session.get(SyncLog, run_id)
                if run is None:
                    raise StoreError(f"finish sync log: run {run_id} not found", retryable=False)

                completed_at = utc_now()
                run.status = status
                run.completed_at = completed_at
                run.projects_synced = projects_synced
                run.issues_synced = issues_synced
                run.error_message = error_message
                run.duration_seconds = max(0, int((completed_at - run.executed_at).total_seconds()))
        except SQLAlchemyError as e:
            raise StoreError.wrap('finish sync log', e) from e

    def get_last_successful_run_at(self, sync_type: str) -> Optional[datetime]:
        """
        Start time of the most recent successful run of sync_type.

        Returns:
            Aware UTC datetime, or None when no such run exists

        Raises:
            StoreError: If the query fails (distinct from "no run")
        """
        try:
            with self.db.session_scope() as session:
                executed_at = (
                    session.query(SyncLog.executed_at)
                    .filter(SyncLog.sync_type == sync_type)
                    .filter(SyncLog.status == SYNC_STATUS_SUCCESS)
                    .order_by(SyncLog.executed_at.desc())
                    .limit(1)
                    .scalar()
                )
        except SQLAlchemyError as e:
            raise StoreError.wrap('get last successful sync time', e) from e
        return as_utc(executed_at)

    # ========================================
    # Run Log Queries
    # ========================================

    def list_run_logs(self, limit: int = 20) -> List[Dict]:
        """Most recent runs first."""
        try:
            with self.db.session_scope() as session:
                runs = (
                    session.query(SyncLog)
                    .order_by(SyncLog.executed_at.desc(), SyncLog.id.desc())
                    .limit(limit)
                    .all()
                )
                return [run.to_dict() for run in runs]
        except SQLAlchemyError as e:
            raise StoreError.wrap('list sync logs', e) from e

    def get_run_log(self, run_id: int) -> Optional[Dict]:
        """A single run, or None when it does not exist."""
        try:
            with self.db.session_scope() as session:
                run = session.get(SyncLog, run_id)
                return run.to_dict() if run else None
        except SQLAlchemyError as e:
            raise StoreError.wrap('get sync log', e) from e
