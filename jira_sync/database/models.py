"""
SQLAlchemy ORM Models
Maps the projects, issues and sync_logs tables written by the sync engine.
"""

from sqlalchemy import (
    Column, Date, DateTime, ForeignKey, Index, Integer, String, Text, func
)
from sqlalchemy.orm import declarative_base, relationship

from jira_sync.utils.helpers import utc_now

Base = declarative_base()

SYNC_TYPE_FULL = 'FULL'
SYNC_TYPE_DELTA = 'DELTA'

SYNC_STATUS_RUNNING = 'RUNNING'
SYNC_STATUS_SUCCESS = 'SUCCESS'
SYNC_STATUS_FAILURE = 'FAILURE'


class Project(Base):
    """Jira project mirror."""
    __tablename__ = 'projects'

    id = Column(Integer, primary_key=True)
    jira_project_id = Column(String(50), nullable=False, unique=True)
    key = Column(String(50), nullable=False)
    name = Column(String(255), nullable=False)
    lead_account_id = Column(String(255), nullable=False, default='')
    lead_email = Column(String(255), nullable=False, default='')
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now())

    issues = relationship("Issue", back_populates="project")


class Issue(Base):
    """Jira issue mirror with derived status category and delay status."""
    __tablename__ = 'issues'

    id = Column(Integer, primary_key=True)
    jira_issue_id = Column(String(50), nullable=False, unique=True)
    jira_issue_key = Column(String(50), nullable=False)
    project_id = Column(Integer, ForeignKey('projects.id'), nullable=False)
    summary = Column(Text, nullable=False, default='')
    status = Column(String(100), nullable=False, default='')
    status_category = Column(String(20), nullable=False)  # 'To Do', 'In Progress', 'Done'
    due_date = Column(Date)
    assignee_name = Column(String(255), nullable=False, default='')
    assignee_account_id = Column(String(255), nullable=False, default='')
    delay_status = Column(String(10), nullable=False)  # 'RED', 'YELLOW', 'GREEN'
    priority = Column(String(50), nullable=False, default='')
    issue_type = Column(String(100), nullable=False, default='')
    last_updated_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now())

    project = relationship("Project", back_populates="issues")

    __table_args__ = (
        Index('idx_issues_project_id', 'project_id'),
        Index('idx_issues_delay_status', 'delay_status'),
    )


class SyncLog(Base):
    """One row per sync run; created RUNNING and finalized exactly once."""
    __tablename__ = 'sync_logs'

    id = Column(Integer, primary_key=True)
    sync_type = Column(String(10), nullable=False)  # 'FULL', 'DELTA'
    status = Column(String(10), nullable=False, default=SYNC_STATUS_RUNNING)
    executed_at = Column(DateTime, nullable=False, default=utc_now)
    completed_at = Column(DateTime)
    projects_synced = Column(Integer, nullable=False, default=0)
    issues_synced = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)
    duration_seconds = Column(Integer)

    __table_args__ = (
        Index('idx_sync_logs_type_status', 'sync_type', 'status', 'executed_at'),
    )

    def to_dict(self) -> dict:
        """Serialize for the ops API."""
        return {
            'id': self.id,
            'sync_type': self.sync_type,
            'status': self.status,
            'executed_at': self.executed_at.isoformat() if self.executed_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'projects_synced': self.projects_synced,
            'issues_synced': self.issues_synced,
            'error_message': self.error_message,
            'duration_seconds': self.duration_seconds
        }
