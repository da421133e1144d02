"""
Normalizer Module
Pure transformation of Jira API records into the rows stored by the sync.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Optional

from jira_sync.utils.helpers import parse_jira_date, parse_jira_datetime, safe_get

STATUS_TO_DO = 'To Do'
STATUS_IN_PROGRESS = 'In Progress'
STATUS_DONE = 'Done'

DELAY_RED = 'RED'
DELAY_YELLOW = 'YELLOW'
DELAY_GREEN = 'GREEN'

# Due dates within this many days of today (inclusive) are flagged YELLOW
DUE_SOON_DAYS = 3


@dataclass(frozen=True)
class ProjectRecord:
    """Normalized project ready for upsert."""
    jira_project_id: str
    key: str
    name: str
    lead_account_id: Optional[str] = None
    lead_email: Optional[str] = None


@dataclass(frozen=True)
class IssueRecord:
    """Normalized issue ready for upsert."""
    jira_issue_id: str
    jira_issue_key: str
    jira_project_id: str
    summary: str
    status: str
    status_category: str
    delay_status: str
    issue_type: str
    due_date: Optional[date] = None
    assignee_name: Optional[str] = None
    assignee_account_id: Optional[str] = None
    priority: Optional[str] = None
    last_updated_at: Optional[datetime] = None


def normalize_status_category(key: Optional[str]) -> str:
    """
    Map a Jira statusCategory key to To Do / In Progress / Done.

    "new", empty and unknown keys all collapse to To Do.
    """
    if key == 'done':
        return STATUS_DONE
    if key == 'indeterminate':
        return STATUS_IN_PROGRESS
    return STATUS_TO_DO


def calc_delay_status(status_category: str, due_date: Optional[str], now: datetime) -> str:
    """
    Compute the traffic-light delay status of an issue.

    Rules, evaluated in order with dates taken in now's timezone:
      - Done                                  -> GREEN
      - due date absent, empty or unparseable -> YELLOW
      - due date before today                 -> RED
      - due date within today .. today+3      -> YELLOW
      - otherwise                             -> GREEN

    Args:
        status_category: Normalized status category
        due_date: Jira due date string (YYYY-MM-DD) or None
        now: Current time in the operator's calendar timezone

    Returns:
        "RED", "YELLOW" or "GREEN"
    """
    if status_category == STATUS_DONE:
        return DELAY_GREEN

    due = parse_jira_date(due_date)
    if due is None:
        return DELAY_YELLOW

    today = now.date()
    threshold = today + timedelta(days=DUE_SOON_DAYS)

    if due < today:
        return DELAY_RED
    if due <= threshold:
        return DELAY_YELLOW
    return DELAY_GREEN


def convert_project(data: Dict) -> ProjectRecord:
    """Convert a project from /project/search into a ProjectRecord."""
    lead = data.get('lead') or None
    return ProjectRecord(
        jira_project_id=str(data.get('id') or ''),
        key=data.get('key') or '',
        name=data.get('name') or '',
        lead_account_id=lead.get('accountId') if lead else None,
        lead_email=lead.get('emailAddress') if lead else None
    )


def convert_issue(data: Dict, now: datetime) -> IssueRecord:
    """
    Convert an issue from /issue/search into an IssueRecord.

    Deterministic: the same (data, now) always yields an equal record.

    Args:
        data: Raw Jira issue
        now: Shared "current time" in the operator timezone, used for delay status
    """
    fields = data.get('fields') or {}
    status_category = normalize_status_category(
        safe_get(fields, 'status', 'statusCategory', 'key')
    )
    raw_due_date = fields.get('duedate') or None

    assignee = fields.get('assignee') or None
    priority = fields.get('priority') or None

    return IssueRecord(
        jira_issue_id=str(data.get('id') or ''),
        jira_issue_key=data.get('key') or '',
        jira_project_id=str(safe_get(fields, 'project', 'id', default='')),
        summary=fields.get('summary') or '',
        status=safe_get(fields, 'status', 'name', default=''),
        status_category=status_category,
        delay_status=calc_delay_status(status_category, raw_due_date, now),
        issue_type=safe_get(fields, 'issuetype', 'name', default=''),
        due_date=parse_jira_date(raw_due_date),
        assignee_name=assignee.get('displayName') if assignee else None,
        assignee_account_id=assignee.get('accountId') if assignee else None,
        priority=priority.get('name') if priority else None,
        last_updated_at=parse_jira_datetime(fields.get('updated'))
    )
