"""
Test Support
Shared fixtures: in-memory database, Jira payload builders and a fake client.
"""

import threading
import time
from typing import Dict, List

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from jira_sync.database.connection import DatabaseConnection
from jira_sync.database.models import Base


def make_test_db() -> DatabaseConnection:
    """In-memory SQLite database with the sync tables created."""
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    return DatabaseConnection(engine=engine)


def make_project(project_id: str, key: str, name: str = None, lead: bool = True) -> Dict:
    """Project payload as returned by /project/search?expand=lead."""
    project = {
        'id': project_id,
        'key': key,
        'name': name or f'{key} project'
    }
    if lead:
        project['lead'] = {
            'accountId': f'lead-{key.lower()}',
            'emailAddress': f'{key.lower()}@example.com'
        }
    return project


def make_issue(
    issue_id: str,
    key: str,
    project_id: str,
    status_key: str = 'new',
    due_date: str = '',
    updated: str = '2026-02-20T10:00:00.000+0000',
    assignee: bool = False
) -> Dict:
    """Issue payload as returned by /issue/search."""
    fields = {
        'summary': f'Summary of {key}',
        'status': {'name': 'Open', 'statusCategory': {'key': status_key}},
        'issuetype': {'name': 'Task'},
        'project': {'id': project_id},
        'duedate': due_date,
        'updated': updated,
        'priority': {'name': 'Medium'},
        'assignee': None
    }
    if assignee:
        fields['assignee'] = {'displayName': 'Taro Yamada', 'accountId': 'acc-1'}
    return {'id': issue_id, 'key': key, 'fields': fields}


class FakeJiraClient:
    """
    In-memory stand-in for JiraClient.

    Errors are raised per project key; every call is recorded. When delay
    is set, issue fetches block for that long and the maximum number of
    concurrent fetches is tracked.
    """

    def __init__(
        self,
        projects: List[Dict] = None,
        issues_by_project: Dict[str, List[Dict]] = None,
        delta_issues: List[Dict] = None,
        project_errors: Dict[str, Exception] = None,
        projects_error: Exception = None,
        delta_error: Exception = None,
        delay: float = 0
    ):
        self.projects = projects or []
        self.issues_by_project = issues_by_project or {}
        self.delta_issues = delta_issues or []
        self.project_errors = project_errors or {}
        self.projects_error = projects_error
        self.delta_error = delta_error
        self.delay = delay

        self.fetched_keys: List[str] = []
        self.delta_since: List[str] = []
        self.max_in_flight = 0
        self._in_flight = 0
        self._lock = threading.Lock()

    def fetch_projects(self) -> List[Dict]:
        if self.projects_error:
            raise self.projects_error
        return list(self.projects)

    def fetch_issues_for_project(self, project_key: str) -> List[Dict]:
        with self._lock:
            self.fetched_keys.append(project_key)
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            if project_key in self.project_errors:
                raise self.project_errors[project_key]
            return list(self.issues_by_project.get(project_key, []))
        finally:
            with self._lock:
                self._in_flight -= 1

    def fetch_issues_updated_since(self, since: str) -> List[Dict]:
        self.delta_since.append(since)
        if self.delta_error:
            raise self.delta_error
        return list(self.delta_issues)
