"""
Unit Tests for Syncer
Full and delta runs against a fake Jira client and the SQLite-backed repository.
"""

import threading
import unittest
from datetime import datetime, timedelta
from unittest.mock import Mock, patch

import pytz
from sqlalchemy.exc import IntegrityError

from jira_sync.database.models import Issue, Project, SyncLog
from jira_sync.database.repository import StoreError, SyncRepository
from jira_sync.jira_client import JiraAPIError
from jira_sync.metrics import SyncResult
from jira_sync.normalizer import convert_project
from jira_sync.syncer import ProjectNotFoundError, SyncError, Syncer, format_jql_timestamp
from tests.support import FakeJiraClient, make_issue, make_project, make_test_db

NOW = datetime(2026, 2, 24, 12, 0, tzinfo=pytz.UTC)


class SyncerTestCase(unittest.TestCase):

    def setUp(self):
        self.db = make_test_db()
        self.repo = SyncRepository(self.db)
        self.recorder = Mock()
        self.sleeps = []

    def tearDown(self):
        self.db.dispose()

    def make_syncer(self, jira, **kwargs) -> Syncer:
        options = dict(
            recorder=self.recorder,
            tz=pytz.UTC,
            now_fn=lambda: NOW,
            sleep_fn=self.sleeps.append
        )
        options.update(kwargs)
        return Syncer(jira, self.repo, **options)

    def runs(self):
        return self.repo.list_run_logs(limit=100)

    def issues(self):
        with self.db.session_scope() as session:
            return {
                issue.jira_issue_key: (issue.status_category, issue.delay_status)
                for issue in session.query(Issue).all()
            }


class TestFullSync(SyncerTestCase):
    """Test full sync runs."""

    def test_happy_path(self):
        """Test one project with one new issue and no due date."""
        jira = FakeJiraClient(
            projects=[make_project('10', 'PROJ')],
            issues_by_project={'PROJ': [make_issue('1', 'PROJ-1', '10', status_key='new', due_date='')]}
        )

        report = self.make_syncer(jira).run_full_sync()

        self.assertEqual(report.sync_type, 'FULL')
        self.assertEqual(report.projects_synced, 1)
        self.assertEqual(report.issues_synced, 1)
        self.assertEqual(report.failed_projects, [])
        self.assertEqual(self.issues(), {'PROJ-1': ('To Do', 'YELLOW')})

        run, = self.runs()
        self.assertEqual(run['id'], report.run_id)
        self.assertEqual(run['status'], 'SUCCESS')
        self.assertEqual(run['projects_synced'], 1)
        self.assertEqual(run['issues_synced'], 1)

    def test_issue_for_unknown_project_is_skipped(self):
        jira = FakeJiraClient(
            projects=[make_project('10', 'PROJ')],
            issues_by_project={'PROJ': [make_issue('1', 'X-1', 'UNKNOWN')]}
        )

        report = self.make_syncer(jira).run_full_sync()

        self.assertEqual(report.issues_synced, 0)
        self.assertEqual(self.issues(), {})
        self.assertEqual(self.runs()[0]['status'], 'SUCCESS')

    def test_per_project_failure_is_absorbed(self):
        """Test that one failing project logs a warning and the run succeeds."""
        jira = FakeJiraClient(
            projects=[make_project('1', 'P1'), make_project('2', 'P2'), make_project('3', 'P3')],
            issues_by_project={
                'P1': [make_issue('11', 'P1-1', '1')],
                'P3': [make_issue('31', 'P3-1', '3'), make_issue('32', 'P3-2', '3')],
            },
            project_errors={'P2': JiraAPIError('search issues (startAt=0): HTTP 400', 400, start_at=0)}
        )

        with self.assertLogs('jira_sync.syncer', level='WARNING') as logs:
            report = self.make_syncer(jira).run_full_sync()

        warnings = [line for line in logs.output if line.startswith('WARNING')]
        self.assertEqual(len(warnings), 1)
        self.assertIn('P2', warnings[0])
        self.assertEqual(report.failed_projects, ['P2'])
        self.assertEqual(report.error_count, 1)
        self.assertEqual(report.projects_synced, 3)
        self.assertEqual(set(self.issues()), {'P1-1', 'P3-1', 'P3-2'})
        self.assertEqual(self.runs()[0]['status'], 'SUCCESS')

    def test_rerun_is_idempotent(self):
        jira = FakeJiraClient(
            projects=[make_project('10', 'PROJ')],
            issues_by_project={'PROJ': [make_issue('1', 'PROJ-1', '10'), make_issue('2', 'PROJ-2', '10')]}
        )
        syncer = self.make_syncer(jira)

        syncer.run_full_sync()
        syncer.run_full_sync()

        with self.db.session_scope() as session:
            self.assertEqual(session.query(Project).count(), 1)
            self.assertEqual(session.query(Issue).count(), 2)
        self.assertEqual([run['status'] for run in self.runs()], ['SUCCESS', 'SUCCESS'])

    def test_get_projects_failure_finalizes_run(self):
        """Test that a terminal project-list error leaves a FAILURE row."""
        jira = FakeJiraClient(projects_error=JiraAPIError('get projects (startAt=0): Authentication failed', 401))

        with self.assertRaises(SyncError) as ctx:
            self.make_syncer(jira).run_full_sync()

        self.assertEqual(ctx.exception.stage, 'get projects')
        run, = self.runs()
        self.assertEqual(run['status'], 'FAILURE')
        self.assertIn('get projects', run['error_message'])
        self.assertIsNotNone(run['completed_at'])
        self.assertGreaterEqual(run['duration_seconds'], 0)

    def test_upsert_issues_failure_preserves_project_count(self):
        jira = FakeJiraClient(
            projects=[make_project('10', 'PROJ'), make_project('20', 'OPS')],
            issues_by_project={'PROJ': [make_issue('1', 'PROJ-1', '10')]}
        )

        with patch.object(self.repo, 'upsert_issues', side_effect=StoreError('upsert issues: disk full')):
            with self.assertRaises(SyncError) as ctx:
                self.make_syncer(jira).run_full_sync()

        self.assertEqual(ctx.exception.stage, 'upsert issues')
        run, = self.runs()
        self.assertEqual(run['status'], 'FAILURE')
        self.assertEqual(run['projects_synced'], 2)
        self.assertEqual(run['issues_synced'], 0)
        self.assertIn('disk full', run['error_message'])

    def test_transient_store_error_is_retried(self):
        jira = FakeJiraClient(
            projects=[make_project('10', 'PROJ')],
            issues_by_project={'PROJ': [make_issue('1', 'PROJ-1', '10')]}
        )
        real_map = self.repo.get_project_id_map
        calls = []

        def flaky_map():
            calls.append(1)
            if len(calls) == 1:
                raise StoreError('get project id map: connection reset by peer')
            return real_map()

        with patch.object(self.repo, 'get_project_id_map', side_effect=flaky_map):
            report = self.make_syncer(jira).run_full_sync()

        self.assertEqual(report.issues_synced, 1)
        self.assertEqual(len(calls), 2)
        self.assertEqual(self.sleeps, [1])

    def test_finalization_failure_does_not_replace_error(self):
        jira = FakeJiraClient(projects_error=JiraAPIError('boom', 400))

        with patch.object(self.repo, 'finish_run_log', side_effect=StoreError('finish sync log: gone')):
            with self.assertLogs('jira_sync.syncer', level='ERROR') as logs:
                with self.assertRaises(SyncError) as ctx:
                    self.make_syncer(jira).run_full_sync()

        self.assertEqual(ctx.exception.stage, 'get projects')
        self.assertTrue(any('Failed to finish sync log' in line for line in logs.output))

    def test_start_failure_writes_nothing(self):
        jira = FakeJiraClient()

        with patch.object(self.repo, 'start_run_log', side_effect=StoreError('start sync log: gone')):
            with self.assertRaises(SyncError) as ctx:
                self.make_syncer(jira).run_full_sync()

        self.assertEqual(ctx.exception.stage, 'start sync log')
        self.assertEqual(self.runs(), [])
        self.recorder.record_sync.assert_not_called()

    def test_normalization_failure_finalizes_run(self):
        """Test that a malformed issue payload fails the run after projects are stored."""
        jira = FakeJiraClient(
            projects=[make_project('10', 'PROJ')],
            issues_by_project={'PROJ': [{'id': '1', 'fields': 'bogus'}]}
        )

        with self.assertRaises(SyncError) as ctx:
            self.make_syncer(jira).run_full_sync()

        self.assertEqual(ctx.exception.stage, 'normalize issues')
        run, = self.runs()
        self.assertEqual(run['status'], 'FAILURE')
        self.assertTrue(run['error_message'].startswith('normalize issues'))
        self.assertEqual(run['projects_synced'], 1)
        self.assertEqual(run['issues_synced'], 0)
        self.assertEqual(self.issues(), {})

    def test_permanent_store_error_is_not_retried(self):
        """Test that a constraint violation on an issue id like 10500 fails without backoff."""
        jira = FakeJiraClient(
            projects=[make_project('10', 'PROJ')],
            issues_by_project={'PROJ': [make_issue('10500', 'PROJ-1', '10')]}
        )
        error = StoreError.wrap(
            'upsert issues',
            IntegrityError('INSERT', ('10500',), Exception('NOT NULL constraint failed: issues.summary'))
        )

        with patch.object(self.repo, 'upsert_issues', side_effect=error) as upsert_issues:
            with self.assertRaises(SyncError) as ctx:
                self.make_syncer(jira).run_full_sync()

        self.assertEqual(ctx.exception.stage, 'upsert issues')
        self.assertEqual(upsert_issues.call_count, 1)
        self.assertEqual(self.sleeps, [])
        self.assertEqual(self.runs()[0]['status'], 'FAILURE')


class TestFanOut(SyncerTestCase):
    """Test bounded concurrency and cancellation."""

    def test_in_flight_never_exceeds_worker_count(self):
        projects = [make_project(str(i), f'P{i}') for i in range(8)]
        jira = FakeJiraClient(projects=projects, delay=0.05)

        self.make_syncer(jira, worker_count=3).run_full_sync()

        self.assertEqual(len(jira.fetched_keys), 8)
        self.assertGreaterEqual(jira.max_in_flight, 1)
        self.assertLessEqual(jira.max_in_flight, 3)

    def test_non_positive_worker_count_uses_default(self):
        syncer = self.make_syncer(FakeJiraClient(), worker_count=0)

        self.assertEqual(syncer.worker_count, 5)

    def test_no_projects(self):
        report = self.make_syncer(FakeJiraClient()).run_full_sync()

        self.assertEqual(report.projects_synced, 0)
        self.assertEqual(report.issues_synced, 0)
        self.assertEqual(self.runs()[0]['status'], 'SUCCESS')

    def test_cancellation_stops_fan_out(self):
        """Test that workers skip their remote call once cancelled."""
        cancel_event = threading.Event()

        class CancellingJira(FakeJiraClient):
            def fetch_issues_for_project(self, project_key):
                issues = super().fetch_issues_for_project(project_key)
                cancel_event.set()
                return issues

        jira = CancellingJira(projects=[make_project(str(i), f'P{i}') for i in range(3)])

        with self.assertRaises(SyncError):
            self.make_syncer(jira, worker_count=1, cancel_event=cancel_event).run_full_sync()

        self.assertEqual(jira.fetched_keys, ['P0'])
        run, = self.runs()
        self.assertEqual(run['status'], 'FAILURE')
        self.assertIn('cancelled', run['error_message'])


class TestProjectSync(SyncerTestCase):
    """Test single-project issue syncs."""

    def setUp(self):
        super().setUp()
        self.repo.upsert_projects([convert_project(make_project('10', 'PROJ'))])

    def test_syncs_issues_of_known_project(self):
        jira = FakeJiraClient(
            issues_by_project={'PROJ': [make_issue('1', 'PROJ-1', '10'), make_issue('2', 'PROJ-2', '10')]}
        )

        report = self.make_syncer(jira).run_project_sync('PROJ')

        self.assertEqual(jira.fetched_keys, ['PROJ'])
        self.assertEqual(report.sync_type, 'FULL')
        self.assertEqual(report.projects_synced, 0)
        self.assertEqual(report.issues_synced, 2)
        self.assertEqual(set(self.issues()), {'PROJ-1', 'PROJ-2'})
        run, = self.runs()
        self.assertEqual(run['status'], 'SUCCESS')
        self.assertEqual(run['issues_synced'], 2)

    def test_does_not_advance_delta_watermark(self):
        jira = FakeJiraClient(issues_by_project={'PROJ': [make_issue('1', 'PROJ-1', '10')]})

        self.make_syncer(jira).run_project_sync('PROJ')

        self.assertIsNone(self.repo.get_last_successful_run_at('DELTA'))

    def test_unknown_project_logs_no_run(self):
        jira = FakeJiraClient()

        with self.assertRaises(ProjectNotFoundError) as ctx:
            self.make_syncer(jira).run_project_sync('NOPE')

        self.assertEqual(ctx.exception.project_key, 'NOPE')
        self.assertEqual(jira.fetched_keys, [])
        self.assertEqual(self.runs(), [])
        self.recorder.record_sync.assert_not_called()

    def test_fetch_failure_finalizes_run(self):
        jira = FakeJiraClient(
            project_errors={'PROJ': JiraAPIError('search issues (startAt=0): HTTP 400', 400, start_at=0)}
        )

        with self.assertRaises(SyncError) as ctx:
            self.make_syncer(jira).run_project_sync('PROJ')

        self.assertEqual(ctx.exception.stage, 'fetch issues')
        run, = self.runs()
        self.assertEqual(run['status'], 'FAILURE')
        self.assertIn('startAt=0', run['error_message'])
        self.recorder.record_sync.assert_called_once()
        self.assertFalse(self.recorder.record_sync.call_args[0][0].success)


class TestDeltaSync(SyncerTestCase):
    """Test delta sync runs."""

    def setUp(self):
        super().setUp()
        self.make_syncer(FakeJiraClient(projects=[make_project('10', 'PROJ')])).run_full_sync()

    def test_no_previous_run_uses_one_hour_fallback(self):
        jira = FakeJiraClient(delta_issues=[make_issue('1', 'PROJ-1', '10')])

        report = self.make_syncer(jira).run_delta_sync()

        self.assertEqual(jira.delta_since, ['2026/02/24 11:00'])
        self.assertEqual(report.sync_type, 'DELTA')
        self.assertEqual(report.projects_synced, 0)
        self.assertEqual(report.issues_synced, 1)
        self.assertEqual(self.runs()[0]['status'], 'SUCCESS')

    def test_since_is_rendered_in_operator_timezone(self):
        jira = FakeJiraClient()

        self.make_syncer(jira, tz=pytz.timezone('Asia/Tokyo')).run_delta_sync()

        self.assertEqual(jira.delta_since, ['2026/02/24 20:00'])

    def test_since_previous_successful_delta(self):
        first = self.make_syncer(FakeJiraClient()).run_delta_sync()
        with self.db.session_scope() as session:
            session.get(SyncLog, first.run_id).executed_at = datetime(2026, 2, 24, 9, 30)

        jira = FakeJiraClient()
        self.make_syncer(jira).run_delta_sync()

        self.assertEqual(jira.delta_since, ['2026/02/24 09:30'])

    def test_empty_result(self):
        report = self.make_syncer(FakeJiraClient()).run_delta_sync()

        self.assertEqual(report.issues_synced, 0)
        self.assertEqual(self.runs()[0]['status'], 'SUCCESS')

    def test_unknown_project_is_skipped(self):
        jira = FakeJiraClient(delta_issues=[make_issue('1', 'X-1', 'UNKNOWN')])

        report = self.make_syncer(jira).run_delta_sync()

        self.assertEqual(report.issues_synced, 0)
        self.assertEqual(self.runs()[0]['status'], 'SUCCESS')

    def test_search_failure(self):
        jira = FakeJiraClient(delta_error=JiraAPIError('search issues (startAt=0): HTTP 400', 400))

        with self.assertRaises(SyncError) as ctx:
            self.make_syncer(jira).run_delta_sync()

        self.assertEqual(ctx.exception.stage, 'search delta issues')
        self.assertEqual(self.runs()[0]['status'], 'FAILURE')

    def test_last_run_lookup_failure(self):
        with patch.object(self.repo, 'get_last_successful_run_at', side_effect=StoreError('query failed')):
            with self.assertRaises(SyncError) as ctx:
                self.make_syncer(FakeJiraClient()).run_delta_sync()

        self.assertEqual(ctx.exception.stage, 'get last successful sync time')

    def test_custom_fallback(self):
        jira = FakeJiraClient()

        self.make_syncer(jira, delta_fallback=timedelta(minutes=15)).run_delta_sync()

        self.assertEqual(jira.delta_since, ['2026/02/24 11:45'])


class TestMetricsAndDispatch(SyncerTestCase):

    def test_success_is_recorded(self):
        jira = FakeJiraClient(projects=[make_project('10', 'PROJ')])

        self.make_syncer(jira).run_full_sync()

        result = self.recorder.record_sync.call_args.args[0]
        self.assertIsInstance(result, SyncResult)
        self.assertEqual(result.sync_type, 'FULL')
        self.assertTrue(result.success)
        self.assertEqual(result.projects_synced, 1)

    def test_failure_is_recorded(self):
        jira = FakeJiraClient(projects_error=JiraAPIError('boom', 400))

        with self.assertRaises(SyncError):
            self.make_syncer(jira).run_full_sync()

        result = self.recorder.record_sync.call_args.args[0]
        self.assertFalse(result.success)

    def test_recorder_failure_is_not_propagated(self):
        self.recorder.record_sync.side_effect = RuntimeError('sink down')

        report = self.make_syncer(FakeJiraClient()).run_full_sync()

        self.assertEqual(report.projects_synced, 0)

    def test_run_dispatch(self):
        syncer = self.make_syncer(FakeJiraClient())

        self.assertEqual(syncer.run('full').sync_type, 'FULL')
        self.assertEqual(syncer.run('delta').sync_type, 'DELTA')
        with self.assertRaises(ValueError):
            syncer.run('weekly')

    def test_format_jql_timestamp(self):
        tokyo = pytz.timezone('Asia/Tokyo')

        self.assertEqual(format_jql_timestamp(NOW, tokyo), '2026/02/24 21:00')


if __name__ == '__main__':
    unittest.main()
