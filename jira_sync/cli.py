"""
Command Line Interface
One-shot and scheduled drivers for the Jira sync engine.
"""

import argparse
import signal
import sys
import threading
from contextlib import contextmanager
from typing import Callable, List

from jira_sync.config_manager import SYNC_MODES, ConfigManager, ConfigurationError
from jira_sync.jira_client import JiraClient
from jira_sync.scheduler import SyncScheduler
from jira_sync.syncer import SyncError, SyncReport, create_syncer
from jira_sync.utils.helpers import format_duration, parse_interval
from jira_sync.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(description='Sync Jira projects and issues into the database')
    parser.add_argument(
        '--mode',
        choices=['once', 'scheduler'],
        default='once',
        help='Run a single sync, or keep syncing on an interval'
    )
    parser.add_argument(
        '--org-id',
        type=int,
        default=1,
        help='Organization id (logged only; the store is single-tenant)'
    )
    parser.add_argument(
        '--interval',
        default=None,
        help='Scheduler interval, e.g. 1h, 30m, 1h30m, 45s (default from config, 1h)'
    )
    parser.add_argument(
        '--sync-mode',
        choices=SYNC_MODES,
        default=None,
        help='Override BATCH_SYNC_MODE'
    )
    parser.add_argument(
        '--check-connection',
        action='store_true',
        help='Verify Jira credentials and exit'
    )
    parser.add_argument(
        '--verbose',
        '-v',
        action='store_true',
        help='Enable verbose output'
    )
    return parser


@contextmanager
def handle_signals(handler: Callable[[], None]):
    """Route SIGINT/SIGTERM to handler, restoring previous handlers on exit."""
    def on_signal(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        handler()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, on_signal)
    try:
        yield
    finally:
        for signum, old_handler in previous.items():
            signal.signal(signum, old_handler)


def print_report(report: SyncReport) -> None:
    """Print a run summary."""
    print(f"\n{'='*50}")
    print("Sync Run Complete")
    print(f"{'='*50}")
    print(f"Run ID: {report.run_id}")
    print(f"Type: {report.sync_type}")
    print(f"Projects Synced: {report.projects_synced}")
    print(f"Issues Synced: {report.issues_synced}")
    print(f"Duration: {format_duration(report.duration_seconds)}")
    if report.failed_projects:
        print(f"Failed Projects: {', '.join(report.failed_projects)}")


def check_connection(config: ConfigManager) -> int:
    """Ping Jira with the configured credentials."""
    client = JiraClient.from_config(config)
    try:
        ok = client.test_connection()
    finally:
        client.close()
    print("Jira connection successful" if ok else "Error: Cannot connect to Jira")
    return EXIT_SUCCESS if ok else EXIT_FAILURE


def run_once(syncer, sync_mode: str, cancel_event: threading.Event) -> int:
    """Run one sync; non-zero when it failed or any project failed."""
    with handle_signals(cancel_event.set):
        try:
            report = syncer.run(sync_mode)
        except SyncError as e:
            logger.error(f"Sync failed: {e}")
            print(f"\nError: {e}")
            return EXIT_FAILURE

    print_report(report)
    if report.failed_projects:
        logger.warning(f"{report.error_count} projects failed to sync")
        return EXIT_FAILURE
    return EXIT_SUCCESS


def run_scheduler(syncer, sync_mode: str, interval, cancel_event: threading.Event) -> int:
    """Sync on an interval until SIGINT/SIGTERM."""
    scheduler = SyncScheduler(lambda: syncer.run(sync_mode), interval, cancel_event=cancel_event)
    with handle_signals(scheduler.stop):
        scheduler.run_forever()

    status = scheduler.status
    logger.info(f"Scheduler exited after {status['sync_count']} runs ({status['error_count']} failed)")
    return EXIT_SUCCESS


def main(argv: List[str] = None) -> int:
    """Main entry point for the sync CLI."""
    args = build_parser().parse_args(argv)

    setup_logging('DEBUG' if args.verbose else None)
    config = ConfigManager()

    try:
        sync_mode = args.sync_mode or config.get_sync_mode()
        interval = parse_interval(str(args.interval or config.get_scheduler_config().get('interval') or '1h'))

        if args.check_connection:
            return check_connection(config)

        cancel_event = threading.Event()
        syncer = create_syncer(config, cancel_event=cancel_event)
    except (ConfigurationError, ValueError) as e:
        logger.error(f"Configuration error: {e}")
        print(f"\nError: {e}")
        return EXIT_FAILURE

    logger.info(
        f"Starting jira sync: mode={args.mode}, org_id={args.org_id}, "
        f"sync_mode={sync_mode}, worker_count={syncer.worker_count}"
    )

    if args.mode == 'scheduler':
        return run_scheduler(syncer, sync_mode, interval, cancel_event)
    return run_once(syncer, sync_mode, cancel_event)


if __name__ == '__main__':
    sys.exit(main())
