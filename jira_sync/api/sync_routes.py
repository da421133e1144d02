"""
Sync API Blueprint
REST endpoints for triggering syncs and inspecting the run log.
"""

import threading
from typing import Callable

from flask import Blueprint, current_app, jsonify, request

from jira_sync.config_manager import SYNC_MODES, ConfigurationError
from jira_sync.database.repository import StoreError, SyncRepository
from jira_sync.syncer import ProjectNotFoundError, SyncError, SyncReport, Syncer
from jira_sync.utils.logger import get_logger

logger = get_logger(__name__)

sync_bp = Blueprint('sync', __name__, url_prefix='/api/sync')

DEFAULT_LOG_LIMIT = 20
MAX_LOG_LIMIT = 100

# One API-triggered run at a time per process
_run_lock = threading.Lock()


def _get_repository() -> SyncRepository:
    return SyncRepository(current_app.config['SYNC_DB_FACTORY']())


def _report_json(report: SyncReport) -> dict:
    return {
        'success': True,
        'run_id': report.run_id,
        'sync_type': report.sync_type,
        'projects_synced': report.projects_synced,
        'issues_synced': report.issues_synced,
        'failed_projects': report.failed_projects,
        'duration_seconds': round(report.duration_seconds, 3)
    }


def _run_exclusive(run: Callable[[Syncer], SyncReport]):
    """
    Build a syncer, run it while holding the process-wide run lock,
    and release its Jira session afterwards.
    """
    if not _run_lock.acquire(blocking=False):
        return jsonify({
            'success': False,
            'error': 'A sync is already running'
        }), 409

    syncer = None
    try:
        syncer = current_app.config['SYNC_SYNCER_FACTORY']()
        report = run(syncer)
        return jsonify(_report_json(report))

    except ConfigurationError as e:
        logger.error(f"Sync is not configured: {e}")
        return jsonify({
            'success': False,
            'error': f"Configuration error: {e}"
        }), 500
    except ProjectNotFoundError as e:
        return jsonify({
            'success': False,
            'error': f"Project not found: {e.project_key}"
        }), 404
    except SyncError as e:
        logger.error(f"Sync run failed: {e}")
        return jsonify({
            'success': False,
            'error': str(e)
        }), 500
    finally:
        if syncer is not None:
            syncer.jira.close()
        _run_lock.release()


@sync_bp.route('/run', methods=['POST'])
def trigger_sync():
    """
    Run a sync synchronously.

    Query params:
        mode: 'full' or 'delta' (default full)

    Returns:
        JSON with the run report
    """
    mode = request.args.get('mode', 'full').lower()
    if mode not in SYNC_MODES:
        return jsonify({
            'success': False,
            'error': f"Invalid mode: {mode} (expected full or delta)"
        }), 400

    logger.info(f"Sync triggered via API: mode={mode}")
    return _run_exclusive(lambda syncer: syncer.run(mode))


@sync_bp.route('/projects/<string:project_key>', methods=['POST'])
def sync_project(project_key: str):
    """Re-sync the issues of one known project."""
    logger.info(f"Project sync triggered via API: project={project_key}")
    return _run_exclusive(lambda syncer: syncer.run_project_sync(project_key))


@sync_bp.route('/logs', methods=['GET'])
def list_sync_logs():
    """
    Recent sync runs, newest first.

    Query params:
        limit: Number of runs to return (default 20, max 100)
    """
    try:
        limit = int(request.args.get('limit', DEFAULT_LOG_LIMIT))
    except ValueError:
        limit = DEFAULT_LOG_LIMIT
    if limit <= 0:
        limit = DEFAULT_LOG_LIMIT
    limit = min(limit, MAX_LOG_LIMIT)

    try:
        runs = _get_repository().list_run_logs(limit)
    except StoreError as e:
        logger.error(f"Failed to list sync logs: {e}")
        return jsonify({
            'success': False,
            'error': str(e)
        }), 500

    return jsonify({
        'success': True,
        'runs': runs
    })


@sync_bp.route('/logs/<int:run_id>', methods=['GET'])
def get_sync_log(run_id: int):
    """Details of a single run."""
    try:
        run = _get_repository().get_run_log(run_id)
    except StoreError as e:
        logger.error(f"Failed to get sync log {run_id}: {e}")
        return jsonify({
            'success': False,
            'error': str(e)
        }), 500

    if run is None:
        return jsonify({
            'success': False,
            'error': 'Run not found'
        }), 404

    return jsonify({
        'success': True,
        'run': run
    })
