"""
Flask Application Factory
Ops API for triggering syncs and inspecting the run log.
"""

from datetime import datetime
from typing import Callable

import pytz
from flask import Flask, jsonify
from flask_cors import CORS

from jira_sync import __version__
from jira_sync.config_manager import ConfigManager
from jira_sync.database.connection import DatabaseConnection, get_db
from jira_sync.syncer import Syncer, create_syncer
from jira_sync.utils.logger import get_logger, setup_logging


def create_app(
    db_factory: Callable[[], DatabaseConnection] = None,
    syncer_factory: Callable[[], Syncer] = None
) -> Flask:
    """
    Application factory for the ops API.

    Args:
        db_factory: Returns the database connection (defaults to get_db)
        syncer_factory: Builds a Syncer per API-triggered run

    Returns:
        Configured Flask application
    """
    logger = get_logger(__name__)

    app = Flask(__name__)
    app.json.sort_keys = False

    db_factory = db_factory or get_db
    app.config['SYNC_DB_FACTORY'] = db_factory
    app.config['SYNC_SYNCER_FACTORY'] = syncer_factory or (lambda: create_syncer(db=db_factory()))

    CORS(app)

    from jira_sync.api import sync_bp
    app.register_blueprint(sync_bp)

    @app.route('/health', methods=['GET'])
    def health_check():
        """Health check endpoint."""
        db_healthy = db_factory().check_connection()

        return jsonify({
            'status': 'healthy' if db_healthy else 'degraded',
            'timestamp': datetime.now(pytz.UTC).isoformat(),
            'database': 'connected' if db_healthy else 'disconnected'
        }), 200 if db_healthy else 503

    @app.route('/', methods=['GET'])
    def root():
        """Root endpoint with API info."""
        return jsonify({
            'name': 'Jira Sync API',
            'version': __version__,
            'endpoints': {
                '/health': 'Health check',
                '/api/sync/run?mode=full|delta': 'Run a sync (POST)',
                '/api/sync/logs?limit=N': 'Recent sync runs (GET)',
                '/api/sync/logs/<id>': 'Sync run details (GET)'
            }
        })

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'success': False,
            'error': 'Not found'
        }), 404

    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({
            'success': False,
            'error': 'Internal server error'
        }), 500

    logger.info("Flask application created")

    return app


def main() -> None:
    """Run the development server."""
    setup_logging()
    api_config = ConfigManager().get_api_config()
    app = create_app()
    app.run(
        host=api_config.get('host', '0.0.0.0'),
        port=int(api_config.get('port', 6922))
    )


if __name__ == '__main__':
    main()
