#!/usr/bin/env python
"""
Initialize Database Script
Creates the projects, issues and sync_logs tables for local development.
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import inspect

from jira_sync.config_manager import ConfigurationError
from jira_sync.database.connection import DatabaseConnection
from jira_sync.database.models import Base
from jira_sync.utils.logger import setup_logging, get_logger


def main():
    """Main entry point for database initialization."""
    parser = argparse.ArgumentParser(description='Create the sync tables')
    parser.add_argument(
        '--drop',
        action='store_true',
        help='Drop existing sync tables before creating (DANGEROUS)'
    )
    parser.add_argument(
        '--yes',
        action='store_true',
        help='Do not ask for confirmation when dropping'
    )
    args = parser.parse_args()

    setup_logging()
    logger = get_logger(__name__)

    try:
        db = DatabaseConnection()
    except ConfigurationError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if not db.check_connection():
        print("Error: Cannot connect to database")
        sys.exit(1)
    print("Database connection successful")

    if args.drop:
        confirm = 'yes' if args.yes else input("Drop projects, issues and sync_logs? (yes/no): ")
        if confirm.lower() != 'yes':
            print("Cancelled")
            sys.exit(0)
        logger.warning("Dropping sync tables")
        Base.metadata.drop_all(db.engine)

    logger.info("Creating tables")
    Base.metadata.create_all(db.engine)

    tables = inspect(db.engine).get_table_names()
    print(f"\n{'='*50}")
    print("Database Initialized")
    print(f"{'='*50}")
    for table in sorted(tables):
        print(f"  - {table}")

    db.dispose()


if __name__ == '__main__':
    main()
