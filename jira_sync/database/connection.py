"""
Database Connection Module
Handles connection pooling and session management using SQLAlchemy.
"""

import os
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from jira_sync.config_manager import ConfigManager
from jira_sync.utils.logger import get_logger

logger = get_logger(__name__)


def normalize_database_url(url: str) -> str:
    """Accept postgres:// URLs and pin the psycopg2 driver for PostgreSQL."""
    if url.startswith('postgres://'):
        url = 'postgresql://' + url[len('postgres://'):]
    if url.startswith('postgresql://'):
        url = 'postgresql+psycopg2://' + url[len('postgresql://'):]
    return url


class DatabaseConnection:
    """Manages database connections with connection pooling."""

    def __init__(self, url: str = None, engine: Engine = None):
        """
        Initialize the engine.

        Args:
            url: SQLAlchemy URL; defaults to DATABASE_URL from configuration
            engine: Pre-built engine (tests)
        """
        self._engine = engine or self._create_engine(url)
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        logger.info("Database engine initialized successfully")

    def _create_engine(self, url: Optional[str]) -> Engine:
        """Create SQLAlchemy engine with connection pooling."""
        config = ConfigManager()
        db_config = config.get_database_config()
        db_url = normalize_database_url(url or config.get_database_url())

        engine_kwargs = {
            'pool_pre_ping': True,
            'echo': os.getenv('SQL_ECHO', 'false').lower() == 'true'
        }
        if not db_url.startswith('sqlite'):
            engine_kwargs.update(
                pool_size=int(db_config.get('pool_size', 5)),
                max_overflow=int(db_config.get('max_overflow', 10)),
                pool_timeout=int(db_config.get('pool_timeout', 30))
            )

        return create_engine(db_url, **engine_kwargs)

    @property
    def engine(self) -> Engine:
        """Get the SQLAlchemy engine."""
        return self._engine

    def get_session(self) -> Session:
        """Create a new database session."""
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Provide a transactional scope around a series of operations.

        Usage:
            with db.session_scope() as session:
                session.execute(...)
        """
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database session error: {e}")
            raise
        finally:
            session.close()

    def check_connection(self) -> bool:
        """
        Check if database connection is healthy.

        Returns:
            bool: True if connection is healthy, False otherwise.
        """
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.debug("Database connection health check passed")
            return True
        except Exception as e:
            logger.error(f"Database connection health check failed: {e}")
            return False

    def dispose(self) -> None:
        """Dispose of the connection pool."""
        self._engine.dispose()
        logger.info("Database connection pool disposed")


_db: Optional[DatabaseConnection] = None


def get_db() -> DatabaseConnection:
    """Get the process-wide database connection, creating it on first use."""
    global _db
    if _db is None:
        _db = DatabaseConnection()
    return _db
