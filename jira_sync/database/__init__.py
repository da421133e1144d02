"""
Database Package
ORM models, connection management and the sync repository.
"""

from .connection import DatabaseConnection, get_db
from .repository import StoreError, SyncRepository

__all__ = ['DatabaseConnection', 'get_db', 'StoreError', 'SyncRepository']
