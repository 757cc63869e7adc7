"""
DevRunner Database Package

SQLite persistence layer.
"""

from devrunner.db.database import (
    Database,
    DatabaseProtocol,
    SQLiteDatabase,
    get_database,
)
from devrunner.db.schema import SCHEMA_SQLITE

__all__ = [
    "Database",
    "DatabaseProtocol",
    "SQLiteDatabase",
    "get_database",
    "SCHEMA_SQLITE",
]
