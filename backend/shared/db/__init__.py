"""SQLite database layer: connection management and gateway implementation."""

from shared.db.connection import Database
from shared.db.gateway import SqlitePersistenceGateway

__all__ = [
    "Database",
    "SqlitePersistenceGateway",
]
