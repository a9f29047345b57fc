"""
RankSheet Database Module
=========================

PostgreSQL access: pooled connections, advisory locks and repositories.
"""

from .locks import AdvisoryLockManager, LockResult
from .pool import Database, DatabaseError, get_database
from .repositories import KeywordRepository, RankSheetRepository

__all__ = [
    "AdvisoryLockManager",
    "LockResult",
    "Database",
    "DatabaseError",
    "get_database",
    "KeywordRepository",
    "RankSheetRepository",
]
