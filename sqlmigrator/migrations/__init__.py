"""
Schema migration components.

This package provides:
- MigrationFile / MigrationRecord / LockRecord: Data models
- FileCatalog: Discovery and parsing of migration files
- classify / Classification: Change detection against history
- HistoryStore / SQLHistoryStore: Persistence of history and the lock row
- LockManager: Cross-process migration lock
- MigrationExecutor: Batch execution of pending migrations
- RollbackEngine: Batch rollback of applied migrations
"""

from .migration import LockRecord, MigrationFile, MigrationRecord, MigrationStatus
from .file_catalog import UNSEQUENCED, FileCatalog
from .change_detector import Classification, classify, classify_all
from .history_store import HistoryStore, SQLHistoryStore
from .lock_manager import DEFAULT_LOCK_TIMEOUT, LockHandle, LockManager
from .migration_executor import (
    MigrationExecutor,
    MigrationOutcome,
    PlannedMigration,
    RunResult,
)
from .rollback_engine import RollbackEngine, RollbackOutcome, RollbackResult

__all__ = [
    'MigrationFile',
    'MigrationRecord',
    'MigrationStatus',
    'LockRecord',
    'FileCatalog',
    'UNSEQUENCED',
    'Classification',
    'classify',
    'classify_all',
    'HistoryStore',
    'SQLHistoryStore',
    'LockManager',
    'LockHandle',
    'DEFAULT_LOCK_TIMEOUT',
    'MigrationExecutor',
    'MigrationOutcome',
    'PlannedMigration',
    'RunResult',
    'RollbackEngine',
    'RollbackOutcome',
    'RollbackResult',
]
