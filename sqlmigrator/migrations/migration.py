"""
Migration data models for schema evolution.

This module defines the core data structures for managing database migrations:
- MigrationFile: A migration script parsed from the filesystem
- MigrationRecord: A migration's execution history row
- MigrationStatus: Lifecycle status stored in history
- LockRecord: State of the singleton migration lock row

MigrationFile objects are rebuilt from disk on every run; MigrationRecord and
LockRecord mirror persisted rows owned by the history store.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class MigrationStatus(str, Enum):
    """Status of a migration in the history table."""
    COMPLETED = 'completed'
    FAILED = 'failed'
    ROLLED_BACK = 'rolled_back'


@dataclass
class MigrationFile:
    """
    Represents a single migration file with metadata.

    A migration file contains a forward section and an optional rollback
    section:
    - forward_sql: statements that apply the migration
    - rollback_sql: statements that undo it (None if not provided)

    Attributes:
        sequence: Numeric filename prefix, determines execution order
        name: Filename without extension (e.g., '013_add_analytics_tables')
        filename: Full filename (e.g., '013_add_analytics_tables.sql')
        file_path: Absolute path to migration file
        forward_sql: SQL statements for applying migration
        rollback_sql: SQL statements for rolling back migration
        checksum: SHA-256 hash of the entire file content

    Example:
        >>> migration = MigrationFile(
        ...     sequence=1,
        ...     name='001_init',
        ...     filename='001_init.sql',
        ...     file_path='/app/migrations/001_init.sql',
        ...     forward_sql='CREATE TABLE users (id INTEGER PRIMARY KEY);',
        ...     rollback_sql='DROP TABLE users;',
        ...     checksum='a1b2c3d4...'
        ... )
        >>> print(migration)
        <MigrationFile(#1, 001_init)>
    """

    sequence: int
    name: str
    filename: str
    file_path: str
    forward_sql: str
    rollback_sql: Optional[str]
    checksum: str

    def __post_init__(self):
        """Validate migration after initialization."""
        if self.sequence < 0:
            raise ValueError(
                f"Migration sequence must be >= 0, got {self.sequence}"
            )

    @property
    def sort_key(self):
        return (self.sequence, self.name)

    @property
    def has_rollback(self) -> bool:
        return bool(self.rollback_sql and self.rollback_sql.strip())

    def __lt__(self, other: 'MigrationFile') -> bool:
        """
        Allow sorting migrations by sequence, then name.

        Example:
            >>> sorted([MigrationFile(sequence=10, ...), MigrationFile(sequence=2, ...)])
            [<MigrationFile(#2, ...)>, <MigrationFile(#10, ...)>]
        """
        if not isinstance(other, MigrationFile):
            return NotImplemented
        return self.sort_key < other.sort_key

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<MigrationFile(#{self.sequence}, {self.name})>"


@dataclass
class MigrationRecord:
    """
    Represents a migration's row in the migration_history table.

    Attributes:
        name: Migration name (unique)
        batch_number: Run that last executed this migration
        executed_at: When the migration was last executed (UTC)
        execution_time_ms: Time taken by the forward script
        checksum: Checksum of the file at execution time
        status: completed, failed or rolled_back
        rollback_sql: Rollback section captured at execution time
        error_message: Error if the last forward or rollback attempt failed
        sequence: Numeric prefix of the file at execution time
    """

    name: str
    batch_number: int
    executed_at: datetime
    execution_time_ms: int
    checksum: str
    status: MigrationStatus = MigrationStatus.COMPLETED
    rollback_sql: Optional[str] = None
    error_message: Optional[str] = None
    sequence: int = 0

    def __post_init__(self):
        """Validate record after initialization."""
        try:
            self.status = MigrationStatus(self.status)
        except ValueError:
            raise ValueError(
                f"MigrationRecord status must be one of "
                f"{[s.value for s in MigrationStatus]}, got '{self.status}'"
            ) from None

        if self.batch_number < 0:
            raise ValueError(
                f"Batch number must be >= 0, got {self.batch_number}"
            )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'name': self.name,
            'sequence': self.sequence,
            'batch_number': self.batch_number,
            'executed_at': self.executed_at.isoformat() if self.executed_at else None,
            'execution_time_ms': self.execution_time_ms,
            'checksum': self.checksum,
            'status': self.status.value,
            'has_rollback': bool(self.rollback_sql and self.rollback_sql.strip()),
            'error_message': self.error_message,
        }

    def __repr__(self) -> str:
        return (
            f"<MigrationRecord({self.name}, batch {self.batch_number}, "
            f"{self.status.value})>"
        )


@dataclass
class LockRecord:
    """
    Snapshot of the singleton migration lock row.

    A lock is free when it is not held or when its expiry has passed.
    """

    is_locked: bool = False
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def is_free(self, now: datetime) -> bool:
        if not self.is_locked:
            return True
        return self.expires_at is not None and self.expires_at < now

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_locked': self.is_locked,
            'locked_by': self.locked_by,
            'locked_at': self.locked_at.isoformat() if self.locked_at else None,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
        }
