"""
Change detection for migration files.

Compares a migration file against its history record and decides whether
it has to run. Classification is a plain value: a checksum mismatch is not
an error, it simply means the migration runs again.
"""

from enum import Enum
from typing import Iterable, List, Mapping, Optional, Tuple

from .migration import MigrationFile, MigrationRecord, MigrationStatus


class Classification(str, Enum):
    """Outcome of comparing a migration file with its history."""
    PENDING = 'pending'            # never run (or rolled back)
    UNCHANGED = 'unchanged'        # completed with the same checksum
    CHANGED = 'changed'            # completed, file edited since
    RETRY_FAILED = 'retry_failed'  # last attempt failed

    @property
    def needs_execution(self) -> bool:
        return self is not Classification.UNCHANGED


def classify(
    migration: MigrationFile,
    record: Optional[MigrationRecord]
) -> Classification:
    """
    Classify a migration file against its history record.

    Args:
        migration: Migration parsed from disk
        record: History record with the same name, or None

    Returns:
        Classification value

    Example:
        >>> classify(migration, None)
        <Classification.PENDING: 'pending'>
    """
    if record is None:
        return Classification.PENDING

    # Failed migrations always run again, edited or not
    if record.status is MigrationStatus.FAILED:
        return Classification.RETRY_FAILED

    if record.status is MigrationStatus.ROLLED_BACK:
        return Classification.PENDING

    if record.checksum != migration.checksum:
        return Classification.CHANGED

    return Classification.UNCHANGED


def classify_all(
    migrations: Iterable[MigrationFile],
    history: Mapping[str, MigrationRecord]
) -> List[Tuple[MigrationFile, Classification]]:
    """Classify every migration, preserving input order."""
    return [
        (migration, classify(migration, history.get(migration.name)))
        for migration in migrations
    ]
