"""
Migration-specific exceptions.

This module defines the exception hierarchy for the migration engine,
enabling precise error handling at different layers of the application.

Note that a checksum mismatch is NOT an error: it is reported by the
change detector as a classification value and simply causes the file to
be executed again.
"""

from datetime import datetime
from typing import Optional, Union


class MigrationError(Exception):
    """
    Base exception for migration errors.

    All migration-related exceptions inherit from this base class,
    allowing catch-all error handling when needed.
    """
    pass


class ConfigurationError(MigrationError):
    """
    Invalid or missing configuration.

    Raised when:
    - Config file cannot be parsed
    - Required setting (database URL) is missing
    - Setting has an invalid value (negative lock timeout)
    """
    pass


class MalformedFileError(MigrationError):
    """
    Migration file cannot be parsed.

    Raised when:
    - Filename has no numeric sequence prefix (strict mode only;
      otherwise the catalog falls back to a sentinel sequence)
    - Two files share a sequence number (DuplicateSequenceError)
    """

    def __init__(self, filename: str, message: str) -> None:
        self.filename = filename
        self.message = message
        super().__init__(f"{filename}: {message}")


class DuplicateSequenceError(MalformedFileError):
    """
    Two migration files share the same sequence number.

    Raised at load time unless duplicates are explicitly allowed.
    """

    def __init__(self, filename: str, other_filename: str, sequence: int) -> None:
        self.other_filename = other_filename
        self.sequence = sequence
        super().__init__(
            filename,
            f"duplicate sequence {sequence} (also used by {other_filename})"
        )


class LockAcquisitionError(MigrationError):
    """
    Another live process holds the migration lock.

    Surfaced immediately; the engine never retries or queues.
    """

    def __init__(
        self,
        process_id: str,
        held_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> None:
        self.process_id = process_id
        self.held_by = held_by
        self.expires_at = expires_at
        message = "Failed to acquire migration lock - another migration is in progress"
        if held_by:
            message += f" (held by {held_by}"
            if expires_at:
                message += f" until {expires_at.isoformat()}"
            message += ")"
        super().__init__(message)


class SQLExecutionError(MigrationError):
    """
    A forward or rollback script failed.

    Fatal for the remainder of the current batch or rollback sequence.
    Always recorded in history before it reaches the caller.
    """

    def __init__(self, migration_name: str, message: str, phase: str = 'forward') -> None:
        self.migration_name = migration_name
        self.message = message
        self.phase = phase
        super().__init__(f"{phase} SQL for {migration_name} failed: {message}")


class RollbackUnavailableError(MigrationError):
    """
    A migration selected for rollback has no stored rollback SQL.

    The rollback sequence halts at this migration.
    """

    def __init__(self, migration_name: str) -> None:
        self.migration_name = migration_name
        super().__init__(f"No rollback SQL stored for migration {migration_name}")


class RollbackTargetError(MigrationError):
    """
    Rollback target cannot be resolved.

    Raised when:
    - Target migration name has no history record
    - Target batch number is negative
    """

    def __init__(self, target: Union[int, str], message: str) -> None:
        self.target = target
        self.message = message
        super().__init__(f"Invalid rollback target {target!r}: {message}")
