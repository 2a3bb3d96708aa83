"""
Migration file catalog for schema evolution.

This module provides the FileCatalog class which handles:
- Discovery of migration files in the migrations directory
- Parsing of migration files (extracting forward/rollback SQL sections)
- Checksum computation for change detection
- Scaffolding of new migration files

Migration files follow the naming convention: NNN_description.sql
Example: 001_initial_tables.sql, 013_add_analytics_tables.sql

File format:
    -- FORWARD MIGRATION
    CREATE TABLE my_table (id SERIAL PRIMARY KEY);

    -- ROLLBACK
    DROP TABLE my_table;

Both markers are optional. Without a FORWARD marker the whole file up to
the ROLLBACK marker is the forward section.
"""

import hashlib
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from sqlmigrator.database import split_sql_statements
from sqlmigrator.errors import DuplicateSequenceError, MalformedFileError

from .migration import MigrationFile

logger = logging.getLogger(__name__)

# Sequence assigned to files without a numeric prefix, sorts them last
UNSEQUENCED = 2 ** 31 - 1


class FileCatalog:
    """
    Discovers and parses migration files.

    Responsibilities:
    - Discover migration files, skipping combined/deprecated artifacts
    - Parse migration files (extract forward/rollback sections)
    - Compute checksums over the full file content
    - Create new migration files from a template

    Read-only except for create(). Does NOT touch the database.

    Example:
        >>> catalog = FileCatalog(Path('/app/migrations'))
        >>> catalog.list()
        [<MigrationFile(#1, 001_init)>, <MigrationFile(#2, 002_add_index)>]
    """

    SEQUENCE_PATTERN = re.compile(r'^(\d+)')

    # Section markers, matched exactly against whole stripped lines
    FORWARD_MARKER = '-- FORWARD MIGRATION'
    ROLLBACK_MARKER = '-- ROLLBACK'

    # Files that live next to migrations but are not migrations
    EXCLUDED_PREFIXES = ('COMBINED_',)
    EXCLUDED_SUBSTRINGS = ('deprecated',)

    def __init__(
        self,
        migrations_dir: Path,
        strict: bool = False,
        allow_duplicate_sequences: bool = False
    ):
        """
        Initialize file catalog.

        Args:
            migrations_dir: Directory containing NNN_description.sql files
            strict: Raise MalformedFileError for filenames without a
                numeric prefix instead of ordering them last
            allow_duplicate_sequences: Order files sharing a sequence by
                name instead of failing the load
        """
        self.migrations_dir = Path(migrations_dir)
        self.strict = strict
        self.allow_duplicate_sequences = allow_duplicate_sequences

    def is_excluded(self, filename: str) -> bool:
        """Check whether a .sql file is a known non-migration artifact."""
        if filename.startswith(self.EXCLUDED_PREFIXES):
            return True
        lowered = filename.lower()
        return any(marker in lowered for marker in self.EXCLUDED_SUBSTRINGS)

    def parse_sequence(self, filename: str) -> int:
        """
        Extract the numeric sequence prefix from a filename.

        Raises:
            MalformedFileError: If the filename has no numeric prefix
        """
        match = self.SEQUENCE_PATTERN.match(filename)
        if not match:
            raise MalformedFileError(filename, "no numeric sequence prefix")
        return int(match.group(1))

    def list(self) -> List[MigrationFile]:
        """
        Discover all migration files.

        Scans the migrations directory for .sql files, skips excluded
        artifacts, parses the rest, and returns them sorted by
        (sequence, name).

        Returns:
            List of MigrationFile objects in execution order

        Raises:
            DuplicateSequenceError: If two files share a sequence number
                (unless allow_duplicate_sequences is set)
            MalformedFileError: If a file cannot be parsed, or (strict
                mode) a filename has no numeric prefix
        """
        if not self.migrations_dir.exists():
            logger.warning(
                f"Migrations directory not found: {self.migrations_dir}"
            )
            return []

        migrations = []
        sequences_seen: Dict[int, str] = {}

        for file_path in sorted(self.migrations_dir.glob('*.sql')):
            if not file_path.is_file():
                continue

            if self.is_excluded(file_path.name):
                logger.debug(f"Skipping non-migration file: {file_path.name}")
                continue

            migration = self.parse_file(file_path)

            if migration.sequence != UNSEQUENCED and not self.allow_duplicate_sequences:
                other = sequences_seen.get(migration.sequence)
                if other is not None:
                    raise DuplicateSequenceError(
                        migration.filename, other, migration.sequence
                    )
                sequences_seen[migration.sequence] = migration.filename

            migrations.append(migration)
            logger.debug(f"Discovered migration: {migration}")

        return sorted(migrations)

    def parse_file(self, file_path: Path) -> MigrationFile:
        """
        Parse a migration file and extract its sections.

        Args:
            file_path: Path to migration file

        Returns:
            MigrationFile with forward/rollback SQL extracted

        Raises:
            FileNotFoundError: If file doesn't exist
            MalformedFileError: If the filename has no numeric prefix
                (strict mode only)
        """
        file_path = Path(file_path)
        if not file_path.exists():
            raise FileNotFoundError(f"Migration file not found: {file_path}")

        content = file_path.read_text(encoding='utf-8')

        try:
            sequence = self.parse_sequence(file_path.name)
        except MalformedFileError:
            if self.strict:
                raise
            logger.warning(
                f"Migration {file_path.name} has no numeric prefix, "
                f"ordering it last"
            )
            sequence = UNSEQUENCED

        forward_sql, rollback_sql = self._parse_sections(content, file_path.name)

        return MigrationFile(
            sequence=sequence,
            name=file_path.stem,
            filename=file_path.name,
            file_path=str(file_path.absolute()),
            forward_sql=forward_sql,
            rollback_sql=rollback_sql,
            checksum=self.compute_checksum(content)
        )

    def _parse_sections(
        self,
        content: str,
        filename: str
    ) -> Tuple[str, Optional[str]]:
        """
        Split file content into forward and rollback SQL.

        Args:
            content: Full file content
            filename: Filename for error messages

        Returns:
            Tuple of (forward_sql, rollback_sql). rollback_sql is None when
            the section is missing or holds nothing but comments.
        """
        lines = content.split('\n')

        forward_start = 0
        rollback_start = None

        for i, line in enumerate(lines):
            marker = line.strip()
            if marker == self.FORWARD_MARKER and rollback_start is None:
                forward_start = i + 1
            elif marker == self.ROLLBACK_MARKER and rollback_start is None:
                rollback_start = i + 1

        if rollback_start is None:
            forward_sql = '\n'.join(lines[forward_start:]).strip()
            rollback_sql = None
        else:
            forward_sql = '\n'.join(lines[forward_start:rollback_start - 1]).strip()
            rollback_sql = '\n'.join(lines[rollback_start:]).strip()
            if not split_sql_statements(rollback_sql):
                rollback_sql = None

        if not split_sql_statements(forward_sql):
            logger.warning(f"Migration {filename} has no forward SQL statements")

        return forward_sql, rollback_sql

    def compute_checksum(self, content: str) -> str:
        """
        Compute SHA-256 checksum of migration file content.

        Computed over the entire file (both sections and comments), so
        any edit causes the migration to be classified as changed.

        Returns:
            Hexadecimal SHA-256 hash (64 characters)
        """
        return hashlib.sha256(content.encode('utf-8')).hexdigest()

    def next_sequence(self) -> int:
        """Sequence number for the next new migration file."""
        if not self.migrations_dir.exists():
            return 1

        highest = 0
        for file_path in self.migrations_dir.glob('*.sql'):
            if self.is_excluded(file_path.name):
                continue
            match = self.SEQUENCE_PATTERN.match(file_path.name)
            if match:
                highest = max(highest, int(match.group(1)))
        return highest + 1

    def create(self, name: str, description: str = '') -> Path:
        """
        Scaffold a new migration file containing both section markers.

        Args:
            name: Descriptive name (e.g., 'add user table')
            description: Optional free-text description for the header

        Returns:
            Path of the created file

        Raises:
            ValueError: If name has no usable characters
            FileExistsError: If the target file already exists
        """
        slug = re.sub(r'[^a-z0-9]+', '_', name.lower()).strip('_')
        if not slug:
            raise ValueError(f"Invalid migration name: {name!r}")

        self.migrations_dir.mkdir(parents=True, exist_ok=True)
        filename = f"{self.next_sequence():03d}_{slug}.sql"
        file_path = self.migrations_dir / filename

        created = datetime.now(timezone.utc).isoformat(timespec='seconds')
        template = (
            f"-- Migration: {name}\n"
            f"-- Description: {description}\n"
            f"-- Created: {created}\n"
            f"\n"
            f"-- ============================================\n"
            f"{self.FORWARD_MARKER}\n"
            f"-- ============================================\n"
            f"\n"
            f"-- Add your migration SQL here\n"
            f"\n"
            f"\n"
            f"-- ============================================\n"
            f"{self.ROLLBACK_MARKER}\n"
            f"-- ============================================\n"
            f"\n"
            f"-- Add your rollback SQL here (optional)\n"
            f"-- Leave this section empty if the migration cannot be undone\n"
        )

        with open(file_path, 'x', encoding='utf-8') as fp:
            fp.write(template)

        logger.info(f"Migration file created: {filename}")
        return file_path
