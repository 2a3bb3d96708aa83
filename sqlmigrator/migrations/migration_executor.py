#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Migration executor with locking, batching and tracking.

Runs every pending migration in sequence order as one batch while holding
the migration lock. Each script runs in its own transaction and every
attempt is recorded in migration_history before the next one starts.
The batch stops at the first failure; earlier migrations in the batch
stay committed.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlmigrator.database import utcnow
from sqlmigrator.errors import SQLExecutionError

from .change_detector import Classification, classify_all
from .file_catalog import FileCatalog
from .history_store import HistoryStore
from .lock_manager import LockHandle, LockManager
from .migration import MigrationFile, MigrationRecord, MigrationStatus


def describe_error(error: Exception) -> str:
    """Driver error text without SQLAlchemy's statement/background suffix."""
    return str(getattr(error, 'orig', None) or error)


@dataclass
class PlannedMigration:
    """A migration file that needs to run, and why."""
    migration: MigrationFile
    classification: Classification

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.migration.name,
            'filename': self.migration.filename,
            'sequence': self.migration.sequence,
            'reason': self.classification.value,
        }


@dataclass
class MigrationOutcome:
    """
    Result of executing one migration.

    Attributes:
        name: Migration name
        classification: Why it was executed
        success: Whether the forward script completed
        execution_time_ms: Execution time in milliseconds
        error_message: Error message if failed (None if success)
    """
    name: str
    classification: Classification
    success: bool
    execution_time_ms: int
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'reason': self.classification.value,
            'success': self.success,
            'execution_time_ms': self.execution_time_ms,
            'error_message': self.error_message,
        }


@dataclass
class RunResult:
    """
    Result of a migration run.

    batch_number is None when there was nothing to do.
    """
    batch_number: Optional[int] = None
    outcomes: List[MigrationOutcome] = field(default_factory=list)
    error: Optional[SQLExecutionError] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def no_op(self) -> bool:
        return not self.outcomes

    @property
    def executed(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)

    def raise_for_status(self) -> None:
        """Raise the SQLExecutionError that stopped the batch, if any."""
        if self.error is not None:
            raise self.error

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'batch_number': self.batch_number,
            'migrations_run': self.executed,
            'migrations_failed': self.failed,
            'results': [o.to_dict() for o in self.outcomes],
        }


class MigrationExecutor:
    """
    Orchestrates migration runs.

    Attributes:
        store: History store (persistence and script execution)
        catalog: Source of migration files
        lock_manager: Cross-process lock
        logger: Logger for execution tracking

    Example:
        executor = MigrationExecutor(store, catalog, lock_manager)

        result = await executor.run()
        if not result.success:
            print(result.error)
    """

    def __init__(self, store: HistoryStore, catalog: FileCatalog, lock_manager: LockManager):
        self.store = store
        self.catalog = catalog
        self.lock_manager = lock_manager
        self.logger = logging.getLogger(__name__)

    async def plan(self) -> List[PlannedMigration]:
        """
        Migrations the next run would execute, in order.

        Does not take the lock and does not execute anything.
        """
        await self.store.ensure_schema()
        return await self._pending()

    async def _pending(self) -> List[PlannedMigration]:
        migrations = self.catalog.list()
        history = await self.store.load_history()

        self.logger.info(
            'Found %d migration files, %d history records',
            len(migrations),
            len(history)
        )

        pending = []
        for migration, classification in classify_all(migrations, history):
            if classification.needs_execution:
                self.logger.info(
                    'Pending migration: %s (%s)',
                    migration.name,
                    classification.value
                )
                pending.append(PlannedMigration(migration, classification))
        return pending

    async def run(self) -> RunResult:
        """
        Run all pending migrations as one batch.

        Returns:
            RunResult with per-migration outcomes. A failed script is
            reported through result.error (fail-fast: later migrations are
            not attempted).

        Raises:
            LockAcquisitionError: If another process is running migrations
            MalformedFileError: If the migration files cannot be loaded
        """
        await self.store.ensure_schema()

        async with self.lock_manager.locked() as handle:
            pending = await self._pending()

            if not pending:
                self.logger.info('No pending migrations found')
                return RunResult()

            batch_number = await self.store.max_batch_number() + 1
            self.logger.info(
                'Starting migration batch %d with %d migrations',
                batch_number,
                len(pending)
            )

            result = RunResult(batch_number=batch_number)
            for planned in pending:
                outcome = await self._apply(planned, batch_number, handle)
                result.outcomes.append(outcome)

                if not outcome.success:
                    result.error = SQLExecutionError(
                        planned.migration.name,
                        outcome.error_message or 'unknown error'
                    )
                    self.logger.error(
                        'Migration batch %d failed at: %s',
                        batch_number,
                        planned.migration.name
                    )
                    break

            self.logger.info(
                'Migration batch %d completed: %d successful, %d failed',
                batch_number,
                result.executed,
                result.failed
            )
            return result

    async def _apply(
        self,
        planned: PlannedMigration,
        batch_number: int,
        handle: LockHandle
    ) -> MigrationOutcome:
        """
        Execute one forward script and record the attempt.

        Script errors become a failed outcome; errors while writing the
        history record propagate.
        """
        migration = planned.migration
        if self.lock_manager.lease_expired(handle):
            self.logger.warning(
                'Migration lock lease expired before %s; another process may take it over',
                migration.name
            )
        self.logger.info('Executing migration: %s', migration.name)

        start_time = time.monotonic()
        error_message = None
        try:
            await self.store.execute_script(migration.forward_sql)
        except Exception as e:
            error_message = describe_error(e)
        execution_time_ms = int((time.monotonic() - start_time) * 1000)

        status = MigrationStatus.FAILED if error_message else MigrationStatus.COMPLETED
        await self.store.save_record(MigrationRecord(
            name=migration.name,
            sequence=migration.sequence,
            batch_number=batch_number,
            executed_at=utcnow(),
            execution_time_ms=execution_time_ms,
            checksum=migration.checksum,
            status=status,
            rollback_sql=migration.rollback_sql,
            error_message=error_message
        ))

        if error_message:
            self.logger.error(
                'Migration failed: %s (%dms): %s',
                migration.name,
                execution_time_ms,
                error_message
            )
        else:
            self.logger.info(
                'Migration completed: %s (%dms)',
                migration.name,
                execution_time_ms
            )

        return MigrationOutcome(
            name=migration.name,
            classification=planned.classification,
            success=error_message is None,
            execution_time_ms=execution_time_ms,
            error_message=error_message
        )
