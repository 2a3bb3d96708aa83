#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Batch rollback for applied migrations.

Rolls back every completed migration newer than a target batch, newest
first, using the rollback SQL captured in history when the migration was
applied (not the current file content). Stops at the first migration that
cannot be rolled back.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from sqlmigrator.database import split_sql_statements
from sqlmigrator.errors import (
    MigrationError,
    RollbackTargetError,
    RollbackUnavailableError,
    SQLExecutionError,
)

from .history_store import HistoryStore
from .lock_manager import LockHandle, LockManager
from .migration import MigrationRecord
from .migration_executor import describe_error

RollbackTarget = Union[int, str]


@dataclass
class RollbackOutcome:
    """Result of rolling back one migration."""
    name: str
    batch_number: int
    success: bool
    execution_time_ms: int = 0
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'batch_number': self.batch_number,
            'success': self.success,
            'execution_time_ms': self.execution_time_ms,
            'error_message': self.error_message,
        }


@dataclass
class RollbackResult:
    """
    Result of a rollback sequence.

    error is a RollbackUnavailableError (no rollback SQL stored) or a
    SQLExecutionError (rollback SQL failed); either halts the sequence.
    """
    target_batch: int
    outcomes: List[RollbackOutcome] = field(default_factory=list)
    error: Optional[MigrationError] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def no_op(self) -> bool:
        return not self.outcomes and self.error is None

    @property
    def rolled_back(self) -> List[str]:
        return [o.name for o in self.outcomes if o.success]

    def raise_for_status(self) -> None:
        if self.error is not None:
            raise self.error

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'target_batch': self.target_batch,
            'rolled_back': self.rolled_back,
            'results': [o.to_dict() for o in self.outcomes],
            'error': str(self.error) if self.error else None,
        }


class RollbackEngine:
    """
    Reverts applied migrations down to a target batch.

    Example:
        engine = RollbackEngine(store, lock_manager)

        # Undo the latest batch
        result = await engine.rollback_to(await store.max_batch_number() - 1)

        # Undo everything applied after 003_add_index's batch
        result = await engine.rollback_to('003_add_index')
    """

    def __init__(self, store: HistoryStore, lock_manager: LockManager):
        self.store = store
        self.lock_manager = lock_manager
        self.logger = logging.getLogger(__name__)

    async def _resolve_target(self, target: RollbackTarget) -> int:
        """
        Convert a rollback target into a batch number.

        Raises:
            RollbackTargetError: Negative batch or unknown migration name
        """
        if isinstance(target, int):
            if target < 0:
                raise RollbackTargetError(target, "batch number must be >= 0")
            return target

        record = await self.store.get_record(target)
        if record is None:
            raise RollbackTargetError(target, "no migration with that name in history")
        return record.batch_number

    async def plan(self, target: RollbackTarget) -> List[MigrationRecord]:
        """Records rollback_to(target) would revert, in order. Takes no lock."""
        await self.store.ensure_schema()
        target_batch = await self._resolve_target(target)
        return await self.store.completed_after_batch(target_batch)

    async def rollback_all(self) -> RollbackResult:
        """Roll back every completed migration."""
        return await self.rollback_to(0)

    async def rollback_to(self, target: RollbackTarget) -> RollbackResult:
        """
        Roll back all completed migrations with batch_number > target.

        Args:
            target: Batch number, or a migration name meaning that
                migration's batch (which itself stays applied)

        Returns:
            RollbackResult; a migration that could not be rolled back is
            reported through result.error and ends the sequence

        Raises:
            RollbackTargetError: If the target cannot be resolved
            LockAcquisitionError: If another process is running migrations
        """
        await self.store.ensure_schema()

        async with self.lock_manager.locked() as handle:
            target_batch = await self._resolve_target(target)
            records = await self.store.completed_after_batch(target_batch)

            result = RollbackResult(target_batch=target_batch)
            if not records:
                self.logger.info('Nothing to roll back after batch %d', target_batch)
                return result

            self.logger.info(
                'Rolling back %d migrations to batch %d',
                len(records),
                target_batch
            )

            for record in records:
                outcome = await self._revert(record, result, handle)
                if outcome is not None:
                    result.outcomes.append(outcome)
                if result.error is not None:
                    break

            self.logger.info(
                'Rollback to batch %d finished: %d rolled back%s',
                target_batch,
                len(result.rolled_back),
                '' if result.success else f', stopped: {result.error}'
            )
            return result

    async def _revert(
        self,
        record: MigrationRecord,
        result: RollbackResult,
        handle: LockHandle
    ) -> Optional[RollbackOutcome]:
        if not split_sql_statements(record.rollback_sql or ''):
            result.error = RollbackUnavailableError(record.name)
            self.logger.error('Cannot roll back %s: no rollback SQL stored', record.name)
            return None

        if self.lock_manager.lease_expired(handle):
            self.logger.warning(
                'Migration lock lease expired before rolling back %s; another process may take it over',
                record.name
            )
        self.logger.info('Rolling back migration: %s', record.name)

        start_time = time.monotonic()
        try:
            await self.store.execute_script(record.rollback_sql)
        except Exception as e:
            error_message = describe_error(e)
            execution_time_ms = int((time.monotonic() - start_time) * 1000)
            await self.store.record_rollback_failure(record.name, error_message)
            result.error = SQLExecutionError(record.name, error_message, phase='rollback')
            self.logger.error('Rollback failed: %s: %s', record.name, error_message)
            return RollbackOutcome(
                name=record.name,
                batch_number=record.batch_number,
                success=False,
                execution_time_ms=execution_time_ms,
                error_message=error_message
            )

        execution_time_ms = int((time.monotonic() - start_time) * 1000)
        await self.store.mark_rolled_back(record.name)
        self.logger.info('Rolled back: %s (%dms)', record.name, execution_time_ms)

        return RollbackOutcome(
            name=record.name,
            batch_number=record.batch_number,
            success=True,
            execution_time_ms=execution_time_ms
        )
