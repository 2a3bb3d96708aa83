"""
Persistence for migration history and the migration lock.

This module defines the HistoryStore abstract base class, the only owner
of persisted migration state, and SQLHistoryStore, its SQLAlchemy
implementation backed by the migration_history and migration_lock tables.

The executor, rollback engine and lock manager hold no durable state of
their own; every invocation re-reads what it needs from the store.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func, or_, select, update, false
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from sqlmigrator.database import MigrationDatabase
from sqlmigrator.models import LOCK_ROW_ID, MigrationHistory, MigrationLock

from .migration import LockRecord, MigrationRecord, MigrationStatus


class HistoryStore(ABC):
    """
    Abstract interface for migration history and lock persistence.

    Also exposes the database-execution capability used to run migration
    scripts, so that everything touching the target database goes through
    one object that can be swapped out in tests.

    All methods are async to support asynchronous database drivers.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    @abstractmethod
    async def ensure_schema(self) -> None:
        """
        Create bookkeeping tables and the singleton lock row if missing.

        Safe to call on every run.
        """
        pass

    # ==================== Script Execution ====================

    @abstractmethod
    async def execute_script(self, sql: str) -> None:
        """
        Execute an opaque SQL script against the target database.

        Raises:
            Exception: Driver error; nothing from the script is committed
        """
        pass

    # ==================== History ====================

    @abstractmethod
    async def load_history(self) -> Dict[str, MigrationRecord]:
        """Return every history record keyed by migration name."""
        pass

    @abstractmethod
    async def get_record(self, name: str) -> Optional[MigrationRecord]:
        """Return the history record for a migration name, if any."""
        pass

    @abstractmethod
    async def max_batch_number(self) -> int:
        """Highest batch number in history (0 if empty)."""
        pass

    @abstractmethod
    async def save_record(self, record: MigrationRecord) -> None:
        """Insert or update the record for record.name (upsert on name)."""
        pass

    @abstractmethod
    async def mark_rolled_back(self, name: str) -> None:
        """Set a record's status to rolled_back and clear its error."""
        pass

    @abstractmethod
    async def record_rollback_failure(self, name: str, error_message: str) -> None:
        """Store a rollback error on a record without changing its status."""
        pass

    @abstractmethod
    async def completed_after_batch(self, batch_number: int) -> List[MigrationRecord]:
        """
        Completed records with batch_number greater than the given batch,
        newest first (batch DESC, sequence DESC, name DESC).
        """
        pass

    # ==================== Lock ====================

    @abstractmethod
    async def try_acquire_lock(
        self,
        process_id: str,
        now: datetime,
        expires_at: datetime
    ) -> bool:
        """
        Atomically take the lock if it is free or expired.

        Must be a single conditional update (compare-and-swap), never a
        read followed by a write.

        Returns:
            True if this call took the lock
        """
        pass

    @abstractmethod
    async def release_lock(self, process_id: str) -> bool:
        """
        Free the lock if it is held by process_id.

        Returns:
            True if the lock row was updated
        """
        pass

    @abstractmethod
    async def read_lock(self) -> LockRecord:
        """Snapshot of the lock row."""
        pass


class SQLHistoryStore(HistoryStore):
    """
    HistoryStore backed by SQLAlchemy (SQLite or PostgreSQL).

    Example:
        db = MigrationDatabase('sqlite+aiosqlite:///app.db')
        store = SQLHistoryStore(db)
        await store.ensure_schema()
        history = await store.load_history()
    """

    def __init__(self, database: MigrationDatabase, logger: Optional[logging.Logger] = None):
        super().__init__(logger)
        self.database = database

    def _insert(self, model):
        # Dialect-specific insert for ON CONFLICT support
        if self.database.is_postgresql:
            return pg_insert(model)
        return sqlite_insert(model)

    @staticmethod
    def _to_record(row: MigrationHistory) -> MigrationRecord:
        return MigrationRecord(
            name=row.name,
            sequence=row.sequence,
            batch_number=row.batch_number,
            executed_at=row.executed_at,
            execution_time_ms=row.execution_time_ms,
            checksum=row.checksum,
            status=MigrationStatus(row.status),
            rollback_sql=row.rollback_sql,
            error_message=row.error_message
        )

    async def ensure_schema(self) -> None:
        await self.database.create_tables()

        async with self.database.get_session() as session:
            stmt = self._insert(MigrationLock).values(
                id=LOCK_ROW_ID,
                is_locked=False
            ).on_conflict_do_nothing(index_elements=['id'])
            await session.execute(stmt)

        self.logger.debug('Ensured migration_history and migration_lock tables exist')

    async def execute_script(self, sql: str) -> None:
        await self.database.execute_script(sql)

    async def load_history(self) -> Dict[str, MigrationRecord]:
        async with self.database.get_session() as session:
            result = await session.execute(select(MigrationHistory))
            return {
                row.name: self._to_record(row)
                for row in result.scalars().all()
            }

    async def get_record(self, name: str) -> Optional[MigrationRecord]:
        async with self.database.get_session() as session:
            result = await session.execute(
                select(MigrationHistory).where(MigrationHistory.name == name)
            )
            row = result.scalar_one_or_none()
            return self._to_record(row) if row else None

    async def max_batch_number(self) -> int:
        async with self.database.get_session() as session:
            result = await session.execute(
                select(func.coalesce(func.max(MigrationHistory.batch_number), 0))
            )
            return int(result.scalar())

    async def save_record(self, record: MigrationRecord) -> None:
        values = {
            'name': record.name,
            'sequence': record.sequence,
            'batch_number': record.batch_number,
            'executed_at': record.executed_at,
            'execution_time_ms': record.execution_time_ms,
            'checksum': record.checksum,
            'status': record.status.value,
            'rollback_sql': record.rollback_sql,
            'error_message': record.error_message,
        }

        async with self.database.get_session() as session:
            stmt = self._insert(MigrationHistory).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=['name'],
                set_={key: value for key, value in values.items() if key != 'name'}
            )
            await session.execute(stmt)

    async def mark_rolled_back(self, name: str) -> None:
        async with self.database.get_session() as session:
            await session.execute(
                update(MigrationHistory)
                .where(MigrationHistory.name == name)
                .values(status=MigrationStatus.ROLLED_BACK.value, error_message=None)
                .execution_options(synchronize_session=False)
            )

    async def record_rollback_failure(self, name: str, error_message: str) -> None:
        async with self.database.get_session() as session:
            await session.execute(
                update(MigrationHistory)
                .where(MigrationHistory.name == name)
                .values(error_message=error_message)
                .execution_options(synchronize_session=False)
            )

    async def completed_after_batch(self, batch_number: int) -> List[MigrationRecord]:
        async with self.database.get_session() as session:
            result = await session.execute(
                select(MigrationHistory)
                .where(MigrationHistory.status == MigrationStatus.COMPLETED.value)
                .where(MigrationHistory.batch_number > batch_number)
                .order_by(
                    MigrationHistory.batch_number.desc(),
                    MigrationHistory.sequence.desc(),
                    MigrationHistory.name.desc()
                )
            )
            return [self._to_record(row) for row in result.scalars().all()]

    async def try_acquire_lock(
        self,
        process_id: str,
        now: datetime,
        expires_at: datetime
    ) -> bool:
        async with self.database.get_session() as session:
            result = await session.execute(
                update(MigrationLock)
                .where(MigrationLock.id == LOCK_ROW_ID)
                .where(or_(
                    MigrationLock.is_locked == false(),
                    MigrationLock.expires_at < now
                ))
                .values(
                    is_locked=True,
                    locked_by=process_id,
                    locked_at=now,
                    expires_at=expires_at
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def release_lock(self, process_id: str) -> bool:
        async with self.database.get_session() as session:
            result = await session.execute(
                update(MigrationLock)
                .where(MigrationLock.id == LOCK_ROW_ID)
                .where(MigrationLock.locked_by == process_id)
                .values(
                    is_locked=False,
                    locked_by=None,
                    locked_at=None,
                    expires_at=None
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def read_lock(self) -> LockRecord:
        async with self.database.get_session() as session:
            result = await session.execute(
                select(MigrationLock).where(MigrationLock.id == LOCK_ROW_ID)
            )
            row = result.scalar_one_or_none()
            if row is None:
                return LockRecord()
            return LockRecord(
                is_locked=row.is_locked,
                locked_by=row.locked_by,
                locked_at=row.locked_at,
                expires_at=row.expires_at
            )
