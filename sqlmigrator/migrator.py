"""
Wiring of the migration components.

Migrator builds the database, history store, catalog, lock manager,
executor and rollback engine from a MigrationConfig so the CLI and the
NATS service share one construction path.
"""

import logging
from typing import Any, Dict, Optional

from sqlmigrator.config import MigrationConfig
from sqlmigrator.database import MigrationDatabase
from sqlmigrator.migrations import (
    FileCatalog,
    HistoryStore,
    LockManager,
    MigrationExecutor,
    MigrationStatus,
    PlannedMigration,
    RollbackEngine,
    SQLHistoryStore,
    classify_all,
)


class Migrator:
    """
    Facade over the migration components.

    Example:
        migrator = Migrator.from_config(load_config('migrate.yaml'))
        try:
            result = await migrator.executor.run()
        finally:
            await migrator.close()
    """

    def __init__(
        self,
        store: HistoryStore,
        catalog: FileCatalog,
        lock_manager: LockManager,
        database: Optional[MigrationDatabase] = None
    ):
        self.store = store
        self.catalog = catalog
        self.lock_manager = lock_manager
        self.database = database
        self.executor = MigrationExecutor(store, catalog, lock_manager)
        self.rollback_engine = RollbackEngine(store, lock_manager)
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config: MigrationConfig, process_id: Optional[str] = None) -> 'Migrator':
        database = MigrationDatabase(config.database_url)
        store = SQLHistoryStore(database)
        catalog = FileCatalog(
            config.migrations_dir,
            strict=config.strict,
            allow_duplicate_sequences=config.allow_duplicate_sequences
        )
        lock_manager = LockManager(store, timeout=config.lock_timeout, process_id=process_id)
        return cls(store, catalog, lock_manager, database=database)

    async def status(self) -> Dict[str, Any]:
        """
        Snapshot of files, history and lock state.

        Returns:
            Dict with counts, the pending list (with reasons), applied
            history in batch order and the lock row
        """
        await self.store.ensure_schema()

        migrations = self.catalog.list()
        history = await self.store.load_history()
        pending = [
            PlannedMigration(migration, classification)
            for migration, classification in classify_all(migrations, history)
            if classification.needs_execution
        ]

        records = sorted(
            history.values(),
            key=lambda r: (r.batch_number, r.sequence, r.name)
        )
        lock = await self.lock_manager.status()

        return {
            'total_files': len(migrations),
            'applied': sum(1 for r in records if r.status is MigrationStatus.COMPLETED),
            'failed': sum(1 for r in records if r.status is MigrationStatus.FAILED),
            'pending': len(pending),
            'last_batch': await self.store.max_batch_number(),
            'pending_migrations': [p.to_dict() for p in pending],
            'history': [r.to_dict() for r in records],
            'lock': dict(lock.to_dict(), is_free=self.lock_manager.is_free(lock)),
        }

    async def close(self) -> None:
        if self.database is not None:
            await self.database.close()
