"""
Unit tests for MigrationExecutor.

Runs real migration files against a temporary SQLite database.

Tests cover:
- Numeric ordering and batch numbering
- Idempotent re-runs
- Re-execution of edited and failed migrations
- Fail-fast behaviour and history recording
- Lock discipline (contention, release on failure)
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from sqlmigrator.database import MigrationDatabase
from sqlmigrator.errors import LockAcquisitionError, SQLExecutionError
from sqlmigrator.migrations import (
    Classification,
    LockManager,
    MigrationExecutor,
    MigrationStatus,
    RunResult,
    SQLHistoryStore,
)


@pytest.fixture
def three_migrations(write_migration):
    """001_a, 002_b, 010_c each creating a table, written out of order."""
    write_migration("010_c.sql", "CREATE TABLE c (id INTEGER PRIMARY KEY);", "DROP TABLE c;")
    write_migration("002_b.sql", "CREATE TABLE b (id INTEGER PRIMARY KEY);", "DROP TABLE b;")
    write_migration("001_a.sql", "CREATE TABLE a (id INTEGER PRIMARY KEY);", "DROP TABLE a;")


@pytest.mark.asyncio
class TestRun:
    """Test applying pending migrations."""

    async def test_run_applies_in_numeric_order(self, executor, store, three_migrations, table_names):
        result = await executor.run()

        assert result.success
        assert result.batch_number == 1
        assert [o.name for o in result.outcomes] == ['001_a', '002_b', '010_c']
        assert all(o.classification is Classification.PENDING for o in result.outcomes)
        assert await table_names() == {'a', 'b', 'c'}

        history = await store.load_history()
        assert {r.status for r in history.values()} == {MigrationStatus.COMPLETED}
        assert history['010_c'].sequence == 10
        assert history['010_c'].rollback_sql == 'DROP TABLE c;'

    async def test_run_with_no_files(self, executor):
        result = await executor.run()

        assert result.no_op
        assert result.success
        assert result.batch_number is None

    async def test_second_run_is_noop(self, executor, store, three_migrations):
        await executor.run()
        executed = []
        original = store.execute_script

        async def tracking_execute(sql):
            executed.append(sql)
            await original(sql)

        store.execute_script = tracking_execute

        result = await executor.run()

        assert result.no_op
        assert executed == []
        assert await store.max_batch_number() == 1

    async def test_new_file_gets_next_batch(self, executor, store, write_migration, three_migrations):
        await executor.run()
        write_migration("011_d.sql", "CREATE TABLE d (id INTEGER);")

        result = await executor.run()

        assert result.batch_number == 2
        assert [o.name for o in result.outcomes] == ['011_d']
        assert (await store.get_record('001_a')).batch_number == 1

    async def test_plan_lists_pending_without_running(self, executor, three_migrations, table_names):
        plan = await executor.plan()

        assert [p.migration.name for p in plan] == ['001_a', '002_b', '010_c']
        assert plan[0].to_dict()['reason'] == 'pending'
        assert await table_names() == set()

    async def test_scripts_with_colons_and_percent(self, executor, store, write_migration):
        write_migration(
            "001_seed.sql",
            "CREATE TABLE settings (k TEXT, v TEXT);\n"
            "INSERT INTO settings VALUES ('url', 'http://x:80/a?b=:c&d=%s');"
        )

        result = await executor.run()

        assert result.success
        assert (await store.get_record('001_seed')).status is MigrationStatus.COMPLETED


@pytest.mark.asyncio
class TestChangeDetection:
    """Test re-execution of edited migrations."""

    async def test_edited_file_runs_again(self, executor, store, write_migration):
        write_migration("001_init.sql", "CREATE TABLE users (id INTEGER PRIMARY KEY, email TEXT);")
        path = write_migration(
            "002_add_index.sql",
            "CREATE INDEX IF NOT EXISTS idx_users_email ON users(email);"
        )

        first = await executor.run()
        assert first.batch_number == 1
        assert [o.name for o in first.outcomes] == ['001_init', '002_add_index']
        old_checksum = (await store.get_record('002_add_index')).checksum

        path.write_text(
            "-- FORWARD MIGRATION\n"
            "CREATE INDEX IF NOT EXISTS idx_users_email ON users(email);\n"
            "CREATE INDEX IF NOT EXISTS idx_users_id_email ON users(id, email);\n"
        )

        second = await executor.run()

        assert second.batch_number == 2
        assert [(o.name, o.classification) for o in second.outcomes] == [
            ('002_add_index', Classification.CHANGED)
        ]
        record = await store.get_record('002_add_index')
        assert record.batch_number == 2
        assert record.status is MigrationStatus.COMPLETED
        assert record.checksum != old_checksum
        assert (await store.get_record('001_init')).batch_number == 1


@pytest.mark.asyncio
class TestFailFast:
    """Test behaviour when a forward script fails."""

    @pytest.fixture
    def failing_batch(self, write_migration):
        write_migration("001_a.sql", "CREATE TABLE a (id INTEGER);")
        b = write_migration("002_b.sql", "INSERT INTO missing_table VALUES (1);")
        write_migration("010_c.sql", "CREATE TABLE c (id INTEGER);")
        return b

    async def test_batch_stops_at_failure(self, executor, store, failing_batch, table_names):
        result = await executor.run()

        assert not result.success
        assert [(o.name, o.success) for o in result.outcomes] == [
            ('001_a', True),
            ('002_b', False),
        ]
        assert isinstance(result.error, SQLExecutionError)
        assert result.error.migration_name == '002_b'

        history = await store.load_history()
        assert history['001_a'].status is MigrationStatus.COMPLETED
        assert history['002_b'].status is MigrationStatus.FAILED
        assert 'missing_table' in history['002_b'].error_message
        assert '010_c' not in history
        assert 'c' not in await table_names()

    async def test_raise_for_status(self, executor, failing_batch):
        result = await executor.run()

        with pytest.raises(SQLExecutionError):
            result.raise_for_status()

    async def test_lock_released_after_failure(self, executor, store, failing_batch):
        await executor.run()

        assert not (await store.read_lock()).is_locked

    async def test_failed_migration_retried(self, executor, store, failing_batch):
        await executor.run()
        failing_batch.write_text("-- FORWARD MIGRATION\nCREATE TABLE b (id INTEGER);\n")

        result = await executor.run()

        assert result.success
        assert result.batch_number == 2
        assert [(o.name, o.classification) for o in result.outcomes] == [
            ('002_b', Classification.RETRY_FAILED),
            ('010_c', Classification.PENDING),
        ]
        record = await store.get_record('002_b')
        assert record.status is MigrationStatus.COMPLETED
        assert record.error_message is None


class GatedStore(SQLHistoryStore):
    """Store whose script execution waits until the test lets it proceed."""

    def __init__(self, database):
        super().__init__(database)
        self.entered = asyncio.Event()
        self.proceed = asyncio.Event()

    async def execute_script(self, sql):
        self.entered.set()
        await self.proceed.wait()
        await super().execute_script(sql)


@pytest.mark.asyncio
class TestLockDiscipline:
    """Test mutual exclusion between concurrent runs."""

    async def test_concurrent_run_rejected_while_in_flight(
        self, database, store, catalog, write_migration
    ):
        write_migration("001_a.sql", "CREATE TABLE a (id INTEGER);")
        gated = GatedStore(database)
        first = MigrationExecutor(gated, catalog, LockManager(gated, process_id='proc-a'))
        second = MigrationExecutor(store, catalog, LockManager(store, process_id='proc-b'))

        task = asyncio.create_task(first.run())
        await asyncio.wait_for(gated.entered.wait(), timeout=5)

        with pytest.raises(LockAcquisitionError) as exc_info:
            await second.run()
        assert exc_info.value.held_by == 'proc-a'

        gated.proceed.set()
        result = await task
        assert result.success

        # Lock is free again and there is nothing left to do
        assert (await second.run()).no_op

    async def test_run_rejected_when_lock_held(self, executor, store, three_migrations):
        other = LockManager(store, process_id='someone-else')
        await other.acquire()

        with pytest.raises(LockAcquisitionError):
            await executor.run()

        assert await store.load_history() == {}

    async def test_concurrent_first_runs_on_fresh_database(self, database_url, catalog, write_migration):
        """Test bootstrap races end in lock contention, not DDL errors."""
        write_migration("001_a.sql", "CREATE TABLE a (id INTEGER);")
        databases = [MigrationDatabase(database_url) for _ in range(4)]
        executors = []
        for i, db in enumerate(databases):
            store = SQLHistoryStore(db)
            executors.append(MigrationExecutor(
                store, catalog, LockManager(store, process_id=f'proc-{i}')
            ))

        try:
            results = await asyncio.gather(
                *(executor.run() for executor in executors),
                return_exceptions=True
            )
            history = await executors[0].store.load_history()
        finally:
            for db in databases:
                await db.close()

        for result in results:
            assert isinstance(result, (RunResult, LockAcquisitionError)), repr(result)
        runs = [r for r in results if isinstance(r, RunResult) and not r.no_op]
        assert len(runs) == 1
        assert runs[0].batch_number == 1
        assert list(history) == ['001_a']

    async def test_outlived_lease_is_logged(self, store, catalog, write_migration, caplog):
        """Test each script checks the held lease before it runs."""
        write_migration("001_a.sql", "CREATE TABLE a (id INTEGER);")
        ticks = iter(datetime(2024, 1, 1, 12, 0) + timedelta(minutes=10 * i) for i in range(100))
        lock_manager = LockManager(
            store, timeout=timedelta(minutes=5), process_id='slow', clock=lambda: next(ticks)
        )
        executor = MigrationExecutor(store, catalog, lock_manager)

        result = await executor.run()

        assert result.success
        assert 'Migration lock lease expired before 001_a' in caplog.text
