"""
Global pytest configuration and fixtures for sqlmigrator tests

Provides:
- File-backed SQLite database per test
- Temporary migrations directory and file writer
- Wired store, catalog, lock manager, executor and rollback engine
"""

import pytest
from sqlalchemy import inspect

from sqlmigrator.database import MigrationDatabase
from sqlmigrator.migrations import (
    FileCatalog,
    LockManager,
    MigrationExecutor,
    RollbackEngine,
    SQLHistoryStore,
)


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom settings"""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")


# ============================================================================
# Database
# ============================================================================

@pytest.fixture
def database_url(tmp_path):
    """SQLite file URL (a file so several connections see the same data)."""
    return f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
async def database(database_url):
    db = MigrationDatabase(database_url)
    yield db
    await db.close()


@pytest.fixture
async def store(database):
    history_store = SQLHistoryStore(database)
    await history_store.ensure_schema()
    return history_store


@pytest.fixture
def table_names(database):
    """Coroutine function returning the user tables in the test database."""

    async def _table_names():
        async with database.engine.connect() as conn:
            names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        return set(names) - {'migration_history', 'migration_lock'}

    return _table_names


# ============================================================================
# Migration Files
# ============================================================================

@pytest.fixture
def migrations_dir(tmp_path):
    directory = tmp_path / "migrations"
    directory.mkdir()
    return directory


@pytest.fixture
def write_migration(migrations_dir):
    """Write a migration file with forward and optional rollback sections."""

    def _write(filename, forward, rollback=None):
        content = f"-- FORWARD MIGRATION\n{forward}\n"
        if rollback is not None:
            content += f"\n-- ROLLBACK\n{rollback}\n"
        path = migrations_dir / filename
        path.write_text(content, encoding='utf-8')
        return path

    return _write


# ============================================================================
# Engine Components
# ============================================================================

@pytest.fixture
def catalog(migrations_dir):
    return FileCatalog(migrations_dir)


@pytest.fixture
def lock_manager(store):
    return LockManager(store, process_id='test-process')


@pytest.fixture
def executor(store, catalog, lock_manager):
    return MigrationExecutor(store, catalog, lock_manager)


@pytest.fixture
def rollback_engine(store, lock_manager):
    return RollbackEngine(store, lock_manager)
