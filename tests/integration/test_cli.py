"""
Integration tests for the migrate command line interface.

Each test drives main() with real files and a temporary SQLite database.
"""

import asyncio
import logging

import pytest

from sqlmigrator.cli import build_parser, main, parse_rollback_target
from sqlmigrator.database import MigrationDatabase
from sqlmigrator.migrations import LockManager, SQLHistoryStore


@pytest.fixture
def cli_args(tmp_path, migrations_dir):
    """Global options pointing at the temporary database and migrations."""
    return [
        '--database-url', str(tmp_path / "cli.db"),
        '--migrations-dir', str(migrations_dir),
        '--log-level', 'warning',
    ]


@pytest.fixture
def two_files(write_migration):
    write_migration("001_init.sql", "CREATE TABLE users (id INTEGER PRIMARY KEY);", "DROP TABLE users;")
    write_migration("002_add_index.sql", "CREATE INDEX idx_users_id ON users(id);", "DROP INDEX idx_users_id;")


class TestParser:
    """Test argument parsing."""

    def test_default_command_is_run(self, cli_args):
        args = build_parser().parse_args(cli_args)

        assert args.command is None
        assert args.log_level == 'warning'

    def test_rollback_target(self):
        assert parse_rollback_target('3') == 3
        assert parse_rollback_target('002_add_index') == '002_add_index'


class TestCommands:
    """Test the subcommands end to end."""

    def test_run_then_noop(self, cli_args, two_files, capsys):
        assert main(cli_args) == 0
        out = capsys.readouterr().out
        assert 'Batch 1: 2 executed, 0 failed' in out
        assert '001_init' in out

        assert main(cli_args + ['run']) == 0
        assert 'No pending migrations' in capsys.readouterr().out

    def test_run_failure_exit_code(self, cli_args, write_migration, capsys):
        write_migration("001_bad.sql", "INSERT INTO nowhere VALUES (1);")

        assert main(cli_args + ['run']) == 1
        assert '001_bad' in capsys.readouterr().out

    def test_status(self, cli_args, two_files, capsys):
        assert main(cli_args + ['status']) == 0
        out = capsys.readouterr().out

        assert 'Total migration files: 2' in out
        assert 'Pending migrations: 2' in out
        assert '001_init.sql (pending)' in out
        assert 'Lock: free' in out

    def test_rollback(self, cli_args, two_files, capsys):
        main(cli_args)
        capsys.readouterr()

        assert main(cli_args + ['rollback', '0']) == 0
        out = capsys.readouterr().out
        assert 'Rolled back 2 migrations' in out

        main(cli_args + ['status'])
        assert 'Pending migrations: 2' in capsys.readouterr().out

    def test_rollback_unknown_target(self, cli_args, two_files, capsys):
        main(cli_args)

        assert main(cli_args + ['rollback', '999_missing']) == 1
        assert 'Invalid rollback target' in capsys.readouterr().err

    def test_create(self, cli_args, migrations_dir, capsys):
        assert main(cli_args + ['create', 'add users', 'with', 'emails']) == 0

        path = migrations_dir / "001_add_users.sql"
        assert path.exists()
        assert '-- Description: with emails' in path.read_text()
        assert '001_add_users.sql' in capsys.readouterr().out

    def test_status_after_create(self, cli_args, capsys):
        main(cli_args + ['create', 'empty'])

        assert main(cli_args + ['status']) == 0

    def test_fresh_with_yes(self, cli_args, two_files, capsys):
        main(cli_args)
        capsys.readouterr()

        assert main(cli_args + ['fresh', '--yes']) == 0
        out = capsys.readouterr().out
        assert 'Rolled back 2 migrations' in out
        assert 'Batch 2: 2 executed' in out

    def test_fresh_cancelled(self, cli_args, two_files, monkeypatch, capsys):
        main(cli_args)
        capsys.readouterr()
        monkeypatch.setattr('builtins.input', lambda prompt: 'no')

        assert main(cli_args + ['fresh']) == 0
        out = capsys.readouterr().out
        assert 'cancelled' in out
        assert 'Rolled back' not in out

    def test_invalid_config(self, cli_args, tmp_path, capsys):
        assert main(['--config', str(tmp_path / "missing.yaml")] + cli_args) == 1
        assert 'Config file not found' in capsys.readouterr().err


class TestFailures:
    """Test exit codes for lock contention and logging to a file."""

    @staticmethod
    def hold_lock(database_path):
        """Take the migration lock from another process and keep it."""

        async def _hold():
            db = MigrationDatabase(str(database_path))
            try:
                store = SQLHistoryStore(db)
                await store.ensure_schema()
                await LockManager(store, process_id='other-host:42').acquire()
            finally:
                await db.close()

        asyncio.run(_hold())

    def test_run_lock_held(self, cli_args, tmp_path, two_files, capsys):
        self.hold_lock(tmp_path / "cli.db")

        assert main(cli_args + ['run']) == 1
        err = capsys.readouterr().err
        assert 'another migration is in progress' in err
        assert 'other-host:42' in err

    def test_rollback_lock_held(self, cli_args, tmp_path, two_files, capsys):
        main(cli_args)
        self.hold_lock(tmp_path / "cli.db")

        assert main(cli_args + ['rollback', '0']) == 1

    def test_status_reports_lock_holder(self, cli_args, tmp_path, two_files, capsys):
        self.hold_lock(tmp_path / "cli.db")

        assert main(cli_args + ['status']) == 0
        assert 'Lock: held by other-host:42' in capsys.readouterr().out

    def test_log_file(self, cli_args, tmp_path, two_files):
        log_file = tmp_path / "migrate.log"

        try:
            assert main(cli_args + ['--log-file', str(log_file), '--log-level', 'info']) == 0
        finally:
            logger = logging.getLogger('sqlmigrator')
            for handler in list(logger.handlers):
                handler.close()
                logger.removeHandler(handler)
            logger.setLevel(logging.NOTSET)

        content = log_file.read_text()
        assert 'Migration lock acquired' in content
        assert 'Migration completed: 001_init' in content
