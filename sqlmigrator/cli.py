#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Command line interface for the migration engine.

Usage:
    migrate                         # run pending migrations
    migrate run
    migrate status
    migrate rollback <batch|name>
    migrate create <name> [description ...]
    migrate fresh [--yes]

Exit code is 0 on success (including nothing to do) and 1 on any failure.
"""
import argparse
import asyncio
import logging
import sys
from typing import Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from sqlmigrator.config import LOG_FORMAT, MigrationConfig, configure_logger, load_config
from sqlmigrator.errors import MigrationError
from sqlmigrator.migrations import FileCatalog, RollbackResult, RunResult
from sqlmigrator.migrator import Migrator

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='migrate',
        description='Apply, inspect and roll back versioned SQL migrations'
    )
    parser.add_argument('--config', help='JSON or YAML config file')
    parser.add_argument('--database-url', help='Database URL or SQLite file path')
    parser.add_argument('--migrations-dir', help='Directory containing migration files')
    parser.add_argument(
        '--lock-timeout',
        type=float,
        help='Migration lock timeout in seconds (default: 300)'
    )
    parser.add_argument(
        '--log-level',
        choices=['debug', 'info', 'warning', 'error'],
        type=str.lower,
        help='Logging level (default: info)'
    )
    parser.add_argument('--log-file', help='Also write logs to this file')

    subparsers = parser.add_subparsers(dest='command')

    subparsers.add_parser('run', help='Run all pending migrations (default)')
    subparsers.add_parser('status', help='Show migration status')

    rollback = subparsers.add_parser(
        'rollback',
        help='Roll back migrations newer than a batch or migration'
    )
    rollback.add_argument(
        'target',
        help='Batch number to keep, or name of the last migration to keep'
    )

    create = subparsers.add_parser('create', help='Create a new migration file')
    create.add_argument('name', help='Migration name, e.g. add_users_table')
    create.add_argument('description', nargs='*', help='Optional description')

    fresh = subparsers.add_parser(
        'fresh',
        help='Roll back everything, then run all migrations (destructive)'
    )
    fresh.add_argument('--yes', action='store_true', help='Skip the confirmation prompt')

    return parser


def resolve_config(args: argparse.Namespace, environ=None) -> MigrationConfig:
    """Config file and environment, then command line flags on top."""
    config = load_config(args.config, environ)
    return config.replace(
        database_url=args.database_url,
        migrations_dir=args.migrations_dir,
        lock_timeout_seconds=args.lock_timeout,
        log_level=args.log_level,
        log_file=args.log_file
    )


def parse_rollback_target(value: str) -> Union[int, str]:
    """Digits are batch numbers, anything else is a migration name."""
    return int(value) if value.isdigit() else value


def print_run_result(result: RunResult) -> None:
    if result.no_op:
        print('✅ No pending migrations')
        return

    icon = '✅' if result.success else '❌'
    print(f"{icon} Batch {result.batch_number}: "
          f"{result.executed} executed, {result.failed} failed")
    for outcome in result.outcomes:
        mark = '✅' if outcome.success else '❌'
        error = f" - {outcome.error_message}" if outcome.error_message else ''
        print(f"  {mark} {outcome.name} "
              f"({outcome.classification.value}, {outcome.execution_time_ms}ms){error}")


def print_rollback_result(result: RollbackResult) -> None:
    if result.no_op:
        print(f"✅ Nothing to roll back after batch {result.target_batch}")
        return

    icon = '✅' if result.success else '❌'
    print(f"{icon} Rolled back {len(result.rolled_back)} migrations "
          f"(target batch {result.target_batch})")
    for outcome in result.outcomes:
        mark = '✅' if outcome.success else '❌'
        error = f" - {outcome.error_message}" if outcome.error_message else ''
        print(f"  {mark} {outcome.name} (batch {outcome.batch_number}){error}")
    if result.error is not None:
        print(f"❌ {result.error}")


async def cmd_run(migrator: Migrator, args: argparse.Namespace) -> int:
    result = await migrator.executor.run()
    print_run_result(result)
    return 0 if result.success else 1


async def cmd_status(migrator: Migrator, args: argparse.Namespace) -> int:
    status = await migrator.status()

    print('📊 Migration Status\n')
    print(f"📁 Total migration files: {status['total_files']}")
    print(f"✅ Applied migrations: {status['applied']}")
    if status['failed']:
        print(f"❌ Failed migrations: {status['failed']}")
    print(f"⏳ Pending migrations: {status['pending']}")
    print(f"🎯 Last batch: {status['last_batch']}")

    lock = status['lock']
    if lock['is_free']:
        print('🔓 Lock: free')
    else:
        print(f"🔒 Lock: held by {lock['locked_by']} until {lock['expires_at']}")

    if status['pending_migrations']:
        print('\n⏳ Pending Migrations:')
        for pending in status['pending_migrations']:
            print(f"  📄 {pending['filename']} ({pending['reason']})")

    return 0


async def cmd_rollback(migrator: Migrator, args: argparse.Namespace) -> int:
    result = await migrator.rollback_engine.rollback_to(parse_rollback_target(args.target))
    print_rollback_result(result)
    return 0 if result.success else 1


async def cmd_fresh(migrator: Migrator, args: argparse.Namespace) -> int:
    rollback = await migrator.rollback_engine.rollback_all()
    print_rollback_result(rollback)
    if not rollback.success:
        return 1

    result = await migrator.executor.run()
    print_run_result(result)
    return 0 if result.success else 1


def cmd_create(config: MigrationConfig, args: argparse.Namespace) -> int:
    catalog = FileCatalog(config.migrations_dir)
    path = catalog.create(args.name, ' '.join(args.description))
    print(f"✅ Migration file created: {path.name}")
    print(f"📍 Path: {path}")
    return 0


def confirm_fresh() -> bool:
    print('🔥 Fresh migration rolls back every applied migration and runs them again.')
    try:
        answer = input('⚠️  This will DESTROY data. Continue? (yes/no): ')
    except EOFError:
        return False
    return answer.strip().lower() == 'yes'


COMMANDS = {
    'run': cmd_run,
    'status': cmd_status,
    'rollback': cmd_rollback,
    'fresh': cmd_fresh,
}


async def run_command(config: MigrationConfig, args: argparse.Namespace) -> int:
    migrator = Migrator.from_config(config)
    try:
        return await COMMANDS[args.command](migrator, args)
    finally:
        await migrator.close()


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        args.command = 'run'

    try:
        config = resolve_config(args)
    except MigrationError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1

    logging.basicConfig(level=config.level, format=LOG_FORMAT)
    if config.log_file:
        configure_logger('sqlmigrator', log_file=config.log_file, log_level=config.level)

    try:
        if args.command == 'create':
            return cmd_create(config, args)

        if args.command == 'fresh' and not args.yes and not confirm_fresh():
            print('❌ Fresh migration cancelled')
            return 0

        return asyncio.run(run_command(config, args))

    except (MigrationError, SQLAlchemyError, ValueError, OSError) as e:
        logger.debug('Command %s failed', args.command, exc_info=True)
        print(f"❌ {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
