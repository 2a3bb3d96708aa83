#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""NATS admin endpoint for the migration engine

Exposes migration run, rollback and status over NATS request/reply so
operators can drive migrations on a remote host without shell access.

NATS Subject Design (prefix defaults to 'sqlmigrator.migrate'):
    <prefix>.apply      - Run pending migrations (request/reply)
    <prefix>.rollback   - Roll back to a batch or migration (request/reply)
    <prefix>.status     - Files, history and lock state (request/reply)

Usage:
    # Start as standalone service
    python -m sqlmigrator.service --database-url app.db --migrations-dir migrations

    # Or integrate with an existing NATS client
    service = MigrationService(nats_client, migrator.executor,
                               migrator.rollback_engine, migrator.status)
    await service.start()
"""
import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Awaitable, Callable, Dict, List, Optional

from nats.aio.client import Client as NATS  # noqa: N814 (NATS convention)

from sqlmigrator.config import LOG_FORMAT, configure_logger, load_config
from sqlmigrator.errors import LockAcquisitionError, RollbackTargetError
from sqlmigrator.migrations import MigrationExecutor, RollbackEngine
from sqlmigrator.migrator import Migrator

DEFAULT_SUBJECT_PREFIX = 'sqlmigrator.migrate'


def error_response(code: str, message: str) -> bytes:
    return json.dumps({
        "success": False,
        "error": {
            "code": code,
            "message": message
        }
    }).encode()


class MigrationService:
    """NATS request/reply wrapper around the executor and rollback engine.

    Handlers never raise: every request gets a JSON reply, either a
    success payload or an error envelope.

    Example:
        nats = NATS()
        await nats.connect("nats://localhost:4222")
        service = MigrationService(nats, executor, rollback_engine)
        await service.start()

        # From any client
        reply = await nats.request('sqlmigrator.migrate.apply', b'{}')
    """

    def __init__(
        self,
        nats_client,
        executor: MigrationExecutor,
        rollback_engine: RollbackEngine,
        status_provider: Optional[Callable[[], Awaitable[Dict[str, Any]]]] = None,
        subject_prefix: str = DEFAULT_SUBJECT_PREFIX
    ):
        """Initialize migration service.

        Args:
            nats_client: Connected NATS client instance
            executor: Executor used for apply requests
            rollback_engine: Engine used for rollback requests
            status_provider: Coroutine function returning the status report
                (defaults to the executor's pending plan)
            subject_prefix: Subject prefix for the three handlers
        """
        self.nats = nats_client
        self.executor = executor
        self.rollback_engine = rollback_engine
        self.status_provider = status_provider
        self.subject_prefix = subject_prefix
        self.logger = logging.getLogger(__name__)
        self._subscriptions: List[Any] = []
        self._running = False

    def subject(self, action: str) -> str:
        return f"{self.subject_prefix}.{action}"

    async def start(self):
        """Subscribe to the apply, rollback and status subjects."""
        if self._running:
            self.logger.warning("MigrationService already running")
            return

        self.logger.info("Starting MigrationService...")

        try:
            self._subscriptions.extend([
                await self.nats.subscribe(self.subject('apply'),
                                          cb=self._handle_apply),
                await self.nats.subscribe(self.subject('rollback'),
                                          cb=self._handle_rollback),
                await self.nats.subscribe(self.subject('status'),
                                          cb=self._handle_status),
            ])
            self._running = True
            self.logger.info(
                "MigrationService started with %d subscriptions on %s.*",
                len(self._subscriptions),
                self.subject_prefix
            )
        except Exception as e:
            self.logger.error(f"Failed to start MigrationService: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self):
        """Unsubscribe from all subjects."""
        if not self._running and not self._subscriptions:
            return

        self.logger.info("Stopping MigrationService...")

        for sub in self._subscriptions:
            try:
                await sub.unsubscribe()
            except Exception as e:
                self.logger.error(f"Error unsubscribing: {e}")

        self._subscriptions = []
        self._running = False
        self.logger.info("MigrationService stopped")

    async def _parse_request(self, msg) -> Optional[Dict[str, Any]]:
        """Decode a JSON object request, replying with an error if invalid."""
        raw = msg.data.decode() if msg.data else ''
        if not raw.strip():
            return {}

        try:
            request = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            await msg.respond(error_response("INVALID_JSON", f"Invalid JSON: {str(e)}"))
            return None

        if not isinstance(request, dict):
            await msg.respond(error_response("INVALID_REQUEST", "Request must be a JSON object"))
            return None
        return request

    async def _handle_apply(self, msg):
        """
        Handle <prefix>.apply requests.

        Runs all pending migrations as one batch.

        Request:
            {} (empty request)

        Response (success):
            {
                "success": true,
                "batch_number": int | null,
                "migrations_run": int,
                "migrations_failed": 0,
                "results": [
                    {"name": str, "reason": str, "success": bool,
                     "execution_time_ms": int, "error_message": null},
                    ...
                ]
            }

        Response (error):
            {"success": false, "error": {"code": str, "message": str}}
            MIGRATION_FAILED responses also carry the partial "results".
        """
        try:
            request = await self._parse_request(msg)
            if request is None:
                return

            try:
                result = await self.executor.run()
            except LockAcquisitionError as e:
                await msg.respond(error_response("LOCK_HELD", str(e)))
                return

            response = result.to_dict()
            if not result.success:
                response["error"] = {
                    "code": "MIGRATION_FAILED",
                    "message": str(result.error)
                }

            await msg.respond(json.dumps(response).encode())

        except Exception as e:
            self.logger.error(f"Unexpected error in migrate apply: {e}", exc_info=True)
            await self._respond_internal_error(msg)

    async def _handle_rollback(self, msg):
        """
        Handle <prefix>.rollback requests.

        Request:
            {"target": int | str}   # batch number to keep, or migration name

        Response (success):
            {
                "success": true,
                "target_batch": int,
                "rolled_back": [str, ...],
                "results": [...],
                "error": null
            }

        Response (error):
            {"success": false, "error": {"code": str, "message": str}}
        """
        try:
            request = await self._parse_request(msg)
            if request is None:
                return

            target = request.get('target')
            if isinstance(target, bool) or not isinstance(target, (int, str)) or target == '':
                await msg.respond(error_response(
                    "INVALID_REQUEST",
                    "Field 'target' (batch number or migration name) is required"
                ))
                return
            if isinstance(target, str) and target.isdigit():
                target = int(target)

            try:
                result = await self.rollback_engine.rollback_to(target)
            except LockAcquisitionError as e:
                await msg.respond(error_response("LOCK_HELD", str(e)))
                return
            except RollbackTargetError as e:
                await msg.respond(error_response("INVALID_REQUEST", str(e)))
                return

            response = result.to_dict()
            if not result.success:
                response["error"] = {
                    "code": "ROLLBACK_FAILED",
                    "message": str(result.error)
                }

            await msg.respond(json.dumps(response).encode())

        except Exception as e:
            self.logger.error(f"Unexpected error in migrate rollback: {e}", exc_info=True)
            await self._respond_internal_error(msg)

    async def _handle_status(self, msg):
        """
        Handle <prefix>.status requests.

        Response (success):
            {"success": true, "total_files": int, "pending": int, ...}
        """
        try:
            if self.status_provider is not None:
                status = await self.status_provider()
            else:
                pending = await self.executor.plan()
                status = {
                    "pending": len(pending),
                    "pending_migrations": [p.to_dict() for p in pending],
                }

            await msg.respond(json.dumps(dict(status, success=True)).encode())

        except Exception as e:
            self.logger.error(f"Unexpected error in migrate status: {e}", exc_info=True)
            await self._respond_internal_error(msg)

    async def _respond_internal_error(self, msg):
        try:
            await msg.respond(error_response("INTERNAL_ERROR", "Unexpected error"))
        except Exception as e:
            self.logger.error(f"Failed to send error reply: {e}")


async def main():
    """Standalone migration service entry point.

    Run this file directly to serve migrations over NATS:
        python -m sqlmigrator.service [--config FILE] [--database-url URL] [--nats-url URL]
    """
    parser = argparse.ArgumentParser(description='Migration Service with NATS')
    parser.add_argument('--config', help='JSON or YAML config file')
    parser.add_argument('--database-url', help='Database URL or SQLite file path')
    parser.add_argument('--migrations-dir', help='Directory containing migration files')
    parser.add_argument('--nats-url', help='NATS server URL (default: nats://localhost:4222)')
    parser.add_argument('--subject-prefix', help=f'Subject prefix (default: {DEFAULT_SUBJECT_PREFIX})')
    parser.add_argument(
        '--log-level',
        choices=['debug', 'info', 'warning', 'error'],
        type=str.lower,
        help='Logging level (default: info)'
    )
    parser.add_argument('--log-file', help='Also write logs to this file')

    args = parser.parse_args()

    config = load_config(args.config).replace(
        database_url=args.database_url,
        migrations_dir=args.migrations_dir,
        nats_url=args.nats_url,
        subject_prefix=args.subject_prefix,
        log_level=args.log_level,
        log_file=args.log_file
    )

    logging.basicConfig(level=config.level, format=LOG_FORMAT)
    if config.log_file:
        configure_logger('sqlmigrator', log_file=config.log_file, log_level=config.level)
    logger = logging.getLogger(__name__)

    logger.info(f"Connecting to NATS at {config.nats_url}...")
    nats = NATS()

    try:
        await nats.connect(config.nats_url)
        logger.info("Connected to NATS")
    except Exception as e:
        logger.error(f"Failed to connect to NATS: {e}")
        sys.exit(1)

    migrator = Migrator.from_config(config)
    service = MigrationService(
        nats,
        migrator.executor,
        migrator.rollback_engine,
        status_provider=migrator.status,
        subject_prefix=config.subject_prefix
    )

    try:
        await service.start()
        logger.info(
            f"MigrationService running (migrations: {config.migrations_dir}) - press Ctrl+C to stop"
        )

        while True:
            await asyncio.sleep(1)

    except KeyboardInterrupt:
        logger.info("Shutdown requested")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
    finally:
        await service.stop()
        await migrator.close()
        await nats.close()
        logger.info("MigrationService shutdown complete")


if __name__ == '__main__':
    asyncio.run(main())
