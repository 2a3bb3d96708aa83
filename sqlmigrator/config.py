#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Configuration loading for the migration engine.

Settings are resolved in order (later wins):
1. Defaults
2. Config file (JSON, or YAML for .yaml/.yml)
3. Environment variables
4. Command line flags (applied by the CLI)
"""
import json
import logging
import os
from dataclasses import dataclass, field, fields
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from sqlmigrator.database import normalize_database_url
from sqlmigrator.errors import ConfigurationError

LOG_FORMAT = '[%(asctime).19s] [%(name)s] [%(levelname)s] %(message)s'

# Environment variable -> config key
ENV_VARS = {
    'SQLMIGRATOR_DATABASE_URL': 'database_url',
    'SQLMIGRATOR_MIGRATIONS_DIR': 'migrations_dir',
    'SQLMIGRATOR_LOCK_TIMEOUT': 'lock_timeout_seconds',
    'SQLMIGRATOR_LOG_LEVEL': 'log_level',
    'SQLMIGRATOR_LOG_FILE': 'log_file',
    'SQLMIGRATOR_NATS_URL': 'nats_url',
}


@dataclass
class MigrationConfig:
    """
    Resolved migration settings.

    Attributes:
        database_url: Async SQLAlchemy URL of the target database
        migrations_dir: Directory holding NNN_description.sql files
        lock_timeout_seconds: Lease length of the migration lock
        log_level: Logging level name ('debug', 'info', ...)
        log_file: Also append sqlmigrator logs to this file
        strict: Reject filenames without a numeric prefix
        allow_duplicate_sequences: Tie-break duplicate prefixes by name
        nats_url: NATS server for the admin service
        subject_prefix: NATS subject prefix for the admin service
    """
    database_url: str = 'sqlite+aiosqlite:///migrations.db'
    migrations_dir: Path = field(default_factory=lambda: Path('migrations'))
    lock_timeout_seconds: float = 300.0
    log_level: str = 'info'
    log_file: Optional[str] = None
    strict: bool = False
    allow_duplicate_sequences: bool = False
    nats_url: str = 'nats://localhost:4222'
    subject_prefix: str = 'sqlmigrator.migrate'

    def __post_init__(self):
        self.database_url = normalize_database_url(str(self.database_url))
        self.migrations_dir = Path(self.migrations_dir)

        try:
            self.lock_timeout_seconds = float(self.lock_timeout_seconds)
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"lock_timeout_seconds must be a number, got {self.lock_timeout_seconds!r}"
            ) from None
        if self.lock_timeout_seconds <= 0:
            raise ConfigurationError(
                f"lock_timeout_seconds must be positive, got {self.lock_timeout_seconds}"
            )

        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigurationError(f"Unknown log level: {self.log_level}")

    @property
    def lock_timeout(self) -> timedelta:
        return timedelta(seconds=self.lock_timeout_seconds)

    @property
    def level(self) -> int:
        """log_level as a logging constant."""
        return getattr(logging, self.log_level.upper())

    def replace(self, **overrides: Any) -> 'MigrationConfig':
        """Copy with overrides applied, ignoring None values."""
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return MigrationConfig(**values)


def read_config_file(path) -> Dict[str, Any]:
    """
    Load a JSON or YAML config file into a dictionary.

    Raises:
        ConfigurationError: If the file is missing or cannot be parsed
    """
    path = str(path)
    try:
        with open(path, 'r', encoding='utf-8') as fp:
            if path.endswith(('.yaml', '.yml')):
                conf = yaml.safe_load(fp)
            else:
                conf = json.load(fp)
    except FileNotFoundError:
        raise ConfigurationError(f"Config file not found: {path}") from None
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot parse config file {path}: {e}") from e

    if conf is None:
        return {}
    if not isinstance(conf, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    # Accept either a flat file or a 'migrations' section
    return conf.get('migrations', conf)


def load_config(path=None, environ: Optional[Mapping[str, str]] = None) -> MigrationConfig:
    """
    Build a MigrationConfig from a config file and the environment.

    Args:
        path: Optional JSON/YAML config file
        environ: Environment mapping (defaults to os.environ)

    Returns:
        MigrationConfig

    Raises:
        ConfigurationError: If a value is missing or invalid

    Example:
        >>> config = load_config('migrate.yaml', environ={})
        >>> config.lock_timeout
        datetime.timedelta(seconds=300)
    """
    if environ is None:
        environ = os.environ

    values: Dict[str, Any] = {}
    if path:
        known = {f.name for f in fields(MigrationConfig)}
        for key, value in read_config_file(path).items():
            if key not in known:
                raise ConfigurationError(f"Unknown config key: {key}")
            values[key] = value

    # Generic DATABASE_URL is used only when the dedicated variable is unset
    if environ.get('DATABASE_URL') and not environ.get('SQLMIGRATOR_DATABASE_URL'):
        values['database_url'] = environ['DATABASE_URL']

    for env_var, key in ENV_VARS.items():
        if environ.get(env_var):
            values[key] = environ[env_var]

    return MigrationConfig(**values)


def configure_logger(logger,
                     log_file=None,
                     log_format=LOG_FORMAT,
                     log_level=logging.INFO):
    """Configure a logger with a file or stream handler

    Args:
        logger: Logger instance or logger name string
        log_file: File path string or file-like object (None for stderr)
        log_format: Format string for log messages
        log_level: Logging level (e.g., logging.INFO, logging.DEBUG)

    Returns:
        Configured logger instance
    """
    if isinstance(log_file, str):
        handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
    else:
        handler = logging.StreamHandler(log_file)  # Default to stderr if None

    handler.setFormatter(logging.Formatter(log_format))

    if isinstance(logger, str):
        logger = logging.getLogger(logger)

    logger.addHandler(handler)
    logger.setLevel(log_level)

    return logger
