"""Versioned SQL schema migrations with locking, batching and rollback."""
from .config import MigrationConfig, configure_logger, load_config
from .errors import (
    ConfigurationError,
    DuplicateSequenceError,
    LockAcquisitionError,
    MalformedFileError,
    MigrationError,
    RollbackTargetError,
    RollbackUnavailableError,
    SQLExecutionError,
)

__version__ = '0.1.0'

__all__ = [
    'MigrationConfig',
    'load_config',
    'configure_logger',
    'MigrationError',
    'ConfigurationError',
    'MalformedFileError',
    'DuplicateSequenceError',
    'LockAcquisitionError',
    'SQLExecutionError',
    'RollbackUnavailableError',
    'RollbackTargetError',
]
