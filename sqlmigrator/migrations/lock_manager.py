"""
Cross-process migration lock.

The lock is a single database row taken with a compare-and-swap update:
it is granted only when it is free or its holder's lease has expired.
Contenders fail immediately with LockAcquisitionError instead of waiting.

Expired leases can be taken over while the original holder is still
running. There is no fencing token or lease renewal; the lock timeout must
be longer than the slowest expected run. A holder can check its own
handle with lease_expired(), and the engines log a warning when it has.
"""

import logging
import os
import socket
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlmigrator.database import utcnow
from sqlmigrator.errors import LockAcquisitionError

from .history_store import HistoryStore
from .migration import LockRecord

DEFAULT_LOCK_TIMEOUT = timedelta(minutes=5)


def default_process_id() -> str:
    """Identifier for this process, e.g. 'build-01:4242:9f1c2ab0'."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class LockHandle:
    """
    Proof of lock ownership.

    Passed to release(), and checked with lease_expired() before each
    script so a holder can tell it has outlived its lease.
    """
    process_id: str
    acquired_at: datetime
    expires_at: datetime


class LockManager:
    """
    Acquires and releases the migration lock row.

    Attributes:
        store: History store owning the lock row
        timeout: Lease length; after it the lock may be taken over
        process_id: Identifier written to locked_by

    Example:
        lock_manager = LockManager(store, timeout=timedelta(minutes=5))

        async with lock_manager.locked() as handle:
            ...  # only one process gets here at a time
    """

    def __init__(
        self,
        store: HistoryStore,
        timeout: timedelta = DEFAULT_LOCK_TIMEOUT,
        process_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        if timeout.total_seconds() <= 0:
            raise ValueError(f"Lock timeout must be positive, got {timeout}")

        self.store = store
        self.timeout = timeout
        self.process_id = process_id or default_process_id()
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    async def acquire(self) -> LockHandle:
        """
        Take the lock with a single conditional update.

        Returns:
            LockHandle to pass to release()

        Raises:
            LockAcquisitionError: If another live process holds the lock
        """
        now = self.clock()
        expires_at = now + self.timeout

        acquired = await self.store.try_acquire_lock(self.process_id, now, expires_at)
        if not acquired:
            # Read only to build a useful message; the decision was the CAS
            current = await self.store.read_lock()
            self.logger.warning(
                'Migration lock busy (held by %s until %s)',
                current.locked_by,
                current.expires_at
            )
            raise LockAcquisitionError(
                self.process_id,
                held_by=current.locked_by,
                expires_at=current.expires_at
            )

        self.logger.info('Migration lock acquired by %s', self.process_id)
        return LockHandle(
            process_id=self.process_id,
            acquired_at=now,
            expires_at=expires_at
        )

    async def release(self, handle: LockHandle) -> None:
        """
        Release the lock held through handle.

        Runs on cleanup paths, so failures are logged rather than raised.
        """
        try:
            released = await self.store.release_lock(handle.process_id)
        except Exception as e:
            self.logger.error('Failed to release migration lock: %s', e)
            return

        if released:
            self.logger.info('Migration lock released by %s', handle.process_id)
        else:
            self.logger.warning(
                'Migration lock no longer held by %s (expired and taken over?)',
                handle.process_id
            )

    @asynccontextmanager
    async def locked(self):
        """
        Hold the lock for the duration of the block.

        Yields:
            LockHandle: released in all cases when the block exits
        """
        handle = await self.acquire()
        try:
            yield handle
        finally:
            await self.release(handle)

    def lease_expired(self, handle: LockHandle) -> bool:
        """True once handle is past its lease and the lock may be taken over."""
        return handle.expires_at < self.clock()

    async def status(self) -> LockRecord:
        """Current lock row, for reporting."""
        return await self.store.read_lock()

    def is_free(self, lock: LockRecord) -> bool:
        return lock.is_free(self.clock())
