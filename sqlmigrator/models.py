#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
SQLAlchemy ORM Models for migration bookkeeping
================================================

Defines the two tables owned by the migration engine using SQLAlchemy 2.0
ORM with type hints:
- MigrationHistory: One row per migration name ever executed
- MigrationLock: Cross-process mutual exclusion (singleton row)

Usage:
    from sqlmigrator.models import Base, MigrationHistory

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, Integer, String, Text, false
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Fixed primary key of the single lock row
LOCK_ROW_ID = 1


# ============================================================================
# Base Class
# ============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """
    Base class for all ORM models.

    Attributes:
        AsyncAttrs: Enables async attribute loading (SQLAlchemy 2.0)
        DeclarativeBase: Base for declarative model definitions
    """
    pass


# ============================================================================
# Migration History
# ============================================================================

class MigrationHistory(Base):
    """
    Execution history of migration scripts.

    One row per distinct migration name. Re-running a changed or failed
    migration updates the existing row instead of inserting a new one.

    Rollback SQL is copied here at execution time so a rollback never
    depends on the file still being on disk (or unchanged).
    """
    __tablename__ = 'migration_history'

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True
    )

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        comment="Migration filename without extension"
    )

    sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default='0',
        comment="Numeric filename prefix, orders rollbacks within a batch"
    )

    batch_number: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Run that last executed this migration"
    )

    executed_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        comment="Last execution time (UTC)"
    )

    execution_time_ms: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default='0',
        comment="Wall-clock duration of the forward script"
    )

    checksum: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="SHA-256 of the file content at execution time"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default='completed',
        server_default='completed',
        comment="completed, failed or rolled_back"
    )

    rollback_sql: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Rollback section captured at execution time"
    )

    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Last forward or rollback failure"
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('completed', 'failed', 'rolled_back')",
            name='check_migration_status'
        ),
        Index('idx_migration_history_batch', 'batch_number'),
        Index('idx_migration_history_status', 'status'),
    )

    def __repr__(self) -> str:
        return (
            f"<MigrationHistory(name='{self.name}', batch={self.batch_number}, "
            f"status='{self.status}')>"
        )


# ============================================================================
# Migration Lock
# ============================================================================

class MigrationLock(Base):
    """
    Migration lock shared by every process running migrations.

    Note: Singleton table (id always = 1). The row is created once during
    bootstrap and only ever mutated through compare-and-swap updates.
    """
    __tablename__ = 'migration_lock'

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        default=LOCK_ROW_ID,
        comment="Always 1 (singleton table)"
    )

    is_locked: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false()
    )

    locked_by: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Opaque identifier of the holding process"
    )

    locked_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        nullable=True
    )

    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        nullable=True,
        comment="Lock may be taken over after this time (UTC)"
    )

    __table_args__ = (
        CheckConstraint(f'id = {LOCK_ROW_ID}', name='check_single_lock'),
    )

    def __repr__(self) -> str:
        return f"<MigrationLock(is_locked={self.is_locked}, locked_by='{self.locked_by}')>"
