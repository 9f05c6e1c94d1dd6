# app/data/models/sync.py
from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import BigInteger as _BigInteger
from sqlalchemy.dialects.mysql import BIGINT as MySQL_BIGINT
from sqlalchemy.dialects.mysql import DATETIME as MySQL_DATETIME

from app.data.db import Base


UBigInt = (
    _BigInteger()
    .with_variant(MySQL_BIGINT(unsigned=True), "mysql")
    .with_variant(Integer(), "sqlite")
)


class SyncStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    RUNNING = "RUNNING"


class JobName(str, Enum):
    REFRESH_TOKENS = "refresh_tokens"
    SYNC_USER_STATS = "sync_user_stats"
    SYNC_VIDEO_STATS = "sync_video_stats"
    FULL_SYNC = "full_sync"


# ========================= row locks =========================
class SyncLock(Base):
    """
    Lease row per lock key.

    ``version`` is bumped on every takeover of an expired lease, so a takeover
    only succeeds against the exact row state the taker observed.
    """

    __tablename__ = "sync_locks"

    id: Mapped[int] = mapped_column(UBigInt, primary_key=True, autoincrement=True)
    lock_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    locked_by: Mapped[str] = mapped_column(String(255), nullable=False)
    locked_at: Mapped[datetime] = mapped_column(MySQL_DATETIME(fsp=6), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(MySQL_DATETIME(fsp=6), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


# second lock layer for dialects without session advisory locks
class SyncLockSlot(Base):
    __tablename__ = "sync_lock_slots"

    lock_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    holder: Mapped[str] = mapped_column(String(255), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(MySQL_DATETIME(fsp=6), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(MySQL_DATETIME(fsp=6), nullable=False)


# ========================= run log =========================
class SyncLog(Base):
    __tablename__ = "sync_logs"
    __table_args__ = (
        Index("idx_sync_logs_store_time", "store_code", "run_time"),
        Index("idx_sync_logs_job_time", "job_name", "run_time"),
    )

    id: Mapped[int] = mapped_column(UBigInt, primary_key=True, autoincrement=True)
    # NULL for job-wide summary rows
    store_code: Mapped[str | None] = mapped_column(String(64), default=None)
    job_name: Mapped[str] = mapped_column(String(64), nullable=False)
    run_time: Mapped[datetime] = mapped_column(
        MySQL_DATETIME(fsp=6), nullable=False, server_default=text("CURRENT_TIMESTAMP(6)")
    )
    status: Mapped[str] = mapped_column(
        SAEnum(SyncStatus, name="sync_status", validate_strings=True),
        nullable=False,
    )
    message: Mapped[str | None] = mapped_column(Text, default=None)
    raw_error: Mapped[str | None] = mapped_column(Text, default=None)
    duration_ms: Mapped[int | None] = mapped_column(Integer, default=None)
