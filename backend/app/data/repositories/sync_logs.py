"""Append-only run log."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.data.models.sync import SyncLog, SyncStatus


@dataclass(slots=True)
class SyncLogEntry:
    job_name: str
    status: SyncStatus
    store_code: Optional[str] = None
    message: Optional[str] = None
    raw_error: Optional[str] = None
    duration_ms: Optional[int] = None
    run_time: Optional[datetime] = None


class SyncLogDTO(BaseModel):
    id: int
    store_code: Optional[str] = None
    job_name: str
    run_time: datetime
    status: str
    message: Optional[str] = None
    raw_error: Optional[str] = None
    duration_ms: Optional[int] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_dto(row: SyncLog) -> SyncLogDTO:
    return SyncLogDTO(
        id=row.id,
        store_code=row.store_code,
        job_name=row.job_name,
        run_time=row.run_time,
        status=str(getattr(row.status, "value", row.status)),
        message=row.message,
        raw_error=row.raw_error,
        duration_ms=row.duration_ms,
    )


def create_sync_log(db: Session, entry: SyncLogEntry) -> SyncLog:
    """Insert one run record; the caller commits."""
    row = SyncLog(
        store_code=entry.store_code,
        job_name=str(getattr(entry.job_name, "value", entry.job_name)),
        run_time=entry.run_time or _utcnow(),
        status=entry.status,
        message=entry.message,
        raw_error=entry.raw_error,
        duration_ms=entry.duration_ms,
    )
    db.add(row)
    db.flush()
    return row


def list_sync_logs(
    db: Session,
    *,
    store_code: str | None = None,
    job_name: str | None = None,
    limit: int = 50,
) -> list[SyncLogDTO]:
    stmt = select(SyncLog)
    if store_code is not None:
        stmt = stmt.where(SyncLog.store_code == store_code)
    if job_name is not None:
        stmt = stmt.where(SyncLog.job_name == job_name)
    stmt = stmt.order_by(SyncLog.run_time.desc(), SyncLog.id.desc()).limit(max(1, min(int(limit), 500)))
    return [_to_dto(row) for row in db.scalars(stmt).all()]


def latest_status_by_job(db: Session) -> dict[str, SyncLogDTO]:
    """Most recent job-wide (store_code IS NULL) record per job name."""
    latest = (
        select(SyncLog.job_name, func.max(SyncLog.id).label("max_id"))
        .where(SyncLog.store_code.is_(None))
        .group_by(SyncLog.job_name)
        .subquery()
    )
    rows = db.scalars(select(SyncLog).join(latest, SyncLog.id == latest.c.max_id)).all()
    return {row.job_name: _to_dto(row) for row in rows}


def count_by_status(db: Session, *, store_code: str, job_name: str | None = None) -> dict[str, int]:
    stmt = select(SyncLog.status, func.count()).where(SyncLog.store_code == store_code)
    if job_name is not None:
        stmt = stmt.where(SyncLog.job_name == job_name)
    stmt = stmt.group_by(SyncLog.status)
    return {str(getattr(status, "value", status)): int(n) for status, n in db.execute(stmt).all()}
