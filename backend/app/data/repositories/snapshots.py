"""Daily metric snapshots: idempotent upserts and range queries."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Dict, Optional, Sequence
from zoneinfo import ZoneInfo

from pydantic import BaseModel
from sqlalchemy import and_, select
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.core.config import settings
from app.data.models.snapshots import TikTokUserDaily, TikTokVideoDaily
from app.services.tiktok_api import AccountInfo, ContentItem


USER_CONFLICT = ("store_code", "snapshot_date")
USER_METRICS = (
    "follower_count",
    "following_count",
    "likes_count",
    "video_count",
    "display_name",
    "avatar_url",
)
VIDEO_CONFLICT = ("store_code", "video_id", "snapshot_date")
VIDEO_METRICS = (
    "view_count",
    "like_count",
    "comment_count",
    "share_count",
    "create_time",
    "description",
    "cover_image_url",
    "share_url",
)


class UserDailyDTO(BaseModel):
    store_code: str
    snapshot_date: date
    follower_count: int
    following_count: int
    likes_count: int
    video_count: int
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


class VideoDailyDTO(BaseModel):
    store_code: str
    video_id: str
    snapshot_date: date
    view_count: int
    like_count: int
    comment_count: int
    share_count: int
    create_time: Optional[datetime] = None
    description: Optional[str] = None
    cover_image_url: Optional[str] = None
    share_url: Optional[str] = None


def _dialect(db: Session) -> str:
    return db.get_bind().dialect.name


def _upsert(
    db: Session,
    model,
    *,
    values: Dict[str, Any],
    conflict_columns: Sequence[str],
    update_columns: Sequence[str],
) -> None:
    """Single-statement insert-or-overwrite on the natural key; last write wins."""
    table = model.__table__
    dialect = _dialect(db)

    if dialect in ("sqlite", "postgresql"):
        factory = sqlite_insert if dialect == "sqlite" else pg_insert
        stmt = factory(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(conflict_columns),
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
        db.execute(stmt)
        return

    if dialect in ("mysql", "mariadb"):
        stmt = mysql_insert(table).values(**values)
        stmt = stmt.on_duplicate_key_update(
            **{col: getattr(stmt.inserted, col) for col in update_columns}
        )
        db.execute(stmt)
        return

    filters = [getattr(table.c, col) == values[col] for col in conflict_columns]
    result = db.execute(
        table.update().where(and_(*filters)).values(**{col: values[col] for col in update_columns})
    )
    if result.rowcount == 0:
        db.execute(table.insert().values(**values))


def upsert_user_daily(db: Session, store_code: str, snapshot_date: date, info: AccountInfo) -> None:
    _upsert(
        db,
        TikTokUserDaily,
        values={
            "store_code": store_code,
            "snapshot_date": snapshot_date,
            "follower_count": info.follower_count,
            "following_count": info.following_count,
            "likes_count": info.likes_count,
            "video_count": info.video_count,
            "display_name": info.display_name or None,
            "avatar_url": info.avatar_url or None,
        },
        conflict_columns=USER_CONFLICT,
        update_columns=USER_METRICS,
    )


def upsert_video_daily(db: Session, store_code: str, snapshot_date: date, item: ContentItem) -> None:
    _upsert(
        db,
        TikTokVideoDaily,
        values={
            "store_code": store_code,
            "video_id": item.video_id,
            "snapshot_date": snapshot_date,
            "view_count": item.view_count,
            "like_count": item.like_count,
            "comment_count": item.comment_count,
            "share_count": item.share_count,
            "create_time": item.create_time,
            "description": item.description or None,
            "cover_image_url": item.cover_image_url or None,
            "share_url": item.share_url or None,
        },
        conflict_columns=VIDEO_CONFLICT,
        update_columns=VIDEO_METRICS,
    )


def snapshot_today() -> date:
    """Calendar day in ``SNAPSHOT_TIMEZONE``; snapshots are keyed by it."""
    return datetime.now(ZoneInfo(settings.SNAPSHOT_TIMEZONE)).date()


def _window_start(today: date, days: int) -> date:
    return today - timedelta(days=max(1, int(days)) - 1)


def list_user_stats(db: Session, store_code: str, *, days: int = 30, today: date | None = None) -> list[UserDailyDTO]:
    """Newest first."""
    today = today or snapshot_today()
    rows = db.scalars(
        select(TikTokUserDaily)
        .where(TikTokUserDaily.store_code == store_code)
        .where(TikTokUserDaily.snapshot_date >= _window_start(today, days))
        .where(TikTokUserDaily.snapshot_date <= today)
        .order_by(TikTokUserDaily.snapshot_date.desc())
    ).all()
    return [UserDailyDTO.model_validate(row, from_attributes=True) for row in rows]


def list_video_stats(
    db: Session,
    store_code: str,
    *,
    days: int = 7,
    today: date | None = None,
    limit: int = 500,
) -> list[VideoDailyDTO]:
    """Newest snapshot first, then most viewed."""
    today = today or snapshot_today()
    rows = db.scalars(
        select(TikTokVideoDaily)
        .where(TikTokVideoDaily.store_code == store_code)
        .where(TikTokVideoDaily.snapshot_date >= _window_start(today, days))
        .where(TikTokVideoDaily.snapshot_date <= today)
        .order_by(TikTokVideoDaily.snapshot_date.desc(), TikTokVideoDaily.view_count.desc())
        .limit(int(limit))
    ).all()
    return [VideoDailyDTO.model_validate(row, from_attributes=True) for row in rows]


def latest_user_snapshot(db: Session, store_code: str) -> Optional[UserDailyDTO]:
    row = db.scalars(
        select(TikTokUserDaily)
        .where(TikTokUserDaily.store_code == store_code)
        .order_by(TikTokUserDaily.snapshot_date.desc())
        .limit(1)
    ).first()
    return UserDailyDTO.model_validate(row, from_attributes=True) if row is not None else None
