# app/data/models/snapshots.py
from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
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


class TikTokUserDaily(Base):
    """One account-level metrics row per store per calendar day."""

    __tablename__ = "tiktok_user_daily"
    __table_args__ = (
        UniqueConstraint("store_code", "snapshot_date", name="uk_user_daily_store_date"),
        Index("idx_user_daily_date", "snapshot_date"),
    )

    id: Mapped[int] = mapped_column(UBigInt, primary_key=True, autoincrement=True)
    store_code: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("stores.store_code", onupdate="CASCADE", ondelete="CASCADE"),
        nullable=False,
    )
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)

    follower_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    following_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    likes_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    video_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    display_name: Mapped[str | None] = mapped_column(String(255), default=None)
    avatar_url: Mapped[str | None] = mapped_column(Text, default=None)

    created_at: Mapped[datetime] = mapped_column(
        MySQL_DATETIME(fsp=6), nullable=False, server_default=text("CURRENT_TIMESTAMP(6)")
    )


class TikTokVideoDaily(Base):
    """Per-video metrics row per store per calendar day."""

    __tablename__ = "tiktok_video_daily"
    __table_args__ = (
        UniqueConstraint("store_code", "video_id", "snapshot_date", name="uk_video_daily_store_video_date"),
        Index("idx_video_daily_store_date", "store_code", "snapshot_date"),
    )

    id: Mapped[int] = mapped_column(UBigInt, primary_key=True, autoincrement=True)
    store_code: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("stores.store_code", onupdate="CASCADE", ondelete="CASCADE"),
        nullable=False,
    )
    video_id: Mapped[str] = mapped_column(String(64), nullable=False)
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)

    view_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    like_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    comment_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    share_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    create_time: Mapped[datetime | None] = mapped_column(MySQL_DATETIME(fsp=6), default=None)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    cover_image_url: Mapped[str | None] = mapped_column(Text, default=None)
    share_url: Mapped[str | None] = mapped_column(Text, default=None)

    created_at: Mapped[datetime] = mapped_column(
        MySQL_DATETIME(fsp=6), nullable=False, server_default=text("CURRENT_TIMESTAMP(6)")
    )
