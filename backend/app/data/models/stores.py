# app/data/models/stores.py
from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import BigInteger as _BigInteger
from sqlalchemy.dialects.mysql import BIGINT as MySQL_BIGINT
from sqlalchemy.dialects.mysql import DATETIME as MySQL_DATETIME

from app.data.db import Base


UBigInt = (
    _BigInteger()
    .with_variant(MySQL_BIGINT(unsigned=True), "mysql")
    .with_variant(Integer(), "sqlite")
)


class AccountStatus(str, Enum):
    CONNECTED = "CONNECTED"
    NEED_RECONNECT = "NEED_RECONNECT"
    ERROR = "ERROR"
    DISABLED = "DISABLED"


class Store(Base):
    __tablename__ = "stores"

    store_code: Mapped[str] = mapped_column(String(64), primary_key=True)
    store_name: Mapped[str] = mapped_column(String(255), nullable=False)
    pic_name: Mapped[str | None] = mapped_column(String(255), default=None)
    pic_contact: Mapped[str | None] = mapped_column(String(255), default=None)

    created_at: Mapped[datetime] = mapped_column(
        MySQL_DATETIME(fsp=6), nullable=False, server_default=text("CURRENT_TIMESTAMP(6)")
    )

    account: Mapped["StoreAccount | None"] = relationship(back_populates="store", uselist=False)


class StoreAccount(Base):
    """TikTok account bound to a store; tokens are AES-GCM blobs."""

    __tablename__ = "store_accounts"
    __table_args__ = (
        Index("idx_store_accounts_status", "status"),
        Index("idx_store_accounts_token_exp", "token_expired_at"),
    )

    id: Mapped[int] = mapped_column(UBigInt, primary_key=True, autoincrement=True)
    store_code: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("stores.store_code", onupdate="CASCADE", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    platform: Mapped[str] = mapped_column(String(32), nullable=False, default="tiktok")
    open_id: Mapped[str | None] = mapped_column(String(255), default=None)

    access_token_enc: Mapped[bytes | None] = mapped_column(LargeBinary(4096), default=None)
    refresh_token_enc: Mapped[bytes | None] = mapped_column(LargeBinary(4096), default=None)
    token_expired_at: Mapped[datetime | None] = mapped_column(MySQL_DATETIME(fsp=6), default=None)
    refresh_token_expired_at: Mapped[datetime | None] = mapped_column(MySQL_DATETIME(fsp=6), default=None)

    status: Mapped[str] = mapped_column(
        SAEnum(AccountStatus, name="account_status", validate_strings=True),
        nullable=False,
        default=AccountStatus.CONNECTED,
    )
    last_sync_time: Mapped[datetime | None] = mapped_column(MySQL_DATETIME(fsp=6), default=None)

    connected_at: Mapped[datetime] = mapped_column(
        MySQL_DATETIME(fsp=6), nullable=False, server_default=text("CURRENT_TIMESTAMP(6)")
    )
    updated_at: Mapped[datetime] = mapped_column(
        MySQL_DATETIME(fsp=6),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP(6)"),
        server_onupdate=text("CURRENT_TIMESTAMP(6)"),
    )

    store: Mapped[Store] = relationship(back_populates="account")
