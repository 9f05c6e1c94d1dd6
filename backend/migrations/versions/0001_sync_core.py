"""stores, accounts, daily snapshots, locks and run log

Revision ID: 0001_sync_core
Revises:
Create Date: 2026-10-18 00:00:00
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import mysql as mysql_dialect

# ---- Alembic identifiers ----
revision = "0001_sync_core"
down_revision = None
branch_labels = None
depends_on = None

# ---- Common types & enums ----
UBigInt = sa.BigInteger().with_variant(mysql_dialect.BIGINT(unsigned=True), "mysql").with_variant(sa.Integer(), "sqlite")

account_status = sa.Enum("CONNECTED", "NEED_RECONNECT", "ERROR", "DISABLED", name="account_status")
sync_status = sa.Enum("SUCCESS", "FAILED", "SKIPPED", "RUNNING", name="sync_status")


def _dt6():
    return mysql_dialect.DATETIME(fsp=6)


def _now6():
    return sa.text("CURRENT_TIMESTAMP(6)")


def upgrade() -> None:
    bind = op.get_bind()
    is_mysql = bind.dialect.name == "mysql"

    # Non-MySQL must register named enums explicitly
    if not is_mysql:
        account_status.create(bind, checkfirst=True)
        sync_status.create(bind, checkfirst=True)

    # ===================== stores =====================
    op.create_table(
        "stores",
        sa.Column("store_code", sa.String(64), primary_key=True, nullable=False),
        sa.Column("store_name", sa.String(255), nullable=False),
        sa.Column("pic_name", sa.String(255), nullable=True),
        sa.Column("pic_contact", sa.String(255), nullable=True),
        sa.Column("created_at", _dt6(), nullable=False, server_default=_now6()),
        mysql_engine="InnoDB",
        mysql_charset="utf8mb4",
    )

    # ===================== store_accounts =====================
    op.create_table(
        "store_accounts",
        sa.Column("id", UBigInt, primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "store_code",
            sa.String(64),
            sa.ForeignKey("stores.store_code", onupdate="CASCADE", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("platform", sa.String(32), nullable=False, server_default="tiktok"),
        sa.Column("open_id", sa.String(255), nullable=True),
        sa.Column("access_token_enc", sa.LargeBinary(4096), nullable=True),
        sa.Column("refresh_token_enc", sa.LargeBinary(4096), nullable=True),
        sa.Column("token_expired_at", _dt6(), nullable=True),
        sa.Column("refresh_token_expired_at", _dt6(), nullable=True),
        sa.Column("status", account_status, nullable=False, server_default="CONNECTED"),
        sa.Column("last_sync_time", _dt6(), nullable=True),
        sa.Column("connected_at", _dt6(), nullable=False, server_default=_now6()),
        sa.Column("updated_at", _dt6(), nullable=False, server_default=_now6(), server_onupdate=_now6()),
        mysql_engine="InnoDB",
        mysql_charset="utf8mb4",
    )
    op.create_index("idx_store_accounts_status", "store_accounts", ["status"])
    op.create_index("idx_store_accounts_token_exp", "store_accounts", ["token_expired_at"])

    # ===================== tiktok_user_daily =====================
    op.create_table(
        "tiktok_user_daily",
        sa.Column("id", UBigInt, primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "store_code",
            sa.String(64),
            sa.ForeignKey("stores.store_code", onupdate="CASCADE", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("snapshot_date", sa.Date(), nullable=False),
        sa.Column("follower_count", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("following_count", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("likes_count", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("video_count", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("display_name", sa.String(255), nullable=True),
        sa.Column("avatar_url", sa.Text(), nullable=True),
        sa.Column("created_at", _dt6(), nullable=False, server_default=_now6()),
        sa.UniqueConstraint("store_code", "snapshot_date", name="uk_user_daily_store_date"),
        mysql_engine="InnoDB",
        mysql_charset="utf8mb4",
    )
    op.create_index("idx_user_daily_date", "tiktok_user_daily", ["snapshot_date"])

    # ===================== tiktok_video_daily =====================
    op.create_table(
        "tiktok_video_daily",
        sa.Column("id", UBigInt, primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "store_code",
            sa.String(64),
            sa.ForeignKey("stores.store_code", onupdate="CASCADE", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("video_id", sa.String(64), nullable=False),
        sa.Column("snapshot_date", sa.Date(), nullable=False),
        sa.Column("view_count", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("like_count", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("comment_count", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("share_count", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("create_time", _dt6(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("cover_image_url", sa.Text(), nullable=True),
        sa.Column("share_url", sa.Text(), nullable=True),
        sa.Column("created_at", _dt6(), nullable=False, server_default=_now6()),
        sa.UniqueConstraint("store_code", "video_id", "snapshot_date", name="uk_video_daily_store_video_date"),
        mysql_engine="InnoDB",
        mysql_charset="utf8mb4",
    )
    op.create_index("idx_video_daily_store_date", "tiktok_video_daily", ["store_code", "snapshot_date"])

    # ===================== sync_locks =====================
    op.create_table(
        "sync_locks",
        sa.Column("id", UBigInt, primary_key=True, autoincrement=True, nullable=False),
        sa.Column("lock_key", sa.String(255), nullable=False, unique=True),
        sa.Column("locked_by", sa.String(255), nullable=False),
        sa.Column("locked_at", _dt6(), nullable=False),
        sa.Column("expires_at", _dt6(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        mysql_engine="InnoDB",
        mysql_charset="utf8mb4",
    )

    # ===================== sync_lock_slots =====================
    op.create_table(
        "sync_lock_slots",
        sa.Column("lock_id", sa.Integer(), primary_key=True, autoincrement=False, nullable=False),
        sa.Column("holder", sa.String(255), nullable=False),
        sa.Column("acquired_at", _dt6(), nullable=False),
        sa.Column("expires_at", _dt6(), nullable=False),
        mysql_engine="InnoDB",
        mysql_charset="utf8mb4",
    )

    # ===================== sync_logs =====================
    op.create_table(
        "sync_logs",
        sa.Column("id", UBigInt, primary_key=True, autoincrement=True, nullable=False),
        sa.Column("store_code", sa.String(64), nullable=True),
        sa.Column("job_name", sa.String(64), nullable=False),
        sa.Column("run_time", _dt6(), nullable=False, server_default=_now6()),
        sa.Column("status", sync_status, nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("raw_error", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        mysql_engine="InnoDB",
        mysql_charset="utf8mb4",
    )
    op.create_index("idx_sync_logs_store_time", "sync_logs", ["store_code", "run_time"])
    op.create_index("idx_sync_logs_job_time", "sync_logs", ["job_name", "run_time"])


def downgrade() -> None:
    bind = op.get_bind()
    is_mysql = bind.dialect.name == "mysql"

    op.drop_index("idx_sync_logs_job_time", table_name="sync_logs")
    op.drop_index("idx_sync_logs_store_time", table_name="sync_logs")
    op.drop_table("sync_logs")
    op.drop_table("sync_lock_slots")
    op.drop_table("sync_locks")
    op.drop_index("idx_video_daily_store_date", table_name="tiktok_video_daily")
    op.drop_table("tiktok_video_daily")
    op.drop_index("idx_user_daily_date", table_name="tiktok_user_daily")
    op.drop_table("tiktok_user_daily")
    op.drop_index("idx_store_accounts_token_exp", table_name="store_accounts")
    op.drop_index("idx_store_accounts_status", table_name="store_accounts")
    op.drop_table("store_accounts")
    op.drop_table("stores")

    if not is_mysql:
        sync_status.drop(bind, checkfirst=True)
        account_status.drop(bind, checkfirst=True)
