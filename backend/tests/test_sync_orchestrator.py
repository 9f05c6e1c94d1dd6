import asyncio
from datetime import date

import httpx
import pytest
from sqlalchemy import func, select

from app.data.db import session_scope
from app.data.models import (
    AccountStatus,
    StoreAccount,
    SyncLock,
    SyncLockSlot,
    SyncLog,
    SyncStatus,
    TikTokUserDaily,
    TikTokVideoDaily,
)
from app.services.db_locks import StoreLock, store_lock_key
from app.services.sync_orchestrator import (
    NO_TOKEN_MESSAGE,
    SKIPPED_MESSAGE,
    FailureKind,
    SyncKind,
    SyncStageError,
    classify_failure,
)
from app.services.tiktok_api import TikTokApiError, TikTokAuthError, TikTokHttpError
from fakes import FakeTikTokApi, account_info, content_item, token_for


TODAY = date(2026, 3, 10)


def _logs(store_code=None):
    with session_scope() as db:
        stmt = select(SyncLog).order_by(SyncLog.id)
        if store_code is not None:
            stmt = stmt.where(SyncLog.store_code == store_code)
        return db.scalars(stmt).all()


def _count(model) -> int:
    with session_scope() as db:
        return db.scalar(select(func.count()).select_from(model))


def _account_status(store_code):
    with session_scope() as db:
        return db.scalar(select(StoreAccount.status).where(StoreAccount.store_code == store_code))


def test_no_token_fails_fast_without_touching_lock(make_store, make_orchestrator, fake_api, monkeypatch):
    make_store("S1", status=AccountStatus.NEED_RECONNECT)
    orch = make_orchestrator(today=lambda: TODAY)

    def _boom(*_, **__):
        raise AssertionError("lock must not be contended")

    monkeypatch.setattr(StoreLock, "acquire", _boom)
    result = asyncio.run(orch.sync_user_stats("S1"))

    assert result.success is False
    assert result.status is SyncStatus.FAILED
    assert result.message == NO_TOKEN_MESSAGE
    assert result.failure is FailureKind.NO_CREDENTIAL
    assert fake_api.calls == []
    logs = _logs("S1")
    assert len(logs) == 1
    assert logs[0].status == SyncStatus.FAILED
    assert logs[0].message == NO_TOKEN_MESSAGE


def test_unknown_store_has_no_token(make_orchestrator):
    result = asyncio.run(make_orchestrator().sync_video_stats("missing"))
    assert result.message == NO_TOKEN_MESSAGE
    assert len(_logs("missing")) == 1


def test_user_sync_success_writes_snapshot_and_log(make_store, make_orchestrator, fake_api):
    make_store("S1")
    fake_api.accounts[token_for("S1")] = account_info(followers=100, videos=7)

    result = asyncio.run(make_orchestrator(today=lambda: TODAY).sync_user_stats("S1"))

    assert result.success is True
    assert result.status is SyncStatus.SUCCESS
    assert result.message == "User stats synced successfully: 100 followers, 7 videos"
    assert result.records_processed == 1
    assert _count(TikTokUserDaily) == 1
    logs = _logs("S1")
    assert [(l.job_name, l.status) for l in logs] == [("sync_user_stats", SyncStatus.SUCCESS)]
    assert logs[0].duration_ms is not None
    # lock released
    assert _count(SyncLock) == 0
    assert _count(SyncLockSlot) == 0
    with session_scope() as db:
        assert db.scalar(select(StoreAccount.last_sync_time).where(StoreAccount.store_code == "S1")) is not None


def test_video_sync_success(make_store, make_orchestrator, fake_api):
    make_store("S1")
    fake_api.videos[token_for("S1")] = [content_item("v1", 10), content_item("v2", 20)]

    result = asyncio.run(make_orchestrator(today=lambda: TODAY).sync_video_stats("S1"))

    assert result.success is True
    assert result.message == "Video stats synced successfully: 2 videos processed"
    assert result.records_processed == 2
    assert _count(TikTokVideoDaily) == 2
    assert [l.job_name for l in _logs("S1")] == ["sync_video_stats"]


def test_video_sync_respects_max_videos(make_store, make_orchestrator, fake_api):
    make_store("S1")
    fake_api.videos[token_for("S1")] = [content_item(f"v{i}") for i in range(10)]

    result = asyncio.run(make_orchestrator(today=lambda: TODAY, max_videos=4).sync_video_stats("S1"))
    assert result.records_processed == 4
    assert _count(TikTokVideoDaily) == 4


def test_full_sync_writes_one_log_row(make_store, make_orchestrator, fake_api):
    make_store("S1")
    fake_api.accounts[token_for("S1")] = account_info(followers=50)
    fake_api.videos[token_for("S1")] = [content_item("v1")]

    result = asyncio.run(make_orchestrator(today=lambda: TODAY).run_full_sync("S1"))

    assert result.success is True
    assert result.message == "Full sync completed: 50 followers, 1 videos processed"
    assert result.records_processed == 2
    assert [(l.job_name, l.status) for l in _logs("S1")] == [("full_sync", SyncStatus.SUCCESS)]


def test_auth_failure_flags_reconnect(make_store, make_orchestrator, fake_api):
    make_store("S1")
    fake_api.accounts[token_for("S1")] = TikTokAuthError(
        "Access token is invalid", code="access_token_invalid", status=401
    )

    result = asyncio.run(make_orchestrator(today=lambda: TODAY).sync_user_stats("S1"))

    assert result.success is False
    assert result.failure is FailureKind.UPSTREAM_AUTH
    assert result.message == "User stats sync failed - token invalid or expired"
    assert _account_status("S1") == AccountStatus.NEED_RECONNECT
    assert _count(TikTokUserDaily) == 0
    assert _count(SyncLock) == 0
    logs = _logs("S1")
    assert len(logs) == 1
    assert logs[0].status == SyncStatus.FAILED
    assert "token invalid" in logs[0].message


def test_non_auth_failure_keeps_account_connected(make_store, make_orchestrator, fake_api):
    make_store("S1")
    fake_api.accounts[token_for("S1")] = TikTokHttpError(503, "retryable")

    result = asyncio.run(make_orchestrator(today=lambda: TODAY).sync_user_stats("S1"))

    assert result.failure is FailureKind.UPSTREAM_TRANSIENT
    assert result.message == "User stats sync failed"
    assert _account_status("S1") == AccountStatus.CONNECTED


def test_error_text_is_sanitized(make_store, make_orchestrator, fake_api):
    make_store("S1")
    fake_api.videos[token_for("S1")] = TikTokApiError(
        "upstream said access_token=abc123secret with Bearer xyz.987", code="server_error", status=400
    )

    result = asyncio.run(make_orchestrator(today=lambda: TODAY).sync_video_stats("S1"))

    assert result.success is False
    assert "abc123secret" not in result.error
    assert "xyz.987" not in result.error
    log = _logs("S1")[0]
    assert "abc123secret" not in (log.raw_error or "")
    assert "[REDACTED]" in log.raw_error
    assert log.raw_error.startswith("[content]")


def test_full_sync_content_failure_keeps_account_snapshot(make_store, make_orchestrator, fake_api):
    make_store("S1")
    fake_api.accounts[token_for("S1")] = account_info(followers=10)
    fake_api.videos[token_for("S1")] = httpx.ConnectError("connection reset")

    result = asyncio.run(make_orchestrator(today=lambda: TODAY).run_full_sync("S1"))

    assert result.success is False
    assert result.failure is FailureKind.UPSTREAM_TRANSIENT
    assert _count(TikTokUserDaily) == 1
    assert len(_logs("S1")) == 1


def test_timeout_is_reported_and_lock_released(make_store, make_orchestrator):
    make_store("S1")
    slow = FakeTikTokApi(delay=1.0)
    slow.accounts[token_for("S1")] = account_info()

    result = asyncio.run(make_orchestrator(api=slow, timeout_seconds=0.05).sync_user_stats("S1"))

    assert result.failure is FailureKind.TIMEOUT
    assert result.message == "User stats sync failed - timed out"
    assert _count(SyncLock) == 0
    assert len(_logs("S1")) == 1


def test_busy_store_is_skipped_and_writes_nothing(make_store, make_orchestrator, fake_api):
    make_store("S1")
    fake_api.accounts[token_for("S1")] = account_info()
    holder = StoreLock()
    assert holder.acquire(store_lock_key("S1"))

    result = asyncio.run(make_orchestrator(today=lambda: TODAY).sync_user_stats("S1"))

    assert result.skipped is True
    assert result.status is SyncStatus.SKIPPED
    assert result.message == SKIPPED_MESSAGE
    assert result.failure is FailureKind.LOCK_CONTENTION
    assert fake_api.calls == []
    assert _count(TikTokUserDaily) == 0
    assert [l.status for l in _logs("S1")] == [SyncStatus.SKIPPED]
    holder.release(store_lock_key("S1"))


def test_concurrent_full_syncs_one_runs_one_skips(make_store, make_orchestrator):
    make_store("S1")
    api = FakeTikTokApi(delay=0.05)
    api.accounts[token_for("S1")] = account_info(followers=10)
    api.videos[token_for("S1")] = [content_item("v1"), content_item("v2")]
    orch = make_orchestrator(api=api, today=lambda: TODAY)

    async def _both():
        return await asyncio.gather(orch.run_full_sync("S1"), orch.run_full_sync("S1"))

    first, second = asyncio.run(_both())
    outcomes = sorted([first.status.value, second.status.value])

    assert outcomes == ["SKIPPED", "SUCCESS"]
    assert _count(TikTokUserDaily) == 1
    assert _count(TikTokVideoDaily) == 2
    statuses = sorted(l.status.value for l in _logs("S1"))
    assert statuses == ["SKIPPED", "SUCCESS"]
    assert _count(SyncLock) == 0


def test_same_day_resync_overwrites_snapshot(make_store, make_orchestrator, fake_api):
    make_store("S1")
    orch = make_orchestrator(today=lambda: TODAY)

    fake_api.accounts[token_for("S1")] = account_info(followers=100)
    asyncio.run(orch.sync_user_stats("S1"))
    fake_api.accounts[token_for("S1")] = account_info(followers=120)
    asyncio.run(orch.sync_user_stats("S1"))

    with session_scope() as db:
        rows = db.scalars(select(TikTokUserDaily)).all()
    assert len(rows) == 1
    assert rows[0].follower_count == 120
    assert len(_logs("S1")) == 2


def test_classify_failure_unwraps_stage_errors():
    auth = SyncStageError("account", TikTokAuthError("bad", status=401))
    assert classify_failure(auth) is FailureKind.UPSTREAM_AUTH
    assert classify_failure(SyncStageError("content", TikTokHttpError(502, "x"))) is FailureKind.UPSTREAM_TRANSIENT
    assert classify_failure(asyncio.TimeoutError()) is FailureKind.TIMEOUT
    assert classify_failure(ValueError("?")) is FailureKind.UNKNOWN


@pytest.mark.parametrize("kind", ["user", "video", "all"])
def test_run_accepts_kind_strings(kind, make_store, make_orchestrator, fake_api):
    make_store("S1")
    fake_api.accounts[token_for("S1")] = account_info()
    result = asyncio.run(make_orchestrator(today=lambda: TODAY).run("S1", kind))
    assert result.job_name == SyncKind(kind).job_name.value
    assert result.success is True


def test_token_lookup_error_is_recorded(make_store, make_orchestrator, fake_api):
    from sqlalchemy.exc import OperationalError

    from app.services.token_provider import DatabaseTokenProvider

    make_store("S1")

    class _BrokenTokens(DatabaseTokenProvider):
        async def get_valid_token(self, store_code):
            raise OperationalError("SELECT store_accounts", {}, Exception("database is locked"))

    orch = make_orchestrator(tokens=_BrokenTokens(api=fake_api), today=lambda: TODAY)
    result = asyncio.run(orch.run("S1", "user"))

    assert result.success is False
    assert result.status is SyncStatus.FAILED
    assert result.failure is FailureKind.PERSISTENCE
    assert fake_api.calls == []
    assert _count(SyncLock) == 0
    logs = _logs("S1")
    assert len(logs) == 1
    assert logs[0].status == SyncStatus.FAILED
    assert "database is locked" in logs[0].raw_error
