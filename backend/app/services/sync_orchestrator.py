# app/services/sync_orchestrator.py
"""
Per-store sync state machine.

    token lookup -> store lock -> fetch -> upsert -> release -> run record

No token fails fast before the lock is contended. A busy store is recorded as
SKIPPED and nothing is written. Every attempt appends exactly one row to
``sync_logs``; the record is written after the lock is released.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Callable, ContextManager, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.redaction import sanitize_error_message
from app.data.db import session_scope
from app.data.models.sync import JobName, SyncStatus
from app.data.repositories.snapshots import snapshot_today, upsert_user_daily, upsert_video_daily
from app.data.repositories.sync_logs import SyncLogEntry, create_sync_log
from app.services.db_locks import StoreLock
from app.services.tiktok_api import (
    AccountInfo,
    TikTokApiClient,
    is_auth_failure,
    is_transient_failure,
)
from app.services.token_provider import DatabaseTokenProvider, TokenProvider

logger = logging.getLogger("tthubs.sync")

NO_TOKEN_MESSAGE = "No valid access token available"
SKIPPED_MESSAGE = "Sync skipped - another sync is already running"

STAGE_ACCOUNT = "account"
STAGE_CONTENT = "content"


class SyncKind(str, Enum):
    USER = "user"
    VIDEO = "video"
    ALL = "all"

    @property
    def job_name(self) -> JobName:
        return {
            SyncKind.USER: JobName.SYNC_USER_STATS,
            SyncKind.VIDEO: JobName.SYNC_VIDEO_STATS,
            SyncKind.ALL: JobName.FULL_SYNC,
        }[self]

    @property
    def label(self) -> str:
        return {
            SyncKind.USER: "User stats sync",
            SyncKind.VIDEO: "Video stats sync",
            SyncKind.ALL: "Full sync",
        }[self]


class FailureKind(str, Enum):
    NO_CREDENTIAL = "NO_CREDENTIAL"
    LOCK_CONTENTION = "LOCK_CONTENTION"
    UPSTREAM_AUTH = "UPSTREAM_AUTH"
    UPSTREAM_TRANSIENT = "UPSTREAM_TRANSIENT"
    PERSISTENCE = "PERSISTENCE"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"


class SyncStageError(Exception):
    """A stage inside the locked body failed; ``completed`` lists stages that finished."""

    def __init__(self, stage: str, original: BaseException, completed: List[str] | None = None):
        super().__init__(f"{stage} stage failed: {original}")
        self.stage = stage
        self.original = original
        self.completed = list(completed or [])


def classify_failure(exc: BaseException) -> FailureKind:
    if isinstance(exc, SyncStageError):
        exc = exc.original
    if is_auth_failure(exc):
        return FailureKind.UPSTREAM_AUTH
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return FailureKind.TIMEOUT
    if is_transient_failure(exc):
        return FailureKind.UPSTREAM_TRANSIENT
    if isinstance(exc, SQLAlchemyError):
        return FailureKind.PERSISTENCE
    return FailureKind.UNKNOWN


def _describe(exc: BaseException) -> str:
    if isinstance(exc, SyncStageError):
        return f"[{exc.stage}] {_describe(exc.original)}"
    text = str(exc).strip()
    return text or type(exc).__name__


@dataclass
class SyncResult:
    success: bool
    store_code: str
    job_name: str
    status: SyncStatus
    message: str
    error: Optional[str] = None
    failure: Optional[FailureKind] = None
    duration_ms: int = 0
    records_processed: int = 0
    skipped: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "store_code": self.store_code,
            "job_name": self.job_name,
            "status": self.status.value,
            "message": self.message,
            "error": self.error,
            "failure": self.failure.value if self.failure else None,
            "duration_ms": self.duration_ms,
            "records_processed": self.records_processed,
            "skipped": self.skipped,
        }


@dataclass
class _StageOutcome:
    account: Optional[AccountInfo] = None
    videos: Optional[int] = None
    completed: List[str] = field(default_factory=list)

    @property
    def records(self) -> int:
        return (1 if self.account is not None else 0) + (self.videos or 0)


class SyncOrchestrator:
    def __init__(
        self,
        *,
        tokens: TokenProvider | None = None,
        api: TikTokApiClient | None = None,
        lock: StoreLock | None = None,
        session_factory: Callable[[], ContextManager[Session]] = session_scope,
        timeout_seconds: float | None = None,
        max_videos: int | None = None,
        today: Callable[[], date] | None = None,
    ) -> None:
        self._api = api or TikTokApiClient()
        self._tokens = tokens or DatabaseTokenProvider(api=self._api)
        self._lock = lock or StoreLock()
        self._session = session_factory
        self._timeout = timeout_seconds
        self._max_videos = int(max_videos or settings.SYNC_MAX_VIDEOS)
        self._today = today or self.snapshot_date

    @staticmethod
    def snapshot_date() -> date:
        return snapshot_today()

    # ---------- entry points ----------

    async def sync_user_stats(self, store_code: str) -> SyncResult:
        return await self.run(store_code, SyncKind.USER)

    async def sync_video_stats(self, store_code: str) -> SyncResult:
        return await self.run(store_code, SyncKind.VIDEO)

    async def run_full_sync(self, store_code: str) -> SyncResult:
        return await self.run(store_code, SyncKind.ALL)

    async def run(self, store_code: str, kind: SyncKind | str) -> SyncResult:
        kind = SyncKind(kind)
        job = kind.job_name.value
        started = time.monotonic()
        log_extra = {"store_code": store_code, "job": job}

        logger.info("sync started", extra=log_extra)

        try:
            token = await self._tokens.get_valid_token(store_code)
        except Exception as exc:  # noqa: BLE001 - recorded as a failed attempt
            logger.exception("token lookup failed", extra=log_extra)
            return self._finish(self._failed(store_code, kind, exc), started)
        if not token:
            logger.warning(NO_TOKEN_MESSAGE, extra=log_extra)
            return self._finish(
                SyncResult(
                    success=False,
                    store_code=store_code,
                    job_name=job,
                    status=SyncStatus.FAILED,
                    message=NO_TOKEN_MESSAGE,
                    failure=FailureKind.NO_CREDENTIAL,
                ),
                started,
            )

        snapshot = self._today()

        async def _body() -> _StageOutcome:
            return await self._run_stages(store_code, kind, token, snapshot)

        outcome = await self._lock.with_store_lock(store_code, _body, timeout_seconds=self._timeout)

        if outcome.skipped:
            logger.info(SKIPPED_MESSAGE, extra=log_extra)
            return self._finish(
                SyncResult(
                    success=False,
                    store_code=store_code,
                    job_name=job,
                    status=SyncStatus.SKIPPED,
                    message=SKIPPED_MESSAGE,
                    failure=FailureKind.LOCK_CONTENTION,
                    skipped=True,
                ),
                started,
            )

        if outcome.error is not None:
            return self._finish(self._failed(store_code, kind, outcome.error), started)

        stages: _StageOutcome = outcome.result
        try:
            self._tokens.update_last_sync_time(store_code)
        except SQLAlchemyError:
            logger.exception("last sync time update failed", extra=log_extra)

        return self._finish(
            SyncResult(
                success=True,
                store_code=store_code,
                job_name=job,
                status=SyncStatus.SUCCESS,
                message=self._success_message(kind, stages),
                records_processed=stages.records,
            ),
            started,
        )

    # ---------- stages (inside the lock) ----------

    async def _run_stages(self, store_code: str, kind: SyncKind, token: str, snapshot: date) -> _StageOutcome:
        outcome = _StageOutcome()
        if kind in (SyncKind.USER, SyncKind.ALL):
            try:
                outcome.account = await self._account_stage(store_code, token, snapshot)
            except Exception as exc:
                raise SyncStageError(STAGE_ACCOUNT, exc, outcome.completed) from exc
            outcome.completed.append(STAGE_ACCOUNT)

        if kind in (SyncKind.VIDEO, SyncKind.ALL):
            try:
                outcome.videos = await self._content_stage(store_code, token, snapshot)
            except Exception as exc:
                raise SyncStageError(STAGE_CONTENT, exc, outcome.completed) from exc
            outcome.completed.append(STAGE_CONTENT)
        return outcome

    async def _account_stage(self, store_code: str, token: str, snapshot: date) -> AccountInfo:
        info = await self._api.get_account_info(token)
        with self._session() as db:
            upsert_user_daily(db, store_code, snapshot, info)
        return info

    async def _content_stage(self, store_code: str, token: str, snapshot: date) -> int:
        def _progress(fetched: int) -> None:
            logger.debug("fetching videos", extra={"store_code": store_code, "fetched": fetched})

        items = await self._api.fetch_all_content(token, max_items=self._max_videos, on_progress=_progress)
        with self._session() as db:
            for item in items:
                upsert_video_daily(db, store_code, snapshot, item)
        return len(items)

    # ---------- finalisation ----------

    @staticmethod
    def _success_message(kind: SyncKind, stages: _StageOutcome) -> str:
        account = stages.account
        if kind is SyncKind.USER and account is not None:
            return (
                f"User stats synced successfully: {account.follower_count} followers, "
                f"{account.video_count} videos"
            )
        if kind is SyncKind.VIDEO:
            return f"Video stats synced successfully: {stages.videos or 0} videos processed"
        followers = account.follower_count if account is not None else 0
        return f"Full sync completed: {followers} followers, {stages.videos or 0} videos processed"

    def _failed(self, store_code: str, kind: SyncKind, exc: BaseException) -> SyncResult:
        failure = classify_failure(exc)
        error = sanitize_error_message(_describe(exc))
        log_extra = {"store_code": store_code, "job": kind.job_name.value, "failure": failure.value}

        if failure is FailureKind.UPSTREAM_AUTH:
            message = f"{kind.label} failed - token invalid or expired"
            try:
                self._tokens.flag_needs_reconnect(store_code)
            except SQLAlchemyError:
                logger.exception("flag needs-reconnect failed", extra=log_extra)
        elif failure is FailureKind.TIMEOUT:
            message = f"{kind.label} failed - timed out"
            error = error if error != "TimeoutError" else "operation timed out"
        else:
            message = f"{kind.label} failed"

        logger.error("%s: %s", message, error, extra=log_extra)
        return SyncResult(
            success=False,
            store_code=store_code,
            job_name=kind.job_name.value,
            status=SyncStatus.FAILED,
            message=message,
            error=error,
            failure=failure,
        )

    def _finish(self, result: SyncResult, started: float) -> SyncResult:
        result.duration_ms = int((time.monotonic() - started) * 1000)
        with self._session() as db:
            create_sync_log(
                db,
                SyncLogEntry(
                    store_code=result.store_code,
                    job_name=result.job_name,
                    status=result.status,
                    message=result.message,
                    raw_error=result.error,
                    duration_ms=result.duration_ms,
                ),
            )
        if result.success:
            logger.info(
                result.message,
                extra={"store_code": result.store_code, "job": result.job_name, "duration_ms": result.duration_ms},
            )
        return result
