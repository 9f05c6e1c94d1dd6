# app/services/sync_jobs.py
"""Entry points called by the scheduler and the admin API."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, ContextManager, Dict, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.redaction import sanitize_error_message
from app.data.db import session_scope
from app.data.models.sync import JobName, SyncStatus
from app.data.repositories.sync_logs import SyncLogEntry, create_sync_log
from app.services.batch import BatchResult, BatchRunner
from app.services.sync_orchestrator import (
    FailureKind,
    SyncKind,
    SyncOrchestrator,
    SyncResult,
)
from app.services.token_provider import DatabaseTokenProvider, TokenProvider, TokenRefreshError

logger = logging.getLogger("tthubs.jobs")

_RETRYABLE_FAILURES = {FailureKind.UPSTREAM_TRANSIENT, FailureKind.TIMEOUT}


class StoreSyncFailed(Exception):
    """Raised inside a batch item so the runner counts the store as failed."""

    def __init__(self, result: SyncResult):
        super().__init__(result.error or result.message)
        self.result = result


@dataclass
class SyncAllSummary:
    job_name: str
    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    records_processed: int = 0
    results: List[SyncResult] = field(default_factory=list)
    duration_ms: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "job_name": self.job_name,
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "records_processed": self.records_processed,
            "duration_ms": self.duration_ms,
            "results": [r.as_dict() for r in self.results],
        }


@dataclass
class TokenRefreshSummary:
    total: int = 0
    refreshed: int = 0
    failed: int = 0
    failed_stores: List[str] = field(default_factory=list)
    duration_ms: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "refreshed": self.refreshed,
            "failed": self.failed,
            "failed_stores": list(self.failed_stores),
            "duration_ms": self.duration_ms,
        }


def _aggregate_status(successful: int, failed: int) -> SyncStatus:
    return SyncStatus.SUCCESS if failed == 0 or successful > 0 else SyncStatus.FAILED


class JobRunner:
    def __init__(
        self,
        *,
        orchestrator: SyncOrchestrator | None = None,
        tokens: TokenProvider | None = None,
        session_factory: Callable[[], ContextManager[Session]] = session_scope,
        user_concurrency: int | None = None,
        video_concurrency: int | None = None,
        batch_delay: float | None = None,
        retry_max: int | None = None,
        retry_delay: float | None = None,
    ) -> None:
        self._tokens = tokens or DatabaseTokenProvider()
        self._orchestrator = orchestrator or SyncOrchestrator(tokens=self._tokens)
        self._session = session_factory
        self.user_concurrency = int(user_concurrency or settings.SYNC_USER_CONCURRENCY)
        self.video_concurrency = int(video_concurrency or settings.SYNC_VIDEO_CONCURRENCY)
        self.batch_delay = settings.SYNC_BATCH_DELAY_SECONDS if batch_delay is None else float(batch_delay)
        self.retry_max = settings.SYNC_RETRY_MAX if retry_max is None else int(retry_max)
        self.retry_delay = settings.SYNC_RETRY_DELAY_SECONDS if retry_delay is None else float(retry_delay)

    def concurrency_for(self, kind: SyncKind) -> int:
        # account info is one cheap call; video listing paginates
        return self.user_concurrency if kind is SyncKind.USER else self.video_concurrency

    def _record(self, entry: SyncLogEntry) -> None:
        with self._session() as db:
            create_sync_log(db, entry)

    # ---------- single store ----------

    async def sync_one(self, store_code: str, which: SyncKind | str = SyncKind.ALL) -> SyncResult:
        return await self._orchestrator.run(store_code, SyncKind(which))

    # ---------- all connected stores ----------

    async def sync_all(self, which: SyncKind | str = SyncKind.USER) -> SyncAllSummary:
        kind = SyncKind(which)
        job = kind.job_name.value
        started = time.monotonic()
        store_codes = self._tokens.list_connected_store_codes()
        concurrency = self.concurrency_for(kind)

        logger.info("sync_all started", extra={"job": job, "stores": len(store_codes), "concurrency": concurrency})

        async def _sync(store_code: str) -> SyncResult:
            result = await self._orchestrator.run(store_code, kind)
            if not result.success and not result.skipped:
                raise StoreSyncFailed(result)
            return result

        def _progress(processed: int, total: int) -> None:
            logger.info(
                "sync progress",
                extra={"job": job, "processed": processed, "total": total, "percent": round(processed * 100 / total)},
            )

        runner = BatchRunner(
            concurrency=concurrency,
            delay_between_batches=self.batch_delay,
            on_progress=_progress,
        )
        if self.retry_max > 0:
            batch: BatchResult = await runner.run_with_retry(
                store_codes,
                _sync,
                max_retries=self.retry_max,
                retry_delay=self.retry_delay,
                retry_if=lambda exc: isinstance(exc, StoreSyncFailed) and exc.result.failure in _RETRYABLE_FAILURES,
            )
        else:
            batch = await runner.run(store_codes, _sync)

        summary = SyncAllSummary(job_name=job, total=batch.total)
        for item in batch.results:
            if item.success:
                result: SyncResult = item.result
                if result.skipped:
                    summary.skipped += 1
                else:
                    summary.successful += 1
                    summary.records_processed += result.records_processed
                summary.results.append(result)
            else:
                summary.failed += 1
                summary.results.append(self._failed_result(item.item, kind, item.error))
        summary.duration_ms = int((time.monotonic() - started) * 1000)

        message = (
            f"Synced {summary.successful}/{summary.total} stores ({concurrency} concurrent), "
            f"{summary.failed} failed, {summary.skipped} skipped in {summary.duration_ms // 1000}s"
        )
        self._record(
            SyncLogEntry(
                store_code=None,
                job_name=job,
                status=_aggregate_status(summary.successful, summary.failed),
                message=message,
                duration_ms=summary.duration_ms,
            )
        )
        logger.info(message, extra={"job": job})
        return summary

    @staticmethod
    def _failed_result(store_code: str, kind: SyncKind, error: BaseException | None) -> SyncResult:
        if isinstance(error, StoreSyncFailed):
            return error.result
        # the orchestrator itself raised (e.g. the run record could not be written)
        return SyncResult(
            success=False,
            store_code=store_code,
            job_name=kind.job_name.value,
            status=SyncStatus.FAILED,
            message=f"{kind.label} failed",
            error=sanitize_error_message(error) if error is not None else None,
            failure=FailureKind.PERSISTENCE if isinstance(error, SQLAlchemyError) else FailureKind.UNKNOWN,
        )

    # ---------- token refresh ----------

    async def refresh_expiring_tokens(self, lookahead_hours: int | None = None) -> TokenRefreshSummary:
        hours = int(lookahead_hours or settings.TOKEN_REFRESH_LOOKAHEAD_HOURS)
        started = time.monotonic()
        store_codes = self._tokens.accounts_needing_refresh(hours)

        logger.info("token refresh started", extra={"job": JobName.REFRESH_TOKENS.value, "accounts": len(store_codes)})

        async def _refresh(store_code: str) -> str:
            if not await self._tokens.refresh_store_token(store_code):
                raise TokenRefreshError(store_code, "token refresh failed")
            return store_code

        runner = BatchRunner(
            concurrency=settings.TOKEN_REFRESH_CONCURRENCY,
            delay_between_batches=settings.TOKEN_REFRESH_DELAY_SECONDS,
        )
        batch = await runner.run(store_codes, _refresh)

        summary = TokenRefreshSummary(
            total=batch.total,
            refreshed=batch.successful,
            failed=batch.failed,
            failed_stores=[r.item for r in batch.errors],
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        message = f"Refreshed {summary.refreshed}/{summary.total} tokens, {summary.failed} failed"
        self._record(
            SyncLogEntry(
                store_code=None,
                job_name=JobName.REFRESH_TOKENS,
                status=_aggregate_status(summary.refreshed, summary.failed),
                message=message,
                duration_ms=summary.duration_ms,
            )
        )
        logger.info(message, extra={"job": JobName.REFRESH_TOKENS.value})
        return summary
