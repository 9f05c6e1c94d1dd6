from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict

from celery import Task
from celery.utils.log import get_task_logger

from app.celery_app import celery_app
from app.core.config import settings
from app.core.redaction import sanitize_error_message
from app.services.scheduler_catalog import (
    TASK_REFRESH_TOKENS,
    TASK_SYNC_STORE,
    TASK_SYNC_USER_DAILY,
    TASK_SYNC_VIDEO_DAILY,
)
from app.services.sync_jobs import JobRunner
from app.services.sync_orchestrator import SyncKind

logger = get_task_logger(__name__)


class SyncTask(Task):
    """
    Scheduled sync jobs are not retried by Celery: every store attempt is
    already recorded, and the next scheduled run picks up what failed.
    """

    abstract = True
    acks_late = True

    def on_failure(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.error(
            "task failed",
            extra={"task": self.name, "task_id": task_id, "error": sanitize_error_message(exc)},
        )
        return super().on_failure(exc, task_id, args, kwargs, einfo)


def safe_execute(job_name: str, job: Callable[[], Awaitable[Any]]) -> Dict[str, Any]:
    """Run one job to completion; a job error is logged and reported, never raised to beat."""
    started = time.monotonic()
    logger.info("job started", extra={"job": job_name})
    try:
        result = asyncio.run(job())
    except Exception as exc:  # noqa: BLE001
        logger.exception("job failed", extra={"job": job_name})
        return {
            "ok": False,
            "job": job_name,
            "error": sanitize_error_message(exc),
            "duration_ms": int((time.monotonic() - started) * 1000),
        }
    logger.info("job completed", extra={"job": job_name})
    payload = result.as_dict() if hasattr(result, "as_dict") else result
    return {
        "ok": True,
        "job": job_name,
        "result": payload,
        "duration_ms": int((time.monotonic() - started) * 1000),
    }


@celery_app.task(name=TASK_REFRESH_TOKENS, base=SyncTask, bind=True, queue=settings.CELERY_SYNC_QUEUE)
def task_refresh_tokens(self, lookahead_hours: int | None = None, **_: Any) -> Dict[str, Any]:
    return safe_execute(
        "refresh_tokens",
        lambda: JobRunner().refresh_expiring_tokens(lookahead_hours),
    )


@celery_app.task(name=TASK_SYNC_USER_DAILY, base=SyncTask, bind=True, queue=settings.CELERY_SYNC_QUEUE)
def task_sync_user_daily(self, **_: Any) -> Dict[str, Any]:
    return safe_execute("sync_user_daily", lambda: JobRunner().sync_all(SyncKind.USER))


@celery_app.task(name=TASK_SYNC_VIDEO_DAILY, base=SyncTask, bind=True, queue=settings.CELERY_SYNC_QUEUE)
def task_sync_video_daily(self, **_: Any) -> Dict[str, Any]:
    return safe_execute("sync_video_daily", lambda: JobRunner().sync_all(SyncKind.VIDEO))


@celery_app.task(name=TASK_SYNC_STORE, base=SyncTask, bind=True, queue=settings.CELERY_SYNC_QUEUE)
def task_sync_store(self, store_code: str, which: str = SyncKind.ALL.value, **_: Any) -> Dict[str, Any]:
    return safe_execute(
        f"sync_store:{store_code}",
        lambda: JobRunner().sync_one(store_code, SyncKind(which)),
    )
