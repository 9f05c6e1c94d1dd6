# app/features/admin/router.py
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.deps import require_admin_api_key
from app.core.errors import APIError
from app.data.db import get_db, session_scope
from app.data.models.stores import AccountStatus, StoreAccount
from app.data.repositories.snapshots import latest_user_snapshot, list_user_stats, list_video_stats
from app.data.repositories.stores import (
    StoreDTO,
    StoreExistsError,
    create_store,
    get_store_with_status,
    list_accounts_by_store,
    list_stores_with_status,
    store_exists,
)
from app.data.repositories.sync_logs import count_by_status, latest_status_by_job, list_sync_logs
from app.services.scheduler_catalog import scheduler_status
from app.services.sync_jobs import JobRunner
from app.services.sync_orchestrator import SyncKind, SyncOrchestrator

from app.features.admin.schemas import (
    CreateStoreRequest,
    RunSyncRequest,
    RunSyncResponse,
    StoreAccountsResponse,
    StoreDetailResponse,
    StoreListResponse,
    StoreSyncLogsResponse,
    SyncAllSummaryOut,
    SyncLogsResponse,
    SyncResultOut,
    SyncStatusResponse,
    UserStatsResponse,
    VideoStatsResponse,
)

logger = logging.getLogger("tthubs.admin")

router = APIRouter(
    prefix=f"{settings.API_PREFIX}/admin",
    tags=["Admin / Sync"],
    dependencies=[Depends(require_admin_api_key)],
)


def get_job_runner() -> JobRunner:
    return JobRunner()


def _require_store(db: Session, store_code: str) -> None:
    if not store_exists(db, store_code):
        raise APIError("NOT_FOUND", f"Store {store_code} not found.", 404)


# -------- manual trigger --------
@router.post("/sync/run", response_model=RunSyncResponse)
async def run_sync(req: RunSyncRequest, runner: JobRunner = Depends(get_job_runner)):
    kind = SyncKind(req.job)
    if req.store_code:
        # checked in its own short session; the sync below opens its own
        with session_scope() as db:
            _require_store(db, req.store_code)
        result = await runner.sync_one(req.store_code, kind)
        # a busy store is not an HTTP error; the body says it was skipped
        return RunSyncResponse(result=SyncResultOut(**result.as_dict()))

    summary = await runner.sync_all(kind)
    return RunSyncResponse(summary=SyncAllSummaryOut(**summary.as_dict()))


# -------- run log & status --------
@router.get("/sync/logs", response_model=SyncLogsResponse)
def get_sync_logs(
    store_code: Optional[str] = Query(default=None, max_length=64),
    job_name: Optional[str] = Query(default=None, max_length=64),
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return SyncLogsResponse(items=list_sync_logs(db, store_code=store_code, job_name=job_name, limit=limit))


@router.get("/sync/status", response_model=SyncStatusResponse)
def get_sync_status(db: Session = Depends(get_db)):
    sched = scheduler_status()
    connected = db.scalar(
        select(func.count()).select_from(StoreAccount).where(StoreAccount.status == AccountStatus.CONNECTED)
    )
    return SyncStatusResponse(
        scheduler_enabled=sched["enabled"],
        timezone=sched["timezone"],
        jobs=sched["jobs"],
        last_runs=latest_status_by_job(db),
        connected_stores=int(connected or 0),
    )


# -------- stores --------
@router.get("/stores", response_model=StoreListResponse)
def get_stores(db: Session = Depends(get_db)):
    items = list_stores_with_status(db)
    return StoreListResponse(items=items, count=len(items))


@router.post("/stores", response_model=StoreDTO, status_code=201)
def post_store(req: CreateStoreRequest, db: Session = Depends(get_db)):
    try:
        store = create_store(
            db,
            store_code=req.store_code,
            store_name=req.store_name,
            pic_name=req.pic_name,
            pic_contact=req.pic_contact,
        )
    except StoreExistsError:
        raise APIError("STORE_EXISTS", f"Store {req.store_code} already exists.", 409) from None
    logger.info("store created", extra={"store_code": store.store_code})
    return store


@router.get("/stores/{store_code}", response_model=StoreDetailResponse)
def get_store(store_code: str, db: Session = Depends(get_db)):
    store = get_store_with_status(db, store_code)
    if store is None:
        raise APIError("NOT_FOUND", f"Store {store_code} not found.", 404)
    return StoreDetailResponse(**store.model_dump(), latest_stats=latest_user_snapshot(db, store_code))


@router.get("/stores/{store_code}/accounts", response_model=StoreAccountsResponse)
def get_store_accounts(store_code: str, db: Session = Depends(get_db)):
    _require_store(db, store_code)
    return StoreAccountsResponse(store_code=store_code, items=list_accounts_by_store(db, store_code))


# -------- per store --------
@router.get("/stores/{store_code}/user-stats", response_model=UserStatsResponse)
def get_user_stats(
    store_code: str,
    days: int = Query(default=30, ge=1, le=365),
    db: Session = Depends(get_db),
):
    _require_store(db, store_code)
    items = list_user_stats(db, store_code, days=days, today=SyncOrchestrator.snapshot_date())
    return UserStatsResponse(store_code=store_code, days=days, items=items)


@router.get("/stores/{store_code}/video-stats", response_model=VideoStatsResponse)
def get_video_stats(
    store_code: str,
    days: int = Query(default=7, ge=1, le=90),
    limit: int = Query(default=500, ge=1, le=5000),
    db: Session = Depends(get_db),
):
    _require_store(db, store_code)
    items = list_video_stats(db, store_code, days=days, today=SyncOrchestrator.snapshot_date(), limit=limit)
    return VideoStatsResponse(store_code=store_code, days=days, items=items)


@router.get("/stores/{store_code}/sync-logs", response_model=StoreSyncLogsResponse)
def get_store_sync_logs(
    store_code: str,
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    _require_store(db, store_code)
    return StoreSyncLogsResponse(
        store_code=store_code,
        counts=count_by_status(db, store_code=store_code),
        items=list_sync_logs(db, store_code=store_code, limit=limit),
    )
