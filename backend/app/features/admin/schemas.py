# app/features/admin/schemas.py
from __future__ import annotations
from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, Field

from app.data.repositories.snapshots import UserDailyDTO, VideoDailyDTO
from app.data.repositories.stores import StoreAccountDTO, StoreDTO
from app.data.repositories.sync_logs import SyncLogDTO


class RunSyncRequest(BaseModel):
    store_code: Optional[str] = Field(default=None, min_length=1, max_length=64)
    job: Literal["user", "video", "all"] = "all"


class SyncResultOut(BaseModel):
    success: bool
    store_code: str
    job_name: str
    status: str
    message: str
    error: Optional[str] = None
    failure: Optional[str] = None
    duration_ms: int = 0
    records_processed: int = 0
    skipped: bool = False


class SyncAllSummaryOut(BaseModel):
    job_name: str
    total: int
    successful: int
    failed: int
    skipped: int
    records_processed: int
    duration_ms: int
    results: List[SyncResultOut] = Field(default_factory=list)


class RunSyncResponse(BaseModel):
    result: Optional[SyncResultOut] = None
    summary: Optional[SyncAllSummaryOut] = None


class SyncLogsResponse(BaseModel):
    items: List[SyncLogDTO] = Field(default_factory=list)


class ScheduledJobOut(BaseModel):
    name: str
    task: str
    schedule: str
    description: Optional[str] = None


class SyncStatusResponse(BaseModel):
    scheduler_enabled: bool
    timezone: str
    jobs: List[ScheduledJobOut] = Field(default_factory=list)
    last_runs: Dict[str, SyncLogDTO] = Field(default_factory=dict)
    connected_stores: int = 0


class UserStatsResponse(BaseModel):
    store_code: str
    days: int
    items: List[UserDailyDTO] = Field(default_factory=list)


class VideoStatsResponse(BaseModel):
    store_code: str
    days: int
    items: List[VideoDailyDTO] = Field(default_factory=list)


class StoreSyncLogsResponse(BaseModel):
    store_code: str
    counts: Dict[str, int] = Field(default_factory=dict)
    items: List[SyncLogDTO] = Field(default_factory=list)


class CreateStoreRequest(BaseModel):
    store_code: str = Field(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_\-]+$")
    store_name: str = Field(min_length=1, max_length=255)
    pic_name: Optional[str] = Field(default=None, max_length=255)
    pic_contact: Optional[str] = Field(default=None, max_length=255)


class StoreListResponse(BaseModel):
    items: List[StoreDTO] = Field(default_factory=list)
    count: int = 0


class StoreAccountsResponse(BaseModel):
    store_code: str
    items: List[StoreAccountDTO] = Field(default_factory=list)


class StoreDetailResponse(StoreDTO):
    latest_stats: Optional[UserDailyDTO] = None
