from __future__ import annotations
from app.data.db import Base
from .stores import AccountStatus, Store, StoreAccount
from .snapshots import TikTokUserDaily, TikTokVideoDaily
from .sync import JobName, SyncLock, SyncLockSlot, SyncLog, SyncStatus

__all__ = [
    "Base",
    "AccountStatus",
    "Store",
    "StoreAccount",
    "TikTokUserDaily",
    "TikTokVideoDaily",
    "JobName",
    "SyncLock",
    "SyncLockSlot",
    "SyncLog",
    "SyncStatus",
]
