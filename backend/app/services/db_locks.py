# app/services/db_locks.py
"""
Per-store mutual exclusion built on the shared database.

Two independent layers guard every store sync:

1. a lease row in ``sync_locks`` (``store:{code}``) with an expiry, so a crashed
   holder is reclaimed after the TTL;
2. a session advisory lock keyed by a numeric hash of the store code
   (MySQL ``GET_LOCK`` / PostgreSQL ``pg_try_advisory_lock``), held on a
   dedicated connection until release. Dialects without advisory locks use the
   ``sync_lock_slots`` table instead.

Acquisition is a single attempt; callers that lose simply skip.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import socket
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from sqlalchemy import delete, insert, select, text, update
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings
from app.data.db import SessionLocal, engine as default_engine
from app.data.models.sync import SyncLock, SyncLockSlot

logger = logging.getLogger("tthubs.locks")

T = TypeVar("T")

_ADVISORY_DIALECTS = {"mysql", "mariadb", "postgresql"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def store_code_to_lock_id(store_code: str) -> int:
    """Stable non-negative 31-bit id; collisions only over-serialize."""
    digest = hashlib.sha256(store_code.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big") & 0x7FFFFFFF


def store_lock_key(store_code: str) -> str:
    return f"{settings.SYNC_LOCK_PREFIX}{store_code}"


def _advisory_name(lock_id: int) -> str:
    return f"tthubs:store:{lock_id}"


@dataclass
class LockResult(Generic[T]):
    success: bool
    result: Optional[T] = None
    error: Optional[BaseException] = None
    skipped: bool = False


class StoreLock:
    def __init__(
        self,
        *,
        session_factory: sessionmaker = SessionLocal,
        engine: Engine | None = None,
        ttl_seconds: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine or default_engine
        self.ttl_seconds = int(ttl_seconds or settings.SYNC_LOCK_TTL_SECONDS)
        self._host = socket.gethostname()
        self._pid = os.getpid()
        # owner tokens of row locks / slot rows taken by this instance
        self._held: dict[str, str] = {}
        self._slots: dict[int, str] = {}
        self._advisory_conns: dict[int, Connection] = {}

    def _new_owner(self) -> str:
        return f"{self._host}:{self._pid}:{uuid.uuid4().hex[:12]}"

    def _session(self) -> Session:
        return self._session_factory()

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    # ------------------------------------------------------------------ rows
    def _insert_if_absent(self, db: Session, values: dict) -> None:
        dialect = db.get_bind().dialect.name
        if dialect == "sqlite":
            stmt = sqlite_insert(SyncLock).values(**values).on_conflict_do_nothing(index_elements=["lock_key"])
        elif dialect == "postgresql":
            stmt = pg_insert(SyncLock).values(**values).on_conflict_do_nothing(index_elements=["lock_key"])
        elif dialect in {"mysql", "mariadb"}:
            stmt = mysql_insert(SyncLock).values(**values).prefix_with("IGNORE")
        else:
            try:
                db.execute(insert(SyncLock).values(**values))
                db.commit()
            except IntegrityError:
                db.rollback()
            return
        db.execute(stmt)
        db.commit()

    def acquire(self, key: str, ttl_seconds: int | None = None) -> bool:
        """Single attempt at the lease row for ``key``. Never waits."""
        ttl = int(ttl_seconds or self.ttl_seconds)
        owner = self._new_owner()
        now = _utcnow()
        expires_at = now + timedelta(seconds=ttl)

        try:
            with self._session() as db:
                db.execute(
                    delete(SyncLock)
                    .where(SyncLock.lock_key == key, SyncLock.expires_at < now)
                    .execution_options(synchronize_session=False)
                )
                db.commit()

                self._insert_if_absent(
                    db,
                    {
                        "lock_key": key,
                        "locked_by": owner,
                        "locked_at": now,
                        "expires_at": expires_at,
                        "version": 1,
                    },
                )

                row = db.execute(
                    select(SyncLock.locked_by, SyncLock.expires_at, SyncLock.version).where(
                        SyncLock.lock_key == key
                    )
                ).first()
                if row is None:
                    return False
                if row.locked_by == owner:
                    self._held[key] = owner
                    return True
                if row.expires_at >= now:
                    logger.debug("lock busy", extra={"lock_key": key, "holder": row.locked_by})
                    return False

                # stale lease left by a crashed holder: take it over only if
                # nobody else touched the row since we read it
                res = db.execute(
                    update(SyncLock)
                    .where(
                        SyncLock.lock_key == key,
                        SyncLock.version == row.version,
                        SyncLock.expires_at < now,
                    )
                    .values(
                        locked_by=owner,
                        locked_at=now,
                        expires_at=expires_at,
                        version=row.version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                if res.rowcount == 1:
                    logger.info(
                        "took over expired lock",
                        extra={"lock_key": key, "previous_holder": row.locked_by},
                    )
                    self._held[key] = owner
                    return True
                return False
        except SQLAlchemyError:
            logger.exception("lock acquire failed", extra={"lock_key": key})
            return False

    def release(self, key: str) -> None:
        owner = self._held.pop(key, None)
        stmt = delete(SyncLock).where(SyncLock.lock_key == key)
        if owner is not None:
            stmt = stmt.where(SyncLock.locked_by == owner)
        try:
            with self._session() as db:
                db.execute(stmt.execution_options(synchronize_session=False))
                db.commit()
        except SQLAlchemyError:
            logger.exception("lock release failed", extra={"lock_key": key})

    # -------------------------------------------------------------- advisory
    def acquire_advisory(self, lock_id: int) -> bool:
        if lock_id in self._advisory_conns or lock_id in self._slots:
            return False
        if self.dialect not in _ADVISORY_DIALECTS:
            return self._acquire_slot(lock_id)

        conn: Connection | None = None
        try:
            conn = self._engine.connect().execution_options(isolation_level="AUTOCOMMIT")
            if self.dialect == "postgresql":
                got = conn.execute(text("SELECT pg_try_advisory_lock(:id)"), {"id": lock_id}).scalar()
            else:
                got = conn.execute(
                    text("SELECT GET_LOCK(:k, 0)"), {"k": _advisory_name(lock_id)}
                ).scalar()
            if got in (1, True):
                self._advisory_conns[lock_id] = conn
                return True
            conn.close()
            return False
        except SQLAlchemyError:
            logger.exception("advisory lock acquire failed", extra={"lock_id": lock_id})
            if conn is not None:
                conn.close()
            return False

    def release_advisory(self, lock_id: int) -> None:
        if lock_id in self._slots:
            self._release_slot(lock_id)
            return
        conn = self._advisory_conns.pop(lock_id, None)
        if conn is None:
            return
        try:
            if self.dialect == "postgresql":
                conn.execute(text("SELECT pg_advisory_unlock(:id)"), {"id": lock_id})
            else:
                conn.execute(text("SELECT RELEASE_LOCK(:k)"), {"k": _advisory_name(lock_id)})
        except SQLAlchemyError:
            logger.exception("advisory lock release failed", extra={"lock_id": lock_id})
        finally:
            # closing the session drops any lock it still holds
            conn.close()

    def _acquire_slot(self, lock_id: int) -> bool:
        holder = self._new_owner()
        now = _utcnow()
        try:
            with self._session() as db:
                db.execute(
                    delete(SyncLockSlot)
                    .where(SyncLockSlot.lock_id == lock_id, SyncLockSlot.expires_at < now)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                try:
                    db.execute(
                        insert(SyncLockSlot).values(
                            lock_id=lock_id,
                            holder=holder,
                            acquired_at=now,
                            expires_at=now + timedelta(seconds=self.ttl_seconds),
                        )
                    )
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    return False
        except SQLAlchemyError:
            logger.exception("lock slot acquire failed", extra={"lock_id": lock_id})
            return False
        self._slots[lock_id] = holder
        return True

    def _release_slot(self, lock_id: int) -> None:
        holder = self._slots.pop(lock_id)
        try:
            with self._session() as db:
                db.execute(
                    delete(SyncLockSlot)
                    .where(SyncLockSlot.lock_id == lock_id, SyncLockSlot.holder == holder)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
        except SQLAlchemyError:
            logger.exception("lock slot release failed", extra={"lock_id": lock_id})

    # ------------------------------------------------------------ composite
    async def with_store_lock(
        self,
        store_code: str,
        operation: Callable[[], Awaitable[T]],
        timeout_seconds: float | None = None,
    ) -> LockResult[T]:
        """
        Run ``operation`` while holding both lock layers for ``store_code``.

        Either layer busy -> ``LockResult(skipped=True)`` without running the
        operation. Operation errors (including the timeout) are returned in
        ``error``; both layers are released in every case.
        """
        key = store_lock_key(store_code)
        lock_id = store_code_to_lock_id(store_code)

        if not self.acquire(key):
            logger.info("store busy (row lock)", extra={"store_code": store_code})
            return LockResult(success=False, skipped=True)
        if not self.acquire_advisory(lock_id):
            self.release(key)
            logger.info("store busy (advisory lock)", extra={"store_code": store_code})
            return LockResult(success=False, skipped=True)

        timeout = settings.SYNC_STORE_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        try:
            if timeout and timeout > 0:
                result = await asyncio.wait_for(operation(), timeout=timeout)
            else:
                result = await operation()
            return LockResult(success=True, result=result)
        except Exception as exc:  # noqa: BLE001 - surfaced to the caller via LockResult
            return LockResult(success=False, error=exc)
        finally:
            self.release_advisory(lock_id)
            self.release(key)
