import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.data.db import SessionLocal
from app.data.models import SyncLock, SyncLockSlot
from app.services.db_locks import (
    StoreLock,
    store_code_to_lock_id,
    store_lock_key,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _lock_rows():
    with SessionLocal() as db:
        return db.scalars(select(SyncLock)).all()


def _slot_rows():
    with SessionLocal() as db:
        return db.scalars(select(SyncLockSlot)).all()


def _expire(key: str) -> None:
    with SessionLocal() as db:
        row = db.scalar(select(SyncLock).where(SyncLock.lock_key == key))
        row.expires_at = _utcnow() - timedelta(seconds=5)
        db.commit()


def test_lock_id_is_stable_and_non_negative():
    first = store_code_to_lock_id("S1")
    assert first == store_code_to_lock_id("S1")
    assert 0 <= first <= 0x7FFFFFFF
    assert store_code_to_lock_id("S2") != first


def test_lock_key_uses_prefix():
    assert store_lock_key("S1") == "store:S1"


def test_acquire_is_exclusive_until_release():
    a, b = StoreLock(), StoreLock()
    key = store_lock_key("S1")

    assert a.acquire(key) is True
    assert b.acquire(key) is False
    # even the same instance does not re-enter
    assert a.acquire(key) is False

    a.release(key)
    assert b.acquire(key) is True
    b.release(key)
    assert _lock_rows() == []


def test_expired_lock_is_taken_over():
    crashed, fresh = StoreLock(), StoreLock()
    key = store_lock_key("S1")

    assert crashed.acquire(key)
    _expire(key)

    assert fresh.acquire(key) is True
    rows = _lock_rows()
    assert len(rows) == 1
    assert rows[0].expires_at > _utcnow()

    # the stale holder's release must not drop the new holder's lease
    crashed.release(key)
    assert len(_lock_rows()) == 1
    assert StoreLock().acquire(key) is False

    fresh.release(key)
    assert _lock_rows() == []


def test_advisory_fallback_slot_is_exclusive():
    a, b = StoreLock(), StoreLock()
    lock_id = store_code_to_lock_id("S1")

    assert a.dialect == "sqlite"
    assert a.acquire_advisory(lock_id) is True
    assert b.acquire_advisory(lock_id) is False
    a.release_advisory(lock_id)
    assert _slot_rows() == []
    assert b.acquire_advisory(lock_id) is True
    b.release_advisory(lock_id)


def test_release_advisory_without_holding_is_noop():
    StoreLock().release_advisory(store_code_to_lock_id("nobody"))
    assert _slot_rows() == []


def test_with_store_lock_runs_operation_and_cleans_up():
    lock = StoreLock()

    async def _op():
        assert len(_lock_rows()) == 1
        assert len(_slot_rows()) == 1
        return 42

    result = asyncio.run(lock.with_store_lock("S1", _op))
    assert result.success is True
    assert result.result == 42
    assert result.skipped is False
    assert _lock_rows() == []
    assert _slot_rows() == []


def test_with_store_lock_returns_error_and_still_releases():
    lock = StoreLock()

    async def _op():
        raise RuntimeError("boom")

    result = asyncio.run(lock.with_store_lock("S1", _op))
    assert result.success is False
    assert isinstance(result.error, RuntimeError)
    assert _lock_rows() == []
    assert _slot_rows() == []


def test_with_store_lock_times_out_and_releases():
    lock = StoreLock()

    async def _op():
        await asyncio.sleep(5)

    result = asyncio.run(lock.with_store_lock("S1", _op, timeout_seconds=0.05))
    assert result.success is False
    assert isinstance(result.error, (asyncio.TimeoutError, TimeoutError))
    assert _lock_rows() == []


def test_with_store_lock_skips_busy_store():
    holder = StoreLock()
    key = store_lock_key("S1")
    assert holder.acquire(key)
    ran = []

    async def _op():
        ran.append(True)

    result = asyncio.run(StoreLock().with_store_lock("S1", _op))
    assert result.skipped is True
    assert result.success is False
    assert ran == []
    # the holder's lease is untouched
    assert len(_lock_rows()) == 1
    holder.release(key)


def test_with_store_lock_skips_when_advisory_layer_busy():
    holder = StoreLock()
    lock_id = store_code_to_lock_id("S1")
    assert holder.acquire_advisory(lock_id)

    async def _op():
        pytest.fail("operation must not run")

    result = asyncio.run(StoreLock().with_store_lock("S1", _op))
    assert result.skipped is True
    # the row lock taken before the advisory attempt was given back
    assert _lock_rows() == []
    holder.release_advisory(lock_id)


def test_concurrent_contenders_exactly_one_runs():
    lock = StoreLock()
    ran = []

    async def _op():
        ran.append(True)
        await asyncio.sleep(0.05)
        return "done"

    async def _main():
        return await asyncio.gather(*(lock.with_store_lock("S1", _op) for _ in range(5)))

    results = asyncio.run(_main())
    assert len(ran) == 1
    assert sum(1 for r in results if r.success) == 1
    assert sum(1 for r in results if r.skipped) == 4
    assert _lock_rows() == []
