# app/data/db.py
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Generator, Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session as ORMSession, sessionmaker

from app.core.config import settings

logger = logging.getLogger("tthubs.db")


# ---- ORM Base -------------------------------------------------------------
class Base(DeclarativeBase):
    pass


def _engine_kwargs(url: str) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "future": True,
        "pool_pre_ping": settings.DB_POOL_PRE_PING,
        "echo": settings.DB_ECHO,
    }
    if url.startswith("sqlite"):
        # one event loop drives several short sessions on the same file
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        return kwargs
    kwargs.update(
        pool_recycle=settings.DB_POOL_RECYCLE,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT_SECONDS,
    )
    return kwargs


# ---- Engine ---------------------------------------------------------------
engine: Engine = create_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))

# ---- Session factory ------------------------------------------------------
SessionLocal = sessionmaker(
    bind=engine,
    class_=ORMSession,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    future=True,
)


# ---- Write tracking -------------------------------------------------------
def _reset_mutation_flag(sess: ORMSession) -> None:
    sess.info.pop("has_writes", None)


def _mark_mutated(sess: ORMSession) -> None:
    sess.info["has_writes"] = True


# do_orm_execute fires before autobegin, so the flag is only cleared once a
# transaction has actually ended
@event.listens_for(ORMSession, "after_commit")
def _on_tx_commit(sess: ORMSession) -> None:
    _reset_mutation_flag(sess)


@event.listens_for(ORMSession, "after_rollback")
def _on_tx_rollback(sess: ORMSession) -> None:
    _reset_mutation_flag(sess)


@event.listens_for(ORMSession, "after_flush")
def _on_after_flush(sess: ORMSession, ctx) -> None:
    if sess.new or sess.dirty or sess.deleted:
        _mark_mutated(sess)


# insert/update/delete statements issued through the session count as writes
@event.listens_for(ORMSession, "do_orm_execute")
def _on_do_orm_execute(exec_state) -> None:
    if not exec_state.is_select:
        _mark_mutated(exec_state.session)


def _has_writes(sess: ORMSession) -> bool:
    if sess.info.get("has_writes"):
        return True
    return bool(sess.new or sess.dirty or sess.deleted)


def _finish(db: ORMSession) -> None:
    tx = db.get_transaction()
    if tx is None or not tx.is_active:
        return
    if not _has_writes(db):
        db.rollback()
        return
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("DB COMMIT failed -> ROLLBACK")
        raise


def _abort(db: ORMSession) -> None:
    tx = db.get_transaction()
    if tx is not None and tx.is_active:
        db.rollback()


# ---- FastAPI dependency: request-scoped session ---------------------------
def get_db() -> Generator[ORMSession, None, None]:
    """
    Request-scoped session:
    - writes detected -> COMMIT, read-only -> ROLLBACK to end the transaction
    - exception -> ROLLBACK and re-raise
    - always CLOSE
    """
    db: ORMSession = SessionLocal()
    _reset_mutation_flag(db)
    try:
        yield db
        _finish(db)
    except Exception:
        _abort(db)
        raise
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[ORMSession]:
    """Short-lived unit of work for services and workers.

    Services open one of these per database step and never hold it across an
    ``await``, so concurrent store syncs do not keep transactions open while
    waiting on the network.
    """
    db: ORMSession = SessionLocal()
    _reset_mutation_flag(db)
    try:
        yield db
        _finish(db)
    except Exception:
        _abort(db)
        raise
    finally:
        db.close()
