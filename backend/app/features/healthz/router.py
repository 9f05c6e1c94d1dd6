# app/features/healthz/router.py
from __future__ import annotations
from fastapi import APIRouter
from sqlalchemy import text

from app.core.config import settings
from app.data.db import session_scope

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/healthz")
def healthz():
    db_ok = True
    try:
        with session_scope() as db:
            db.execute(text("SELECT 1"))
    except Exception:  # noqa: BLE001
        db_ok = False
    return {"ok": db_ok, "version": settings.APP_VERSION, "database": "ok" if db_ok else "unavailable"}
