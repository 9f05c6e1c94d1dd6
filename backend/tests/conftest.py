from __future__ import annotations

import base64
import os
import pathlib
import sys
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlalchemy.engine import Engine

from fakes import FakeTikTokApi, token_for


ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))


TEST_DB_PATH = ROOT / "test_tthubs.db"
ADMIN_KEY = "test-admin-key"

os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB_PATH}"
os.environ["ADMIN_API_KEY"] = ADMIN_KEY
os.environ["TOKEN_ENC_KEY_B64"] = base64.urlsafe_b64encode(b"k" * 32).decode("ascii")
os.environ["TIKTOK_CLIENT_KEY"] = "test-client-key"
os.environ["TIKTOK_CLIENT_SECRET"] = "test-client-secret"
os.environ["SYNC_BATCH_DELAY_SECONDS"] = "0"
os.environ["TOKEN_REFRESH_DELAY_SECONDS"] = "0"


@event.listens_for(Engine, "before_cursor_execute", retval=True)
def _sqlite_timestamp_precision_fix(
    conn, cursor, statement, parameters, context, executemany
):
    if conn.dialect.name == "sqlite":
        if "CURRENT_TIMESTAMP(6)" in statement:
            statement = statement.replace("CURRENT_TIMESTAMP(6)", "CURRENT_TIMESTAMP")
        stripped = statement.lstrip().upper()
        if stripped.startswith("CREATE INDEX ") and " IF NOT EXISTS " not in stripped:
            statement = statement.replace("CREATE INDEX ", "CREATE INDEX IF NOT EXISTS ", 1)
    return statement, parameters


@pytest.fixture(autouse=True)
def _reset_database() -> Generator[None, None, None]:
    from sqlalchemy.orm import close_all_sessions

    from app.data.db import Base, engine
    import app.data.models  # noqa: F401 - ensure models registered

    close_all_sessions()
    engine.dispose()
    if TEST_DB_PATH.exists():
        TEST_DB_PATH.unlink()

    Base.metadata.create_all(bind=engine)

    yield

    close_all_sessions()
    engine.dispose()
    if TEST_DB_PATH.exists():
        TEST_DB_PATH.unlink()


@pytest.fixture()
def db_session() -> Generator:
    from app.data.db import SessionLocal

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@pytest.fixture()
def make_store() -> Callable[..., str]:
    """Insert a store plus its account with encrypted, still-valid tokens."""
    from app.data.db import session_scope
    from app.data.models import AccountStatus, Store, StoreAccount
    from app.services.crypto import encrypt_token

    def _make(
        store_code: str,
        *,
        status: AccountStatus = AccountStatus.CONNECTED,
        access_token: Optional[str] = None,
        expires_in: timedelta = timedelta(days=1),
        refresh_token: Optional[str] = "refresh-token",
        refresh_expires_in: Optional[timedelta] = timedelta(days=300),
        with_account: bool = True,
    ) -> str:
        now = _utcnow()
        with session_scope() as db:
            db.add(Store(store_code=store_code, store_name=f"Store {store_code}"))
            if with_account:
                db.add(
                    StoreAccount(
                        store_code=store_code,
                        open_id=f"open-{store_code}",
                        access_token_enc=encrypt_token(access_token or token_for(store_code), aad_text=store_code),
                        refresh_token_enc=(
                            encrypt_token(refresh_token, aad_text=store_code) if refresh_token else None
                        ),
                        token_expired_at=now + expires_in,
                        refresh_token_expired_at=(now + refresh_expires_in) if refresh_expires_in else None,
                        status=status,
                        connected_at=now,
                        updated_at=now,
                    )
                )
        return store_code

    return _make


@pytest.fixture()
def fake_api() -> FakeTikTokApi:
    return FakeTikTokApi()


@pytest.fixture()
def make_orchestrator(fake_api):
    from app.services.db_locks import StoreLock
    from app.services.sync_orchestrator import SyncOrchestrator
    from app.services.token_provider import DatabaseTokenProvider

    def _make(api: FakeTikTokApi | None = None, **kwargs: Any) -> SyncOrchestrator:
        api = api or fake_api
        tokens = kwargs.pop("tokens", None) or DatabaseTokenProvider(api=api)
        return SyncOrchestrator(tokens=tokens, api=api, lock=kwargs.pop("lock", None) or StoreLock(), **kwargs)

    return _make


@pytest.fixture()
def admin_client() -> Generator[tuple[FastAPI, TestClient], None, None]:
    from app.core.errors import install_exception_handlers
    from app.features.admin.router import router as admin_router

    app = FastAPI()
    install_exception_handlers(app)
    app.include_router(admin_router)
    with TestClient(app, headers={"X-API-Key": ADMIN_KEY}) as client:
        yield app, client
    app.dependency_overrides.clear()
