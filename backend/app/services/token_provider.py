# app/services/token_provider.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, ContextManager, List, Optional, Protocol

import httpx
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.redaction import redact
from app.data.db import session_scope
from app.data.models.stores import AccountStatus, StoreAccount
from app.services.crypto import CryptoError, decrypt_token, encrypt_token
from app.services.tiktok_api import (
    TikTokApiClient,
    TikTokApiError,
    TikTokAuthError,
    TikTokHttpError,
    TokenGrant,
)

logger = logging.getLogger("tthubs.tokens")

SessionFactory = Callable[[], ContextManager[Session]]


class TokenProvider(Protocol):
    async def get_valid_token(self, store_code: str) -> Optional[str]: ...

    def flag_needs_reconnect(self, store_code: str) -> None: ...

    def update_last_sync_time(self, store_code: str) -> None: ...

    def list_connected_store_codes(self) -> List[str]: ...

    def accounts_needing_refresh(self, hours: int) -> List[str]: ...

    async def refresh_store_token(self, store_code: str) -> bool: ...


class TokenRefreshError(RuntimeError):
    def __init__(self, store_code: str, message: str, *, needs_reconnect: bool = False):
        super().__init__(message)
        self.store_code = store_code
        self.needs_reconnect = needs_reconnect


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class DatabaseTokenProvider:
    """
    Credentials live encrypted in ``store_accounts``; the store code is bound
    into each blob as associated data.

    Only ``CONNECTED`` accounts hand out tokens. An access token within
    ``TOKEN_EXPIRY_SKEW_SECONDS`` of expiry is refreshed first.
    """

    def __init__(
        self,
        *,
        api: TikTokApiClient | None = None,
        session_factory: SessionFactory = session_scope,
    ) -> None:
        self._api = api or TikTokApiClient()
        self._session = session_factory

    # ---------- reads ----------

    async def get_valid_token(self, store_code: str) -> Optional[str]:
        with self._session() as db:
            account = db.scalar(select(StoreAccount).where(StoreAccount.store_code == store_code))
            if account is None:
                logger.warning("no account for store", extra={"store_code": store_code})
                return None
            if account.status != AccountStatus.CONNECTED:
                logger.warning(
                    "account not connected",
                    extra={"store_code": store_code, "status": str(account.status.value)},
                )
                return None
            expires_at = account.token_expired_at
            blob = account.access_token_enc

        skew = timedelta(seconds=settings.TOKEN_EXPIRY_SKEW_SECONDS)
        if blob is not None and expires_at is not None and expires_at - skew > _utcnow():
            try:
                return decrypt_token(blob, aad_text=store_code)
            except CryptoError:
                logger.exception("access token decrypt failed", extra={"store_code": store_code})
                self.set_status(store_code, AccountStatus.ERROR)
                return None

        logger.info("access token expired or expiring, refreshing", extra={"store_code": store_code})
        grant = await self._refresh(store_code)
        return grant.access_token if grant is not None else None

    def list_connected_store_codes(self) -> List[str]:
        with self._session() as db:
            return list(
                db.scalars(
                    select(StoreAccount.store_code)
                    .where(StoreAccount.status == AccountStatus.CONNECTED)
                    .order_by(StoreAccount.store_code)
                ).all()
            )

    def accounts_needing_refresh(self, hours: int) -> List[str]:
        threshold = _utcnow() + timedelta(hours=int(hours))
        with self._session() as db:
            return list(
                db.scalars(
                    select(StoreAccount.store_code)
                    .where(StoreAccount.status == AccountStatus.CONNECTED)
                    .where(StoreAccount.token_expired_at < threshold)
                    .order_by(StoreAccount.token_expired_at)
                ).all()
            )

    # ---------- writes ----------

    def set_status(self, store_code: str, status: AccountStatus) -> None:
        with self._session() as db:
            db.execute(
                update(StoreAccount)
                .where(StoreAccount.store_code == store_code)
                .values(status=status, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
        logger.info("account status updated", extra={"store_code": store_code, "status": status.value})

    def flag_needs_reconnect(self, store_code: str) -> None:
        self.set_status(store_code, AccountStatus.NEED_RECONNECT)

    def update_last_sync_time(self, store_code: str) -> None:
        now = _utcnow()
        with self._session() as db:
            db.execute(
                update(StoreAccount)
                .where(StoreAccount.store_code == store_code)
                .values(last_sync_time=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )

    def store_tokens(self, store_code: str, grant: TokenGrant) -> None:
        """Persist a token pair and mark the account connected."""
        now = _utcnow()
        values = dict(
            open_id=grant.open_id or None,
            access_token_enc=encrypt_token(grant.access_token, aad_text=store_code),
            refresh_token_enc=encrypt_token(grant.refresh_token, aad_text=store_code),
            token_expired_at=grant.expires_at,
            refresh_token_expired_at=grant.refresh_expires_at,
            status=AccountStatus.CONNECTED,
            updated_at=now,
        )
        with self._session() as db:
            account = db.scalar(select(StoreAccount).where(StoreAccount.store_code == store_code))
            if account is None:
                db.add(StoreAccount(store_code=store_code, connected_at=now, **values))
            else:
                if not values["open_id"]:
                    values.pop("open_id")
                for key, value in values.items():
                    setattr(account, key, value)

    # ---------- refresh ----------

    async def refresh_store_token(self, store_code: str) -> bool:
        return await self._refresh(store_code) is not None

    async def _refresh(self, store_code: str) -> Optional[TokenGrant]:
        with self._session() as db:
            account = db.scalar(select(StoreAccount).where(StoreAccount.store_code == store_code))
            if account is None or account.status != AccountStatus.CONNECTED:
                return None
            refresh_blob = account.refresh_token_enc
            refresh_expires_at = account.refresh_token_expired_at

        if refresh_blob is None:
            self.flag_needs_reconnect(store_code)
            return None
        if refresh_expires_at is not None and refresh_expires_at <= _utcnow():
            logger.warning("refresh token expired, store must reconnect", extra={"store_code": store_code})
            self.flag_needs_reconnect(store_code)
            return None

        try:
            refresh_token = decrypt_token(refresh_blob, aad_text=store_code)
        except CryptoError:
            logger.exception("refresh token decrypt failed", extra={"store_code": store_code})
            self.set_status(store_code, AccountStatus.ERROR)
            return None

        try:
            grant = await self._api.refresh_access_token(refresh_token)
        except TikTokAuthError:
            logger.warning("refresh token rejected, store must reconnect", extra={"store_code": store_code})
            self.flag_needs_reconnect(store_code)
            return None
        except (TikTokHttpError, httpx.TransportError):
            # upstream unavailable; keep the account as is and try again next run
            logger.exception("token refresh unavailable", extra={"store_code": store_code})
            return None
        except TikTokApiError:
            logger.exception("token refresh failed", extra={"store_code": store_code})
            self.set_status(store_code, AccountStatus.ERROR)
            return None

        self.store_tokens(store_code, grant)
        logger.info(
            "tokens refreshed",
            extra={
                "store_code": store_code,
                "access_token": redact(grant.access_token),
                "expires_at": grant.expires_at.isoformat() if grant.expires_at else None,
            },
        )
        return grant
