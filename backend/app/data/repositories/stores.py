"""Store registry and the connection status of each store's account."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.data.models.stores import Store, StoreAccount

NOT_CONNECTED = "NOT_CONNECTED"


class StoreExistsError(Exception):
    def __init__(self, store_code: str):
        super().__init__(f"store {store_code} already exists")
        self.store_code = store_code


class StoreDTO(BaseModel):
    store_code: str
    store_name: str
    pic_name: Optional[str] = None
    pic_contact: Optional[str] = None
    status: str = NOT_CONNECTED
    last_sync_time: Optional[datetime] = None
    connected_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class StoreAccountDTO(BaseModel):
    id: int
    store_code: str
    platform: str
    open_id: Optional[str] = None
    status: str
    has_valid_token: bool
    token_expired_at: Optional[datetime] = None
    last_sync_time: Optional[datetime] = None
    connected_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_value(value) -> str:
    return str(getattr(value, "value", value))


def _to_dto(store: Store, account: StoreAccount | None) -> StoreDTO:
    return StoreDTO(
        store_code=store.store_code,
        store_name=store.store_name,
        pic_name=store.pic_name,
        pic_contact=store.pic_contact,
        status=_enum_value(account.status) if account is not None else NOT_CONNECTED,
        last_sync_time=account.last_sync_time if account is not None else None,
        connected_at=account.connected_at if account is not None else None,
        created_at=store.created_at,
    )


def store_exists(db: Session, store_code: str) -> bool:
    if db.get(Store, store_code) is not None:
        return True
    # accounts may be provisioned before the store row
    return db.scalar(select(StoreAccount.id).where(StoreAccount.store_code == store_code)) is not None


def list_stores_with_status(db: Session) -> list[StoreDTO]:
    rows = db.execute(
        select(Store, StoreAccount)
        .outerjoin(StoreAccount, StoreAccount.store_code == Store.store_code)
        .order_by(Store.store_code)
    ).all()
    return [_to_dto(store, account) for store, account in rows]


def get_store_with_status(db: Session, store_code: str) -> Optional[StoreDTO]:
    row = db.execute(
        select(Store, StoreAccount)
        .outerjoin(StoreAccount, StoreAccount.store_code == Store.store_code)
        .where(Store.store_code == store_code)
    ).first()
    if row is None:
        return None
    return _to_dto(row[0], row[1])


def create_store(
    db: Session,
    *,
    store_code: str,
    store_name: str,
    pic_name: str | None = None,
    pic_contact: str | None = None,
) -> StoreDTO:
    """Insert a store row; the caller commits."""
    if db.get(Store, store_code) is not None:
        raise StoreExistsError(store_code)
    store = Store(
        store_code=store_code,
        store_name=store_name,
        pic_name=pic_name,
        pic_contact=pic_contact,
        created_at=_utcnow(),
    )
    db.add(store)
    db.flush()
    return _to_dto(store, None)


def list_accounts_by_store(db: Session, store_code: str) -> list[StoreAccountDTO]:
    rows = db.scalars(
        select(StoreAccount).where(StoreAccount.store_code == store_code).order_by(StoreAccount.id)
    ).all()
    return [
        StoreAccountDTO(
            id=row.id,
            store_code=row.store_code,
            platform=row.platform,
            open_id=row.open_id,
            status=_enum_value(row.status),
            has_valid_token=_enum_value(row.status) == "CONNECTED",
            token_expired_at=row.token_expired_at,
            last_sync_time=row.last_sync_time,
            connected_at=row.connected_at,
            updated_at=row.updated_at,
        )
        for row in rows
    ]
