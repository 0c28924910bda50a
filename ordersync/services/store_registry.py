from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.orm import Session

from ordersync.models.store import StoreCreate, StoreUpdate
from ordersync.models_sqlalchemy.models import Order, Store
from ordersync.models_sqlalchemy.sync import SyncCursor, SyncRun
from ordersync.services.order_sync.errors import StoreIdentifierLockedError, StoreNotFoundError
from ordersync.utils.logger import logger, sanitize_credentials


@dataclass(frozen=True)
class StoreConfig:
    """Detached, read-only view of a Store row handed to fetchers and workers."""

    identifier: str
    name: str
    base_url: str
    api_token: str
    is_active: bool = True
    page_size: int = 100
    pagination_mode: str = "page"
    delivery_credential: Optional[str] = None

    @classmethod
    def from_row(cls, row: Store) -> "StoreConfig":
        return cls(
            identifier=row.identifier,
            name=row.name,
            base_url=row.base_url,
            api_token=row.api_token,
            is_active=bool(row.is_active),
            page_size=int(row.page_size or 100),
            pagination_mode=row.pagination_mode or "page",
            delivery_credential=row.delivery_credential,
        )


class StoreRegistry:

    def get_store(self, db: Session, identifier: str) -> Optional[StoreConfig]:
        row = db.query(Store).filter(Store.identifier == identifier).one_or_none()
        return StoreConfig.from_row(row) if row else None

    def require_store(self, db: Session, identifier: str) -> StoreConfig:
        store = self.get_store(db, identifier)
        if store is None:
            raise StoreNotFoundError(f"Store {identifier!r} is not configured")
        return store

    def list_active_stores(self, db: Session) -> List[StoreConfig]:
        rows = (
            db.query(Store)
            .filter(Store.is_active == True)  # noqa: E712
            .order_by(Store.identifier.asc())
            .all()
        )
        return [StoreConfig.from_row(row) for row in rows]

    def list_stores(self, db: Session) -> List[StoreConfig]:
        rows = db.query(Store).order_by(Store.identifier.asc()).all()
        return [StoreConfig.from_row(row) for row in rows]

    def create_store(self, db: Session, data: StoreCreate) -> StoreConfig:
        row = Store(
            id=str(uuid.uuid4()),
            identifier=data.identifier,
            name=data.name,
            base_url=data.base_url.rstrip("/"),
            api_token=data.api_token,
            is_active=data.is_active,
            page_size=data.page_size,
            pagination_mode=data.pagination_mode,
            delivery_credential=data.delivery_credential,
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        logger.info(f"Created store {row.identifier}: {sanitize_credentials(data.model_dump())}")
        return StoreConfig.from_row(row)

    def _is_referenced(self, db: Session, identifier: str) -> bool:
        for column in (Order.store_identifier, SyncCursor.store_identifier, SyncRun.store_identifier):
            if db.query(column).filter(column == identifier).first() is not None:
                return True
        return False

    def update_store(self, db: Session, identifier: str, data: StoreUpdate) -> StoreConfig:
        row = db.query(Store).filter(Store.identifier == identifier).one_or_none()
        if row is None:
            raise StoreNotFoundError(f"Store {identifier!r} is not configured")

        changes = data.model_dump(exclude_unset=True)
        new_identifier = changes.pop("identifier", None)
        if new_identifier and new_identifier != row.identifier:
            if self._is_referenced(db, row.identifier):
                raise StoreIdentifierLockedError(
                    f"Store {row.identifier!r} already has orders or sync history; identifier cannot change"
                )
            row.identifier = new_identifier

        if "base_url" in changes and changes["base_url"]:
            changes["base_url"] = changes["base_url"].rstrip("/")
        for field, value in changes.items():
            setattr(row, field, value)

        db.commit()
        db.refresh(row)
        logger.info(f"Updated store {row.identifier}: {sanitize_credentials(changes)}")
        return StoreConfig.from_row(row)

    def set_active(self, db: Session, identifier: str, is_active: bool) -> StoreConfig:
        return self.update_store(db, identifier, StoreUpdate(is_active=is_active))


store_registry = StoreRegistry()
