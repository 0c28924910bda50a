from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from ordersync.models_sqlalchemy import Base

# JSONB on Postgres, plain JSON elsewhere (sqlite in tests / local runs).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    DISPATCHED = "DISPATCHED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"
    # Sentinel for upstream labels missing from the status table.
    UNKNOWN = "UNKNOWN"


class JobType(str, enum.Enum):
    NEW_ORDERS = "NEW_ORDERS"
    STATUS_SYNC = "STATUS_SYNC"
    CLEANUP = "CLEANUP"


class RunOutcome(str, enum.Enum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    ABORTED = "aborted"


class Store(Base):
    """Per-store configuration for one upstream order API (a tenant).

    Administrators create and edit these rows; the sync engine only reads them.
    ``identifier`` is the tenant key carried by every order and cursor row.
    """

    __tablename__ = "stores"

    id = Column(String(36), primary_key=True)
    identifier = Column(String(32), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False)

    base_url = Column(String(512), nullable=False)
    api_token = Column(Text, nullable=False)

    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    page_size = Column(Integer, nullable=False, default=100, server_default="100")
    # "page" (page number + per_page) or "cursor" (opaque continuation token)
    pagination_mode = Column(String(16), nullable=False, default="page", server_default="page")

    # Name of the delivery credential used by the status sync job.
    delivery_credential = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_now_utc,
        server_default=func.now(),
        onupdate=_now_utc,
    )


class Order(Base):
    """Local system-of-record row for one upstream order.

    External ids are only unique within a store, hence the composite
    (store_identifier, external_id) constraint.
    """

    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("store_identifier", "external_id", name="uq_orders_store_external_id"),
        Index("idx_orders_store_created", "store_identifier", "created_at"),
    )

    id = Column(String(36), primary_key=True)
    store_identifier = Column(
        String(32),
        ForeignKey("stores.identifier", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    external_id = Column(String(64), nullable=False)
    reference = Column(String(128), nullable=True, index=True)

    status = Column(String(32), nullable=False, default=OrderStatus.PENDING.value)
    external_status = Column(String(128), nullable=True)
    status_unknown = Column(Boolean, nullable=False, default=False, server_default="false")

    total = Column(Numeric(14, 2), nullable=True)
    customer_name = Column(String(255), nullable=True)
    customer_phone = Column(String(64), nullable=True)
    customer_region = Column(String(128), nullable=True)
    customer_city = Column(String(128), nullable=True)

    items = Column(JSONType, nullable=True)
    raw_payload = Column(JSONType, nullable=True)
    ordered_at = Column(DateTime(timezone=True), nullable=True)

    delivery_status_code = Column(Integer, nullable=True)
    delivery_status = Column(String(128), nullable=True)
    tracking_number = Column(String(128), nullable=True)
    delivery_checked_at = Column(DateTime(timezone=True), nullable=True)

    # Set when the order is confirmed gone upstream; rows are never deleted.
    upstream_missing_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_now_utc,
        server_default=func.now(),
        onupdate=_now_utc,
    )
