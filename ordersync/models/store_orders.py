from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator

from ordersync.services.order_sync.external_ids import normalize_external_id


class RawOrderItem(BaseModel):
    product_id: Optional[str] = None
    title: Optional[str] = None
    sku: Optional[str] = None
    quantity: int = 1
    unit_price: Optional[Decimal] = None
    total_price: Optional[Decimal] = None

    @field_validator("product_id", "sku", mode="before")
    @classmethod
    def _coerce_str(cls, value: Any) -> Any:
        if value is None:
            return None
        return str(value)


class RawOrder(BaseModel):
    """One order as reported by a store's order API.

    Only the fields the sync engine needs; anything else stays in
    ``raw_payload`` on the local row.
    """

    id: str
    reference: Optional[str] = None
    status: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("order_state_name", "status", "state"),
    )
    full_name: Optional[str] = None
    telephone: Optional[str] = None
    wilaya: Optional[str] = None
    commune: Optional[str] = None
    items: List[RawOrderItem] = Field(default_factory=list)
    total: Optional[Decimal] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, value: Any) -> str:
        if value is None or isinstance(value, bool):
            raise ValueError("order id is required")
        text = normalize_external_id(value)
        if not text:
            raise ValueError("order id is empty")
        return text

    @field_validator("reference", "telephone", mode="before")
    @classmethod
    def _optional_str(cls, value: Any) -> Any:
        if value is None:
            return None
        return str(value)

    @field_validator("items", mode="before")
    @classmethod
    def _items_default(cls, value: Any) -> Any:
        return value or []

    @property
    def external_id(self) -> str:
        return self.id
