from pydantic import BaseModel, Field
from typing import Optional, Literal


class StoreBase(BaseModel):
    name: str
    base_url: str
    page_size: int = Field(default=100, ge=1, le=1000)
    pagination_mode: Literal["page", "cursor"] = "page"
    delivery_credential: Optional[str] = None


class StoreCreate(StoreBase):
    identifier: str = Field(min_length=1, max_length=32)
    api_token: str
    is_active: bool = True


class StoreUpdate(BaseModel):
    identifier: Optional[str] = Field(default=None, min_length=1, max_length=32)
    name: Optional[str] = None
    base_url: Optional[str] = None
    api_token: Optional[str] = None
    is_active: Optional[bool] = None
    page_size: Optional[int] = Field(default=None, ge=1, le=1000)
    pagination_mode: Optional[Literal["page", "cursor"]] = None
    delivery_credential: Optional[str] = None
