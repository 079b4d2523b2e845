from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from backend.app.db.models.core_types import SyncStatus


class StockEntryRead(BaseModel):
    product_id: int
    warehouse_id: int

    quantity: int
    safety_stock: int

    model_config = ConfigDict(from_attributes=True)


class TransferLineCreate(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)


class TransferCreate(BaseModel):
    origin_warehouse_id: int
    destination_warehouse_id: int
    lines: list[TransferLineCreate] = Field(min_length=1)
    note: str | None = None
    happened_at: datetime | None = None


class TransferLineRead(BaseModel):
    product_id: int
    quantity: int

    model_config = ConfigDict(from_attributes=True)


class TransferRead(BaseModel):
    id: int
    origin_warehouse_id: int
    destination_warehouse_id: int
    note: str | None
    happened_at: datetime
    idempotency_key: str | None
    lines: list[TransferLineRead]

    model_config = ConfigDict(from_attributes=True)


class ListingRead(BaseModel):
    id: int
    account_id: int
    external_item_id: str
    product_id: int | None
    title: str | None
    seller_sku: str | None
    logistic_type: str | None
    price: int | None
    original_price: int | None
    has_promotion: bool
    discount_pct: int
    available_quantity: int
    sold_quantity: int
    sold_in_period: int
    sync_status: SyncStatus
    sync_error: str | None
    last_sync_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class ListingLink(BaseModel):
    product_id: int
