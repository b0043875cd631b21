import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, computed_field

from app.services.idex_types import SyncStatus


class TimePreset(str, enum.Enum):
    last12h = "last12h"
    last24h = "last24h"
    today = "today"
    yesterday = "yesterday"
    thisWeek = "thisWeek"
    last2days = "last2days"
    thisMonth = "thisMonth"


# ─── Cabinets ─────────────────────────────────────────────────────────────────

class CabinetCreate(BaseModel):
    idex_id: int = Field(gt=0)
    login: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1)
    name: str | None = Field(default=None, max_length=255)


class CabinetResponse(BaseModel):
    id: int
    idex_id: int
    login: str
    name: str | None
    created_at: datetime
    transaction_count: int = 0

    model_config = {"from_attributes": True}


class CabinetListResponse(BaseModel):
    cabinets: list[CabinetResponse]
    total_count: int
    total_pages: int
    current_page: int


# ─── Transactions ─────────────────────────────────────────────────────────────

class TransactionResponse(BaseModel):
    id: int
    external_id: str
    cabinet_id: int
    payment_method_id: str | None
    wallet: str
    amount: Any
    total: Any
    status: int | None
    approved_at: str | None
    expired_at: str | None
    created_at_external: str | None
    updated_at_external: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class TransactionListResponse(BaseModel):
    transactions: list[TransactionResponse]
    total_count: int
    total_pages: int
    current_page: int


# ─── Sync orders ──────────────────────────────────────────────────────────────

class SyncRequest(BaseModel):
    pages: int = Field(default=10, ge=1, le=100)


class CabinetSyncResult(BaseModel):
    """One entry of an order's processed map: counts or an error."""
    total_processed: int = 0
    new_transactions: int = 0
    failed: int = 0
    error: str | None = None


class SyncOrderResponse(BaseModel):
    id: int
    cabinet_id: int | None          # None = all cabinets
    pages: int
    status: SyncStatus
    processed: dict[str, CabinetSyncResult] = {}
    error: str | None
    created_at: datetime
    start_sync_at: datetime | None
    end_sync_at: datetime | None

    model_config = {"from_attributes": True}

    @computed_field
    @property
    def total_processed(self) -> int:
        return sum(r.total_processed for r in self.processed.values())

    @computed_field
    @property
    def total_new(self) -> int:
        return sum(r.new_transactions for r in self.processed.values())

    @computed_field
    @property
    def total_failed(self) -> int:
        return sum(r.failed for r in self.processed.values())


class SyncOrderListResponse(BaseModel):
    sync_orders: list[SyncOrderResponse]
    total_count: int
    total_pages: int
    current_page: int
