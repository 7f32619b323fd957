from __future__ import annotations

from datetime import datetime

from pydantic import AliasChoices, BaseModel, Field

from backend.app.db.models.core_types import POStatus
from backend.services.idempotency import IDEMPOTENCY_KEY_MAX_LENGTH


class PurchaseOrderLineRead(BaseModel):
    id: str
    legacy_ref: str | None = None
    item_id: str
    qty_ordered: int
    qty_received: int  # READ ONLY — dérivé du ledger
    backorder_request_ids: list[str] = Field(default_factory=list)

    class Config:
        from_attributes = True


class PurchaseOrderRead(BaseModel):
    id: str
    tenant_id: str
    po_number: str | None = None
    status: POStatus
    vendor_id: str | None = None
    updated_at: datetime
    lines: list[PurchaseOrderLineRead] = Field(default_factory=list)

    class Config:
        from_attributes = True


class ReceiveLineIn(BaseModel):
    # id stable ou référence legacy
    line_ref: str = Field(min_length=1, max_length=64, validation_alias=AliasChoices("line_ref", "line_id"))
    delta_qty: int
    lot: str | None = Field(default=None, max_length=64)
    location_id: str | None = Field(default=None, max_length=64)


class ReceiveRequest(BaseModel):
    lines: list[ReceiveLineIn] = Field(default_factory=list)
    idempotency_key: str | None = Field(default=None, max_length=IDEMPOTENCY_KEY_MAX_LENGTH)
