from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from backend.app.db.models.core_types import MovementAction


class InventoryMovementRead(BaseModel):
    id: str
    item_id: str
    action: MovementAction
    qty: int
    ref_id: str | None = None
    line_ref: str | None = None
    lot: str | None = None
    location_id: str | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class MovementPageRead(BaseModel):
    items: list[InventoryMovementRead] = Field(default_factory=list)
    next: str | None = None


class OnHandRead(BaseModel):
    item_id: str
    on_hand: int
    reserved: int
    available: int  # on_hand - reserved
