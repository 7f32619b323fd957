from pydantic import BaseModel

from backend.app.db.models.core_types import BackorderStatus


class BackorderRequestRead(BaseModel):
    id: str
    so_id: str
    so_line_id: str
    item_id: str
    qty: int
    remaining_qty: int | None = None
    fulfilled_qty: int
    status: BackorderStatus

    class Config:
        from_attributes = True
