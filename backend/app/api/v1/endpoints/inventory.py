from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from backend.app.api.deps import get_db, get_tenant_id
from backend.app.core.config import AppSettings, get_settings
from backend.app.schemas.inventory import MovementPageRead, OnHandRead
from backend.services.errors import InvalidInputError
from backend.services.inventory import MovementLedger, derive_counters

router = APIRouter(prefix="/inventory")


@router.get("/movements", response_model=MovementPageRead)
def list_movements(
    ref_id: str | None = None,
    item_id: str | None = None,
    limit: int | None = Query(default=None, ge=1, le=1000),
    next: str | None = None,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    settings: AppSettings = Depends(get_settings),
):
    """
    Ledger (READ ONLY), paginé par curseur `next`.
    Filtre obligatoire : ref_id ou item_id.
    """
    ledger = MovementLedger(db, page_size=settings.LEDGER_PAGE_SIZE)
    if ref_id:
        page = ledger.query_by_ref(tenant_id, ref_id, limit=limit, cursor=next)
    elif item_id:
        page = ledger.query_by_item(tenant_id, item_id, limit=limit, cursor=next)
    else:
        raise InvalidInputError("ref_id or item_id is required", code="FILTER_REQUIRED")
    return {"items": page.items, "next": page.next}


@router.get("/{item_id}/onhand", response_model=OnHandRead)
def get_onhand(
    item_id: str,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    settings: AppSettings = Depends(get_settings),
):
    ledger = MovementLedger(db, page_size=settings.LEDGER_PAGE_SIZE)
    c = derive_counters(ledger.iter_by_item(tenant_id, item_id))
    return {"item_id": item_id, "on_hand": c.on_hand, "reserved": c.reserved, "available": c.available}
