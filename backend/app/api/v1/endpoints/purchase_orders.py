from __future__ import annotations

from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from backend.app.api.deps import events_enabled, get_db, get_tenant_id, vendor_guard_enabled
from backend.app.core.config import AppSettings, get_settings
from backend.app.db.models.core_types import MovementAction
from backend.app.schemas.inventory import InventoryMovementRead
from backend.app.schemas.purchase_order import PurchaseOrderRead, ReceiveRequest
from backend.services.errors import NotFoundError
from backend.services.events import get_notifier
from backend.services.idempotency import IDEMPOTENCY_KEY_MAX_LENGTH
from backend.services.inventory import MovementLedger
from backend.services.procurement import PurchaseOrderStore, ReceiveLine, ReceivingWorkflow

router = APIRouter(prefix="/purchase-orders")


def _load_or_404(db: Session, tenant_id: str, po_id: str):
    po = PurchaseOrderStore(db).load(tenant_id, po_id)
    if not po:
        raise NotFoundError("PO not found", code="PO_NOT_FOUND", poId=po_id)
    return po


@router.get("/{po_id}", response_model=PurchaseOrderRead)
def get_po(
    po_id: str,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    return _load_or_404(db, tenant_id, po_id)


@router.post("/{po_id}/receive", response_model=PurchaseOrderRead)
def receive_po(
    po_id: str,
    payload: ReceiveRequest,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    settings: AppSettings = Depends(get_settings),
    vendor_guard: bool = Depends(vendor_guard_enabled),
    emit_events: bool = Depends(events_enabled),
    idempotency_key: str | None = Header(
        default=None, alias="Idempotency-Key", max_length=IDEMPOTENCY_KEY_MAX_LENGTH
    ),
):
    """
    Réception partielle ou totale d'un PO.

    Idempotence : header Idempotency-Key (prioritaire) ou body.idempotency_key,
    plus une signature de contenu calculée côté serveur.
    """
    workflow = ReceivingWorkflow(
        db,
        notifier=get_notifier(emit_events),
        vendor_guard=vendor_guard,
        page_size=settings.LEDGER_PAGE_SIZE,
    )
    lines = [
        ReceiveLine(
            line_ref=ln.line_ref,
            delta_qty=ln.delta_qty,
            lot=ln.lot,
            location_id=ln.location_id,
        )
        for ln in payload.lines
    ]
    try:
        return workflow.receive(
            tenant_id,
            po_id,
            lines,
            idempotency_key=idempotency_key or payload.idempotency_key,
        )
    except Exception:
        db.rollback()
        raise


@router.get("/{po_id}/receipts", response_model=list[InventoryMovementRead])
def list_receipts(
    po_id: str,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    settings: AppSettings = Depends(get_settings),
):
    """
    Historique de réception (mouvements `receive` du PO), du plus ancien au plus récent.
    """
    po = _load_or_404(db, tenant_id, po_id)
    ledger = MovementLedger(db, page_size=settings.LEDGER_PAGE_SIZE)
    rows = list(ledger.iter_by_ref(tenant_id, po.id, action=MovementAction.receive))
    return sorted(rows, key=lambda mv: (mv.created_at, mv.id))
