from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from backend.app.api.deps import events_enabled, get_db, get_tenant_id
from backend.app.db.models.core_types import BackorderStatus
from backend.app.schemas.backorder import BackorderRequestRead
from backend.services.backorders import get_backorder, transition_backorder
from backend.services.events import get_notifier

router = APIRouter(prefix="/backorders")


@router.get("/{backorder_id}", response_model=BackorderRequestRead)
def read_backorder(
    backorder_id: str,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    return get_backorder(db, tenant_id, backorder_id)


@router.post("/{backorder_id}/ignore", response_model=BackorderRequestRead)
def ignore_backorder(
    backorder_id: str,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    emit_events: bool = Depends(events_enabled),
):
    try:
        return transition_backorder(
            db, tenant_id, backorder_id, BackorderStatus.ignored, notifier=get_notifier(emit_events)
        )
    except Exception:
        db.rollback()
        raise


@router.post("/{backorder_id}/convert", response_model=BackorderRequestRead)
def convert_backorder(
    backorder_id: str,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    emit_events: bool = Depends(events_enabled),
):
    try:
        return transition_backorder(
            db, tenant_id, backorder_id, BackorderStatus.converted, notifier=get_notifier(emit_events)
        )
    except Exception:
        db.rollback()
        raise
