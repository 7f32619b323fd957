from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.app.db.models.models_v1 import BackorderRequest, utcnow
from backend.app.db.models.core_types import BackorderStatus
from backend.services.errors import ConflictError, NotFoundError
from backend.services.events import DomainEvent, EventNotifier, NullEventNotifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CascadeResult:
    backorder_id: str
    outcome: str  # "updated" | "fulfilled" | "missing" | "failed"
    remaining_qty: int | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome != "failed"


class BackorderCascade:
    """
    Propagation d'une réception de ligne PO vers les backorders liés.

    Comportement observé conservé tel quel : le delta COMPLET est appliqué à
    chaque backorder lié (pas de répartition entre backorders).
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def _apply_one(self, tenant_id: str, backorder_id: str, delta: int) -> CascadeResult:
        bo = self.db.get(BackorderRequest, backorder_id)
        if not bo or bo.tenant_id != tenant_id:
            return CascadeResult(backorder_id, "missing")

        qty = int(bo.qty or 0)
        if bo.remaining_qty is not None:
            remaining = int(bo.remaining_qty)
        else:
            remaining = max(0, qty - int(bo.fulfilled_qty or 0))
        remaining -= delta

        if remaining <= 0:
            bo.status = BackorderStatus.fulfilled
            bo.fulfilled_qty = qty
            bo.remaining_qty = 0
            outcome = "fulfilled"
        else:
            bo.remaining_qty = remaining
            bo.fulfilled_qty = max(0, qty - remaining)
            outcome = "updated"
        bo.updated_at = utcnow()
        return CascadeResult(backorder_id, outcome, remaining_qty=bo.remaining_qty)

    def apply(self, tenant_id: str, backorder_ids: Iterable[str], delta: int) -> list[CascadeResult]:
        results: list[CascadeResult] = []
        for bo_id in backorder_ids or []:
            try:
                with self.db.begin_nested():
                    res = self._apply_one(tenant_id, str(bo_id), delta)
            except SQLAlchemyError as e:
                logger.warning("backorder.cascade failed tenant=%s backorder=%s err=%s", tenant_id, bo_id, e)
                res = CascadeResult(str(bo_id), "failed", error=str(e))
            results.append(res)
        return results


def get_backorder(db: Session, tenant_id: str, backorder_id: str) -> BackorderRequest:
    bo = db.get(BackorderRequest, backorder_id)
    if not bo or bo.tenant_id != tenant_id:
        raise NotFoundError("BackorderRequest not found", code="BACKORDER_NOT_FOUND", backorderId=backorder_id)
    return bo


def transition_backorder(
    db: Session,
    tenant_id: str,
    backorder_id: str,
    target: BackorderStatus,
    *,
    notifier: EventNotifier | None = None,
) -> BackorderRequest:
    """
    open -> ignored | converted. Tout autre statut de départ est un conflit.

    Événement `backorder.<statut>` émis après commit, best-effort.
    """
    bo = get_backorder(db, tenant_id, backorder_id)
    if bo.status != BackorderStatus.open:
        raise ConflictError(
            f"Cannot mark {target.value} when status is {bo.status.value}",
            code="BACKORDER_STATUS_CONFLICT",
            status=bo.status.value,
        )
    before = bo.status
    bo.status = target
    bo.updated_at = utcnow()
    db.commit()
    logger.info("backorder.%s id=%s before=%s after=%s", target.value, bo.id, before.value, target.value)

    event = DomainEvent(
        name=f"backorder.{target.value}",
        tenant_id=tenant_id,
        payload={"backorderId": bo.id, "before": before.value, "after": target.value},
    )
    try:
        (notifier or NullEventNotifier()).emit(event)
    except Exception:
        logger.exception("event.emit failed name=%s", event.name)
    return bo
