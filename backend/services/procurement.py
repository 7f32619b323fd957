"""
Procurement service.

Ce module orchestre la réception des PO (garde-fous, idempotence, cascade
backorders, recalcul du statut) mais ne contient AUCUNE logique de calcul de
stock.

Toute la logique stock est centralisée dans :
    backend.services.inventory

Pas de transaction multi-entités garantie par le store : la cohérence
commande / ledger / backorders repose sur l'ordre des étapes + l'idempotence.
Fenêtre at-least-once acceptée : crash entre le commit des effets et
l'écriture des marqueurs d'idempotence.
"""

from __future__ import annotations

import enum
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from backend.app.db.models.models_v1 import (
    Party,
    PurchaseOrder,
    PurchaseOrderLine,
    InventoryMovement,
    utcnow,
)
from backend.app.db.models.core_types import MovementAction, PartyRole, POStatus
from backend.services.backorders import BackorderCascade
from backend.services.errors import ConflictError, InternalError, InvalidInputError, NotFoundError
from backend.services.events import DomainEvent, EmitResult, EventNotifier, NullEventNotifier
from backend.services.idempotency import IDEMPOTENCY_KEY_MAX_LENGTH, IdempotencyGuard, canonical_signature
from backend.services.inventory import DEFAULT_PAGE_SIZE, MovementLedger

logger = logging.getLogger(__name__)

RECEIVE_SCOPE = "po-receive"

RECEIVABLE_STATUSES = {
    POStatus.approved,
    POStatus.partially_received,
}
# fulfilled passe le garde de statut : tout delta > 0 y est rejeté par
# l'over-receive (RECEIVE_EXCEEDS_REMAINING, avec le détail du reliquat)
STATUS_GUARD_PASS = RECEIVABLE_STATUSES | {POStatus.fulfilled}


class OnFailure(str, enum.Enum):
    continue_ = "continue"
    abort = "abort"


# Politique explicite par sous-étape
FAILURE_POLICY: dict[str, OnFailure] = {
    "ledger.append": OnFailure.continue_,
    "backorder.cascade": OnFailure.continue_,
    "event.emit": OnFailure.continue_,
    "order.save": OnFailure.abort,
    "idempotency.mark": OnFailure.abort,
}


@dataclass(frozen=True)
class ReceiveLine:
    line_ref: str
    delta_qty: int
    lot: str | None = None
    location_id: str | None = None


@dataclass(frozen=True)
class ResolvedLine:
    line: PurchaseOrderLine
    request: ReceiveLine


class PurchaseOrderStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def load(self, tenant_id: str, po_id: str) -> PurchaseOrder | None:
        return self.db.execute(
            select(PurchaseOrder)
            .options(selectinload(PurchaseOrder.lines))
            .where(PurchaseOrder.tenant_id == tenant_id)
            .where(PurchaseOrder.id == po_id)
        ).scalar_one_or_none()

    def save(self, po: PurchaseOrder, *, status: POStatus, received_by_line: dict[str, int]) -> PurchaseOrder:
        for line in po.lines:
            line.qty_received = int(received_by_line.get(line.id, 0))
        po.status = status
        po.updated_at = utcnow()
        self.db.flush()
        return po


def resolve_line(po: PurchaseOrder, ref: str) -> PurchaseOrderLine | None:
    """
    Id stable d'abord, puis référence legacy.
    """
    ref = str(ref)
    for line in po.lines:
        if line.id == ref:
            return line
    for line in po.lines:
        if line.legacy_ref and line.legacy_ref == ref:
            return line
    return None


def compute_status(lines: Sequence[PurchaseOrderLine], received_by_line: dict[str, int]) -> POStatus:
    # Sortie limitée à fulfilled | partially-received, même sans ligne modifiée
    if lines and all(received_by_line.get(l.id, 0) >= l.qty_ordered for l in lines):
        return POStatus.fulfilled
    return POStatus.partially_received


class ReceivingWorkflow:
    def __init__(
        self,
        db: Session,
        *,
        notifier: EventNotifier | None = None,
        vendor_guard: bool = True,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self.db = db
        self.orders = PurchaseOrderStore(db)
        self.ledger = MovementLedger(db, page_size=page_size)
        self.guard = IdempotencyGuard(db, scope=RECEIVE_SCOPE)
        self.cascade = BackorderCascade(db)
        self.notifier = notifier or NullEventNotifier()
        self.vendor_guard = vendor_guard

    # ---------- Guards ----------
    def _check_status(self, po: PurchaseOrder) -> None:
        if po.status not in STATUS_GUARD_PASS:
            logger.warning("po-receive.guard po=%s status=%s", po.id, po.status.value)
            raise ConflictError(
                f"Cannot receive when status is {po.status.value}",
                code="PO_STATUS_NOT_RECEIVABLE",
                status=po.status.value,
            )

    def _check_vendor(self, po: PurchaseOrder) -> None:
        if not po.vendor_id:
            raise InvalidInputError("Vendor required", code="VENDOR_REQUIRED")
        party = self.db.get(Party, po.vendor_id)
        if not party or party.tenant_id != po.tenant_id or not party.has_role(PartyRole.vendor):
            raise InvalidInputError(
                "Selected party is not a vendor",
                code="VENDOR_ROLE_MISSING",
                vendorId=po.vendor_id,
            )

    def _normalize(self, po: PurchaseOrder, lines: Iterable[ReceiveLine]) -> list[ResolvedLine]:
        req = list(lines or [])
        if not req:
            raise InvalidInputError("No lines to receive", code="LINES_REQUIRED")

        resolved: list[ResolvedLine] = []
        for r in req:
            line = resolve_line(po, r.line_ref)
            if line is None:
                raise InvalidInputError(
                    f"Unknown line reference {r.line_ref}",
                    code="UNKNOWN_LINE_REF",
                    lineRef=r.line_ref,
                )
            resolved.append(ResolvedLine(line=line, request=r))
        return resolved

    def _check_over_receive(self, resolved: list[ResolvedLine], prior: dict[str, int]) -> None:
        requested: dict[str, int] = defaultdict(int)
        lines_by_id: dict[str, PurchaseOrderLine] = {}
        for r in resolved:
            delta = int(r.request.delta_qty)
            if delta <= 0:
                raise InvalidInputError(
                    "deltaQty must be > 0",
                    code="INVALID_DELTA",
                    lineId=r.line.id,
                    attemptedDelta=delta,
                )
            requested[r.line.id] += delta
            lines_by_id[r.line.id] = r.line

        for line_id, delta in requested.items():
            ordered = int(lines_by_id[line_id].qty_ordered)
            received = int(prior.get(line_id, 0))
            if received + delta > ordered:
                raise ConflictError(
                    "Receive exceeds remaining",
                    code="RECEIVE_EXCEEDS_REMAINING",
                    lineId=line_id,
                    ordered=ordered,
                    received=received,
                    remaining=max(0, ordered - received),
                    attemptedDelta=delta,
                )

    # ---------- Effets ----------
    def _append_movements(self, tenant_id: str, po: PurchaseOrder, resolved: list[ResolvedLine], received: dict[str, int]) -> None:
        for r in resolved:
            res = self.ledger.append(
                InventoryMovement(
                    tenant_id=tenant_id,
                    item_id=r.line.item_id,
                    action=MovementAction.receive,
                    qty=int(r.request.delta_qty),
                    ref_id=po.id,
                    line_ref=r.line.id,
                    lot=r.request.lot,
                    location_id=r.request.location_id,
                )
            )
            if not res.ok and FAILURE_POLICY["ledger.append"] is OnFailure.abort:
                raise InternalError("Failed to append movement", code="LEDGER_APPEND_FAILED", lineId=r.line.id)
            received[r.line.id] = received.get(r.line.id, 0) + int(r.request.delta_qty)

    def _cascade_backorders(self, tenant_id: str, resolved: list[ResolvedLine]) -> None:
        for r in resolved:
            if not r.line.backorder_request_ids:
                continue
            results = self.cascade.apply(tenant_id, r.line.backorder_request_ids, int(r.request.delta_qty))
            failed = [x for x in results if not x.ok]
            if failed and FAILURE_POLICY["backorder.cascade"] is OnFailure.abort:
                raise InternalError(
                    "Backorder cascade failed",
                    code="BACKORDER_CASCADE_FAILED",
                    backorderIds=[x.backorder_id for x in failed],
                )
            logger.info(
                "po-receive.cascade line=%s delta=%s results=%s",
                r.line.id,
                r.request.delta_qty,
                [(x.backorder_id, x.outcome) for x in results],
            )

    def _emit(self, event: DomainEvent) -> EmitResult | None:
        try:
            return self.notifier.emit(event)
        except Exception:
            # FAILURE_POLICY["event.emit"] : jamais remonté, jamais de rollback
            logger.exception("event.emit failed name=%s", event.name)
            return None

    def _emit_received(self, tenant_id: str, po: PurchaseOrder, resolved: list[ResolvedLine]) -> None:
        self._emit(
            DomainEvent(
                name="po.received",
                tenant_id=tenant_id,
                payload={"poId": po.id, "status": po.status.value, "lineCount": len(resolved)},
            )
        )
        for r in resolved:
            if r.request.delta_qty <= 0:
                continue
            self._emit(
                DomainEvent(
                    name="po.line.received",
                    tenant_id=tenant_id,
                    payload={
                        "poId": po.id,
                        "lineId": r.line.id,
                        "itemId": r.line.item_id,
                        "deltaQty": r.request.delta_qty,
                        "lot": r.request.lot,
                        "locationId": r.request.location_id,
                    },
                )
            )

    # ---------- Entrée ----------
    def receive(
        self,
        tenant_id: str,
        po_id: str,
        lines: Iterable[ReceiveLine],
        *,
        idempotency_key: str | None = None,
    ) -> PurchaseOrder:
        key = (idempotency_key or "").strip() or None

        po = self.orders.load(tenant_id, po_id)
        if not po:
            raise NotFoundError("PO not found", code="PO_NOT_FOUND", poId=po_id)
        logger.info("po-receive.load tenant=%s po=%s status=%s", tenant_id, po.id, po.status.value)

        # Une clé non persistable ne pourrait jamais être marquée : rejet avant tout effet
        if key and len(key) > IDEMPOTENCY_KEY_MAX_LENGTH:
            raise InvalidInputError(
                f"Idempotency key longer than {IDEMPOTENCY_KEY_MAX_LENGTH} characters",
                code="IDEMPOTENCY_KEY_TOO_LONG",
                maxLength=IDEMPOTENCY_KEY_MAX_LENGTH,
            )

        # Rejeu littéral : avant toute validation
        if self.guard.check_key(tenant_id, po.id, key):
            logger.info("po-receive.idempotent po=%s kind=explicit-key", po.id)
            return po

        self._check_status(po)
        if self.vendor_guard:
            self._check_vendor(po)

        resolved = self._normalize(po, lines)
        prior = self.ledger.sum_received_by_line(tenant_id, po.id)

        # Avant la signature : un rejeu invalide est toujours revalidé
        self._check_over_receive(resolved, prior)

        signature = canonical_signature(
            (r.line.id, r.request.delta_qty, r.request.lot, r.request.location_id) for r in resolved
        )
        if self.guard.check_signature(tenant_id, po.id, signature):
            logger.info("po-receive.idempotent po=%s kind=content-signature", po.id)
            return po

        received = {line.id: int(prior.get(line.id, 0)) for line in po.lines}
        self._append_movements(tenant_id, po, resolved, received)
        self._cascade_backorders(tenant_id, resolved)

        status = compute_status(po.lines, received)
        before = po.status
        try:
            self.orders.save(po, status=status, received_by_line=received)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("po-receive.save failed po=%s", po_id)
            raise InternalError("Failed to persist purchase order", code="PO_SAVE_FAILED", poId=po_id) from e
        logger.info("po-receive.saved po=%s before=%s after=%s", po.id, before.value, status.value)

        # TODO: rejouer les marqueurs depuis le ledger si cette écriture échoue (fenêtre at-least-once)
        try:
            self.guard.mark_applied(tenant_id, po.id, signature=signature, key=key)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("po-receive.mark_applied failed after commit po=%s err=%s", po_id, e)
            raise InternalError("Failed to record idempotency", code="IDEMPOTENCY_MARK_FAILED", poId=po_id) from e

        self._emit_received(tenant_id, po, resolved)
        return po
