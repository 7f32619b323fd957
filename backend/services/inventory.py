from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Iterator

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.app.db.models.models_v1 import InventoryMovement, new_id
from backend.app.db.models.core_types import MovementAction

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 200


@dataclass(frozen=True)
class AppendResult:
    ok: bool
    movement_id: str
    error: str | None = None


@dataclass(frozen=True)
class MovementPage:
    items: list[InventoryMovement] = field(default_factory=list)
    next: str | None = None


@dataclass(frozen=True)
class Counters:
    on_hand: int = 0
    reserved: int = 0

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved


class MovementLedger:
    """
    Ledger append-only des mouvements de stock.

    Source de vérité unique pour les quantités : "reçu par ligne" et "on hand"
    sont recalculés par scan, jamais stockés comme autorité.

    Pagination keyset sur l'id (curseur = dernier id de la page).
    """

    def __init__(self, db: Session, *, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        self.db = db
        self.page_size = page_size

    def append(self, movement: InventoryMovement) -> AppendResult:
        """
        Insert write-once dans son propre SAVEPOINT.

        Un échec est loggé et rendu dans le résultat, jamais levé : l'appelant
        décide (cf. FAILURE_POLICY dans procurement).
        """
        if not movement.id:
            movement.id = new_id()
        try:
            with self.db.begin_nested():
                self.db.add(movement)
        except SQLAlchemyError as e:
            logger.warning(
                "ledger.append failed tenant=%s ref=%s line=%s err=%s",
                movement.tenant_id,
                movement.ref_id,
                movement.line_ref,
                e,
            )
            return AppendResult(ok=False, movement_id=movement.id, error=str(e))
        return AppendResult(ok=True, movement_id=movement.id)

    def _page(self, stmt, *, limit: int | None, cursor: str | None) -> MovementPage:
        limit = max(1, min(1000, limit or self.page_size))
        if cursor:
            stmt = stmt.where(InventoryMovement.id > cursor)
        rows = self.db.execute(stmt.order_by(InventoryMovement.id.asc()).limit(limit + 1)).scalars().all()
        has_more = len(rows) > limit
        items = list(rows[:limit])
        return MovementPage(items=items, next=items[-1].id if has_more else None)

    def query_by_ref(
        self,
        tenant_id: str,
        ref_id: str,
        *,
        limit: int | None = None,
        cursor: str | None = None,
        action: MovementAction | None = None,
    ) -> MovementPage:
        stmt = (
            select(InventoryMovement)
            .where(InventoryMovement.tenant_id == tenant_id)
            .where(InventoryMovement.ref_id == ref_id)
        )
        if action is not None:
            stmt = stmt.where(InventoryMovement.action == action)
        return self._page(stmt, limit=limit, cursor=cursor)

    def query_by_item(
        self,
        tenant_id: str,
        item_id: str,
        *,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> MovementPage:
        stmt = (
            select(InventoryMovement)
            .where(InventoryMovement.tenant_id == tenant_id)
            .where(InventoryMovement.item_id == item_id)
        )
        return self._page(stmt, limit=limit, cursor=cursor)

    def iter_by_ref(self, tenant_id: str, ref_id: str, *, action: MovementAction | None = None) -> Iterator[InventoryMovement]:
        cursor = None
        while True:
            page = self.query_by_ref(tenant_id, ref_id, cursor=cursor, action=action)
            yield from page.items
            if not page.next:
                return
            cursor = page.next

    def iter_by_item(self, tenant_id: str, item_id: str) -> Iterator[InventoryMovement]:
        cursor = None
        while True:
            page = self.query_by_item(tenant_id, item_id, cursor=cursor)
            yield from page.items
            if not page.next:
                return
            cursor = page.next

    def sum_received_by_line(self, tenant_id: str, order_id: str) -> dict[str, int]:
        """
        Somme des mouvements `receive` d'une commande, par line_ref.

        Scan O(n) sur toutes les pages (pas d'index secondaire par ligne).
        """
        totals: dict[str, int] = defaultdict(int)
        for mv in self.iter_by_ref(tenant_id, order_id, action=MovementAction.receive):
            if mv.line_ref:
                totals[mv.line_ref] += int(mv.qty)
        return dict(totals)


def derive_counters(movements: Iterable[InventoryMovement]) -> Counters:
    """
    Compteurs on hand / reserved dérivés des mouvements.

    - receive / adjust : +on_hand (adjust peut être négatif)
    - reserve          : +reserved
    - commit           : -on_hand, -reserved (plancher 0)
    - release          : -reserved (plancher 0)
    - fulfill          : no-op
    """
    on_hand = 0
    reserved = 0
    for mv in movements:
        q = int(mv.qty or 0)
        if not q:
            continue
        if mv.action in (MovementAction.receive, MovementAction.adjust):
            on_hand += q
        elif mv.action == MovementAction.reserve:
            reserved += q
        elif mv.action == MovementAction.commit:
            on_hand -= q
            reserved = max(0, reserved - q)
        elif mv.action == MovementAction.release:
            reserved = max(0, reserved - q)
    return Counters(on_hand=on_hand, reserved=reserved)
