from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    String,
    Integer,
    DateTime,
    ForeignKey,
    Enum,
    JSON,
    UniqueConstraint,
    Index,
    CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.db.base import Base
from backend.app.db.models.core_types import (
    PartyRole,
    POStatus,
    MovementAction,
    BackorderStatus,
    IdempotencyKind,
)


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------- MASTER DATA ----------
class Party(Base):
    __tablename__ = "parties"
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # ex: ["vendor", "customer"]
    roles: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)

    def has_role(self, role: PartyRole) -> bool:
        return role.value in (self.roles or [])


# ---------- PROCUREMENT / INBOUND ----------
class PurchaseOrder(Base):
    __tablename__ = "purchase_orders"
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    po_number: Mapped[str | None] = mapped_column(String(64))
    status: Mapped[POStatus] = mapped_column(Enum(POStatus, name="po_status"), default=POStatus.draft, nullable=False)
    vendor_id: Mapped[str | None] = mapped_column(ForeignKey("parties.id", ondelete="SET NULL"))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    vendor: Mapped[Party | None] = relationship()
    lines: Mapped[list["PurchaseOrderLine"]] = relationship(
        back_populates="po",
        cascade="all, delete-orphan",
        order_by="PurchaseOrderLine.position",
    )

    __table_args__ = (UniqueConstraint("tenant_id", "po_number", name="uq_po_tenant_number"),)


class PurchaseOrderLine(Base):
    __tablename__ = "purchase_order_lines"
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    po_id: Mapped[str] = mapped_column(ForeignKey("purchase_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Ancienne référence de ligne (clients legacy), acceptée en entrée de réception
    legacy_ref: Mapped[str | None] = mapped_column(String(64))
    item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    qty_ordered: Mapped[int] = mapped_column(Integer, nullable=False)
    # Dérivé du ledger, jamais une autorité indépendante
    qty_received: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    backorder_request_ids: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)

    po: Mapped[PurchaseOrder] = relationship(back_populates="lines")

    __table_args__ = (
        CheckConstraint("qty_ordered > 0", name="ck_po_line_qty_pos"),
        CheckConstraint("qty_received >= 0", name="ck_po_line_qty_received_nonneg"),
    )


class BackorderRequest(Base):
    __tablename__ = "backorder_requests"
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    so_id: Mapped[str] = mapped_column(String(64), nullable=False)
    so_line_id: Mapped[str] = mapped_column(String(64), nullable=False)
    item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    qty: Mapped[int] = mapped_column(Integer, nullable=False)
    remaining_qty: Mapped[int | None] = mapped_column(Integer)
    fulfilled_qty: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[BackorderStatus] = mapped_column(
        Enum(BackorderStatus, name="backorder_status"),
        default=BackorderStatus.open,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("qty >= 0", name="ck_backorder_qty_nonneg"),
        Index("ix_backorder_tenant_so", "tenant_id", "so_id"),
    )


# ---------- INVENTORY ----------
class InventoryMovement(Base):
    """
    Mouvement de stock immuable.

    Append-only : jamais mis à jour ni supprimé. Les compteurs (reçu par ligne,
    on hand) sont toujours recalculés à partir de cette table.
    """

    __tablename__ = "inventory_movements"
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[MovementAction] = mapped_column(Enum(MovementAction, name="movement_action"), nullable=False)
    qty: Mapped[int] = mapped_column(Integer, nullable=False)

    ref_id: Mapped[str | None] = mapped_column(String(64))  # PO id
    line_ref: Mapped[str | None] = mapped_column(String(64))
    lot: Mapped[str | None] = mapped_column(String(64))
    location_id: Mapped[str | None] = mapped_column(String(64))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_inventory_movements_tenant_ref", "tenant_id", "ref_id", "id"),
        Index("ix_inventory_movements_tenant_item", "tenant_id", "item_id", "id"),
    )


# ---------- IDEMPOTENCE ----------
class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"
    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    scope: Mapped[str] = mapped_column(String(64), primary_key=True)
    ref_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[IdempotencyKind] = mapped_column(Enum(IdempotencyKind, name="idempotency_kind"), primary_key=True)
    value: Mapped[str] = mapped_column(String(255), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
