"""receiving schema: parties, purchase orders, ledger, idempotency, backorders

Revision ID: 3f8a2c1d9b47
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f8a2c1d9b47"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Les enums SQLAlchemy stockent les NOMS des membres (partially_received, explicit_key...)
PO_STATUS = sa.Enum(
    "draft", "submitted", "approved", "partially_received", "fulfilled", "cancelled", "closed",
    name="po_status",
)
MOVEMENT_ACTION = sa.Enum("receive", "reserve", "commit", "fulfill", "adjust", "release", name="movement_action")
BACKORDER_STATUS = sa.Enum("open", "fulfilled", "ignored", "converted", name="backorder_status")
IDEMPOTENCY_KIND = sa.Enum("explicit_key", "content_signature", name="idempotency_kind")


def upgrade() -> None:
    op.create_table(
        "parties",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("roles", sa.JSON(), nullable=False),
    )
    op.create_index("ix_parties_tenant_id", "parties", ["tenant_id"])

    op.create_table(
        "purchase_orders",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("po_number", sa.String(64)),
        sa.Column("status", PO_STATUS, nullable=False),
        sa.Column("vendor_id", sa.String(64), sa.ForeignKey("parties.id", ondelete="SET NULL")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("tenant_id", "po_number", name="uq_po_tenant_number"),
    )
    op.create_index("ix_purchase_orders_tenant_id", "purchase_orders", ["tenant_id"])

    op.create_table(
        "purchase_order_lines",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("po_id", sa.String(64), sa.ForeignKey("purchase_orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("legacy_ref", sa.String(64)),
        sa.Column("item_id", sa.String(64), nullable=False),
        sa.Column("qty_ordered", sa.Integer(), nullable=False),
        sa.Column("qty_received", sa.Integer(), nullable=False),
        sa.Column("backorder_request_ids", sa.JSON(), nullable=False),
        sa.CheckConstraint("qty_ordered > 0", name="ck_po_line_qty_pos"),
        sa.CheckConstraint("qty_received >= 0", name="ck_po_line_qty_received_nonneg"),
    )
    op.create_index("ix_purchase_order_lines_po_id", "purchase_order_lines", ["po_id"])

    op.create_table(
        "backorder_requests",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("so_id", sa.String(64), nullable=False),
        sa.Column("so_line_id", sa.String(64), nullable=False),
        sa.Column("item_id", sa.String(64), nullable=False),
        sa.Column("qty", sa.Integer(), nullable=False),
        sa.Column("remaining_qty", sa.Integer()),
        sa.Column("fulfilled_qty", sa.Integer(), nullable=False),
        sa.Column("status", BACKORDER_STATUS, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("qty >= 0", name="ck_backorder_qty_nonneg"),
    )
    op.create_index("ix_backorder_requests_tenant_id", "backorder_requests", ["tenant_id"])
    op.create_index("ix_backorder_tenant_so", "backorder_requests", ["tenant_id", "so_id"])

    op.create_table(
        "inventory_movements",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("item_id", sa.String(64), nullable=False),
        sa.Column("action", MOVEMENT_ACTION, nullable=False),
        sa.Column("qty", sa.Integer(), nullable=False),
        sa.Column("ref_id", sa.String(64)),
        sa.Column("line_ref", sa.String(64)),
        sa.Column("lot", sa.String(64)),
        sa.Column("location_id", sa.String(64)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_inventory_movements_tenant_ref", "inventory_movements", ["tenant_id", "ref_id", "id"])
    op.create_index("ix_inventory_movements_tenant_item", "inventory_movements", ["tenant_id", "item_id", "id"])

    op.create_table(
        "idempotency_records",
        sa.Column("tenant_id", sa.String(64), primary_key=True),
        sa.Column("scope", sa.String(64), primary_key=True),
        sa.Column("ref_id", sa.String(64), primary_key=True),
        sa.Column("kind", IDEMPOTENCY_KIND, primary_key=True),
        sa.Column("value", sa.String(255), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("idempotency_records")
    op.drop_index("ix_inventory_movements_tenant_item", table_name="inventory_movements")
    op.drop_index("ix_inventory_movements_tenant_ref", table_name="inventory_movements")
    op.drop_table("inventory_movements")
    op.drop_index("ix_backorder_tenant_so", table_name="backorder_requests")
    op.drop_index("ix_backorder_requests_tenant_id", table_name="backorder_requests")
    op.drop_table("backorder_requests")
    op.drop_index("ix_purchase_order_lines_po_id", table_name="purchase_order_lines")
    op.drop_table("purchase_order_lines")
    op.drop_index("ix_purchase_orders_tenant_id", table_name="purchase_orders")
    op.drop_table("purchase_orders")
    op.drop_index("ix_parties_tenant_id", table_name="parties")
    op.drop_table("parties")

    bind = op.get_bind()
    for enum_type in (IDEMPOTENCY_KIND, BACKORDER_STATUS, MOVEMENT_ACTION, PO_STATUS):
        enum_type.drop(bind, checkfirst=True)
