"""initial stock sync schema

Revision ID: 5f0c2a7d91b3
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5f0c2a7d91b3"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

WAREHOUSE_ROLE = sa.Enum("local", "fulfillment", name="warehouse_role")
SYNC_STATUS = sa.Enum("pending", "synced", "error", "ignored", name="sync_status")
SYNC_RUN_STATUS = sa.Enum("running", "success", "partial", "cancelled", "failed", name="sync_run_status")


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    # ---------- MASTER DATA ----------
    op.create_table(
        "products",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("sku", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("average_cost", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unit_multiplier", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.CheckConstraint("average_cost >= 0", name="ck_product_average_cost_nonneg"),
        sa.CheckConstraint("unit_multiplier > 0", name="ck_product_unit_multiplier_pos"),
    )
    op.create_table(
        "warehouses",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False, unique=True),
        sa.Column("role", WAREHOUSE_ROLE, nullable=False, server_default="local"),
        _ts("created_at"),
    )

    # ---------- INVENTORY ----------
    op.create_table(
        "stock_entries",
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("warehouse_id", sa.BigInteger(), sa.ForeignKey("warehouses.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("safety_stock", sa.Integer(), nullable=False, server_default="0"),
        _ts("updated_at"),
        sa.CheckConstraint("quantity >= 0", name="ck_stock_entry_quantity_nonneg"),
        sa.CheckConstraint("safety_stock >= 0", name="ck_stock_entry_safety_nonneg"),
    )
    op.create_table(
        "transfers",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column(
            "origin_warehouse_id",
            sa.BigInteger(),
            sa.ForeignKey("warehouses.id", ondelete="RESTRICT"),
            nullable=False,
            index=True,
        ),
        sa.Column(
            "destination_warehouse_id",
            sa.BigInteger(),
            sa.ForeignKey("warehouses.id", ondelete="RESTRICT"),
            nullable=False,
            index=True,
        ),
        sa.Column("note", sa.Text()),
        _ts("happened_at"),
        sa.Column("idempotency_key", sa.String(64), unique=True),
        _ts("created_at"),
        sa.CheckConstraint(
            "origin_warehouse_id <> destination_warehouse_id",
            name="ck_transfer_origin_ne_destination",
        ),
    )
    op.create_table(
        "transfer_lines",
        sa.Column("transfer_id", sa.BigInteger(), sa.ForeignKey("transfers.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), primary_key=True),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_transfer_line_qty_pos"),
    )

    # ---------- MARKETPLACE ----------
    op.create_table(
        "external_accounts",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False, index=True),
        sa.Column("external_user_id", sa.String(64), nullable=False, index=True),
        sa.Column("nickname", sa.String(255)),
        sa.Column("site_id", sa.String(8)),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=False),
        _ts("expires_at"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("user_id", "external_user_id", name="uq_external_account_user"),
    )
    op.create_table(
        "listings",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column(
            "account_id",
            sa.BigInteger(),
            sa.ForeignKey("external_accounts.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("external_item_id", sa.String(64), nullable=False, unique=True),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="SET NULL"), index=True),
        sa.Column("title", sa.String(255)),
        sa.Column("seller_sku", sa.String(64), index=True),
        sa.Column("status", sa.String(32)),
        sa.Column("logistic_type", sa.String(32)),
        sa.Column("price", sa.Integer()),
        sa.Column("original_price", sa.Integer()),
        sa.Column("has_promotion", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("discount_pct", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("available_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sold_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sold_in_period", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sync_status", SYNC_STATUS, nullable=False, server_default="pending"),
        sa.Column("sync_error", sa.Text()),
        _ts("external_last_updated", nullable=True),
        _ts("last_sync_at", nullable=True),
        sa.CheckConstraint("available_quantity >= 0", name="ck_listing_available_nonneg"),
        sa.CheckConstraint("discount_pct >= 0 AND discount_pct <= 100", name="ck_listing_discount_0_100"),
    )
    op.create_table(
        "order_records",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column(
            "account_id",
            sa.BigInteger(),
            sa.ForeignKey("external_accounts.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("external_order_id", sa.String(64), nullable=False, unique=True),
        sa.Column("status", sa.String(32), nullable=False),
        _ts("ordered_at"),
        _ts("external_last_updated", nullable=True),
        _ts("ingested_at"),
    )
    op.create_index("ix_order_records_account_time", "order_records", ["account_id", "ordered_at"])
    op.create_table(
        "order_record_lines",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column(
            "order_id",
            sa.BigInteger(),
            sa.ForeignKey("order_records.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("external_item_id", sa.String(64), nullable=False, index=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Integer(), nullable=False, server_default="0"),
        sa.CheckConstraint("quantity > 0", name="ck_order_line_qty_pos"),
    )

    # ---------- REPLENISHMENT ----------
    op.create_table(
        "replenishment_configs",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="CASCADE"), unique=True),
        sa.Column("avg_delivery_days", sa.Integer()),
        sa.Column("full_release_days", sa.Integer()),
        sa.Column("safety_stock", sa.Integer()),
        sa.Column("min_coverage_days", sa.Integer()),
        sa.Column("analysis_period_days", sa.Integer()),
        sa.CheckConstraint("avg_delivery_days IS NULL OR avg_delivery_days >= 0", name="ck_repl_delivery_nonneg"),
        sa.CheckConstraint("full_release_days IS NULL OR full_release_days >= 0", name="ck_repl_release_nonneg"),
        sa.CheckConstraint("safety_stock IS NULL OR safety_stock >= 0", name="ck_repl_safety_nonneg"),
        sa.CheckConstraint("min_coverage_days IS NULL OR min_coverage_days >= 0", name="ck_repl_coverage_nonneg"),
        sa.CheckConstraint("analysis_period_days IS NULL OR analysis_period_days > 0", name="ck_repl_period_pos"),
    )

    # ---------- AUDIT SYNC ----------
    op.create_table(
        "webhook_deliveries",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("account_id", sa.BigInteger(), sa.ForeignKey("external_accounts.id", ondelete="SET NULL")),
        sa.Column("topic", sa.String(64), nullable=False),
        sa.Column("resource", sa.String(255), nullable=False),
        sa.Column("external_user_id", sa.String(64), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("error", sa.Text()),
        _ts("received_at"),
        _ts("processed_at", nullable=True),
    )
    op.create_index("ix_webhook_deliveries_resource", "webhook_deliveries", ["topic", "resource"])
    op.create_table(
        "sync_runs",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column(
            "account_id",
            sa.BigInteger(),
            sa.ForeignKey("external_accounts.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("sync_type", sa.String(32), nullable=False),
        sa.Column("status", SYNC_RUN_STATUS, nullable=False, server_default="running"),
        sa.Column("pages_fetched", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pages_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("items_applied", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("items_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("warnings", sa.Text()),
        _ts("started_at"),
        _ts("completed_at", nullable=True),
    )


def downgrade() -> None:
    op.drop_table("sync_runs")
    op.drop_index("ix_webhook_deliveries_resource", table_name="webhook_deliveries")
    op.drop_table("webhook_deliveries")
    op.drop_table("replenishment_configs")
    op.drop_table("order_record_lines")
    op.drop_index("ix_order_records_account_time", table_name="order_records")
    op.drop_table("order_records")
    op.drop_table("listings")
    op.drop_table("external_accounts")
    op.drop_table("transfer_lines")
    op.drop_table("transfers")
    op.drop_table("stock_entries")
    op.drop_table("warehouses")
    op.drop_table("products")

    bind = op.get_bind()
    SYNC_RUN_STATUS.drop(bind, checkfirst=True)
    SYNC_STATUS.drop(bind, checkfirst=True)
    WAREHOUSE_ROLE.drop(bind, checkfirst=True)
