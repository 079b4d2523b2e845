from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    String,
    Integer,
    BigInteger,
    DateTime,
    Boolean,
    ForeignKey,
    Text,
    Enum,
    UniqueConstraint,
    Index,
    CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.core.clock import utcnow
from backend.app.db.base import Base
from backend.app.db.models.core_types import (
    WarehouseRole,
    SyncStatus,
    SyncRunStatus,
)

# SQLite n'auto-incrémente que INTEGER PRIMARY KEY (tests)
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


# ---------- MASTER DATA ----------
class Product(Base):
    __tablename__ = "products"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    sku: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # coût moyen en centimes ; modifié par la confirmation d'achat (hors moteur)
    average_cost: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unit_multiplier: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("average_cost >= 0", name="ck_product_average_cost_nonneg"),
        CheckConstraint("unit_multiplier > 0", name="ck_product_unit_multiplier_pos"),
    )


class Warehouse(Base):
    __tablename__ = "warehouses"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    role: Mapped[WarehouseRole] = mapped_column(
        Enum(WarehouseRole, name="warehouse_role"),
        default=WarehouseRole.local,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    # suppression d'un entrepôt => suppression de ses lignes de stock
    stock_entries: Mapped[list["StockEntry"]] = relationship(
        back_populates="warehouse",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


# ---------- INVENTORY ----------
class StockEntry(Base):
    __tablename__ = "stock_entries"
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), primary_key=True)
    warehouse_id: Mapped[int] = mapped_column(ForeignKey("warehouses.id", ondelete="CASCADE"), primary_key=True)

    quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    safety_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    warehouse: Mapped[Warehouse] = relationship(back_populates="stock_entries")

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_stock_entry_quantity_nonneg"),
        CheckConstraint("safety_stock >= 0", name="ck_stock_entry_safety_nonneg"),
    )


class Transfer(Base):
    __tablename__ = "transfers"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    origin_warehouse_id: Mapped[int] = mapped_column(
        ForeignKey("warehouses.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    destination_warehouse_id: Mapped[int] = mapped_column(
        ForeignKey("warehouses.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    note: Mapped[str | None] = mapped_column(Text)
    happened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    idempotency_key: Mapped[str | None] = mapped_column(String(64), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    lines: Mapped[list["TransferLine"]] = relationship(
        back_populates="transfer",
        cascade="all, delete-orphan",
        order_by="TransferLine.position",
    )

    __table_args__ = (
        CheckConstraint(
            "origin_warehouse_id <> destination_warehouse_id",
            name="ck_transfer_origin_ne_destination",
        ),
    )


class TransferLine(Base):
    __tablename__ = "transfer_lines"
    transfer_id: Mapped[int] = mapped_column(ForeignKey("transfers.id", ondelete="CASCADE"), primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), primary_key=True)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    transfer: Mapped[Transfer] = relationship(back_populates="lines")

    __table_args__ = (CheckConstraint("quantity > 0", name="ck_transfer_line_qty_pos"),)


# ---------- MARKETPLACE ----------
class ExternalAccount(Base):
    __tablename__ = "external_accounts"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    external_user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    nickname: Mapped[str | None] = mapped_column(String(255))
    site_id: Mapped[str | None] = mapped_column(String(8))

    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    __table_args__ = (UniqueConstraint("user_id", "external_user_id", name="uq_external_account_user"),)


class Listing(Base):
    __tablename__ = "listings"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("external_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_item_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    # NULL = annonce non appariée, exclue du réapprovisionnement
    product_id: Mapped[int | None] = mapped_column(ForeignKey("products.id", ondelete="SET NULL"), index=True)

    title: Mapped[str | None] = mapped_column(String(255))
    seller_sku: Mapped[str | None] = mapped_column(String(64), index=True)
    status: Mapped[str | None] = mapped_column(String(32))
    logistic_type: Mapped[str | None] = mapped_column(String(32))

    price: Mapped[int | None] = mapped_column(Integer)  # centimes
    original_price: Mapped[int | None] = mapped_column(Integer)
    has_promotion: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    discount_pct: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    available_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sold_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # recalculé depuis les commandes de la période, jamais incrémenté
    sold_in_period: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    sync_status: Mapped[SyncStatus] = mapped_column(
        Enum(SyncStatus, name="sync_status"),
        default=SyncStatus.pending,
        nullable=False,
    )
    sync_error: Mapped[str | None] = mapped_column(Text)
    external_last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    product: Mapped[Product | None] = relationship()

    __table_args__ = (
        CheckConstraint("available_quantity >= 0", name="ck_listing_available_nonneg"),
        CheckConstraint("discount_pct >= 0 AND discount_pct <= 100", name="ck_listing_discount_0_100"),
    )


class OrderRecord(Base):
    __tablename__ = "order_records"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("external_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_order_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    ordered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    external_last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    ingested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    lines: Mapped[list["OrderRecordLine"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderRecordLine.id",
    )

    __table_args__ = (Index("ix_order_records_account_time", "account_id", "ordered_at"),)


class OrderRecordLine(Base):
    __tablename__ = "order_record_lines"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("order_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_item_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # centimes

    order: Mapped[OrderRecord] = relationship(back_populates="lines")

    __table_args__ = (CheckConstraint("quantity > 0", name="ck_order_line_qty_pos"),)


# ---------- REPLENISHMENT ----------
class ReplenishmentConfig(Base):
    __tablename__ = "replenishment_configs"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    # NULL = configuration globale par défaut
    product_id: Mapped[int | None] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"),
        unique=True,
    )
    avg_delivery_days: Mapped[int | None] = mapped_column(Integer)
    full_release_days: Mapped[int | None] = mapped_column(Integer)
    safety_stock: Mapped[int | None] = mapped_column(Integer)
    min_coverage_days: Mapped[int | None] = mapped_column(Integer)
    analysis_period_days: Mapped[int | None] = mapped_column(Integer)

    __table_args__ = (
        CheckConstraint("avg_delivery_days IS NULL OR avg_delivery_days >= 0", name="ck_repl_delivery_nonneg"),
        CheckConstraint("full_release_days IS NULL OR full_release_days >= 0", name="ck_repl_release_nonneg"),
        CheckConstraint("safety_stock IS NULL OR safety_stock >= 0", name="ck_repl_safety_nonneg"),
        CheckConstraint("min_coverage_days IS NULL OR min_coverage_days >= 0", name="ck_repl_coverage_nonneg"),
        CheckConstraint("analysis_period_days IS NULL OR analysis_period_days > 0", name="ck_repl_period_pos"),
    )


# ---------- AUDIT SYNC ----------
class WebhookDelivery(Base):
    __tablename__ = "webhook_deliveries"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    account_id: Mapped[int | None] = mapped_column(ForeignKey("external_accounts.id", ondelete="SET NULL"))
    topic: Mapped[str] = mapped_column(String(64), nullable=False)
    resource: Mapped[str] = mapped_column(String(255), nullable=False)
    external_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error: Mapped[str | None] = mapped_column(Text)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (Index("ix_webhook_deliveries_resource", "topic", "resource"),)


class SyncRun(Base):
    __tablename__ = "sync_runs"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("external_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sync_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[SyncRunStatus] = mapped_column(
        Enum(SyncRunStatus, name="sync_run_status"),
        default=SyncRunStatus.running,
        nullable=False,
    )
    pages_fetched: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    pages_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_applied: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    warnings: Mapped[str | None] = mapped_column(Text)  # une alerte par ligne
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
