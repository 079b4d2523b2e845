from __future__ import annotations

from pydantic import BaseModel, Field

from backend.app.db.models.core_types import (
    ActionKind,
    FulfillmentAction,
    ListingChannel,
    LocalAction,
    Priority,
    ReplenishmentStatus,
)


class ResolvedConfig(BaseModel):
    avg_delivery_days: int = Field(ge=0)
    full_release_days: int = Field(ge=0)
    safety_stock: int = Field(ge=0)
    min_coverage_days: int = Field(ge=0)
    analysis_period_days: int = Field(gt=0)


class SuggestedAction(BaseModel):
    product_id: int
    sku: str
    kind: ActionKind
    quantity: int
    priority: Priority
    days_remaining: float | None = None  # None = couverture infinie
    estimated_cost: int = 0  # centimes


class ReplenishmentSuggestion(BaseModel):
    """Résultat de calcul, jamais persisté."""

    product_id: int
    sku: str
    name: str
    channel: ListingChannel | None = None
    has_fulfillment: bool = False

    local_stock: int
    full_stock: int
    daily_velocity: float
    config: ResolvedConfig

    local_reorder_point: float
    full_reorder_point: float | None = None
    local_days_remaining: float | None = None
    full_days_remaining: float | None = None

    local_status: ReplenishmentStatus = ReplenishmentStatus.ok
    full_status: ReplenishmentStatus | None = None
    status: ReplenishmentStatus = ReplenishmentStatus.ok
    priority: Priority = Priority.baixa

    local_action: LocalAction = LocalAction.none
    purchase_quantity: int = 0
    fulfillment_action: FulfillmentAction = FulfillmentAction.none
    transfer_quantity: int = 0
    # besoin Full non couvert par le stock local : à acheter puis transférer
    quantity_for_fulfillment: int = 0
    transfer_breaches_local_reorder_point: bool = False

    estimated_cost: int = 0
    actions: list[SuggestedAction] = Field(default_factory=list)


class BatchSummary(BaseModel):
    total: int = 0
    critico: int = 0
    atencao: int = 0
    ok: int = 0
    cost_critico: int = 0
    cost_atencao: int = 0
    cost_ok: int = 0
    total_cost: int = 0
    listing_sync_errors: int = 0
    failed_products: int = 0


class BatchAnalysis(BaseModel):
    results: list[ReplenishmentSuggestion]
    summary: BatchSummary
    actions: list[SuggestedAction]
