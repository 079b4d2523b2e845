"""
Suggestions de réapprovisionnement (transfert local -> Full, achat fournisseur).

Formules :
- point de commande local = v * (délai livraison + couverture min) + stock sécurité
- point de commande Full  = v * délai de libération Full + stock sécurité
- quantité = ceil(point * multiplicateur - stock), au moins 1

Vitesse nulle => aucune suggestion, couverture infinie, statut ok.
Les seuils (3/7 jours) et le multiplicateur (x2) viennent de Settings.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Callable, Sequence

from sqlalchemy import select, union
from sqlalchemy.orm import Session

from backend.app.core.clock import utcnow
from backend.app.core.config import Settings
from backend.app.core.exceptions import EntityNotFound
from backend.app.core.logging_config import get_logger
from backend.app.db.models.core_types import (
    FULFILLMENT_LOGISTIC_TYPE,
    ActionKind,
    FulfillmentAction,
    ListingChannel,
    LocalAction,
    Priority,
    ReplenishmentStatus,
    WarehouseRole,
)
from backend.app.db.models.models_v1 import Listing, Product, ReplenishmentConfig, StockEntry, Warehouse
from backend.app.schemas.replenishment import (
    BatchAnalysis,
    BatchSummary,
    ReplenishmentSuggestion,
    ResolvedConfig,
    SuggestedAction,
)
from backend.services.inventory import StockLedger
from backend.services.listings import ListingDirectory
from backend.services.velocity import SalesVelocityAggregator

logger = get_logger(__name__)

PRIORITY_BY_STATUS = {
    ReplenishmentStatus.critico: Priority.alta,
    ReplenishmentStatus.atencao: Priority.media,
    ReplenishmentStatus.ok: Priority.baixa,
}
STATUS_RANK = {ReplenishmentStatus.critico: 0, ReplenishmentStatus.atencao: 1, ReplenishmentStatus.ok: 2}
PRIORITY_RANK = {Priority.alta: 0, Priority.media: 1, Priority.baixa: 2}
KIND_RANK = {
    ActionKind.transfer_to_fulfillment: 0,
    ActionKind.purchase_then_transfer: 1,
    ActionKind.purchase: 2,
}


def _ceil(value: float) -> int:
    # 168.00000000003 ne doit pas devenir 169
    return math.ceil(round(value, 6))


def _days(value: float | None) -> float:
    return math.inf if value is None else value


# ---------- ORDRE DES ACTIONS ----------
def by_priority(action: SuggestedAction):
    return PRIORITY_RANK[action.priority]


def by_days_remaining(action: SuggestedAction):
    return _days(action.days_remaining)


def by_kind(action: SuggestedAction):
    return KIND_RANK[action.kind]


def by_product(action: SuggestedAction):
    return action.product_id


ACTION_ORDERING: tuple[Callable[[SuggestedAction], object], ...] = (
    by_priority,
    by_days_remaining,
    by_kind,
    by_product,
)


def sort_actions(actions: Sequence[SuggestedAction], rules=ACTION_ORDERING) -> list[SuggestedAction]:
    return sorted(actions, key=lambda a: tuple(rule(a) for rule in rules))


def by_status(s: ReplenishmentSuggestion):
    return STATUS_RANK[s.status]


def by_min_days_remaining(s: ReplenishmentSuggestion):
    return min(_days(s.local_days_remaining), _days(s.full_days_remaining))


def by_suggestion_product(s: ReplenishmentSuggestion):
    return s.product_id


RESULT_ORDERING = (by_status, by_min_days_remaining, by_suggestion_product)


def sort_results(results: Sequence[ReplenishmentSuggestion], rules=RESULT_ORDERING) -> list[ReplenishmentSuggestion]:
    return sorted(results, key=lambda s: tuple(rule(s) for rule in rules))


# ---------- MOTEUR ----------
class ReplenishmentEngine:
    def __init__(
        self,
        db: Session,
        settings: Settings,
        aggregator: SalesVelocityAggregator | None = None,
        ledger: StockLedger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings
        self.aggregator = aggregator or SalesVelocityAggregator(db, clock)
        self.ledger = ledger or StockLedger(db)

    # ---------- CONFIG ----------
    def resolve_config(self, product_id: int) -> ResolvedConfig:
        """
        Ordre : config produit, puis config globale (product_id NULL), puis Settings.
        Stock de sécurité sans config produit : somme des stocks de sécurité saisis
        sur les entrepôts locaux s'il y en a, sinon global / Settings.
        """
        rows = self.db.execute(
            select(ReplenishmentConfig).where(
                (ReplenishmentConfig.product_id == product_id) | ReplenishmentConfig.product_id.is_(None)
            )
        ).scalars().all()
        own = next((r for r in rows if r.product_id == product_id), None)
        glob = next((r for r in rows if r.product_id is None), None)

        def pick(field: str, default: int) -> int:
            for row in (own, glob):
                if row is not None and getattr(row, field) is not None:
                    return int(getattr(row, field))
            return default

        s = self.settings
        if own is not None and own.safety_stock is not None:
            safety = int(own.safety_stock)
        else:
            manual = self.ledger.safety_stock(product_id, WarehouseRole.local)
            safety = manual if manual > 0 else pick("safety_stock", s.default_safety_stock)

        return ResolvedConfig(
            avg_delivery_days=pick("avg_delivery_days", s.default_avg_delivery_days),
            full_release_days=pick("full_release_days", s.default_full_release_days),
            safety_stock=safety,
            min_coverage_days=pick("min_coverage_days", s.default_min_coverage_days),
            analysis_period_days=pick("analysis_period_days", s.default_analysis_period_days),
        )

    def classify(self, days_remaining: float | None) -> ReplenishmentStatus:
        if days_remaining is None:
            return ReplenishmentStatus.ok
        if days_remaining < self.settings.critical_coverage_days:
            return ReplenishmentStatus.critico
        if days_remaining < self.settings.attention_coverage_days:
            return ReplenishmentStatus.atencao
        return ReplenishmentStatus.ok

    # ---------- PAR PRODUIT ----------
    def get_replenishment_suggestion(
        self,
        product_id: int,
        config: ResolvedConfig | None = None,
    ) -> ReplenishmentSuggestion:
        product = self.db.get(Product, product_id)
        if not product:
            raise EntityNotFound(f"Product {product_id} not found", details={"product_id": product_id})

        cfg = config or self.resolve_config(product_id)
        listings = ListingDirectory(self.db).linked_listings(product_id)
        has_full = any(l.logistic_type == FULFILLMENT_LOGISTIC_TYPE for l in listings)
        has_local = any(l.logistic_type != FULFILLMENT_LOGISTIC_TYPE for l in listings)
        if has_full and has_local:
            channel = ListingChannel.both
        elif has_full:
            channel = ListingChannel.fulfillment
        elif has_local:
            channel = ListingChannel.local
        else:
            channel = None

        by_role = self.ledger.quantities_by_role(product_id)
        local = by_role[WarehouseRole.local]
        full = by_role[WarehouseRole.fulfillment] if has_full else 0

        v = self.aggregator.daily_velocity(product_id, cfg.analysis_period_days)
        mult = self.settings.reorder_multiplier
        local_rp = v * (cfg.avg_delivery_days + cfg.min_coverage_days) + cfg.safety_stock
        full_rp = v * cfg.full_release_days + cfg.safety_stock if has_full else None

        s = ReplenishmentSuggestion(
            product_id=product.id,
            sku=product.sku,
            name=product.name,
            channel=channel,
            has_fulfillment=has_full,
            local_stock=local,
            full_stock=full,
            daily_velocity=round(v, 4),
            config=cfg,
            local_reorder_point=round(local_rp, 2),
            full_reorder_point=round(full_rp, 2) if full_rp is not None else None,
            full_status=ReplenishmentStatus.ok if has_full else None,
        )

        # pas de signal de demande : rien à prévoir
        if v <= 0:
            return s

        s.local_days_remaining = round(local / v, 2)
        s.local_status = self.classify(s.local_days_remaining)
        if has_full:
            s.full_days_remaining = round(full / v, 2)
            s.full_status = self.classify(s.full_days_remaining)

        # ---------- LOCAL ----------
        if local <= local_rp:
            # la 2e borne garantit la couverture min une fois l'achat livré
            qty = max(
                1,
                _ceil(local_rp * mult - local),
                _ceil(v * (cfg.avg_delivery_days + cfg.min_coverage_days) - local),
            )
            s.local_action = LocalAction.purchase
            s.purchase_quantity = qty

        # ---------- FULL ----------
        if has_full and full <= full_rp:
            need = max(1, _ceil(full_rp * mult - full))
            if local > 0:
                s.transfer_quantity = min(need, local)
                s.fulfillment_action = FulfillmentAction.transfer
                s.transfer_breaches_local_reorder_point = (local - s.transfer_quantity) < local_rp
                s.quantity_for_fulfillment = need - s.transfer_quantity
            else:
                s.fulfillment_action = FulfillmentAction.await_purchase
                s.quantity_for_fulfillment = need

        statuses = [s.local_status] + ([s.full_status] if s.full_status else [])
        s.status = min(statuses, key=STATUS_RANK.__getitem__)
        s.priority = PRIORITY_BY_STATUS[s.status]
        s.estimated_cost = (s.purchase_quantity + s.quantity_for_fulfillment) * product.average_cost
        s.actions = self._actions(s, product)
        return s

    def _actions(self, s: ReplenishmentSuggestion, product: Product) -> list[SuggestedAction]:
        actions = []
        full_priority = PRIORITY_BY_STATUS[s.full_status] if s.full_status else Priority.baixa
        if s.transfer_quantity:
            actions.append(
                SuggestedAction(
                    product_id=s.product_id,
                    sku=s.sku,
                    kind=ActionKind.transfer_to_fulfillment,
                    quantity=s.transfer_quantity,
                    priority=full_priority,
                    days_remaining=s.full_days_remaining,
                )
            )
        if s.quantity_for_fulfillment:
            actions.append(
                SuggestedAction(
                    product_id=s.product_id,
                    sku=s.sku,
                    kind=ActionKind.purchase_then_transfer,
                    quantity=s.quantity_for_fulfillment,
                    priority=full_priority,
                    days_remaining=s.full_days_remaining,
                    estimated_cost=s.quantity_for_fulfillment * product.average_cost,
                )
            )
        if s.purchase_quantity:
            actions.append(
                SuggestedAction(
                    product_id=s.product_id,
                    sku=s.sku,
                    kind=ActionKind.purchase,
                    quantity=s.purchase_quantity,
                    priority=PRIORITY_BY_STATUS[s.local_status],
                    days_remaining=s.local_days_remaining,
                    estimated_cost=s.purchase_quantity * product.average_cost,
                )
            )
        return actions

    # ---------- LOT ----------
    def candidate_product_ids(self) -> list[int]:
        """Produits actifs avec au moins une annonce liée ou du stock local."""
        linked = select(Listing.product_id.label("product_id")).where(Listing.product_id.is_not(None))
        stocked = (
            select(StockEntry.product_id.label("product_id"))
            .join(Warehouse, Warehouse.id == StockEntry.warehouse_id)
            .where(Warehouse.role == WarehouseRole.local)
            .where(StockEntry.quantity > 0)
        )
        ids = union(linked, stocked).subquery()
        return list(
            self.db.execute(
                select(Product.id)
                .where(Product.id.in_(select(ids.c.product_id)))
                .where(Product.active.is_(True))
                .order_by(Product.id)
            ).scalars()
        )

    def run_batch_replenishment_analysis(self) -> BatchAnalysis:
        results: list[ReplenishmentSuggestion] = []
        summary = BatchSummary()

        for product_id in self.candidate_product_ids():
            try:
                results.append(self.get_replenishment_suggestion(product_id))
            except Exception:
                summary.failed_products += 1
                logger.exception("replenishment analysis failed for product %s", product_id)

        for s in results:
            summary.total += 1
            bucket = s.status.value
            setattr(summary, bucket, getattr(summary, bucket) + 1)
            setattr(summary, f"cost_{bucket}", getattr(summary, f"cost_{bucket}") + s.estimated_cost)
            summary.total_cost += s.estimated_cost

        summary.listing_sync_errors = ListingDirectory(self.db).count_errors()

        actions = sort_actions([a for s in results for a in s.actions])
        return BatchAnalysis(results=sort_results(results), summary=summary, actions=actions)
