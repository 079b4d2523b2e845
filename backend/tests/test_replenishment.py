from datetime import timedelta

import pytest

from backend.app.db.models.core_types import (
    ActionKind,
    FulfillmentAction,
    ListingChannel,
    LocalAction,
    Priority,
    ReplenishmentStatus,
    SyncStatus,
    WarehouseRole,
)
from backend.app.db.models.models_v1 import Listing, ReplenishmentConfig
from backend.app.schemas.replenishment import SuggestedAction
from backend.services.marketplace import MarketplaceItem, MarketplaceOrder
from backend.services.replenishment import (
    ReplenishmentEngine,
    by_kind,
    by_product,
    sort_actions,
)
from backend.tests.fakes import NOW


class FixedVelocity:
    """Vitesse imposée par produit (défaut commun)."""

    def __init__(self, default: float = 0.0, **per_product: float):
        self.default = default
        self.per_product = {int(k.lstrip("p")): v for k, v in per_product.items()}

    def daily_velocity(self, product_id: int, period_days: int) -> float:
        return self.per_product.get(product_id, self.default)


@pytest.fixture
def warehouses(make_warehouse):
    return make_warehouse("Loja"), make_warehouse("Full", WarehouseRole.fulfillment)


@pytest.fixture
def link_listing(db_session, make_account):
    account = make_account()

    def _link(product, item_id: str, logistic_type: str = "fulfillment", status=SyncStatus.synced) -> Listing:
        listing = Listing(
            account_id=account.id,
            external_item_id=item_id,
            product_id=product.id,
            logistic_type=logistic_type,
            sync_status=status,
        )
        db_session.add(listing)
        db_session.commit()
        return listing

    return _link


def engine_with(db_session, settings, clock, velocity: float) -> ReplenishmentEngine:
    return ReplenishmentEngine(db_session, settings, aggregator=FixedVelocity(velocity), clock=clock)


# ---------- LOCAL ----------
def test_local_reorder_point_example(db_session, settings, clock, make_product, put_stock, warehouses):
    """
    GIVEN
    - délai 7, couverture 30, sécurité 10, vitesse 2/jour, stock local 50

    THEN
    - point de commande = 2 * (7 + 30) + 10 = 84
    - 50 <= 84 : achat de ceil(84 * 2 - 50) = 118
    """
    loja, _ = warehouses
    p = make_product("CAN-01")
    put_stock(p, loja, 50)

    s = engine_with(db_session, settings, clock, 2.0).get_replenishment_suggestion(p.id)

    assert s.local_reorder_point == 84
    assert s.local_action == LocalAction.purchase
    assert s.purchase_quantity == 118
    assert s.local_days_remaining == 25
    assert s.local_status == ReplenishmentStatus.ok
    assert s.full_status is None
    assert s.channel is None


def test_example_with_velocity_from_orders(container, db_session, settings, clock, make_account, make_product, put_stock, warehouses):
    loja, _ = warehouses
    acc = make_account()
    p = make_product("CAN-01")
    put_stock(p, loja, 50)
    container.pipeline.apply_item_payload(
        acc.id, MarketplaceItem.from_payload({"id": "MLB1", "seller_custom_field": "CAN-01", "shipping": {}})
    )
    for order_id, qty, days_ago in ((1, 100, 80), (2, 80, 30), (3, 1, 150)):
        created = (NOW - timedelta(days=days_ago)).isoformat()
        container.pipeline.apply_order(
            acc.id,
            MarketplaceOrder.from_payload(
                {
                    "id": order_id,
                    "status": "delivered",
                    "date_created": created,
                    "order_items": [{"item": {"id": "MLB1"}, "quantity": qty, "unit_price": 10}],
                }
            ),
        )

    s = ReplenishmentEngine(db_session, settings, clock=clock).get_replenishment_suggestion(p.id)

    assert s.daily_velocity == pytest.approx(2.0)
    assert s.channel == ListingChannel.local
    assert s.local_reorder_point == 84
    assert s.purchase_quantity == 118


def test_zero_velocity_is_ok_whatever_the_stock(db_session, settings, clock, make_product, warehouses, link_listing):
    p = make_product("PARADO")
    link_listing(p, "MLB9")

    s = engine_with(db_session, settings, clock, 0.0).get_replenishment_suggestion(p.id)

    assert s.status == ReplenishmentStatus.ok
    assert s.local_days_remaining is None
    assert s.full_days_remaining is None
    assert s.purchase_quantity == 0
    assert s.transfer_quantity == 0
    assert s.actions == []


def test_short_coverage_is_critical(db_session, settings, clock, make_product, put_stock, warehouses):
    loja, _ = warehouses
    p = make_product("CAN-01")
    put_stock(p, loja, 4)

    s = engine_with(db_session, settings, clock, 2.0).get_replenishment_suggestion(p.id)

    assert s.local_days_remaining == 2
    assert s.status == ReplenishmentStatus.critico
    assert s.priority == Priority.alta


def test_medium_coverage_is_attention(db_session, settings, clock, make_product, put_stock, warehouses):
    loja, _ = warehouses
    p = make_product("CAN-01")
    put_stock(p, loja, 10)

    s = engine_with(db_session, settings, clock, 2.0).get_replenishment_suggestion(p.id)

    assert s.status == ReplenishmentStatus.atencao
    assert s.priority == Priority.media


# ---------- FULL ----------
def test_transfer_is_capped_by_local_stock(db_session, settings, clock, make_product, put_stock, warehouses, link_listing):
    """
    GIVEN
    - annonce Full liée, Full = 2, local = 5, vitesse 2/jour, coût moyen 100

    THEN
    - point Full = 2 * 3 + 10 = 16 ; besoin = ceil(16 * 2 - 2) = 30
    - transfert de 5 (tout le local), reste 25 à acheter puis transférer
    - le transfert passe sous le point de commande local : signalé
    """
    loja, full = warehouses
    p = make_product("CAN-01", average_cost=100)
    put_stock(p, loja, 5)
    put_stock(p, full, 2)
    link_listing(p, "MLB1")

    s = engine_with(db_session, settings, clock, 2.0).get_replenishment_suggestion(p.id)

    assert s.channel == ListingChannel.fulfillment
    assert s.full_reorder_point == 16
    assert s.fulfillment_action == FulfillmentAction.transfer
    assert s.transfer_quantity == 5
    assert s.quantity_for_fulfillment == 25
    assert s.transfer_breaches_local_reorder_point is True
    assert s.purchase_quantity == 163
    assert s.estimated_cost == (163 + 25) * 100
    assert [(a.kind, a.quantity) for a in s.actions] == [
        (ActionKind.transfer_to_fulfillment, 5),
        (ActionKind.purchase_then_transfer, 25),
        (ActionKind.purchase, 163),
    ]


def test_empty_local_stock_awaits_purchase(db_session, settings, clock, make_product, put_stock, warehouses, link_listing):
    _, full = warehouses
    p = make_product("CAN-01")
    put_stock(p, full, 2)
    link_listing(p, "MLB1")

    s = engine_with(db_session, settings, clock, 2.0).get_replenishment_suggestion(p.id)

    assert s.fulfillment_action == FulfillmentAction.await_purchase
    assert s.transfer_quantity == 0
    assert s.quantity_for_fulfillment == 30
    assert s.full_status == ReplenishmentStatus.critico


def test_full_transfer_within_local_surplus(db_session, settings, clock, make_product, put_stock, warehouses, link_listing):
    loja, full = warehouses
    p = make_product("CAN-01")
    put_stock(p, loja, 500)
    put_stock(p, full, 10)
    link_listing(p, "MLB1")
    link_listing(p, "MLB2", logistic_type="cross_docking")

    s = engine_with(db_session, settings, clock, 2.0).get_replenishment_suggestion(p.id)

    assert s.channel == ListingChannel.both
    assert s.transfer_quantity == 22
    assert s.quantity_for_fulfillment == 0
    assert s.transfer_breaches_local_reorder_point is False
    assert s.local_action == LocalAction.none


def test_full_stock_ignored_without_fulfillment_listing(db_session, settings, clock, make_product, put_stock, warehouses):
    loja, full = warehouses
    p = make_product("CAN-01")
    put_stock(p, loja, 200)
    put_stock(p, full, 40)

    s = engine_with(db_session, settings, clock, 2.0).get_replenishment_suggestion(p.id)

    assert s.has_fulfillment is False
    assert s.full_stock == 0
    assert s.full_status is None
    assert s.fulfillment_action == FulfillmentAction.none


# ---------- CONFIG ----------
def test_config_resolution_order(db_session, settings, clock, make_product, put_stock, warehouses):
    loja, _ = warehouses
    p1 = make_product("P1")
    p2 = make_product("P2")
    p3 = make_product("P3")
    put_stock(p2, loja, 0, safety_stock=25)
    db_session.add_all(
        [
            ReplenishmentConfig(product_id=None, avg_delivery_days=12, safety_stock=4),
            ReplenishmentConfig(product_id=p1.id, min_coverage_days=15, safety_stock=0),
        ]
    )
    db_session.commit()
    engine = engine_with(db_session, settings, clock, 0.0)

    c1 = engine.resolve_config(p1.id)
    assert (c1.avg_delivery_days, c1.min_coverage_days, c1.safety_stock, c1.full_release_days) == (12, 15, 0, 3)

    # pas de config produit : stock de sécurité saisi sur l'entrepôt
    assert engine.resolve_config(p2.id).safety_stock == 25
    assert engine.resolve_config(p3.id).safety_stock == 4


# ---------- ORDRE ----------
def _action(product_id, kind, priority, days):
    return SuggestedAction(product_id=product_id, sku=f"P{product_id}", kind=kind, quantity=1, priority=priority, days_remaining=days)


def test_actions_are_ordered_by_priority_then_coverage():
    actions = [
        _action(1, ActionKind.purchase, Priority.baixa, 40),
        _action(2, ActionKind.purchase, Priority.alta, 2.5),
        _action(3, ActionKind.transfer_to_fulfillment, Priority.alta, 1),
        _action(4, ActionKind.purchase, Priority.alta, 1),
        _action(5, ActionKind.purchase, Priority.media, None),
        _action(6, ActionKind.purchase, Priority.media, 6),
    ]

    assert [a.product_id for a in sort_actions(actions)] == [3, 4, 2, 6, 5, 1]


def test_ordering_rules_are_composable():
    actions = [
        _action(2, ActionKind.purchase, Priority.alta, 1),
        _action(1, ActionKind.purchase, Priority.baixa, 1),
        _action(3, ActionKind.transfer_to_fulfillment, Priority.baixa, 1),
    ]

    assert [a.product_id for a in sort_actions(actions, rules=(by_kind, by_product))] == [3, 1, 2]


# ---------- LOT ----------
def test_batch_analysis_summary_and_isolation(
    db_session, settings, clock, make_product, put_stock, warehouses, link_listing, monkeypatch
):
    loja, _ = warehouses
    critical = make_product("CRIT", average_cost=100)
    healthy = make_product("OK")
    broken = make_product("BROKEN")
    make_product("SEM-STOCK")  # ni stock ni annonce : hors lot
    put_stock(critical, loja, 2)
    put_stock(healthy, loja, 1000)
    put_stock(broken, loja, 5)
    link_listing(healthy, "MLB-ERR", logistic_type="cross_docking", status=SyncStatus.error)

    engine = ReplenishmentEngine(
        db_session,
        settings,
        aggregator=FixedVelocity(0.0, **{f"p{critical.id}": 2.0}),
        clock=clock,
    )
    original = engine.get_replenishment_suggestion

    def flaky(product_id, config=None):
        if product_id == broken.id:
            raise ValueError("corrupted product")
        return original(product_id, config)

    monkeypatch.setattr(engine, "get_replenishment_suggestion", flaky)

    analysis = engine.run_batch_replenishment_analysis()

    assert [r.product_id for r in analysis.results] == [critical.id, healthy.id]
    summary = analysis.summary
    assert (summary.total, summary.critico, summary.atencao, summary.ok) == (2, 1, 0, 1)
    assert summary.failed_products == 1
    assert summary.listing_sync_errors == 1
    # achat : max(1, ceil(84*2 - 2), ceil(74 - 2)) = 166
    assert summary.cost_critico == 166 * 100
    assert summary.total_cost == summary.cost_critico
    assert [(a.product_id, a.kind) for a in analysis.actions] == [(critical.id, ActionKind.purchase)]
