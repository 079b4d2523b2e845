from datetime import date, timedelta

import pytest

from backend.services.marketplace import MarketplaceItem, MarketplaceOrder
from backend.services.velocity import SalesVelocityAggregator
from backend.tests.fakes import NOW


@pytest.fixture
def seller(container, make_account, make_product):
    """Un produit lié à une annonce MLB1 ; sell() ingère une commande."""
    acc = make_account()
    product = make_product("CAN-01")
    container.pipeline.apply_item_payload(
        acc.id,
        MarketplaceItem.from_payload({"id": "MLB1", "seller_custom_field": "CAN-01", "last_updated": "2026-01-01T00:00:00Z"}),
    )

    def sell(order_id, quantity, days_ago, status="paid", item_id="MLB1"):
        created = NOW - timedelta(days=days_ago)
        container.pipeline.apply_order(
            acc.id,
            MarketplaceOrder.from_payload(
                {
                    "id": order_id,
                    "status": status,
                    "date_created": created.isoformat(),
                    "last_updated": created.isoformat(),
                    "order_items": [{"item": {"id": item_id}, "quantity": quantity, "unit_price": 10}],
                }
            ),
        )

    return product, sell


def test_no_sales_means_exactly_zero(db_session, clock, make_product):
    p = make_product("SKU-0")
    agg = SalesVelocityAggregator(db_session, clock)

    assert agg.units_sold(p.id, 90) == 0
    assert agg.daily_velocity(p.id, 90) == 0.0


def test_velocity_over_full_window(db_session, clock, seller):
    """
    GIVEN
    - 180 unités vendues il y a 89 jours
    - une commande plus ancienne que la fenêtre (historique complet)

    THEN
    - 180 / 90 = 2 unités par jour
    """
    product, sell = seller
    sell(1, 180, days_ago=89)
    sell(2, 5, days_ago=120)

    agg = SalesVelocityAggregator(db_session, clock)

    assert agg.units_sold(product.id, 90) == 180
    assert agg.elapsed_days(product.id, 90) == pytest.approx(90.0)
    assert agg.daily_velocity(product.id, 90) == pytest.approx(2.0)


def test_short_history_uses_elapsed_days(db_session, clock, seller):
    product, sell = seller
    sell(1, 20, days_ago=10)

    agg = SalesVelocityAggregator(db_session, clock)

    assert agg.elapsed_days(product.id, 90) == pytest.approx(10.0)
    assert agg.daily_velocity(product.id, 90) == pytest.approx(2.0)


def test_cancelled_and_unlinked_sales_are_excluded(db_session, clock, seller):
    product, sell = seller
    sell(1, 4, days_ago=5)
    sell(2, 7, days_ago=4, item_id="MLB-OTHER")
    sell(3, 9, days_ago=3, status="cancelled")

    assert SalesVelocityAggregator(db_session, clock).units_sold(product.id, 90) == 4


def test_daily_series_is_zero_filled(db_session, clock, seller):
    product, sell = seller
    sell(1, 2, days_ago=2)
    sell(2, 3, days_ago=2)

    df = SalesVelocityAggregator(db_session, clock).daily_series(product.id, 7)

    assert list(df.columns) == ["date", "units"]
    assert len(df) == 8
    assert df["units"].sum() == 5
    by_day = dict(zip(df["date"], df["units"]))
    assert by_day[date(2026, 2, 27)] == 5
    assert by_day[date(2026, 2, 26)] == 0
