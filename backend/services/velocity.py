from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

import pandas as pd
from sqlalchemy import select, func
from sqlalchemy.orm import Session

from backend.app.core.clock import as_utc, utcnow
from backend.app.db.models.core_types import COMMITTED_SALE_STATUSES
from backend.app.db.models.models_v1 import Listing, OrderRecord, OrderRecordLine

SECONDS_PER_DAY = 86400.0


class SalesVelocityAggregator:
    """
    Ventes par produit sur une fenêtre glissante [now - période, now].

    Déterministe : agrégation SQL sur les commandes normalisées uniquement
    (statuts de vente engagée), via les annonces liées au produit.
    """

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def _window(self, period_days: int) -> tuple[datetime, datetime]:
        now = self.clock()
        return now - timedelta(days=period_days), now

    def _product_lines(self, product_id: int, start: datetime, end: datetime):
        return (
            select(OrderRecordLine.quantity, OrderRecord.ordered_at)
            .join(OrderRecord, OrderRecord.id == OrderRecordLine.order_id)
            .join(Listing, Listing.external_item_id == OrderRecordLine.external_item_id)
            .where(Listing.product_id == product_id)
            .where(OrderRecord.status.in_(COMMITTED_SALE_STATUSES))
            .where(OrderRecord.ordered_at >= start)
            .where(OrderRecord.ordered_at <= end)
        )

    def units_sold(self, product_id: int, period_days: int) -> int:
        start, end = self._window(period_days)
        lines = self._product_lines(product_id, start, end).subquery()
        total = self.db.execute(select(func.coalesce(func.sum(lines.c.quantity), 0))).scalar_one()
        return int(total)

    def elapsed_days(self, product_id: int, period_days: int) -> float:
        """
        Jours réellement couverts par l'historique : depuis le début de la fenêtre,
        ou depuis la première commande ingérée des comptes du produit si elle est plus récente.
        Minimum 1 jour.
        """
        start, now = self._window(period_days)
        accounts = select(Listing.account_id).where(Listing.product_id == product_id)
        first = self.db.execute(
            select(func.min(OrderRecord.ordered_at)).where(OrderRecord.account_id.in_(accounts))
        ).scalar_one_or_none()
        first = as_utc(first)
        if first is not None and first > start:
            start = first
        return max((now - start).total_seconds() / SECONDS_PER_DAY, 1.0)

    def daily_velocity(self, product_id: int, period_days: int) -> float:
        units = self.units_sold(product_id, period_days)
        if units == 0:
            return 0.0
        return units / self.elapsed_days(product_id, period_days)

    def daily_series(self, product_id: int, period_days: int) -> pd.DataFrame:
        """Unités vendues par jour (UTC), jours sans vente à 0. Colonnes : date, units."""
        start, end = self._window(period_days)
        rows = self.db.execute(self._product_lines(product_id, start, end)).all()

        days = pd.date_range(start.date(), end.date(), freq="D").date
        if not rows:
            return pd.DataFrame({"date": days, "units": [0] * len(days)})

        df = pd.DataFrame(rows, columns=["units", "ordered_at"])
        df["date"] = pd.to_datetime(df["ordered_at"], utc=True).dt.date
        per_day = df.groupby("date")["units"].sum().reindex(days, fill_value=0)
        return pd.DataFrame({"date": days, "units": per_day.astype(int).to_list()})
