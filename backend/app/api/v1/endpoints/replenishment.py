from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from backend.app.api.deps import get_container, get_db
from backend.app.schemas.replenishment import BatchAnalysis, ReplenishmentSuggestion
from backend.services.container import ServiceContainer

router = APIRouter(prefix="/replenishment")


@router.get("/batch-analysis", response_model=BatchAnalysis)
def batch_analysis(db: Session = Depends(get_db), container: ServiceContainer = Depends(get_container)):
    """Recalcul à la demande, jamais d'erreur pour un produit isolé."""
    return container.engine(db).run_batch_replenishment_analysis()


@router.get("/suggestions/{product_id}", response_model=ReplenishmentSuggestion)
def suggestion(product_id: int, db: Session = Depends(get_db), container: ServiceContainer = Depends(get_container)):
    return container.engine(db).get_replenishment_suggestion(product_id)


@router.get("/velocity/{product_id}/daily")
def daily_series(
    product_id: int,
    period_days: int | None = None,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    engine = container.engine(db)
    days = period_days or engine.resolve_config(product_id).analysis_period_days
    frame = container.aggregator(db).daily_series(product_id, days)
    return [{"date": d.isoformat(), "units": int(u)} for d, u in zip(frame["date"], frame["units"])]
