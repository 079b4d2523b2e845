from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.api.deps import get_container, get_db
from backend.app.db.models.models_v1 import StockEntry, Warehouse
from backend.app.schemas.stock import StockEntryRead
from backend.services.container import ServiceContainer

router = APIRouter(prefix="/stock")


@router.get(
    "",
    response_model=list[StockEntryRead],
)
def get_stock(
    warehouse_id: int | None = None,
    product_id: int | None = None,
    db: Session = Depends(get_db),
):
    """
    Stock (READ ONLY)
    - modifié uniquement par transfert ou réconciliation marketplace
    - absence de ligne = 0
    """

    stmt = (
        select(StockEntry)
        .join(Warehouse, Warehouse.id == StockEntry.warehouse_id)
        .order_by(StockEntry.warehouse_id, StockEntry.product_id)
    )

    if warehouse_id is not None:
        stmt = stmt.where(StockEntry.warehouse_id == warehouse_id)

    if product_id is not None:
        stmt = stmt.where(StockEntry.product_id == product_id)

    return db.execute(stmt).scalars().all()


@router.get("/{product_id}/total")
def get_total(
    product_id: int,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    ledger = container.ledger(db)
    by_role = ledger.quantities_by_role(product_id)
    return {
        "product_id": product_id,
        "total": ledger.total_quantity(product_id),
        "by_role": {role.value: qty for role, qty in by_role.items()},
    }
