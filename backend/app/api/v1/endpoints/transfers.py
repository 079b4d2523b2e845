from __future__ import annotations

from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from backend.app.api.deps import get_container, get_db
from backend.app.schemas.stock import TransferCreate, TransferRead
from backend.services.container import ServiceContainer
from backend.services.inventory import TransferLineIn

router = APIRouter(prefix="/transfers")


@router.post("", response_model=TransferRead)
def create_transfer(
    payload: TransferCreate,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    # replay idempotent si la clé est déjà connue
    idem = idempotency_key.strip() if idempotency_key and idempotency_key.strip() else None
    return container.ledger(db).transfer(
        payload.origin_warehouse_id,
        payload.destination_warehouse_id,
        [TransferLineIn(l.product_id, l.quantity) for l in payload.lines],
        note=payload.note,
        happened_at=payload.happened_at,
        idempotency_key=idem,
    )


@router.get("", response_model=list[TransferRead])
def list_transfers(
    limit: int = 100,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    return container.ledger(db).list_transfers(limit=limit)
