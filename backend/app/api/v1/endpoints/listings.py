from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from backend.app.api.deps import get_container, get_db
from backend.app.schemas.stock import ListingLink, ListingRead
from backend.services.container import ServiceContainer

router = APIRouter(prefix="/listings")


@router.get("/unmatched", response_model=list[ListingRead])
def list_unmatched(
    account_id: int | None = None,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    return container.directory(db).unmatched(account_id)


@router.post("/{listing_id}/link", response_model=ListingRead)
def link_listing(
    listing_id: int,
    payload: ListingLink,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    return container.directory(db).link(listing_id, payload.product_id)


@router.post("/{listing_id}/unlink", response_model=ListingRead)
def unlink_listing(
    listing_id: int,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    return container.directory(db).unlink(listing_id)


@router.post("/{listing_id}/ignore", response_model=ListingRead)
def ignore_listing(
    listing_id: int,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    return container.directory(db).ignore(listing_id)


@router.post("/{listing_id}/push-quantity")
def push_quantity(listing_id: int, container: ServiceContainer = Depends(get_container)):
    quantity = container.pipeline.push_listing_quantity(listing_id)
    return {"listing_id": listing_id, "available_quantity": quantity}
