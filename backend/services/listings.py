from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from backend.app.core.clock import as_utc, utcnow
from backend.app.core.exceptions import EntityNotFound, ListingAlreadyLinked
from backend.app.core.logging_config import get_logger
from backend.app.db.models.core_types import SyncStatus
from backend.app.db.models.models_v1 import Listing, Product
from backend.services.marketplace import MarketplaceItem, PriceInfo

logger = get_logger(__name__)


class ListingDirectory:
    """
    Annonces marketplace <-> produits locaux.

    Une annonce sans produit (product_id NULL) est un état valide :
    sync_status=pending, exclue du réapprovisionnement, résolue à la main.
    """

    def __init__(self, db: Session):
        self.db = db

    # ---------- LECTURE ----------
    def get(self, listing_id: int) -> Listing:
        listing = self.db.get(Listing, listing_id)
        if not listing:
            raise EntityNotFound(f"Listing {listing_id} not found", details={"listing_id": listing_id})
        return listing

    def get_by_external_id(self, external_item_id: str) -> Listing | None:
        return self.db.execute(
            select(Listing).where(Listing.external_item_id == external_item_id)
        ).scalar_one_or_none()

    def unmatched(self, account_id: int | None = None) -> list[Listing]:
        q = (
            select(Listing)
            .where(Listing.product_id.is_(None))
            .where(Listing.sync_status != SyncStatus.ignored)
        )
        if account_id is not None:
            q = q.where(Listing.account_id == account_id)
        return list(self.db.execute(q.order_by(Listing.id)).scalars().all())

    def linked_listings(self, product_id: int) -> list[Listing]:
        return list(
            self.db.execute(select(Listing).where(Listing.product_id == product_id).order_by(Listing.id))
            .scalars()
            .all()
        )

    def count_errors(self) -> int:
        return int(
            self.db.execute(
                select(func.count()).select_from(Listing).where(Listing.sync_status == SyncStatus.error)
            ).scalar_one()
        )

    # ---------- LIEN ----------
    def link(self, listing_id: int, product_id: int) -> Listing:
        listing = self.get(listing_id)
        if not self.db.get(Product, product_id):
            raise EntityNotFound(f"Product {product_id} not found", details={"product_id": product_id})

        if listing.product_id is not None:
            if listing.product_id == product_id:
                return listing
            raise ListingAlreadyLinked(
                f"Listing {listing_id} is already linked to product {listing.product_id}",
                details={"listing_id": listing_id, "product_id": listing.product_id},
            )

        listing.product_id = product_id
        listing.sync_status = SyncStatus.synced
        listing.sync_error = None
        self.db.commit()
        logger.info("listing %s linked to product %s", listing.external_item_id, product_id)
        return listing

    def unlink(self, listing_id: int) -> Listing:
        listing = self.get(listing_id)
        listing.product_id = None
        listing.sync_status = SyncStatus.pending
        self.db.commit()
        logger.info("listing %s unlinked", listing.external_item_id)
        return listing

    def ignore(self, listing_id: int) -> Listing:
        listing = self.get(listing_id)
        listing.sync_status = SyncStatus.ignored
        self.db.commit()
        return listing

    def _auto_link(self, listing: Listing) -> None:
        # uniquement vers un produit qui n'a encore aucune annonce liée
        if not listing.seller_sku:
            return
        product = self.db.execute(select(Product).where(Product.sku == listing.seller_sku)).scalar_one_or_none()
        if product is None:
            return
        already = self.db.execute(
            select(func.count()).select_from(Listing).where(Listing.product_id == product.id)
        ).scalar_one()
        if already:
            return
        listing.product_id = product.id
        logger.info("listing %s auto-linked to product %s by sku %s", listing.external_item_id, product.id, product.sku)

    # ---------- SYNC ----------
    def upsert_from_item(
        self,
        account_id: int,
        item: MarketplaceItem,
        now: datetime | None = None,
    ) -> tuple[Listing, bool]:
        """
        Upsert par identifiant externe. Retourne (annonce, appliqué).
        Une version strictement plus ancienne que celle stockée est ignorée.
        """
        listing = self.get_by_external_id(item.id)
        if listing is not None:
            stored = as_utc(listing.external_last_updated)
            if stored and item.last_updated and item.last_updated < stored:
                logger.warning(
                    "stale item %s discarded (incoming=%s, stored=%s)",
                    item.id,
                    item.last_updated.isoformat(),
                    stored.isoformat(),
                )
                return listing, False
        else:
            listing = Listing(account_id=account_id, external_item_id=item.id)
            self.db.add(listing)

        listing.title = item.title
        listing.seller_sku = item.seller_sku
        listing.status = item.status
        listing.logistic_type = item.logistic_type
        listing.price = item.price
        listing.available_quantity = item.available_quantity
        listing.sold_quantity = item.sold_quantity
        if item.last_updated:
            listing.external_last_updated = item.last_updated
        listing.last_sync_at = now or utcnow()
        listing.sync_error = None

        if listing.product_id is None:
            self._auto_link(listing)

        if listing.product_id is not None:
            listing.sync_status = SyncStatus.synced
        elif listing.sync_status != SyncStatus.ignored:
            listing.sync_status = SyncStatus.pending

        self.db.commit()
        return listing, True

    def apply_prices(self, listing: Listing, prices: PriceInfo, now: datetime | None = None) -> bool:
        """Retourne True si quelque chose a changé."""
        changed = (
            listing.price != prices.price
            or listing.original_price != prices.original_price
            or listing.has_promotion != prices.has_promotion
            or listing.discount_pct != prices.discount_pct
        )
        if changed:
            listing.price = prices.price
            listing.original_price = prices.original_price
            listing.has_promotion = prices.has_promotion
            listing.discount_pct = prices.discount_pct
        listing.last_sync_at = now or utcnow()
        self.db.commit()
        return changed

    def mark_error(self, external_item_id: str, message: str) -> Listing | None:
        listing = self.get_by_external_id(external_item_id)
        if listing is None:
            return None
        listing.sync_status = SyncStatus.error
        listing.sync_error = message[:2000]
        self.db.commit()
        return listing
