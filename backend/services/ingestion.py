"""
Ingestion des changements marketplace (webhooks + polling).

Règles :
- chaque unité (annonce, commande) est appliquée par UPSERT sur l'identifiant externe
- une version plus ancienne (last_updated) que celle stockée est ignorée
- sold_in_period est RECALCULÉ depuis les commandes de la période, jamais incrémenté
- une annonce / commande en erreur n'arrête pas le lot
- ReauthenticationRequired arrête toutes les opérations du compte concerné
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Protocol

from sqlalchemy import select, func
from sqlalchemy.orm import Session, sessionmaker

from backend.app.core.clock import as_utc, utcnow
from backend.app.core.config import Settings
from backend.app.core.exceptions import (
    EntityNotFound,
    InvalidState,
    RateLimited,
    ReauthenticationRequired,
    StockSyncError,
    TransientUpstreamError,
    UpstreamRequestError,
)
from backend.app.core.logging_config import get_logger
from backend.app.db.models.core_types import (
    COMMITTED_SALE_STATUSES,
    FULFILLMENT_LOGISTIC_TYPE,
    SyncRunStatus,
    SyncStatus,
    WarehouseRole,
)
from backend.app.db.models.models_v1 import (
    Listing,
    OrderRecord,
    OrderRecordLine,
    ReplenishmentConfig,
    SyncRun,
    Warehouse,
    WebhookDelivery,
)
from backend.services.accounts import ExternalAccountManager
from backend.services.inventory import StockLedger
from backend.services.listings import ListingDirectory
from backend.services.locking import KeyedLocks
from backend.services.marketplace import MarketplaceGateway, MarketplaceItem, MarketplaceOrder, OutcomeStatus

logger = get_logger(__name__)

ITEM_TOPICS = frozenset({"items"})
ORDER_TOPICS = frozenset({"orders", "orders_v2"})


def _last_segment(resource: str) -> str:
    # "/items/MLB123" -> "MLB123" ; "/orders/2000001" -> "2000001" ; "/" -> ""
    parts = [part for part in resource.split("/") if part]
    return parts[-1] if parts else ""


# ---------- MESSAGES ----------
@dataclass(frozen=True)
class WebhookNotification:
    topic: str
    resource: str
    external_user_id: str
    application_id: str | None = None

    @classmethod
    def parse(cls, payload: Any) -> "WebhookNotification":
        if not isinstance(payload, dict):
            raise ValueError("webhook payload must be an object")
        topic = payload.get("topic")
        resource = payload.get("resource")
        user_id = payload.get("user_id")
        if not topic or not resource or user_id in (None, ""):
            raise ValueError("webhook payload needs topic, resource and user_id")
        if not _last_segment(str(resource)):
            raise ValueError(f"webhook resource has no identifier: {resource!r}")
        app_id = payload.get("application_id")
        return cls(
            topic=str(topic),
            resource=str(resource),
            external_user_id=str(user_id),
            application_id=str(app_id) if app_id is not None else None,
        )

    @property
    def resource_id(self) -> str:
        return _last_segment(self.resource)

    @property
    def partition_key(self) -> str:
        return f"{self.topic}:{self.resource_id}"


@dataclass
class OrderSyncResult:
    account_id: int
    status: SyncRunStatus = SyncRunStatus.running
    pages_fetched: int = 0
    pages_failed: int = 0
    orders_applied: int = 0
    orders_failed: int = 0
    warnings: list[str] = field(default_factory=list)
    run_id: int | None = None


@dataclass
class BatchResult:
    applied: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class ResyncReport:
    listings: BatchResult
    prices: BatchResult
    orders: OrderSyncResult


class CancelToken(Protocol):
    def is_set(self) -> bool: ...


# ---------- PIPELINE ----------
class SyncIngestionPipeline:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        gateway: MarketplaceGateway,
        accounts: ExternalAccountManager,
        settings: Settings,
        locks: KeyedLocks | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.accounts = accounts
        self.settings = settings
        self.locks = locks or KeyedLocks()
        self.clock = clock
        self.sleep = sleep

    # ---------- WEBHOOKS ----------
    def record_delivery(self, notification: WebhookNotification) -> int:
        account = self.accounts.find_by_external_user(notification.external_user_id)
        with self.session_factory() as db:
            delivery = WebhookDelivery(
                account_id=account.id if account else None,
                topic=notification.topic,
                resource=notification.resource,
                external_user_id=notification.external_user_id,
                received_at=self.clock(),
            )
            db.add(delivery)
            db.commit()
            return delivery.id

    def _finish_delivery(self, delivery_id: int, error: str | None) -> None:
        with self.session_factory() as db:
            delivery = db.get(WebhookDelivery, delivery_id)
            if delivery is None:
                return
            delivery.attempts += 1
            delivery.error = error
            if error is None:
                delivery.processed = True
                delivery.processed_at = self.clock()
            db.commit()

    def process_delivery(self, delivery_id: int, notification: WebhookNotification) -> None:
        """Appelé par le pool de workers ; l'erreur remonte pour permettre le retry."""
        try:
            self.handle_notification(notification)
        except Exception as exc:
            self._finish_delivery(delivery_id, f"{type(exc).__name__}: {exc}")
            raise
        self._finish_delivery(delivery_id, None)

    def handle_notification(self, notification: WebhookNotification) -> bool:
        account = self.accounts.find_by_external_user(notification.external_user_id)
        if account is None:
            logger.warning("webhook for unknown marketplace user %s ignored", notification.external_user_id)
            return False
        if not account.active:
            raise ReauthenticationRequired(account_id=account.id)

        if notification.topic in ITEM_TOPICS:
            self.apply_item(account.id, notification.resource_id)
            return True
        if notification.topic in ORDER_TOPICS:
            order = self.gateway.fetch_order(account.id, notification.resource_id)
            return self.apply_order(account.id, order)

        logger.info("webhook topic %s not handled", notification.topic)
        return False

    # ---------- ITEMS ----------
    def apply_item(self, account_id: int, item_id: str) -> Listing:
        item = self.gateway.fetch_item(account_id, item_id)
        return self.apply_item_payload(account_id, item)

    def apply_item_payload(self, account_id: int, item: MarketplaceItem) -> Listing:
        with self.locks.hold(("listing", item.id)):
            with self.session_factory() as db:
                listing, applied = ListingDirectory(db).upsert_from_item(account_id, item, self.clock())
                if applied and listing.product_id is not None and listing.logistic_type == FULFILLMENT_LOGISTIC_TYPE:
                    self._reconcile_fulfillment(db, listing.product_id)
                return listing

    def _reconcile_fulfillment(self, db: Session, product_id: int) -> None:
        """Stock Full = somme des quantités disponibles des annonces Full liées au produit."""
        warehouse = db.execute(
            select(Warehouse).where(Warehouse.role == WarehouseRole.fulfillment).order_by(Warehouse.id).limit(1)
        ).scalar_one_or_none()
        if warehouse is None:
            logger.warning("no fulfillment warehouse configured, product %s not reconciled", product_id)
            return

        target = db.execute(
            select(func.coalesce(func.sum(Listing.available_quantity), 0))
            .where(Listing.product_id == product_id)
            .where(Listing.logistic_type == FULFILLMENT_LOGISTIC_TYPE)
        ).scalar_one()

        ledger = StockLedger(db, self.locks)
        current = ledger.get_quantity(product_id, warehouse.id)
        if int(target) != current:
            ledger.adjust(product_id, warehouse.id, int(target) - current, reason="fulfillment listing sync")

    # ---------- ORDERS ----------
    def apply_order(self, account_id: int, order: MarketplaceOrder, *, recompute: bool = True) -> bool:
        """
        Upsert d'une commande. Nouvelle commande : insérée seulement si vente engagée.
        Commande connue : statut et lignes mis à jour (ex: paid -> cancelled).
        """
        # annonces de l'ancienne version incluses : une ligne retirée doit sortir du compte
        touched = {line.item_id for line in order.lines}
        with self.locks.hold(("order", order.id)):
            with self.session_factory() as db:
                record = db.execute(
                    select(OrderRecord).where(OrderRecord.external_order_id == order.id)
                ).scalar_one_or_none()

                if record is not None:
                    stored = as_utc(record.external_last_updated)
                    if stored and order.last_updated and order.last_updated < stored:
                        logger.warning("stale order %s discarded", order.id)
                        return False
                    touched |= {line.external_item_id for line in record.lines}
                    record.lines.clear()
                    db.flush()
                else:
                    if order.status not in COMMITTED_SALE_STATUSES:
                        return False
                    record = OrderRecord(account_id=account_id, external_order_id=order.id)
                    db.add(record)

                record.status = order.status
                record.ordered_at = order.date_created
                record.external_last_updated = order.last_updated
                for line in order.lines:
                    record.lines.append(
                        OrderRecordLine(
                            external_item_id=line.item_id,
                            quantity=line.quantity,
                            unit_price=line.unit_price,
                        )
                    )
                db.commit()

        if recompute:
            self.recompute_sold_in_period(item_ids=touched)
        return True

    def _period_days(self, db: Session) -> int:
        glob = db.execute(
            select(ReplenishmentConfig.analysis_period_days).where(ReplenishmentConfig.product_id.is_(None))
        ).scalar_one_or_none()
        return int(glob or self.settings.default_analysis_period_days)

    def recompute_sold_in_period(
        self,
        item_ids: Iterable[str] | None = None,
        account_id: int | None = None,
    ) -> int:
        """
        Recalcule Listing.sold_in_period depuis l'ensemble des commandes de la période.
        Idempotent : rejouer un webhook ne double jamais le compte.
        """
        now = self.clock()
        ids = set(item_ids) if item_ids is not None else None
        with self.session_factory() as db:
            start = now - timedelta(days=self._period_days(db))

            totals_q = (
                select(OrderRecordLine.external_item_id, func.sum(OrderRecordLine.quantity))
                .join(OrderRecord, OrderRecord.id == OrderRecordLine.order_id)
                .where(OrderRecord.status.in_(COMMITTED_SALE_STATUSES))
                .where(OrderRecord.ordered_at >= start)
                .where(OrderRecord.ordered_at <= now)
                .group_by(OrderRecordLine.external_item_id)
            )
            listings_q = select(Listing)
            if ids is not None:
                if not ids:
                    return 0
                totals_q = totals_q.where(OrderRecordLine.external_item_id.in_(ids))
                listings_q = listings_q.where(Listing.external_item_id.in_(ids))
            if account_id is not None:
                listings_q = listings_q.where(Listing.account_id == account_id)

            totals = {item_id: int(qty) for item_id, qty in db.execute(totals_q).all()}
            listings = db.execute(listings_q).scalars().all()
            for listing in listings:
                listing.sold_in_period = totals.get(listing.external_item_id, 0)
            db.commit()
            return len(listings)

    def sync_orders(
        self,
        account_id: int,
        cancel_event: CancelToken | None = None,
        period_days: int | None = None,
    ) -> OrderSyncResult:
        """
        Pagination date_desc jusqu'à page courte, plafond de pages, ou commandes
        antérieures à la fenêtre. Une page en erreur (5xx, 4xx, rate limit) est sautée (warning).
        Chaque page est committée : une annulation garde le travail déjà fait.
        """
        account = self.accounts.get_account(account_id)
        page_size = self.settings.orders_page_size
        result = OrderSyncResult(account_id=account_id)

        with self.session_factory() as db:
            window_start = self.clock() - timedelta(days=period_days or self._period_days(db))
            run = SyncRun(account_id=account_id, sync_type="orders", started_at=self.clock())
            db.add(run)
            db.commit()
            result.run_id = run.id

        try:
            for page_no in range(self.settings.orders_max_pages):
                if cancel_event is not None and cancel_event.is_set():
                    result.status = SyncRunStatus.cancelled
                    result.warnings.append(f"cancelled before page {page_no + 1}")
                    break

                if page_no:
                    self.sleep(self.settings.inter_page_delay_seconds)

                offset = page_no * page_size
                try:
                    page = self.gateway.search_orders(
                        account_id,
                        account.external_user_id,
                        offset=offset,
                        limit=page_size,
                        sort="date_desc",
                    )
                except (TransientUpstreamError, RateLimited, UpstreamRequestError) as exc:
                    result.pages_failed += 1
                    result.warnings.append(f"page {page_no + 1} (offset {offset}) skipped: {exc}")
                    logger.warning("order sync account %s: page %d skipped: %s", account_id, page_no + 1, exc)
                    continue

                result.pages_fetched += 1
                for order in page.orders:
                    if order.date_created < window_start:
                        continue
                    try:
                        if self.apply_order(account_id, order, recompute=False):
                            result.orders_applied += 1
                    except Exception:
                        result.orders_failed += 1
                        logger.exception("order sync account %s: order %s failed", account_id, order.id)

                if page.size < page_size:
                    break
                if page.orders and min(o.date_created for o in page.orders) < window_start:
                    break
            else:
                logger.info("order sync account %s: page cap reached", account_id)

            self.recompute_sold_in_period(account_id=account_id)
        except ReauthenticationRequired:
            result.status = SyncRunStatus.failed
            result.warnings.append("account requires reauthentication")
            self._finish_run(result)
            raise
        except Exception as exc:
            # le run ne reste jamais "running"
            result.status = SyncRunStatus.failed
            result.warnings.append(f"aborted: {exc}")
            logger.exception("order sync account %s aborted", account_id)
            self._finish_run(result)
            raise

        if result.status == SyncRunStatus.running:
            failed = result.pages_failed or result.orders_failed
            result.status = SyncRunStatus.partial if failed else SyncRunStatus.success

        self._finish_run(result)
        logger.info(
            "order sync account %s: %s (%d pages, %d failed, %d orders)",
            account_id,
            result.status.value,
            result.pages_fetched,
            result.pages_failed,
            result.orders_applied,
        )
        return result

    def _finish_run(self, result: OrderSyncResult) -> None:
        with self.session_factory() as db:
            run = db.get(SyncRun, result.run_id)
            if run is None:
                return
            run.status = result.status
            run.pages_fetched = result.pages_fetched
            run.pages_failed = result.pages_failed
            run.items_applied = result.orders_applied
            run.items_failed = result.orders_failed
            run.warnings = "\n".join(result.warnings) or None
            run.completed_at = self.clock()
            db.commit()

    # ---------- LISTINGS ----------
    def _account_item_ids(self, account_id: int) -> list[str]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Listing.external_item_id)
                    .where(Listing.account_id == account_id)
                    .where(Listing.sync_status != SyncStatus.ignored)
                    .order_by(Listing.id)
                ).scalars()
            )

    def _mark_error(self, item_id: str, message: str) -> None:
        with self.session_factory() as db:
            ListingDirectory(db).mark_error(item_id, message)

    def sync_listings(self, account_id: int, item_ids: Iterable[str] | None = None) -> BatchResult:
        result = BatchResult()
        for item_id in item_ids if item_ids is not None else self._account_item_ids(account_id):
            try:
                self.apply_item(account_id, item_id)
                result.applied += 1
            except ReauthenticationRequired:
                raise
            except StockSyncError as exc:
                result.failed += 1
                result.errors.append(f"{item_id}: {exc}")
                logger.warning("listing %s sync failed: %s", item_id, exc)
                self._mark_error(item_id, str(exc))
        return result

    def refresh_prices(self, account_id: int) -> BatchResult:
        result = BatchResult()
        for item_id in self._account_item_ids(account_id):
            outcome = self.gateway.attempt(self.gateway.fetch_item_prices, account_id, item_id)
            if outcome.status == OutcomeStatus.fatal and isinstance(outcome.error, ReauthenticationRequired):
                raise outcome.error
            if not outcome.ok:
                result.failed += 1
                result.errors.append(f"{item_id}: {outcome.error}")
                logger.warning("price refresh for %s failed (%s): %s", item_id, outcome.status.value, outcome.error)
                self._mark_error(item_id, str(outcome.error))
                continue

            with self.locks.hold(("listing", item_id)):
                with self.session_factory() as db:
                    directory = ListingDirectory(db)
                    listing = directory.get_by_external_id(item_id)
                    if listing is not None:
                        directory.apply_prices(listing, outcome.value, self.clock())
                        result.applied += 1
        return result

    def push_listing_quantity(self, listing_id: int) -> int:
        """Pousse le total des entrepôts locaux vers une annonce liée hors Full."""
        with self.session_factory() as db:
            listing = db.get(Listing, listing_id)
            if listing is None:
                raise EntityNotFound(f"Listing {listing_id} not found", details={"listing_id": listing_id})
            if listing.product_id is None:
                raise InvalidState(f"Listing {listing_id} is not linked to a product")
            if listing.logistic_type == FULFILLMENT_LOGISTIC_TYPE:
                raise InvalidState(f"Listing {listing_id} is stocked by the fulfillment center")

            quantity = StockLedger(db, self.locks).quantities_by_role(listing.product_id)[WarehouseRole.local]
            account_id, item_id = listing.account_id, listing.external_item_id

        self.gateway.update_item_quantity(account_id, item_id, quantity)

        with self.locks.hold(("listing", item_id)):
            with self.session_factory() as db:
                listing = db.get(Listing, listing_id)
                listing.available_quantity = quantity
                listing.last_sync_at = self.clock()
                db.commit()
        logger.info("listing %s pushed quantity %d", item_id, quantity)
        return quantity

    # ---------- COMPTE ----------
    def poll_account(self, account_id: int, cancel_event: CancelToken | None = None) -> OrderSyncResult:
        self.refresh_prices(account_id)
        return self.sync_orders(account_id, cancel_event)

    def resync_account(self, account_id: int, cancel_event: CancelToken | None = None) -> ResyncReport:
        listings = self.sync_listings(account_id)
        prices = self.refresh_prices(account_id)
        orders = self.sync_orders(account_id, cancel_event)
        return ResyncReport(listings=listings, prices=prices, orders=orders)


# ---------- INTAKE ----------
class Submitter(Protocol):
    def submit(self, key: str, message: Any) -> bool: ...


class WebhookIntake:
    """
    Point d'entrée HTTP des webhooks : ne lève jamais.
    Le traitement réel se fait dans le pool (file partitionnée par ressource).
    """

    def __init__(self, pipeline: SyncIngestionPipeline, pool: Submitter):
        self.pipeline = pipeline
        self.pool = pool

    def ingest_webhook(self, payload: Any) -> int | None:
        try:
            notification = WebhookNotification.parse(payload)
        except ValueError as exc:
            logger.warning("malformed webhook ignored: %s", exc)
            return None

        try:
            delivery_id = self.pipeline.record_delivery(notification)
        except Exception:
            logger.exception("could not record webhook %s %s", notification.topic, notification.resource)
            return None

        # la livraison est enregistrée : le polling la rattrapera si la mise en file échoue
        try:
            queued = self.pool.submit(notification.partition_key, (delivery_id, notification))
        except Exception:
            logger.exception("could not enqueue webhook %s", notification.resource)
            return delivery_id
        if not queued:
            logger.error("webhook queue full, %s left for the next polling cycle", notification.resource)
        return delivery_id


def webhook_handler(pipeline: SyncIngestionPipeline) -> Callable[[tuple[int, WebhookNotification]], None]:
    def handle(message: tuple[int, WebhookNotification]) -> None:
        delivery_id, notification = message
        pipeline.process_delivery(delivery_id, notification)

    return handle
