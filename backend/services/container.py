from __future__ import annotations

import time
from datetime import datetime
from typing import Callable

import requests
from sqlalchemy.orm import Session, sessionmaker

from backend.app.core.clock import utcnow
from backend.app.core.config import Settings
from backend.app.core.logging_config import get_logger
from backend.services.accounts import ExternalAccountManager, PKCEStore
from backend.services.ingestion import SyncIngestionPipeline, WebhookIntake, webhook_handler
from backend.services.inventory import StockLedger
from backend.services.listings import ListingDirectory
from backend.services.locking import KeyedLocks
from backend.services.marketplace import MarketplaceGateway, MarketplaceHttp, MarketplaceOAuthClient, RetryPolicy
from backend.services.replenishment import ReplenishmentEngine
from backend.services.velocity import SalesVelocityAggregator
from backend.services.workers import PartitionedWorkerPool, PollingScheduler

logger = get_logger(__name__)


class ServiceContainer:
    """
    Assemble les services une seule fois par process.
    Les services « longs » (comptes, pipeline, pool) partagent le même registre de verrous ;
    les services liés à une requête reçoivent la session de la requête.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        http_session: requests.Session | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.clock = clock
        self.locks = KeyedLocks()

        self.http = MarketplaceHttp(settings, session=http_session, sleep=sleep)
        self.oauth = MarketplaceOAuthClient(self.http, settings)
        self.pkce_store = PKCEStore(settings.pkce_ttl_seconds, clock)
        self.accounts = ExternalAccountManager(session_factory, self.oauth, self.pkce_store, self.locks, clock)
        self.gateway = MarketplaceGateway(self.http, self.accounts)
        self.pipeline = SyncIngestionPipeline(
            session_factory,
            self.gateway,
            self.accounts,
            settings,
            locks=self.locks,
            clock=clock,
            sleep=sleep,
        )
        self.pool = PartitionedWorkerPool(
            webhook_handler(self.pipeline),
            workers=settings.webhook_workers,
            queue_size=settings.webhook_queue_size,
            max_attempts=settings.webhook_max_attempts,
            backoff=RetryPolicy.from_settings(settings),
            sleep=sleep,
        )
        self.intake = WebhookIntake(self.pipeline, self.pool)
        self.scheduler = PollingScheduler(
            self.pipeline.poll_account,
            lambda: [a.id for a in self.accounts.list_active_accounts()],
            interval_seconds=settings.polling_interval_seconds,
        )

    # ---------- PAR REQUÊTE ----------
    def ledger(self, db: Session) -> StockLedger:
        return StockLedger(db, self.locks)

    def directory(self, db: Session) -> ListingDirectory:
        return ListingDirectory(db)

    def aggregator(self, db: Session) -> SalesVelocityAggregator:
        return SalesVelocityAggregator(db, self.clock)

    def engine(self, db: Session) -> ReplenishmentEngine:
        return ReplenishmentEngine(
            db,
            self.settings,
            aggregator=self.aggregator(db),
            ledger=self.ledger(db),
            clock=self.clock,
        )

    # ---------- CYCLE DE VIE ----------
    def start(self, polling: bool = True) -> None:
        self.pool.start()
        if polling:
            self.scheduler.start()
        logger.info("services started (polling=%s)", polling)

    def stop(self) -> None:
        self.scheduler.stop()
        self.pool.stop()
        logger.info("services stopped")
