from datetime import timedelta

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from backend.app.core.config import Settings
from backend.app.db.base import Base
from backend.app.db.models import models_v1  # noqa: F401  (tables)
from backend.app.db.models.core_types import WarehouseRole
from backend.app.db.models.models_v1 import ExternalAccount, Product, StockEntry, Warehouse
from backend.services.container import ServiceContainer
from backend.tests.fakes import FakeHttpSession, FrozenClock


# ---------- DB ----------
@pytest.fixture(scope="function")
def engine(tmp_path):
    """
    Base SQLite fichier par test (les services ouvrent leurs propres sessions).
    """
    eng = create_engine(
        f"sqlite:///{tmp_path / 'stock_sync.db'}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(eng, "connect")
    def _fk_on(dbapi_conn, _):
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()

    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# ---------- SERVICES ----------
@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        ml_client_id="app-123",
        ml_client_secret="secret",
        ml_redirect_uri="https://example.test/callback",
        retry_max_attempts=3,
        retry_base_delay_seconds=0.0,
        orders_page_size=2,
        inter_page_delay_seconds=0.0,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def http() -> FakeHttpSession:
    return FakeHttpSession()


@pytest.fixture
def sleeps() -> list:
    return []


@pytest.fixture
def container(settings, session_factory, http, clock, sleeps) -> ServiceContainer:
    return ServiceContainer(settings, session_factory, http_session=http, clock=clock, sleep=sleeps.append)


# ---------- DONNÉES ----------
@pytest.fixture
def make_product(db_session):
    def _make(sku: str, name: str | None = None, average_cost: int = 0) -> Product:
        p = Product(sku=sku, name=name or f"Produit {sku}", average_cost=average_cost)
        db_session.add(p)
        db_session.commit()
        return p

    return _make


@pytest.fixture
def make_warehouse(db_session):
    def _make(name: str, role: WarehouseRole = WarehouseRole.local) -> Warehouse:
        wh = Warehouse(name=name, role=role)
        db_session.add(wh)
        db_session.commit()
        return wh

    return _make


@pytest.fixture
def put_stock(db_session):
    def _put(product: Product, warehouse: Warehouse, quantity: int, safety_stock: int = 0) -> StockEntry:
        row = StockEntry(
            product_id=product.id,
            warehouse_id=warehouse.id,
            quantity=quantity,
            safety_stock=safety_stock,
        )
        db_session.add(row)
        db_session.commit()
        return row

    return _put


@pytest.fixture
def make_account(db_session, clock):
    def _make(
        external_user_id: str = "555",
        user_id: str = "u1",
        expires_in: timedelta = timedelta(hours=6),
        active: bool = True,
    ) -> ExternalAccount:
        acc = ExternalAccount(
            user_id=user_id,
            external_user_id=external_user_id,
            access_token="access-1",
            refresh_token="refresh-1",
            expires_at=clock() + expires_in,
            active=active,
        )
        db_session.add(acc)
        db_session.commit()
        return acc

    return _make
