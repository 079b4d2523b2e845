from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.core.config import Settings, get_settings
from backend.app.db.models.core_types import WarehouseRole
from backend.app.db.models.models_v1 import ReplenishmentConfig, Warehouse
from backend.app.db.session import SessionLocal

DEFAULT_WAREHOUSES = (
    ("Loja", WarehouseRole.local),
    ("Full", WarehouseRole.fulfillment),
)


def run_seed(db: Session | None = None, settings: Settings | None = None) -> dict[str, int]:
    """Idempotent : ne crée que ce qui manque."""
    settings = settings or get_settings()
    owns_session = db is None
    if owns_session:
        db = SessionLocal()
    created = {"warehouses": 0, "global_config": 0}
    try:
        # 1) Entrepôts par défaut (un local, un Full)
        for name, role in DEFAULT_WAREHOUSES:
            if not db.scalar(select(Warehouse).where(Warehouse.name == name)):
                db.add(Warehouse(name=name, role=role))
                created["warehouses"] += 1

        # 2) Config globale de réapprovisionnement (product_id NULL)
        if not db.scalar(select(ReplenishmentConfig).where(ReplenishmentConfig.product_id.is_(None))):
            db.add(
                ReplenishmentConfig(
                    product_id=None,
                    avg_delivery_days=settings.default_avg_delivery_days,
                    full_release_days=settings.default_full_release_days,
                    safety_stock=settings.default_safety_stock,
                    min_coverage_days=settings.default_min_coverage_days,
                    analysis_period_days=settings.default_analysis_period_days,
                )
            )
            created["global_config"] = 1
        db.commit()
        return created
    finally:
        if owns_session:
            db.close()


if __name__ == "__main__":
    result = run_seed()
    print(f"SEED OK: warehouses={result['warehouses']}, global_config={result['global_config']}")
