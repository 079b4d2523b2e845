from fastapi import APIRouter

from backend.app.api.v1.endpoints.health import router as health_router
from backend.app.api.v1.endpoints.stock import router as stock_router
from backend.app.api.v1.endpoints.transfers import router as transfers_router
from backend.app.api.v1.endpoints.listings import router as listings_router
from backend.app.api.v1.endpoints.accounts import router as accounts_router
from backend.app.api.v1.endpoints.webhooks import router as webhooks_router
from backend.app.api.v1.endpoints.replenishment import router as replenishment_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(stock_router, tags=["stock"])
router.include_router(transfers_router, tags=["transfers"])
router.include_router(listings_router, tags=["listings"])
router.include_router(accounts_router, tags=["accounts"])
router.include_router(webhooks_router, tags=["webhooks"])
router.include_router(replenishment_router, tags=["replenishment"])
