from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.api.v1.router import router as v1_router
from backend.app.core.config import Settings, get_settings
from backend.app.core.exceptions import (
    EntityNotFound,
    InsufficientStock,
    InvalidState,
    InvalidTransfer,
    ListingAlreadyLinked,
    RateLimited,
    ReauthenticationRequired,
    StockSyncError,
    TransientUpstreamError,
    UpstreamRequestError,
)
from backend.app.core.logging_config import configure_logging, get_logger
from backend.app.db.session import SessionLocal
from backend.services.container import ServiceContainer

logger = get_logger(__name__)

# premier match gagne (sous-classes avant classes mères)
STATUS_BY_ERROR: list[tuple[type[StockSyncError], int]] = [
    (InsufficientStock, 409),
    (ListingAlreadyLinked, 409),
    (InvalidTransfer, 400),
    (InvalidState, 400),
    (EntityNotFound, 404),
    (ReauthenticationRequired, 401),
    (RateLimited, 429),
    (TransientUpstreamError, 502),
    (UpstreamRequestError, 502),
]


def status_for(exc: StockSyncError) -> int:
    for cls, status in STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return status
    return 500


async def stock_sync_error_handler(request: Request, exc: StockSyncError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content=exc.to_dict())


def create_app(
    container: ServiceContainer | None = None,
    settings: Settings | None = None,
    start_services: bool = True,
) -> FastAPI:
    settings = settings or get_settings()
    container = container or ServiceContainer(settings, SessionLocal)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level, settings.log_json)
        if start_services:
            container.start()
        try:
            yield
        finally:
            if start_services:
                container.stop()

    app = FastAPI(title="Stock Sync Engine", version="0.1.0", lifespan=lifespan)
    app.state.container = container
    app.add_exception_handler(StockSyncError, stock_sync_error_handler)
    app.include_router(v1_router, prefix="/v1")
    return app


app = create_app()
