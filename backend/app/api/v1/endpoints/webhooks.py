from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool

from backend.app.api.deps import get_container
from backend.app.core.logging_config import get_logger
from backend.services.container import ServiceContainer

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks")


@router.post("/marketplace")
async def receive_notification(request: Request, container: ServiceContainer = Depends(get_container)):
    """
    Toujours 200 : le marketplace attend un acquittement rapide.
    Le traitement est asynchrone (pool de workers), les échecs sont loggés.
    """
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("webhook body is not JSON")
        payload = None

    await run_in_threadpool(container.intake.ingest_webhook, payload)
    return {"received": True}


@router.get("/marketplace")
def verify_endpoint(challenge: str | None = None):
    # vérification de l'URL de notification
    if challenge:
        return {"challenge": challenge}
    return {"status": "ok"}
