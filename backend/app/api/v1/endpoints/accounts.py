from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field

from backend.app.api.deps import get_container
from backend.services.container import ServiceContainer

router = APIRouter(prefix="/accounts")


class ConnectRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)


def _account_out(account) -> dict:
    return {
        "id": account.id,
        "user_id": account.user_id,
        "external_user_id": account.external_user_id,
        "nickname": account.nickname,
        "active": account.active,
        "expires_at": account.expires_at,
    }


@router.post("/connect")
def connect(payload: ConnectRequest, container: ServiceContainer = Depends(get_container)):
    return {"authorization_url": container.accounts.connect_account(payload.user_id)}


@router.get("/callback")
def callback(code: str, state: str, container: ServiceContainer = Depends(get_container)):
    return _account_out(container.accounts.complete_connect(code, state))


@router.get("")
def list_accounts(user_id: str | None = None, container: ServiceContainer = Depends(get_container)):
    return [_account_out(a) for a in container.accounts.list_active_accounts(user_id)]


@router.get("/{account_id}/state")
def account_state(account_id: int, container: ServiceContainer = Depends(get_container)):
    return {"account_id": account_id, "state": container.accounts.account_state(account_id).value}


@router.post("/{account_id}/disconnect")
def disconnect(account_id: int, container: ServiceContainer = Depends(get_container)):
    return _account_out(container.accounts.disconnect_account(account_id))


@router.post("/{account_id}/resync", status_code=202)
def resync(
    account_id: int,
    background: BackgroundTasks,
    container: ServiceContainer = Depends(get_container),
):
    # le compte doit exister ; la resynchro complète tourne après la réponse
    container.accounts.get_account(account_id)
    background.add_task(container.scheduler.run_cycle, account_id, container.pipeline.resync_account)
    return {"account_id": account_id, "scheduled": True}
