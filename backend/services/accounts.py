"""
Cycle de vie des identifiants OAuth des comptes marketplace.

Machine à états par compte :
    active --(expiration)--> refreshing --> active | invalid

- un compte invalid (active=False) ne déclenche plus aucun appel réseau
- un refresh rejeté par l'API désactive le compte (jamais supprimé)
- le cache PKCE est une instance injectée (pas de singleton module)
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from backend.app.core.clock import as_utc, utcnow
from backend.app.core.exceptions import (
    EntityNotFound,
    InvalidState,
    PKCEVerifierMissing,
    ReauthenticationRequired,
    UpstreamRequestError,
)
from backend.app.core.logging_config import get_logger
from backend.app.db.models.core_types import AccountState
from backend.app.db.models.models_v1 import ExternalAccount
from backend.services.locking import KeyedLocks
from backend.services.marketplace import MarketplaceOAuthClient

logger = get_logger(__name__)


# ---------- PKCE ----------
@dataclass(frozen=True)
class PendingConnect:
    verifier: str
    user_id: str


def code_challenge_for(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class PKCEStore:
    """Verifiers PKCE indexés par state, avec TTL ; purge à chaque lecture."""

    def __init__(self, ttl_seconds: int = 600, clock: Callable[[], datetime] = utcnow):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[PendingConnect, datetime]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def put(self, state: str, pending: PendingConnect) -> None:
        with self._lock:
            self._entries[state] = (pending, self.clock())

    def _purge_expired(self, now: datetime) -> None:
        expired = [s for s, (_, created) in self._entries.items() if now - created > self.ttl]
        for s in expired:
            del self._entries[s]

    def pop(self, state: str) -> PendingConnect:
        if not state:
            raise InvalidState("Missing OAuth state")
        with self._lock:
            self._purge_expired(self.clock())
            entry = self._entries.pop(state, None)
        if entry is None:
            # expiré, rejoué ou inconnu
            raise PKCEVerifierMissing("No pending connection for this state", details={"state": state})
        return entry[0]


# ---------- ACCOUNTS ----------
class ExternalAccountManager:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        oauth: MarketplaceOAuthClient,
        pkce_store: PKCEStore,
        locks: KeyedLocks | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.oauth = oauth
        self.pkce_store = pkce_store
        self.locks = locks or KeyedLocks()
        self.clock = clock
        self._refreshing: set[int] = set()
        self._refreshing_guard = threading.Lock()

    # ---------- CONNECT ----------
    def connect_account(self, user_id: str) -> str:
        """Démarre le handshake : retourne l'URL d'autorisation."""
        verifier = secrets.token_urlsafe(64)
        state = secrets.token_urlsafe(24)
        self.pkce_store.put(state, PendingConnect(verifier=verifier, user_id=str(user_id)))
        return self.oauth.authorization_url(state, code_challenge_for(verifier))

    def complete_connect(self, code: str, state: str) -> ExternalAccount:
        pending = self.pkce_store.pop(state)
        grant = self.oauth.exchange_code(code, pending.verifier)
        info = self.oauth.get_user_info(grant.access_token) or {}
        external_user_id = str(info.get("id") or grant.external_user_id or "")
        if not external_user_id:
            raise InvalidState("Marketplace did not return a user id")

        now = self.clock()
        with self.session_factory() as db:
            account = db.execute(
                select(ExternalAccount)
                .where(ExternalAccount.user_id == pending.user_id)
                .where(ExternalAccount.external_user_id == external_user_id)
            ).scalar_one_or_none()
            if account is None:
                account = ExternalAccount(user_id=pending.user_id, external_user_id=external_user_id)
                db.add(account)

            account.nickname = info.get("nickname")
            account.site_id = info.get("site_id")
            account.access_token = grant.access_token
            account.refresh_token = grant.refresh_token
            account.expires_at = grant.expires_at(now)
            account.active = True
            db.commit()

        logger.info("account %s connected (external user %s)", account.id, external_user_id)
        return account

    def disconnect_account(self, account_id: int) -> ExternalAccount:
        with self.session_factory() as db:
            account = db.get(ExternalAccount, account_id)
            if not account:
                raise EntityNotFound(f"Account {account_id} not found", details={"account_id": account_id})
            account.active = False
            db.commit()
        logger.info("account %s disconnected", account_id)
        return account

    # ---------- TOKENS ----------
    def _load(self, db: Session, account_id: int) -> ExternalAccount:
        account = db.get(ExternalAccount, account_id)
        if not account:
            raise EntityNotFound(f"Account {account_id} not found", details={"account_id": account_id})
        if not account.active:
            raise ReauthenticationRequired(account_id=account_id)
        return account

    def _is_fresh(self, account: ExternalAccount) -> bool:
        return as_utc(account.expires_at) > self.clock()

    def get_valid_token(self, account_id: int) -> str:
        with self.session_factory() as db:
            account = self._load(db, account_id)
            if self._is_fresh(account):
                return account.access_token

        with self.locks.hold(("account", account_id)):
            with self.session_factory() as db:
                # un autre thread a pu rafraîchir pendant l'attente du verrou
                account = self._load(db, account_id)
                if self._is_fresh(account):
                    return account.access_token

                with self._refreshing_guard:
                    self._refreshing.add(account_id)
                try:
                    grant = self.oauth.refresh(account.refresh_token)
                except (UpstreamRequestError, ReauthenticationRequired) as exc:
                    account.active = False
                    db.commit()
                    logger.error("refresh rejected for account %s, account deactivated: %s", account_id, exc)
                    raise ReauthenticationRequired(account_id=account_id) from exc
                finally:
                    with self._refreshing_guard:
                        self._refreshing.discard(account_id)

                account.access_token = grant.access_token
                account.refresh_token = grant.refresh_token
                account.expires_at = grant.expires_at(self.clock())
                db.commit()
                logger.info("token refreshed for account %s", account_id)
                return account.access_token

    # ---------- LECTURE ----------
    def account_state(self, account_id: int) -> AccountState:
        with self.session_factory() as db:
            account = db.get(ExternalAccount, account_id)
            if not account:
                raise EntityNotFound(f"Account {account_id} not found", details={"account_id": account_id})
            if not account.active:
                return AccountState.invalid
        with self._refreshing_guard:
            if account_id in self._refreshing:
                return AccountState.refreshing
        return AccountState.active

    def get_account(self, account_id: int) -> ExternalAccount:
        with self.session_factory() as db:
            account = db.get(ExternalAccount, account_id)
            if not account:
                raise EntityNotFound(f"Account {account_id} not found", details={"account_id": account_id})
            return account

    def list_active_accounts(self, user_id: str | None = None) -> list[ExternalAccount]:
        with self.session_factory() as db:
            q = select(ExternalAccount).where(ExternalAccount.active.is_(True))
            if user_id is not None:
                q = q.where(ExternalAccount.user_id == str(user_id))
            return list(db.execute(q.order_by(ExternalAccount.id)).scalars().all())

    def find_by_external_user(self, external_user_id: str) -> ExternalAccount | None:
        with self.session_factory() as db:
            return db.execute(
                select(ExternalAccount)
                .where(ExternalAccount.external_user_id == str(external_user_id))
                .order_by(ExternalAccount.active.desc(), ExternalAccount.id)
                .limit(1)
            ).scalar_one_or_none()
