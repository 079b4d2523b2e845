"""
Client marketplace (API Mercado Livre) : HTTP brut + OAuth + opérations métier.

Politique de retry uniforme (MarketplaceHttp.request) :
- 401 : jamais retenté -> ReauthenticationRequired
- 429 : backoff exponentiel (Retry-After respecté), borné -> RateLimited
- timeout / connexion : backoff borné -> TransientUpstreamError
- 5xx : TransientUpstreamError immédiat (l'appelant saute l'unité et continue le lot)
- autre 4xx : UpstreamRequestError
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Protocol
from urllib.parse import urlencode

import requests

from backend.app.core.config import Settings
from backend.app.core.clock import parse_marketplace_datetime
from backend.app.core.exceptions import (
    RateLimited,
    ReauthenticationRequired,
    StockSyncError,
    TransientUpstreamError,
    UpstreamRequestError,
)
from backend.app.core.logging_config import get_logger

logger = get_logger(__name__)

MARKETPLACE_CHANNEL = "channel_marketplace"


def to_cents(amount: Any) -> int:
    if amount is None:
        return 0
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ---------- RETRY ----------
@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        """attempt commence à 1 : 1s, 2s, 4s... plafonné à max_delay."""
        if retry_after is not None:
            return min(max(retry_after, 0.0), self.max_delay)
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


class OutcomeStatus(str, enum.Enum):
    success = "success"
    retry_exhausted = "retry_exhausted"
    fatal = "fatal"


@dataclass
class CallOutcome:
    status: OutcomeStatus
    value: Any = None
    error: StockSyncError | None = None

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.success


def _retry_after_seconds(resp: requests.Response) -> float | None:
    raw = resp.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _safe_body(resp: requests.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text


class MarketplaceHttp:
    def __init__(
        self,
        settings: Settings,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = settings.ml_api_base_url.rstrip("/")
        self.timeout = settings.http_timeout_seconds
        self.policy = RetryPolicy.from_settings(settings)
        self.session = session or requests.Session()
        self.sleep = sleep

    def request(
        self,
        method: str,
        path: str,
        *,
        token: str | None = None,
        params: dict[str, Any] | None = None,
        json: Any = None,
        data: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        attempt = 0
        while True:
            attempt += 1
            try:
                resp = self.session.request(
                    method,
                    url,
                    headers=headers,
                    params=params,
                    json=json,
                    data=data,
                    timeout=self.timeout,
                )
            except (requests.Timeout, requests.ConnectionError) as exc:
                if attempt >= self.policy.max_attempts:
                    raise TransientUpstreamError(f"{method} {path} failed after {attempt} attempts: {exc}") from exc
                delay = self.policy.delay_for(attempt)
                logger.warning("%s %s network error (%s), retry %d in %.1fs", method, path, exc, attempt, delay)
                self.sleep(delay)
                continue

            status = resp.status_code
            if status == 401:
                raise ReauthenticationRequired(f"{method} {path} rejected the access token")

            if status == 429:
                if attempt >= self.policy.max_attempts:
                    raise RateLimited(f"{method} {path} still rate limited", attempts=attempt)
                delay = self.policy.delay_for(attempt, _retry_after_seconds(resp))
                logger.warning("%s %s rate limited, retry %d in %.1fs", method, path, attempt, delay)
                self.sleep(delay)
                continue

            if status >= 500:
                raise TransientUpstreamError(f"{method} {path} returned {status}", status_code=status)

            if status >= 400:
                raise UpstreamRequestError(f"{method} {path} returned {status}", status_code=status, body=_safe_body(resp))

            if not resp.content:
                return None
            return resp.json()


# ---------- OAUTH ----------
@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: str
    expires_in: int
    external_user_id: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenGrant":
        user_id = payload.get("user_id")
        return cls(
            access_token=payload["access_token"],
            refresh_token=payload["refresh_token"],
            expires_in=int(payload.get("expires_in") or 0),
            external_user_id=str(user_id) if user_id is not None else None,
        )

    def expires_at(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.expires_in)


class MarketplaceOAuthClient:
    def __init__(self, http: MarketplaceHttp, settings: Settings):
        self.http = http
        self.settings = settings

    def authorization_url(self, state: str, code_challenge: str) -> str:
        query = urlencode(
            {
                "response_type": "code",
                "client_id": self.settings.ml_client_id,
                "redirect_uri": self.settings.ml_redirect_uri,
                "state": state,
                "code_challenge": code_challenge,
                "code_challenge_method": "S256",
            }
        )
        return f"{self.settings.ml_auth_url}?{query}"

    def exchange_code(self, code: str, verifier: str) -> TokenGrant:
        payload = self.http.request(
            "POST",
            "/oauth/token",
            data={
                "grant_type": "authorization_code",
                "client_id": self.settings.ml_client_id,
                "client_secret": self.settings.ml_client_secret,
                "code": code,
                "redirect_uri": self.settings.ml_redirect_uri,
                "code_verifier": verifier,
            },
        )
        return TokenGrant.from_payload(payload)

    def refresh(self, refresh_token: str) -> TokenGrant:
        payload = self.http.request(
            "POST",
            "/oauth/token",
            data={
                "grant_type": "refresh_token",
                "client_id": self.settings.ml_client_id,
                "client_secret": self.settings.ml_client_secret,
                "refresh_token": refresh_token,
            },
        )
        return TokenGrant.from_payload(payload)

    def get_user_info(self, access_token: str) -> dict[str, Any]:
        return self.http.request("GET", "/users/me", token=access_token)


# ---------- PAYLOADS ----------
def _seller_sku(payload: dict[str, Any]) -> str | None:
    sku = payload.get("seller_custom_field")
    if sku:
        return str(sku).strip() or None
    for attr in payload.get("attributes") or []:
        if attr.get("id") == "SELLER_SKU" and attr.get("value_name"):
            return str(attr["value_name"]).strip() or None
    return None


@dataclass(frozen=True)
class MarketplaceItem:
    id: str
    title: str | None
    price: int
    available_quantity: int
    sold_quantity: int
    status: str | None
    seller_sku: str | None
    logistic_type: str | None
    last_updated: datetime | None
    seller_id: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "MarketplaceItem":
        shipping = payload.get("shipping") or {}
        seller_id = payload.get("seller_id")
        return cls(
            id=str(payload["id"]),
            title=payload.get("title"),
            price=to_cents(payload.get("price")),
            available_quantity=max(int(payload.get("available_quantity") or 0), 0),
            sold_quantity=max(int(payload.get("sold_quantity") or 0), 0),
            status=payload.get("status"),
            seller_sku=_seller_sku(payload),
            logistic_type=shipping.get("logistic_type"),
            last_updated=parse_marketplace_datetime(payload.get("last_updated")),
            seller_id=str(seller_id) if seller_id is not None else None,
        )


@dataclass(frozen=True)
class PriceInfo:
    price: int
    original_price: int | None
    has_promotion: bool
    discount_pct: int

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "PriceInfo":
        """
        Prix du canal marketplace : la promotion gagne sur le prix standard.
        Remise = round((regular - amount) / regular * 100).
        """
        prices = payload.get("prices") or []

        def on_marketplace(p: dict[str, Any], kind: str) -> bool:
            restrictions = (p.get("conditions") or {}).get("context_restrictions") or []
            return p.get("type") == kind and MARKETPLACE_CHANNEL in restrictions

        standard = next((p for p in prices if on_marketplace(p, "standard")), None)
        promotion = next((p for p in prices if on_marketplace(p, "promotion")), None)

        if promotion and promotion.get("regular_amount"):
            regular = Decimal(str(promotion["regular_amount"]))
            amount = Decimal(str(promotion["amount"]))
            pct = ((regular - amount) / regular * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
            return cls(
                price=to_cents(amount),
                original_price=to_cents(regular),
                has_promotion=True,
                discount_pct=min(max(int(pct), 0), 100),
            )

        return cls(
            price=to_cents(standard.get("amount") if standard else None),
            original_price=None,
            has_promotion=False,
            discount_pct=0,
        )


@dataclass(frozen=True)
class MarketplaceOrderLine:
    item_id: str
    quantity: int
    unit_price: int


@dataclass(frozen=True)
class MarketplaceOrder:
    id: str
    status: str
    date_created: datetime
    last_updated: datetime | None
    lines: list[MarketplaceOrderLine] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "MarketplaceOrder":
        lines = []
        for entry in payload.get("order_items") or []:
            item = entry.get("item") or {}
            qty = int(entry.get("quantity") or 0)
            if not item.get("id") or qty <= 0:
                continue
            lines.append(
                MarketplaceOrderLine(
                    item_id=str(item["id"]),
                    quantity=qty,
                    unit_price=to_cents(entry.get("unit_price")),
                )
            )
        created = parse_marketplace_datetime(payload.get("date_created"))
        if created is None:
            raise ValueError(f"order {payload.get('id')} has no date_created")
        return cls(
            id=str(payload["id"]),
            status=str(payload.get("status") or ""),
            date_created=created,
            last_updated=parse_marketplace_datetime(payload.get("last_updated")),
            lines=lines,
        )


@dataclass(frozen=True)
class OrderPage:
    orders: list[MarketplaceOrder]
    offset: int
    limit: int
    size: int = 0
    total: int | None = None


# ---------- GATEWAY ----------
class TokenProvider(Protocol):
    def get_valid_token(self, account_id: int) -> str: ...


class MarketplaceGateway:
    def __init__(self, http: MarketplaceHttp, accounts: TokenProvider):
        self.http = http
        self.accounts = accounts

    def _call(self, account_id: int, method: str, path: str, **kwargs: Any) -> Any:
        token = self.accounts.get_valid_token(account_id)
        return self.http.request(method, path, token=token, **kwargs)

    def fetch_item(self, account_id: int, item_id: str) -> MarketplaceItem:
        return MarketplaceItem.from_payload(self._call(account_id, "GET", f"/items/{item_id}"))

    def fetch_item_prices(self, account_id: int, item_id: str) -> PriceInfo:
        return PriceInfo.from_payload(self._call(account_id, "GET", f"/items/{item_id}/prices") or {})

    def search_orders(
        self,
        account_id: int,
        seller_id: str,
        offset: int = 0,
        limit: int = 50,
        status_filter: str | None = None,
        sort: str = "date_desc",
    ) -> OrderPage:
        params: dict[str, Any] = {"seller": seller_id, "offset": offset, "limit": limit, "sort": sort}
        if status_filter:
            params["order.status"] = status_filter
        payload = self._call(account_id, "GET", "/orders/search", params=params) or {}

        results = payload.get("results") or []
        orders = []
        for raw in results:
            try:
                orders.append(MarketplaceOrder.from_payload(raw))
            except (KeyError, ValueError) as exc:
                logger.warning("skipping malformed order %s: %s", raw.get("id"), exc)

        paging = payload.get("paging") or {}
        return OrderPage(orders=orders, offset=offset, limit=limit, size=len(results), total=paging.get("total"))

    def fetch_order(self, account_id: int, order_id: str) -> MarketplaceOrder:
        return MarketplaceOrder.from_payload(self._call(account_id, "GET", f"/orders/{order_id}"))

    def update_item_quantity(self, account_id: int, item_id: str, quantity: int) -> None:
        self._call(account_id, "PUT", f"/items/{item_id}", json={"available_quantity": max(int(quantity), 0)})

    def attempt(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> CallOutcome:
        """Résultat typé : l'appelant distingue 'encore en retard' de 'abandonné'."""
        try:
            return CallOutcome(OutcomeStatus.success, value=fn(*args, **kwargs))
        except (RateLimited, TransientUpstreamError) as exc:
            return CallOutcome(OutcomeStatus.retry_exhausted, error=exc)
        except (ReauthenticationRequired, UpstreamRequestError) as exc:
            return CallOutcome(OutcomeStatus.fatal, error=exc)
