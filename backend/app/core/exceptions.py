"""
Taxonomie d'erreurs du moteur.

- InsufficientStock : règle métier, jamais retentée, remontée à l'utilisateur
- ReauthenticationRequired : fatale pour le compte (reconnexion nécessaire)
- RateLimited : transitoire, retentée avec backoff puis remontée
- TransientUpstreamError : 5xx / timeout, on saute l'unité et on continue le lot
- InvalidState / PKCEVerifierMissing : callback OAuth expiré ou rejoué

Une annonce non liée n'est PAS une erreur : c'est un état (sync_status=pending).
"""

from __future__ import annotations

from typing import Any


class StockSyncError(Exception):
    code: str = "STOCK_SYNC_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class EntityNotFound(StockSyncError):
    code = "NOT_FOUND"


class InvalidTransfer(StockSyncError):
    code = "INVALID_TRANSFER"


class InsufficientStock(StockSyncError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: int, warehouse_id: int, available: int, requested: int, shortages=None):
        self.product_id = product_id
        self.warehouse_id = warehouse_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for product {product_id} in warehouse {warehouse_id} "
            f"(available={available}, requested={requested})",
            details={"shortages": shortages or []},
        )


class ListingAlreadyLinked(StockSyncError):
    code = "LISTING_ALREADY_LINKED"


class ReauthenticationRequired(StockSyncError):
    code = "REAUTHENTICATION_REQUIRED"

    def __init__(self, message: str = "Marketplace account must be reconnected", account_id: int | None = None):
        self.account_id = account_id
        super().__init__(message, details={"account_id": account_id} if account_id is not None else None)


class RateLimited(StockSyncError):
    code = "RATE_LIMITED"

    def __init__(self, message: str, attempts: int):
        self.attempts = attempts
        super().__init__(message, details={"attempts": attempts})


class TransientUpstreamError(StockSyncError):
    code = "TRANSIENT_UPSTREAM_ERROR"

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message, details={"status_code": status_code})


class UpstreamRequestError(StockSyncError):
    """4xx non retentable (hors 401/429) : ressource absente, requête refusée..."""

    code = "UPSTREAM_REQUEST_ERROR"

    def __init__(self, message: str, status_code: int, body: Any = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message, details={"status_code": status_code})


class InvalidState(StockSyncError):
    code = "INVALID_STATE"


class PKCEVerifierMissing(InvalidState):
    code = "PKCE_VERIFIER_MISSING"
