import enum


class WarehouseRole(str, enum.Enum):
    local = "local"
    fulfillment = "fulfillment"


class SyncStatus(str, enum.Enum):
    pending = "pending"
    synced = "synced"
    error = "error"
    ignored = "ignored"


class AccountState(str, enum.Enum):
    active = "active"
    refreshing = "refreshing"
    invalid = "invalid"


class SyncRunStatus(str, enum.Enum):
    running = "running"
    success = "success"
    partial = "partial"
    cancelled = "cancelled"
    failed = "failed"


class ReplenishmentStatus(str, enum.Enum):
    critico = "critico"
    atencao = "atencao"
    ok = "ok"


class Priority(str, enum.Enum):
    alta = "alta"
    media = "media"
    baixa = "baixa"


class ListingChannel(str, enum.Enum):
    local = "local"
    fulfillment = "fulfillment"
    both = "both"


class FulfillmentAction(str, enum.Enum):
    transfer = "transfer"
    await_purchase = "await_purchase"
    none = "none"


class LocalAction(str, enum.Enum):
    purchase = "purchase"
    none = "none"


class ActionKind(str, enum.Enum):
    transfer_to_fulfillment = "transfer_to_fulfillment"
    purchase = "purchase"
    purchase_then_transfer = "purchase_then_transfer"


# Statuts de commande comptés comme vente engagée (annulées / remboursées exclues)
COMMITTED_SALE_STATUSES = frozenset(
    {
        "paid",
        "confirmed",
        "handling",
        "ready_to_ship",
        "shipped",
        "delivered",
    }
)

FULFILLMENT_LOGISTIC_TYPE = "fulfillment"
