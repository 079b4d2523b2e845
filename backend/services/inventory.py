from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.core.clock import utcnow
from backend.app.core.exceptions import EntityNotFound, InsufficientStock, InvalidTransfer
from backend.app.core.logging_config import get_logger
from backend.app.db.models.core_types import WarehouseRole
from backend.app.db.models.models_v1 import (
    Product,
    StockEntry,
    Transfer,
    TransferLine,
    Warehouse,
)
from backend.services.locking import KeyedLocks

logger = get_logger(__name__)


@dataclass(frozen=True)
class TransferLineIn:
    product_id: int
    quantity: int


def _stock_key(product_id: int, warehouse_id: int) -> tuple[str, int, int]:
    return ("stock", int(product_id), int(warehouse_id))


def _merge_lines(lines: Iterable[TransferLineIn | tuple[int, int]]) -> list[TransferLineIn]:
    """
    Normalise les lignes : tuples acceptés, doublons de produit fusionnés,
    ordre de première apparition conservé.
    """
    merged: dict[int, int] = {}
    for line in lines:
        if not isinstance(line, TransferLineIn):
            line = TransferLineIn(*line)
        if line.quantity <= 0:
            raise InvalidTransfer(
                f"Quantity must be > 0 for product {line.product_id}",
                details={"product_id": line.product_id, "quantity": line.quantity},
            )
        merged[int(line.product_id)] = merged.get(int(line.product_id), 0) + int(line.quantity)
    return [TransferLineIn(pid, qty) for pid, qty in merged.items()]


class StockLedger:
    """
    Source de vérité des quantités par (produit, entrepôt).

    Règles :
    - absence de ligne = quantité 0 (pas une erreur)
    - quantity >= 0 en permanence (CHECK en base + contrôles ici)
    - transfert tout-ou-rien : vérification complète AVANT toute écriture,
      puis une seule unité de travail (commit)
    - verrou par (produit, entrepôt) en process + FOR UPDATE en base
    """

    def __init__(self, db: Session, locks: KeyedLocks | None = None):
        self.db = db
        self.locks = locks or KeyedLocks()

    # ---------- LECTURE ----------
    def get_quantity(self, product_id: int, warehouse_id: int) -> int:
        qty = self.db.execute(
            select(StockEntry.quantity)
            .where(StockEntry.product_id == product_id)
            .where(StockEntry.warehouse_id == warehouse_id)
        ).scalar_one_or_none()
        return int(qty) if qty is not None else 0

    def total_quantity(self, product_id: int) -> int:
        total = self.db.execute(
            select(func.coalesce(func.sum(StockEntry.quantity), 0)).where(StockEntry.product_id == product_id)
        ).scalar_one()
        return int(total)

    def quantities_by_role(self, product_id: int) -> dict[WarehouseRole, int]:
        rows = self.db.execute(
            select(Warehouse.role, func.coalesce(func.sum(StockEntry.quantity), 0))
            .join(Warehouse, Warehouse.id == StockEntry.warehouse_id)
            .where(StockEntry.product_id == product_id)
            .group_by(Warehouse.role)
        ).all()
        out = {role: 0 for role in WarehouseRole}
        for role, qty in rows:
            out[WarehouseRole(role)] = int(qty)
        return out

    def safety_stock(self, product_id: int, role: WarehouseRole = WarehouseRole.local) -> int:
        total = self.db.execute(
            select(func.coalesce(func.sum(StockEntry.safety_stock), 0))
            .join(Warehouse, Warehouse.id == StockEntry.warehouse_id)
            .where(StockEntry.product_id == product_id)
            .where(Warehouse.role == role)
        ).scalar_one()
        return int(total)

    def list_transfers(self, limit: int = 100) -> list[Transfer]:
        return list(
            self.db.execute(select(Transfer).order_by(Transfer.happened_at.desc(), Transfer.id.desc()).limit(limit))
            .scalars()
            .all()
        )

    # ---------- HELPERS ----------
    def _lock_row(self, product_id: int, warehouse_id: int) -> StockEntry | None:
        return (
            self.db.execute(
                select(StockEntry)
                .where(StockEntry.product_id == product_id)
                .where(StockEntry.warehouse_id == warehouse_id)
                .with_for_update()
            )
            .scalar_one_or_none()
        )

    def _get_or_create_row(self, product_id: int, warehouse_id: int) -> StockEntry:
        row = self._lock_row(product_id, warehouse_id)
        if row:
            return row

        row = StockEntry(product_id=product_id, warehouse_id=warehouse_id, quantity=0, safety_stock=0)
        self.db.add(row)
        self.db.flush()
        return row

    def _require_warehouse(self, warehouse_id: int) -> Warehouse:
        wh = self.db.get(Warehouse, warehouse_id)
        if not wh:
            raise EntityNotFound(f"Warehouse {warehouse_id} not found", details={"warehouse_id": warehouse_id})
        return wh

    def _find_replay(self, idempotency_key: str) -> Transfer | None:
        return self.db.execute(
            select(Transfer).where(Transfer.idempotency_key == idempotency_key)
        ).scalar_one_or_none()

    # ---------- ÉCRITURE ----------
    def transfer(
        self,
        origin_id: int,
        dest_id: int,
        lines: Iterable[TransferLineIn | tuple[int, int]],
        *,
        note: str | None = None,
        happened_at: datetime | None = None,
        idempotency_key: str | None = None,
    ) -> Transfer:
        if origin_id == dest_id:
            raise InvalidTransfer("Origin and destination warehouses must differ")

        merged = _merge_lines(lines)
        if not merged:
            raise InvalidTransfer("A transfer needs at least one line")

        self._require_warehouse(origin_id)
        self._require_warehouse(dest_id)
        for line in merged:
            if not self.db.get(Product, line.product_id):
                raise EntityNotFound(f"Product {line.product_id} not found", details={"product_id": line.product_id})

        keys = [_stock_key(l.product_id, wid) for l in merged for wid in (origin_id, dest_id)]
        if idempotency_key:
            keys.append(("transfer-key", idempotency_key))
        with self.locks.hold(*keys):
            # relecture sous verrou : deux rejeux concurrents ne passent pas tous les deux
            if idempotency_key:
                existing = self._find_replay(idempotency_key)
                if existing:
                    return existing
            try:
                # phase 1 : contrôle complet, aucune écriture
                shortages = []
                origin_rows: dict[int, StockEntry | None] = {}
                for line in merged:
                    row = self._lock_row(line.product_id, origin_id)
                    origin_rows[line.product_id] = row
                    available = row.quantity if row else 0
                    if available < line.quantity:
                        shortages.append(
                            {"product_id": line.product_id, "available": available, "requested": line.quantity}
                        )

                if shortages:
                    first = shortages[0]
                    raise InsufficientStock(
                        product_id=first["product_id"],
                        warehouse_id=origin_id,
                        available=first["available"],
                        requested=first["requested"],
                        shortages=shortages,
                    )

                # phase 2 : application
                tr = Transfer(
                    origin_warehouse_id=origin_id,
                    destination_warehouse_id=dest_id,
                    note=note,
                    happened_at=happened_at or utcnow(),
                    idempotency_key=idempotency_key,
                )
                for position, line in enumerate(merged):
                    src = origin_rows[line.product_id]
                    dst = self._get_or_create_row(line.product_id, dest_id)
                    src.quantity -= line.quantity
                    dst.quantity += line.quantity
                    tr.lines.append(TransferLine(product_id=line.product_id, quantity=line.quantity, position=position))

                self.db.add(tr)
                self.db.commit()
            except IntegrityError:
                # clé déjà posée par un autre processus : on renvoie le transfert existant
                self.db.rollback()
                existing = self._find_replay(idempotency_key) if idempotency_key else None
                if existing is None:
                    raise
                logger.info("transfer replay resolved after conflict on key %s", idempotency_key)
                return existing
            except Exception:
                self.db.rollback()
                raise

        logger.info(
            "transfer %s executed: %s -> %s (%d lines)",
            tr.id,
            origin_id,
            dest_id,
            len(merged),
        )
        return tr

    def adjust(self, product_id: int, warehouse_id: int, delta: int, *, reason: str | None = None) -> int:
        """
        Réconciliation d'une vérité externe vers le stock local.

        Jamais en dessous de 0 : un webhook dupliqué peut rapporter un compte
        périmé plus bas, on borne à 0 et on log au lieu d'échouer.
        Retourne la nouvelle quantité.
        """
        self._require_warehouse(warehouse_id)

        with self.locks.hold(_stock_key(product_id, warehouse_id)):
            try:
                row = self._get_or_create_row(product_id, warehouse_id)
                target = row.quantity + int(delta)
                if target < 0:
                    logger.warning(
                        "adjust clamped to 0 for product %s in warehouse %s (current=%s, delta=%s, reason=%s)",
                        product_id,
                        warehouse_id,
                        row.quantity,
                        delta,
                        reason,
                    )
                    target = 0
                row.quantity = target
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        return target
