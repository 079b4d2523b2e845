import threading

import pytest
from sqlalchemy import func, select

from backend.app.core.exceptions import EntityNotFound, InsufficientStock, InvalidTransfer
from backend.app.db.models.core_types import WarehouseRole
from backend.app.db.models.models_v1 import Transfer
from backend.services.inventory import StockLedger, TransferLineIn
from backend.services.locking import KeyedLocks


@pytest.fixture
def setup(make_product, make_warehouse, put_stock):
    p1 = make_product("SKU-1")
    p2 = make_product("SKU-2")
    loja = make_warehouse("Loja")
    galpao = make_warehouse("Galpao")
    full = make_warehouse("Full", WarehouseRole.fulfillment)
    put_stock(p1, loja, 10)
    put_stock(p2, loja, 3)
    return p1, p2, loja, galpao, full


def test_missing_row_reads_as_zero(db_session, setup):
    p1, _, _, galpao, _ = setup
    assert StockLedger(db_session).get_quantity(p1.id, galpao.id) == 0


def test_transfer_conserves_total_and_creates_destination(db_session, setup):
    p1, _, loja, galpao, _ = setup
    ledger = StockLedger(db_session)
    before = ledger.total_quantity(p1.id)

    tr = ledger.transfer(loja.id, galpao.id, [TransferLineIn(p1.id, 4)], note="reposição")

    assert ledger.get_quantity(p1.id, loja.id) == 6
    assert ledger.get_quantity(p1.id, galpao.id) == 4
    assert ledger.total_quantity(p1.id) == before
    assert [(l.product_id, l.quantity) for l in tr.lines] == [(p1.id, 4)]
    assert tr.note == "reposição"


def test_transfer_is_all_or_nothing(db_session, setup):
    """
    GIVEN
    - p1 : 10 en loja, p2 : 3 en loja
    - un transfert (p1 x5, p2 x4)

    THEN
    - InsufficientStock, aucune ligne appliquée, aucun Transfer enregistré
    """
    p1, p2, loja, galpao, _ = setup
    ledger = StockLedger(db_session)

    with pytest.raises(InsufficientStock) as err:
        ledger.transfer(loja.id, galpao.id, [(p1.id, 5), (p2.id, 4)])

    assert err.value.product_id == p2.id
    assert err.value.available == 3
    assert err.value.details["shortages"] == [{"product_id": p2.id, "available": 3, "requested": 4}]

    db_session.expire_all()
    assert ledger.get_quantity(p1.id, loja.id) == 10
    assert ledger.get_quantity(p2.id, loja.id) == 3
    assert ledger.get_quantity(p1.id, galpao.id) == 0
    assert db_session.execute(select(func.count()).select_from(Transfer)).scalar_one() == 0


def test_transfer_validation(db_session, setup):
    p1, _, loja, galpao, _ = setup
    ledger = StockLedger(db_session)

    with pytest.raises(InvalidTransfer):
        ledger.transfer(loja.id, loja.id, [(p1.id, 1)])
    with pytest.raises(InvalidTransfer):
        ledger.transfer(loja.id, galpao.id, [])
    with pytest.raises(InvalidTransfer):
        ledger.transfer(loja.id, galpao.id, [(p1.id, 0)])
    with pytest.raises(EntityNotFound):
        ledger.transfer(loja.id, 999_999, [(p1.id, 1)])


def test_duplicate_lines_are_merged(db_session, setup):
    p1, _, loja, galpao, _ = setup
    ledger = StockLedger(db_session)

    tr = ledger.transfer(loja.id, galpao.id, [(p1.id, 2), (p1.id, 3)])

    assert [(l.product_id, l.quantity) for l in tr.lines] == [(p1.id, 5)]
    assert ledger.get_quantity(p1.id, galpao.id) == 5


def test_idempotency_key_replays_original_transfer(db_session, setup):
    p1, _, loja, galpao, _ = setup
    ledger = StockLedger(db_session)

    first = ledger.transfer(loja.id, galpao.id, [(p1.id, 2)], idempotency_key="tr-001")
    again = ledger.transfer(loja.id, galpao.id, [(p1.id, 2)], idempotency_key="tr-001")

    assert again.id == first.id
    assert ledger.get_quantity(p1.id, loja.id) == 8
    assert ledger.get_quantity(p1.id, galpao.id) == 2


def test_adjust_never_goes_below_zero(db_session, setup):
    p1, _, loja, _, full = setup
    ledger = StockLedger(db_session)

    assert ledger.adjust(p1.id, loja.id, -50, reason="webhook stale") == 0
    assert ledger.get_quantity(p1.id, loja.id) == 0

    # ligne absente : créée puis ajustée
    assert ledger.adjust(p1.id, full.id, 7) == 7
    assert ledger.get_quantity(p1.id, full.id) == 7


def test_quantities_by_role(db_session, setup, put_stock):
    p1, _, loja, galpao, full = setup
    put_stock(p1, galpao, 5)
    put_stock(p1, full, 4)

    by_role = StockLedger(db_session).quantities_by_role(p1.id)

    assert by_role == {WarehouseRole.local: 15, WarehouseRole.fulfillment: 4}


def test_concurrent_transfers_never_oversell(session_factory, setup):
    """
    20 transferts concurrents de 1 unité depuis un stock de 10 :
    exactement 10 passent, le stock d'origine finit à 0.
    """
    p1, _, loja, galpao, _ = setup
    locks = KeyedLocks()
    outcomes: list[str] = []
    guard = threading.Lock()

    def worker():
        with session_factory() as db:
            try:
                StockLedger(db, locks).transfer(loja.id, galpao.id, [(p1.id, 1)])
                result = "ok"
            except InsufficientStock:
                result = "refused"
        with guard:
            outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 10
    assert outcomes.count("refused") == 10
    with session_factory() as db:
        ledger = StockLedger(db)
        assert ledger.get_quantity(p1.id, loja.id) == 0
        assert ledger.get_quantity(p1.id, galpao.id) == 10


def test_concurrent_replays_of_one_key_apply_once(session_factory, setup):
    """
    8 envois simultanés du même transfert (même clé d'idempotence) :
    un seul mouvement de stock, tous reçoivent le même transfert.
    """
    p1, _, loja, galpao, _ = setup
    locks = KeyedLocks()
    ids: list[int] = []
    errors: list[Exception] = []
    guard = threading.Lock()

    def worker():
        with session_factory() as db:
            try:
                tr_id = StockLedger(db, locks).transfer(loja.id, galpao.id, [(p1.id, 3)], idempotency_key="tr-race").id
            except Exception as exc:
                with guard:
                    errors.append(exc)
                return
        with guard:
            ids.append(tr_id)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(ids) == 8 and len(set(ids)) == 1
    assert len(locks) == 0
    with session_factory() as db:
        ledger = StockLedger(db)
        assert ledger.get_quantity(p1.id, loja.id) == 7
        assert ledger.get_quantity(p1.id, galpao.id) == 3
        assert db.scalar(select(func.count()).select_from(Transfer)) == 1


def test_key_conflict_at_commit_returns_existing_transfer(db_session, setup, monkeypatch):
    """
    GIVEN une clé déjà posée par un autre processus, invisible à la première relecture
    THEN la contrainte d'unicité est rattrapée : rollback puis renvoi du transfert existant
    """
    p1, _, loja, galpao, _ = setup
    ledger = StockLedger(db_session)
    first = ledger.transfer(loja.id, galpao.id, [(p1.id, 2)], idempotency_key="tr-dup")

    real_find = ledger._find_replay
    calls = []

    def blind_once(key):
        calls.append(key)
        return None if len(calls) == 1 else real_find(key)

    monkeypatch.setattr(ledger, "_find_replay", blind_once)

    again = ledger.transfer(loja.id, galpao.id, [(p1.id, 2)], idempotency_key="tr-dup")

    assert again.id == first.id
    assert len(calls) == 2
    assert ledger.get_quantity(p1.id, loja.id) == 8
    assert ledger.get_quantity(p1.id, galpao.id) == 2


def test_keyed_locks_are_released_from_the_map():
    locks = KeyedLocks()

    with locks.hold("a", "b"):
        assert len(locks) == 2
        with locks.hold("a"):
            assert len(locks) == 2
        assert len(locks) == 2

    assert len(locks) == 0

    with pytest.raises(RuntimeError):
        with locks.hold("c"):
            raise RuntimeError("boom")
    assert len(locks) == 0
