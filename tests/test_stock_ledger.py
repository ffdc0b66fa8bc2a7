"""
Ledger-level guarantees: the stored stock figure always equals the replayed
ledger and the sum of live batches, balances chain without gaps, and ledger
rows cannot be edited once written.
"""
import pytest

from pharmacy_ledger.core.errors import InsufficientStockError, InvariantViolationError, ValidationError
from pharmacy_ledger.models.error_log import ErrorLog
from pharmacy_ledger.models.pharmacy_inventory import (
    InventoryTransaction,
    PharmacyInventory,
    StockDirection,
    TransactionType,
)
from pharmacy_ledger.schemas.pharmacy_inventory import TransactionQuery
from pharmacy_ledger.services.batches import adjust_stock, consume, recall_batch, write_off
from pharmacy_ledger.services.inventory import apply_delta
from pharmacy_ledger.services.stock_ledger import (
    check_all,
    check_consistency,
    list_transactions,
    record_transaction,
    replay,
    resolve_direction,
)
from pharmacy_ledger.services.stock_unit import run_stock_unit


@pytest.fixture
def busy_medicine(db, make_medicine, receive, sell):
    """A medicine that has been through every kind of movement."""
    med = make_medicine()
    a = receive(med, 30, expiry_in_days=60)
    b = receive(med, 20, expiry_in_days=200)
    c = receive(med, 5, expiry_in_days=300)

    sell({"medicine_id": med.id, "quantity": 7})
    sell({"medicine_id": med.id, "batch_id": b.id, "quantity": 4})
    run_stock_unit(db, lambda s, ev: write_off(s, a.id, "DAMAGED", 3, events=ev))
    run_stock_unit(db, lambda s, ev: adjust_stock(
        s, medicine_id=med.id, batch_id=b.id, kind="ADJUSTMENT", quantity=2, direction="INCREASE", events=ev))
    run_stock_unit(db, lambda s, ev: adjust_stock(
        s, medicine_id=med.id, batch_id=b.id, kind="TRANSFER", quantity=6, events=ev))
    run_stock_unit(db, lambda s, ev: recall_batch(s, c.id, events=ev))
    run_stock_unit(db, lambda s, ev: write_off(s, c.id, "EXPIRED", events=ev))
    return med


class TestConservation:
    def test_stored_replayed_and_batch_totals_agree(self, db, busy_medicine):
        report = check_consistency(db, busy_medicine.id)
        # 30 + 20 + 5 - 7 - 4 - 3 + 2 - 6 - 5
        assert report.stored_stock == 32
        assert report.replayed_stock == 32
        assert report.batch_stock == 32
        assert report.consistent

    def test_balances_chain_without_gaps(self, db, busy_medicine):
        rows = (
            db.query(InventoryTransaction)
            .filter(InventoryTransaction.medicine_id == busy_medicine.id)
            .order_by(InventoryTransaction.id.asc())
            .all()
        )
        assert rows[0].balance_before == 0
        for prev, cur in zip(rows, rows[1:]):
            assert cur.balance_before == prev.balance_after
        for row in rows:
            assert row.balance_after == row.balance_before + row.signed_quantity
            assert row.quantity > 0

    def test_check_all_covers_every_stocked_medicine(self, db, busy_medicine, make_medicine, receive):
        receive(make_medicine(), 11)
        reports = check_all(db)
        assert len(reports) == 2
        assert all(r.consistent for r in reports)

    def test_drift_is_reported(self, db, busy_medicine):
        inv = db.query(PharmacyInventory).filter(PharmacyInventory.medicine_id == busy_medicine.id).one()
        inv.current_stock = inv.current_stock + 1
        db.commit()

        report = check_consistency(db, busy_medicine.id)
        assert not report.consistent
        assert report.as_dict()["stored_stock"] == report.replayed_stock + 1

    def test_replay_of_an_unknown_medicine_is_zero(self, db):
        assert replay(db, 31337) == 0


class TestAppendOnly:
    def test_ledger_rows_cannot_be_edited(self, db, make_medicine, receive):
        med = make_medicine()
        receive(med, 10)
        txn = db.query(InventoryTransaction).filter(InventoryTransaction.medicine_id == med.id).one()
        txn.notes = "rewritten"
        with pytest.raises(InvariantViolationError):
            db.flush()
        db.rollback()

    def test_ledger_rows_cannot_be_deleted(self, db, make_medicine, receive):
        med = make_medicine()
        receive(med, 10)
        txn = db.query(InventoryTransaction).filter(InventoryTransaction.medicine_id == med.id).one()
        db.delete(txn)
        with pytest.raises(InvariantViolationError):
            db.flush()
        db.rollback()


class TestAbortedUnits:
    def test_negative_stock_aborts_the_unit_and_logs_an_incident(self, db, make_medicine, receive):
        med = make_medicine()
        receive(med, 5)

        def drift_probe(s, ev):
            return apply_delta(s, med.id, -6, ev)

        with pytest.raises(InvariantViolationError):
            run_stock_unit(db, drift_probe)

        assert check_consistency(db, med.id).stored_stock == 5
        (incident,) = db.query(ErrorLog).all()
        assert incident.error_code == "INVARIANT_VIOLATION"
        assert incident.function == "drift_probe"
        assert incident.details["delta"] == -6
        assert "InvariantViolationError" in incident.stack_trace

    def test_failure_midway_leaves_no_partial_writes(self, db, make_medicine, receive):
        med = make_medicine()
        batch = receive(med, 10)

        def two_moves(s, ev):
            consume(s, batch.id, 4, events=ev)
            consume(s, batch.id, 40, events=ev)

        with pytest.raises(InsufficientStockError):
            run_stock_unit(db, two_moves)

        report = check_consistency(db, med.id)
        assert (report.stored_stock, report.replayed_stock, report.batch_stock) == (10, 10, 10)


class TestDirection:
    def test_fixed_types_imply_their_direction(self):
        assert resolve_direction(TransactionType.SALE, None) == StockDirection.OUT
        assert resolve_direction(TransactionType.PURCHASE, None) == StockDirection.IN
        assert resolve_direction(TransactionType.TRANSFER, None) == StockDirection.OUT

    def test_adjustment_needs_explicit_direction(self):
        with pytest.raises(ValidationError):
            resolve_direction(TransactionType.ADJUSTMENT, None)
        assert resolve_direction(TransactionType.ADJUSTMENT, StockDirection.IN) == StockDirection.IN

    def test_contradicting_direction_rejected(self):
        with pytest.raises(ValidationError):
            resolve_direction(TransactionType.SALE, StockDirection.IN)

    def test_record_rejects_non_positive_quantity(self, db, make_medicine, receive):
        med = make_medicine()
        receive(med, 3)
        inv = db.query(PharmacyInventory).filter(PharmacyInventory.medicine_id == med.id).one()
        with pytest.raises(ValidationError):
            record_transaction(db, inv, txn_type=TransactionType.SALE, quantity=0)
        db.rollback()


def test_transactions_list_newest_first(db, busy_medicine):
    rows, total = list_transactions(db, TransactionQuery(medicine_id=busy_medicine.id, limit=3))
    assert total == 9
    assert len(rows) == 3
    assert rows[0].id > rows[1].id > rows[2].id

    sales, sale_total = list_transactions(db, TransactionQuery(type=TransactionType.SALE))
    assert sale_total == 2
    assert all(t.reference_type == "SALE" for t in sales)
