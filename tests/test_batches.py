from datetime import timedelta
from decimal import Decimal

import pytest

from pharmacy_ledger.core.errors import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from pharmacy_ledger.models.pharmacy_inventory import (
    BatchStatus,
    InventoryTransaction,
    PharmacyInventory,
    StockDirection,
    TransactionType,
)
from pharmacy_ledger.schemas.pharmacy_inventory import BatchQuery, BatchReceiveIn
from pharmacy_ledger.services.batches import (
    adjust_stock,
    consume,
    expire_batches,
    get_batch,
    list_batches,
    recall_batch,
    receive_batch,
    select_fefo_batch,
    write_off,
)
from pharmacy_ledger.services.stock_unit import run_stock_unit


def _stock(db, medicine_id):
    inv = db.query(PharmacyInventory).filter(PharmacyInventory.medicine_id == medicine_id).one()
    db.refresh(inv)
    return inv.current_stock


def _txns(db, medicine_id):
    return (
        db.query(InventoryTransaction)
        .filter(InventoryTransaction.medicine_id == medicine_id)
        .order_by(InventoryTransaction.id.asc())
        .all()
    )


class TestReceive:
    def test_receipt_creates_batch_stock_row_and_purchase(self, db, make_medicine, receive):
        med = make_medicine()
        batch = receive(med, 40, batch_number="PCM-001", selling_price="2.50")

        assert batch.status == BatchStatus.AVAILABLE
        assert batch.quantity == 40
        assert batch.version == 1
        assert Decimal(str(batch.selling_price)) == Decimal("2.50")
        assert _stock(db, med.id) == 40

        (txn,) = _txns(db, med.id)
        assert txn.type == TransactionType.PURCHASE
        assert txn.direction == StockDirection.IN
        assert (txn.balance_before, txn.balance_after) == (0, 40)
        assert txn.batch_id == batch.id

    def test_second_receipt_adds_to_the_same_stock_row(self, db, make_medicine, receive):
        med = make_medicine()
        receive(med, 40)
        receive(med, 25)
        assert _stock(db, med.id) == 65
        assert [t.balance_after for t in _txns(db, med.id)] == [40, 65]

    def test_level_overrides_apply_on_first_receipt(self, db, make_medicine, receive):
        med = make_medicine()
        receive(med, 40, reorder_level=5, min_stock_level=2, max_stock_level=60)
        inv = db.query(PharmacyInventory).filter(PharmacyInventory.medicine_id == med.id).one()
        assert (inv.min_stock_level, inv.max_stock_level, inv.reorder_level) == (2, 60, 5)

    @pytest.mark.parametrize("quantity", [0, -3])
    def test_non_positive_quantity_rejected(self, make_medicine, receive, quantity):
        med = make_medicine()
        with pytest.raises(ValidationError):
            receive(med, quantity)

    def test_expiry_must_follow_manufacture(self, db, make_medicine, today):
        med = make_medicine()
        payload = BatchReceiveIn(
            medicine_id=med.id,
            batch_number="BAD-DATES",
            quantity=10,
            manufacturing_date=today,
            expiry_date=today,
        )
        with pytest.raises(ValidationError):
            run_stock_unit(db, lambda s, ev: receive_batch(s, payload, events=ev))

    def test_unknown_medicine(self, db, today):
        payload = BatchReceiveIn(
            medicine_id=9999,
            batch_number="X-1",
            quantity=10,
            manufacturing_date=today - timedelta(days=10),
            expiry_date=today + timedelta(days=300),
        )
        with pytest.raises(NotFoundError):
            run_stock_unit(db, lambda s, ev: receive_batch(s, payload, events=ev))

    def test_duplicate_batch_number_per_medicine(self, db, make_medicine, receive):
        med = make_medicine()
        receive(med, 10, batch_number="LOT-A")
        with pytest.raises(ConflictError):
            receive(med, 10, batch_number="LOT-A")
        # the failed unit left nothing behind
        assert _stock(db, med.id) == 10
        assert len(_txns(db, med.id)) == 1

    def test_same_batch_number_on_another_medicine(self, make_medicine, receive):
        receive(make_medicine(), 10, batch_number="LOT-A")
        other = receive(make_medicine(), 10, batch_number="LOT-A")
        assert other.batch_number == "LOT-A"


class TestConsume:
    def test_consume_decrements_batch_and_stock(self, db, make_medicine, receive):
        med = make_medicine()
        batch = receive(med, 10)
        txn = run_stock_unit(db, lambda s, ev: consume(s, batch.id, 4, reference_id="S-1", events=ev))

        assert txn.type == TransactionType.SALE
        assert (txn.balance_before, txn.balance_after) == (10, 6)
        assert get_batch(db, batch.id).quantity == 6
        assert get_batch(db, batch.id).version == 2
        assert _stock(db, med.id) == 6

    def test_consuming_everything_marks_out_of_stock(self, db, make_medicine, receive):
        med = make_medicine()
        batch = receive(med, 3)
        run_stock_unit(db, lambda s, ev: consume(s, batch.id, 3, events=ev))
        assert get_batch(db, batch.id).status == BatchStatus.OUT_OF_STOCK
        assert _stock(db, med.id) == 0

    def test_over_consumption_changes_nothing(self, db, make_medicine, receive):
        med = make_medicine()
        batch = receive(med, 3)
        with pytest.raises(InsufficientStockError) as exc:
            run_stock_unit(db, lambda s, ev: consume(s, batch.id, 5, events=ev))
        assert exc.value.shortfall == 2
        assert exc.value.batch_id == batch.id
        assert get_batch(db, batch.id).quantity == 3
        assert _stock(db, med.id) == 3

    def test_unknown_batch(self, db):
        with pytest.raises(NotFoundError):
            run_stock_unit(db, lambda s, ev: consume(s, 424242, 1, events=ev))


class TestWriteOff:
    def test_expired_write_off_takes_the_remainder(self, db, make_medicine, receive):
        med = make_medicine()
        batch = receive(med, 12)
        txn = run_stock_unit(db, lambda s, ev: write_off(s, batch.id, "EXPIRED", events=ev))

        assert txn.type == TransactionType.EXPIRED
        assert txn.quantity == 12
        b = get_batch(db, batch.id)
        assert (b.quantity, b.status) == (0, BatchStatus.EXPIRED)
        assert _stock(db, med.id) == 0

    def test_expired_write_off_rejects_partial_quantity(self, db, make_medicine, receive):
        med = make_medicine()
        batch = receive(med, 12)
        with pytest.raises(ValidationError):
            run_stock_unit(db, lambda s, ev: write_off(s, batch.id, "EXPIRED", 5, events=ev))
        assert get_batch(db, batch.id).quantity == 12

    def test_damaged_write_off_can_be_partial(self, db, make_medicine, receive):
        med = make_medicine()
        batch = receive(med, 12)
        run_stock_unit(db, lambda s, ev: write_off(s, batch.id, "DAMAGED", 2, events=ev))
        b = get_batch(db, batch.id)
        assert (b.quantity, b.status) == (10, BatchStatus.AVAILABLE)

        run_stock_unit(db, lambda s, ev: write_off(s, batch.id, "DAMAGED", 10, events=ev))
        b = get_batch(db, batch.id)
        assert (b.quantity, b.status) == (0, BatchStatus.DAMAGED)
        assert _stock(db, med.id) == 0

    def test_damaged_needs_quantity(self, db, make_medicine, receive):
        batch = receive(make_medicine(), 5)
        with pytest.raises(ValidationError):
            run_stock_unit(db, lambda s, ev: write_off(s, batch.id, "DAMAGED", events=ev))

    def test_unknown_reason(self, db, make_medicine, receive):
        batch = receive(make_medicine(), 5)
        with pytest.raises(ValidationError):
            run_stock_unit(db, lambda s, ev: write_off(s, batch.id, "LOST", 1, events=ev))


class TestRecall:
    def test_recalled_batch_keeps_units_but_cannot_be_sold(self, db, make_medicine, receive):
        med = make_medicine()
        batch = receive(med, 8)
        recalled = run_stock_unit(db, lambda s, ev: recall_batch(s, batch.id, notes="Supplier notice", events=ev))

        assert recalled.status == BatchStatus.RECALLED
        assert recalled.quantity == 8
        assert _stock(db, med.id) == 8
        assert select_fefo_batch(db, med.id, 1) is None

        with pytest.raises(InsufficientStockError):
            run_stock_unit(db, lambda s, ev: consume(s, batch.id, 1, events=ev))

    def test_recalled_batch_can_be_written_off(self, db, make_medicine, receive):
        med = make_medicine()
        batch = receive(med, 8)
        run_stock_unit(db, lambda s, ev: recall_batch(s, batch.id, events=ev))
        run_stock_unit(db, lambda s, ev: write_off(s, batch.id, "DAMAGED", 8, events=ev))
        assert get_batch(db, batch.id).status == BatchStatus.DAMAGED
        assert _stock(db, med.id) == 0

    def test_only_available_batches_can_be_recalled(self, db, make_medicine, receive):
        batch = receive(make_medicine(), 2)
        run_stock_unit(db, lambda s, ev: consume(s, batch.id, 2, events=ev))
        with pytest.raises(ConflictError):
            run_stock_unit(db, lambda s, ev: recall_batch(s, batch.id, events=ev))


class TestFefo:
    def test_earliest_expiry_wins(self, db, make_medicine, receive):
        med = make_medicine()
        late = receive(med, 10, expiry_in_days=300)
        early = receive(med, 10, expiry_in_days=90)
        receive(med, 10, expiry_in_days=200)

        assert select_fefo_batch(db, med.id, 5).id == early.id
        assert late.id != early.id

    def test_expiry_tie_goes_to_the_older_receipt(self, db, make_medicine, receive):
        med = make_medicine()
        newer = receive(med, 10, expiry_in_days=120, received_days_ago=1)
        older = receive(med, 10, expiry_in_days=120, received_days_ago=20)
        assert select_fefo_batch(db, med.id, 5).id == older.id
        assert newer.id != older.id

    def test_skips_batches_that_cannot_cover_the_line(self, db, make_medicine, receive):
        med = make_medicine()
        receive(med, 3, expiry_in_days=60)
        bigger = receive(med, 10, expiry_in_days=200)
        assert select_fefo_batch(db, med.id, 5).id == bigger.id

    def test_never_picks_past_expiry_stock(self, db, make_medicine, receive):
        med = make_medicine()
        receive(med, 10, expiry_in_days=-1)
        receive(med, 10, expiry_in_days=0)
        assert select_fefo_batch(db, med.id, 1) is None

    def test_reservations_count_against_a_batch(self, db, make_medicine, receive):
        med = make_medicine()
        first = receive(med, 5, expiry_in_days=30)
        second = receive(med, 10, expiry_in_days=90)
        assert select_fefo_batch(db, med.id, 4, reserved={first.id: 4}).id == second.id


class TestExpireBatches:
    def test_writes_off_past_expiry_batches_only(self, db, make_medicine, receive, today):
        med = make_medicine()
        stale = receive(med, 6, expiry_in_days=-2)
        fresh = receive(med, 9, expiry_in_days=100)
        emptied = receive(med, 4, expiry_in_days=-3)
        run_stock_unit(db, lambda s, ev: consume(s, emptied.id, 4, events=ev))

        expired = expire_batches(db, today=today, performed_by=7)

        assert expired == [stale.id]
        assert get_batch(db, stale.id).status == BatchStatus.EXPIRED
        assert get_batch(db, fresh.id).status == BatchStatus.AVAILABLE
        assert get_batch(db, emptied.id).status == BatchStatus.OUT_OF_STOCK
        assert _stock(db, med.id) == 9

        last = _txns(db, med.id)[-1]
        assert last.type == TransactionType.EXPIRED
        assert last.quantity == 6
        assert last.performed_by == 7

    def test_second_run_is_a_no_op(self, db, make_medicine, receive, today):
        med = make_medicine()
        receive(med, 6, expiry_in_days=-2)
        assert len(expire_batches(db, today=today)) == 1
        assert expire_batches(db, today=today) == []


class TestAdjustStock:
    def test_increase_and_decrease(self, db, make_medicine, receive):
        med = make_medicine()
        batch = receive(med, 10)
        up = run_stock_unit(db, lambda s, ev: adjust_stock(
            s, medicine_id=med.id, batch_id=batch.id, kind="ADJUSTMENT", quantity=3,
            direction="INCREASE", notes="Recount", events=ev))
        down = run_stock_unit(db, lambda s, ev: adjust_stock(
            s, medicine_id=med.id, batch_id=batch.id, kind="ADJUSTMENT", quantity=5,
            direction="DECREASE", events=ev))

        assert (up.direction, up.balance_after) == (StockDirection.IN, 13)
        assert (down.direction, down.balance_after) == (StockDirection.OUT, 8)
        assert get_batch(db, batch.id).quantity == 8

    def test_transfer_moves_stock_out(self, db, make_medicine, receive):
        med = make_medicine()
        batch = receive(med, 10)
        txn = run_stock_unit(db, lambda s, ev: adjust_stock(
            s, medicine_id=med.id, batch_id=batch.id, kind="TRANSFER", quantity=4, events=ev))
        assert txn.type == TransactionType.TRANSFER
        assert _stock(db, med.id) == 6

    def test_adjustment_needs_direction(self, db, make_medicine, receive):
        med = make_medicine()
        batch = receive(med, 10)
        with pytest.raises(ValidationError):
            run_stock_unit(db, lambda s, ev: adjust_stock(
                s, medicine_id=med.id, batch_id=batch.id, kind="ADJUSTMENT", quantity=1, events=ev))

    def test_batch_must_belong_to_medicine(self, db, make_medicine, receive):
        med = make_medicine()
        other = make_medicine()
        batch = receive(med, 10)
        with pytest.raises(ValidationError):
            run_stock_unit(db, lambda s, ev: adjust_stock(
                s, medicine_id=other.id, batch_id=batch.id, kind="ADJUSTMENT", quantity=1,
                direction="INCREASE", events=ev))

    def test_cannot_add_back_to_a_closed_batch(self, db, make_medicine, receive):
        med = make_medicine()
        batch = receive(med, 2)
        run_stock_unit(db, lambda s, ev: write_off(s, batch.id, "EXPIRED", events=ev))
        with pytest.raises(ConflictError):
            run_stock_unit(db, lambda s, ev: adjust_stock(
                s, medicine_id=med.id, batch_id=batch.id, kind="ADJUSTMENT", quantity=1,
                direction="INCREASE", events=ev))


def test_list_batches_filters(db, make_medicine, receive, today):
    med = make_medicine()
    receive(med, 5, batch_number="AX-1", expiry_in_days=20)
    receive(med, 5, batch_number="AX-2", expiry_in_days=200)
    receive(make_medicine(), 5, batch_number="BX-1")

    rows, total = list_batches(db, BatchQuery(medicine_id=med.id))
    assert total == 2
    assert [b.batch_number for b in rows] == ["AX-1", "AX-2"]

    rows, total = list_batches(db, BatchQuery(expiry_before=today + timedelta(days=30)))
    assert [b.batch_number for b in rows] == ["AX-1"]
