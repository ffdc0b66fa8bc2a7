"""
Racing sessions against the same stock. Each worker gets its own session;
the Barrier lines them up so the units really do overlap.
"""
from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

import pytest
from sqlalchemy import update

from pharmacy_ledger.core.config import settings
from pharmacy_ledger.core.errors import InsufficientStockError, StaleStockError
from pharmacy_ledger.models.pharmacy_billing import PharmacySale
from pharmacy_ledger.models.pharmacy_inventory import BatchStatus, InventoryTransaction, MedicineBatch
from pharmacy_ledger.schemas.pharmacy_billing import SaleItemIn
from pharmacy_ledger.services import batches, billing
from pharmacy_ledger.services.batches import adjust_stock, consume
from pharmacy_ledger.services.billing import create_sale
from pharmacy_ledger.services.stock_ledger import check_consistency
from pharmacy_ledger.services.stock_unit import run_stock_unit


def _race(session_factory, workers, unit):
    barrier = Barrier(workers)

    def attempt(n):
        session = session_factory()
        try:
            barrier.wait(timeout=10)
            run_stock_unit(session, lambda s, ev: unit(s, ev, n))
            return "ok"
        except InsufficientStockError:
            return "insufficient"
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(attempt, range(workers)))


class TestNoOversell:
    def test_two_sales_of_one_pinned_batch(self, db, session_factory, make_medicine, receive):
        med = make_medicine()
        batch = receive(med, 5)
        medicine_id, batch_id = med.id, batch.id
        db.rollback()

        outcomes = _race(
            session_factory,
            2,
            lambda s, ev, n: create_sale(
                s,
                patient_id=100 + n,
                items=[SaleItemIn(medicine_id=medicine_id, batch_id=batch_id, quantity=4)],
                events=ev,
            ),
        )

        assert sorted(outcomes) == ["insufficient", "ok"]
        db.expire_all()
        assert db.get(MedicineBatch, batch_id).quantity == 1
        assert db.query(PharmacySale).count() == 1
        assert check_consistency(db, medicine_id).consistent

    def test_two_fefo_sales_of_the_last_batch(self, db, session_factory, make_medicine, receive):
        med = make_medicine()
        receive(med, 5)
        medicine_id = med.id
        db.rollback()

        outcomes = _race(
            session_factory,
            2,
            lambda s, ev, n: create_sale(
                s, patient_id=200 + n, items=[SaleItemIn(medicine_id=medicine_id, quantity=4)], events=ev),
        )

        assert sorted(outcomes) == ["insufficient", "ok"]
        db.expire_all()
        report = check_consistency(db, medicine_id)
        assert (report.stored_stock, report.batch_stock, report.replayed_stock) == (1, 1, 1)

    @pytest.mark.parametrize("workers", [4, 8])
    def test_many_consumers_drain_exactly(self, db, session_factory, make_medicine, receive, workers):
        med = make_medicine()
        batch = receive(med, 10)
        medicine_id, batch_id = med.id, batch.id
        db.rollback()

        outcomes = _race(session_factory, workers, lambda s, ev, n: consume(s, batch_id, 3, events=ev))

        assert outcomes.count("ok") == 3
        assert outcomes.count("insufficient") == workers - 3
        db.expire_all()
        b = db.get(MedicineBatch, batch_id)
        assert (b.quantity, b.status) == (1, BatchStatus.AVAILABLE)
        assert check_consistency(db, medicine_id).consistent

    def test_concurrent_bills_get_distinct_numbers(self, db, session_factory, make_medicine, receive):
        med = make_medicine()
        receive(med, 100)
        medicine_id = med.id
        db.rollback()

        outcomes = _race(
            session_factory,
            6,
            lambda s, ev, n: create_sale(
                s, patient_id=300 + n, items=[SaleItemIn(medicine_id=medicine_id, quantity=2)], events=ev),
        )

        assert outcomes == ["ok"] * 6
        numbers = [bn for (bn,) in db.query(PharmacySale.bill_number).all()]
        assert len(set(numbers)) == 6
        assert sorted(int(n.rsplit("-", 1)[1]) for n in numbers) == [1, 2, 3, 4, 5, 6]


class TestOptimisticRetry:
    """
    Another writer gets in between selection and the lock, or between the
    lock and the compare-and-set. SQLite serialises writers, so the
    interleaving is staged inside the unit's own session.
    """

    @pytest.fixture
    def drained_before_lock(self, monkeypatch):
        """Another dispenser commits a sale of ``quantity`` from the batch just before it is locked."""
        real_lock = billing.lock_batches
        calls = []

        def install(batch_id, quantity):
            def lock_after_other_sale(s, batch_ids):
                calls.append(sorted(batch_ids))
                if len(calls) == 1:
                    consume(s, batch_id, quantity, notes="counter sale")
                    s.commit()
                return real_lock(s, batch_ids)

            monkeypatch.setattr(billing, "lock_batches", lock_after_other_sale)
            return calls

        return install

    @pytest.fixture
    def version_bumped_after_lock(self, monkeypatch):
        """Every lock is followed by a foreign version bump, so the compare-and-set always loses."""
        real_lock = batches._lock_batch
        calls = []

        def lock_then_bump(s, batch_id):
            batch = real_lock(s, batch_id)
            calls.append(batch_id)
            s.execute(
                update(MedicineBatch)
                .where(MedicineBatch.id == batch_id)
                .values(version=MedicineBatch.version + 1)
                .execution_options(synchronize_session=False)
            )
            return batch

        monkeypatch.setattr(batches, "_lock_batch", lock_then_bump)
        return calls

    def test_fefo_sale_moves_to_the_next_batch(self, db, make_medicine, receive, sell, drained_before_lock):
        med = make_medicine()
        early = receive(med, 5, expiry_in_days=30)
        late = receive(med, 10, expiry_in_days=300)
        calls = drained_before_lock(early.id, 4)

        sale = sell({"medicine_id": med.id, "quantity": 4})

        assert calls == [[early.id], [late.id]]
        assert sale.items[0].batch_id == late.id
        db.expire_all()
        assert db.get(MedicineBatch, early.id).quantity == 1
        assert db.get(MedicineBatch, late.id).quantity == 6
        assert check_consistency(db, med.id).consistent

    def test_pinned_sale_is_not_retried(self, db, make_medicine, receive, sell, drained_before_lock):
        med = make_medicine()
        pinned = receive(med, 5)
        receive(med, 10, expiry_in_days=300)
        calls = drained_before_lock(pinned.id, 4)

        with pytest.raises(InsufficientStockError) as exc:
            sell({"medicine_id": med.id, "batch_id": pinned.id, "quantity": 4})

        assert len(calls) == 1
        assert (exc.value.requested, exc.value.available) == (4, 1)
        db.expire_all()
        assert db.query(PharmacySale).count() == 0
        assert db.get(MedicineBatch, pinned.id).quantity == 1
        assert check_consistency(db, med.id).consistent

    def test_sale_gives_up_after_every_attempt_goes_stale(
        self, db, make_medicine, receive, sell, version_bumped_after_lock,
    ):
        med = make_medicine()
        batch = receive(med, 5)

        with pytest.raises(StaleStockError):
            sell({"medicine_id": med.id, "quantity": 2})

        assert len(version_bumped_after_lock) == settings.STOCK_UNIT_RETRIES
        db.expire_all()
        b = db.get(MedicineBatch, batch.id)
        assert (b.quantity, b.version) == (5, 1)
        assert db.query(PharmacySale).count() == 0
        assert db.query(InventoryTransaction).count() == 1
        assert check_consistency(db, med.id).consistent

    def test_stale_increase_is_retried_then_raised(self, db, make_medicine, receive, version_bumped_after_lock):
        med = make_medicine()
        batch = receive(med, 5)

        with pytest.raises(StaleStockError):
            run_stock_unit(db, lambda s, ev: adjust_stock(
                s, medicine_id=med.id, batch_id=batch.id, kind="ADJUSTMENT",
                direction="INCREASE", quantity=3, events=ev))

        assert len(version_bumped_after_lock) == settings.STOCK_UNIT_RETRIES
        db.expire_all()
        assert db.get(MedicineBatch, batch.id).quantity == 5
        assert db.query(InventoryTransaction).count() == 1
