"""
Shared fixtures.

Every test gets its own file-backed SQLite database. The engine opens each
transaction with BEGIN IMMEDIATE, so a session that has read something holds
the write lock until it commits or rolls back: tests that hand work to other
sessions (threads, the HTTP client) release theirs first.
"""
import itertools
from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from pharmacy_ledger.api.deps import get_db
from pharmacy_ledger.db.base import Base
from pharmacy_ledger.db.session import make_engine, make_session_factory
from pharmacy_ledger.schemas.pharmacy_billing import SaleItemIn
from pharmacy_ledger.schemas.pharmacy_inventory import BatchReceiveIn, MedicineCreate
from pharmacy_ledger.services.batches import receive_batch
from pharmacy_ledger.services.billing import create_sale
from pharmacy_ledger.services.catalog import create_medicine
from pharmacy_ledger.services.stock_unit import run_stock_unit
from pharmacy_ledger.utils.jwt import create_access_token
from pharmacy_ledger.utils.timezone import today_local

PHARMACIST_ID = 7


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'pharmacy.db'}", echo=False)
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def today():
    return today_local()


@pytest.fixture
def make_medicine(db):
    counter = itertools.count(1)

    def _make(name=None, *, dosage_form="TABLET", strength="500mg", **extra):
        n = next(counter)
        med = create_medicine(
            db,
            MedicineCreate(
                name=name or f"Paracetamol {n}",
                generic_name=extra.pop("generic_name", "Paracetamol"),
                manufacturer=extra.pop("manufacturer", "Cipla"),
                dosage_form=dosage_form,
                strength=strength,
                **extra,
            ),
        )
        db.commit()  # end the read opened by refresh
        return med

    return _make


@pytest.fixture
def receive(db, today):
    counter = itertools.count(1)

    def _receive(
        medicine,
        quantity=100,
        *,
        batch_number=None,
        expiry_in_days=365,
        received_days_ago=0,
        selling_price="10.00",
        unit_cost="6.00",
        reorder_level=None,
        min_stock_level=None,
        max_stock_level=None,
    ):
        payload = BatchReceiveIn(
            medicine_id=medicine.id,
            batch_number=batch_number or f"LOT-{next(counter):04d}",
            quantity=quantity,
            unit_cost=Decimal(unit_cost),
            selling_price=Decimal(selling_price),
            manufacturing_date=today - timedelta(days=400),
            expiry_date=today + timedelta(days=expiry_in_days),
            received_date=today - timedelta(days=received_days_ago),
            reorder_level=reorder_level,
            min_stock_level=min_stock_level,
            max_stock_level=max_stock_level,
        )
        return run_stock_unit(
            db,
            lambda s, ev: receive_batch(s, payload, received_by=PHARMACIST_ID, events=ev),
        )

    return _receive


@pytest.fixture
def sell(db):
    def _sell(*lines, patient_id=501, fanout=None):
        items = [SaleItemIn(**line) for line in lines]
        return run_stock_unit(
            db,
            lambda s, ev: create_sale(
                s, patient_id=patient_id, items=items, generated_by=PHARMACIST_ID, events=ev),
            fanout=fanout,
        )

    return _sell


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

ALL_PERMS = (
    "pharmacy.inventory.items.view",
    "pharmacy.inventory.items.manage",
    "pharmacy.inventory.stock.view",
    "pharmacy.inventory.stock.manage",
    "pharmacy.inventory.alerts.view",
    "pharmacy.inventory.alerts.manage",
    "pharmacy.inventory.txns.view",
    "pharmacy.sales.view",
    "pharmacy.sales.create",
    "pharmacy.billing.payments.add",
)


@pytest.fixture
def client(session_factory):
    from pharmacy_ledger.main import create_app

    app = create_app()

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth():
    def _headers(*perms, admin=False, actor_id=PHARMACIST_ID):
        token = create_access_token(actor_id, perms or ALL_PERMS, is_admin=admin)
        return {"Authorization": f"Bearer {token}"}

    return _headers
