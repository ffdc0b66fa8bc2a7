# FILE: pharmacy_ledger/api/routes_pharmacy_billing.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from pharmacy_ledger.api.deps import Actor, current_actor, get_db, get_fanout, require_any, require_perm
from pharmacy_ledger.schemas.pharmacy_billing import (
    PaymentIn,
    PaymentOut,
    SaleCreateIn,
    SaleOut,
    SaleQuery,
)
from pharmacy_ledger.services import billing
from pharmacy_ledger.services.event_fanout import SubscriberRegistry
from pharmacy_ledger.services.stock_unit import run_stock_unit
from pharmacy_ledger.utils.resp import ok

router = APIRouter(prefix="/pharmacy/billing", tags=["Pharmacy Billing"])

SALES_VIEW = "pharmacy.sales.view"
SALES_CREATE = "pharmacy.sales.create"
PAYMENTS_ADD = "pharmacy.billing.payments.add"


@router.get("")
def api_sale_list(
    q: SaleQuery = Depends(),
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
):
    require_any(me, [SALES_VIEW, SALES_CREATE])
    rows, total = billing.list_sales(db, q)
    return ok({
        "items": [SaleOut.model_validate(s).model_dump() for s in rows],
        "total": total,
        "limit": q.limit,
        "offset": q.offset,
    })


@router.post("")
def api_sale_create(
    payload: SaleCreateIn,
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
    fanout: SubscriberRegistry = Depends(get_fanout),
):
    require_perm(me, SALES_CREATE)
    sale = run_stock_unit(
        db,
        lambda s, ev: billing.create_sale(
            s,
            patient_id=payload.patient_id,
            prescription_id=payload.prescription_id,
            items=payload.items,
            notes=payload.notes,
            generated_by=me.id,
            events=ev,
        ),
        fanout=fanout,
        label="create_sale",
    )
    return ok(SaleOut.model_validate(billing.get_sale(db, sale.id)).model_dump(), 201)


@router.get("/{sale_id}")
def api_sale_get(
    sale_id: int,
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
):
    require_any(me, [SALES_VIEW, SALES_CREATE])
    return ok(SaleOut.model_validate(billing.get_sale(db, sale_id)).model_dump())


@router.post("/{sale_id}/payment")
def api_sale_payment(
    sale_id: int,
    payload: PaymentIn,
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
):
    require_perm(me, PAYMENTS_ADD)
    pay = run_stock_unit(
        db,
        lambda s, ev: billing.apply_payment(
            s,
            sale_id,
            amount=payload.amount,
            method=payload.method,
            reference=payload.reference,
            notes=payload.notes,
            processed_by=me.id,
        ),
        label="apply_payment",
    )
    sale = billing.get_sale(db, sale_id)
    return ok({
        "payment": PaymentOut.model_validate(pay).model_dump(),
        "sale": SaleOut.model_validate(sale).model_dump(),
    }, 201)
