# FILE: pharmacy_ledger/api/routes_pharmacy_inventory.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from pharmacy_ledger.api.deps import Actor, current_actor, get_db, get_fanout, require_any, require_perm
from pharmacy_ledger.schemas.pharmacy_inventory import (
    AdjustmentIn,
    ConsistencyOut,
    InventoryOut,
    InventoryQuery,
    StockLevelsIn,
    TransactionOut,
    TransactionQuery,
)
from pharmacy_ledger.services import inventory, stock_ledger
from pharmacy_ledger.services.batches import adjust_stock
from pharmacy_ledger.services.event_fanout import SubscriberRegistry
from pharmacy_ledger.services.stock_unit import run_stock_unit
from pharmacy_ledger.utils.resp import ok

router = APIRouter(prefix="/pharmacy/inventory", tags=["Pharmacy Inventory"])

VIEW = "pharmacy.inventory.stock.view"
MANAGE = "pharmacy.inventory.stock.manage"
TXNS_VIEW = "pharmacy.inventory.txns.view"


@router.get("")
def api_inventory_list(
    q: InventoryQuery = Depends(),
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
):
    require_any(me, [VIEW, MANAGE])
    rows, total = inventory.list_inventory(db, q)
    return ok({
        "items": [InventoryOut.model_validate(r).model_dump() for r in rows],
        "total": total,
        "limit": q.limit,
        "offset": q.offset,
    })


@router.get("/transactions")
def api_transaction_list(
    q: TransactionQuery = Depends(),
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
):
    require_any(me, [TXNS_VIEW, MANAGE])
    rows, total = stock_ledger.list_transactions(db, q)
    return ok({
        "items": [TransactionOut.model_validate(t).model_dump() for t in rows],
        "total": total,
        "limit": q.limit,
        "offset": q.offset,
    })


@router.post("/adjust")
def api_inventory_adjust(
    payload: AdjustmentIn,
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
    fanout: SubscriberRegistry = Depends(get_fanout),
):
    require_perm(me, MANAGE)
    txn = run_stock_unit(
        db,
        lambda s, ev: adjust_stock(
            s,
            medicine_id=payload.medicine_id,
            batch_id=payload.batch_id,
            kind=payload.type,
            direction=payload.direction,
            quantity=payload.quantity,
            performed_by=me.id,
            notes=payload.notes,
            events=ev,
        ),
        fanout=fanout,
        label="adjust_stock",
    )
    return ok(TransactionOut.model_validate(txn).model_dump(), 201)


@router.get("/{medicine_id}")
def api_inventory_get(
    medicine_id: int,
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
):
    require_any(me, [VIEW, MANAGE])
    return ok(InventoryOut.model_validate(inventory.get_inventory(db, medicine_id)).model_dump())


@router.put("/{medicine_id}/levels")
def api_inventory_levels(
    medicine_id: int,
    payload: StockLevelsIn,
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
    fanout: SubscriberRegistry = Depends(get_fanout),
):
    require_perm(me, MANAGE)
    inv = run_stock_unit(
        db,
        lambda s, ev: inventory.update_stock_levels(
            s,
            medicine_id,
            min_stock_level=payload.min_stock_level,
            max_stock_level=payload.max_stock_level,
            reorder_level=payload.reorder_level,
            events=ev,
        ),
        fanout=fanout,
        label="update_stock_levels",
    )
    return ok(InventoryOut.model_validate(inv).model_dump())


@router.get("/{medicine_id}/consistency")
def api_inventory_consistency(
    medicine_id: int,
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
):
    require_any(me, [TXNS_VIEW, MANAGE])
    report = stock_ledger.check_consistency(db, medicine_id)
    return ok(ConsistencyOut(**report.as_dict()).model_dump())
