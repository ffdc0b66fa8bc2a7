# FILE: pharmacy_ledger/api/routes_pharmacy_batches.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session

from pharmacy_ledger.api.deps import Actor, current_actor, get_db, get_fanout, require_any, require_perm
from pharmacy_ledger.schemas.pharmacy_inventory import (
    BatchOut,
    BatchQuery,
    BatchReceiveIn,
    ExpireBatchesIn,
    RecallIn,
    TransactionOut,
    WriteOffIn,
)
from pharmacy_ledger.services import batches
from pharmacy_ledger.services.event_fanout import SubscriberRegistry
from pharmacy_ledger.services.stock_unit import run_stock_unit
from pharmacy_ledger.utils.resp import ok

router = APIRouter(prefix="/pharmacy/batches", tags=["Pharmacy Batches"])

VIEW = "pharmacy.inventory.stock.view"
MANAGE = "pharmacy.inventory.stock.manage"


@router.get("")
def api_batch_list(
    q: BatchQuery = Depends(),
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
):
    require_any(me, [VIEW, MANAGE])
    rows, total = batches.list_batches(db, q)
    return ok({
        "items": [BatchOut.model_validate(b).model_dump() for b in rows],
        "total": total,
        "limit": q.limit,
        "offset": q.offset,
    })


@router.post("")
def api_batch_receive(
    payload: BatchReceiveIn,
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
    fanout: SubscriberRegistry = Depends(get_fanout),
):
    require_perm(me, MANAGE)
    batch = run_stock_unit(
        db,
        lambda s, ev: batches.receive_batch(s, payload, received_by=me.id, events=ev),
        fanout=fanout,
        label="receive_batch",
    )
    return ok(BatchOut.model_validate(batch).model_dump(), 201)


@router.post("/expire")
def api_batch_expire(
    payload: Optional[ExpireBatchesIn] = Body(None),
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
    fanout: SubscriberRegistry = Depends(get_fanout),
):
    require_perm(me, MANAGE)
    as_of = payload.as_of if payload else None
    expired = batches.expire_batches(db, today=as_of, performed_by=me.id, fanout=fanout)
    return ok({"expired_batch_ids": expired, "count": len(expired)})


@router.get("/{batch_id}")
def api_batch_get(
    batch_id: int,
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
):
    require_any(me, [VIEW, MANAGE])
    return ok(BatchOut.model_validate(batches.get_batch(db, batch_id)).model_dump())


@router.post("/{batch_id}/write-off")
def api_batch_write_off(
    batch_id: int,
    payload: WriteOffIn,
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
    fanout: SubscriberRegistry = Depends(get_fanout),
):
    require_perm(me, MANAGE)
    txn = run_stock_unit(
        db,
        lambda s, ev: batches.write_off(
            s, batch_id, payload.reason, payload.quantity,
            performed_by=me.id, notes=payload.notes, events=ev,
        ),
        fanout=fanout,
        label="write_off",
    )
    return ok({
        "transaction": TransactionOut.model_validate(txn).model_dump(),
        "batch": BatchOut.model_validate(batches.get_batch(db, batch_id)).model_dump(),
    })


@router.post("/{batch_id}/recall")
def api_batch_recall(
    batch_id: int,
    payload: Optional[RecallIn] = Body(None),
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
    fanout: SubscriberRegistry = Depends(get_fanout),
):
    require_perm(me, MANAGE)
    batch = run_stock_unit(
        db,
        lambda s, ev: batches.recall_batch(
            s, batch_id,
            notes=payload.notes if payload else None,
            performed_by=me.id,
            events=ev,
        ),
        fanout=fanout,
        label="recall_batch",
    )
    return ok(BatchOut.model_validate(batch).model_dump())
