# FILE: pharmacy_ledger/api/routes_pharmacy_stream.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import anyio
import anyio.to_thread
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from pharmacy_ledger.api.deps import Actor, current_actor, get_db, get_fanout, get_stream_readers, require_any
from pharmacy_ledger.core.config import settings
from pharmacy_ledger.models.pharmacy_alerts import AlertStatus, AlertType, PharmacyAlert
from pharmacy_ledger.models.pharmacy_inventory import InventoryTransaction
from pharmacy_ledger.schemas.pharmacy_alerts import AlertOut
from pharmacy_ledger.schemas.pharmacy_inventory import BatchOut, TransactionOut
from pharmacy_ledger.services.event_fanout import SubscriberRegistry, format_sse
from pharmacy_ledger.services.stock_alerts import expiring_batches

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pharmacy/inventory", tags=["Pharmacy Live Feed"])

SNAPSHOT_TXN_LIMIT = 10


def build_snapshot(db: Session) -> Dict[str, Any]:
    """What a dashboard needs before live events start flowing."""
    since = datetime.utcnow() - timedelta(hours=settings.SSE_SNAPSHOT_HOURS)
    txns: List[InventoryTransaction] = (
        db.query(InventoryTransaction)
        .filter(InventoryTransaction.performed_at >= since)
        .order_by(InventoryTransaction.performed_at.desc(), InventoryTransaction.id.desc())
        .limit(SNAPSHOT_TXN_LIMIT)
        .all()
    )
    alerts = (
        db.query(PharmacyAlert)
        .filter(
            PharmacyAlert.status == AlertStatus.ACTIVE,
            PharmacyAlert.type.in_([AlertType.LOW_STOCK, AlertType.STOCK_OUT]),
        )
        .order_by(PharmacyAlert.created_at.desc(), PharmacyAlert.id.desc())
        .all()
    )
    expiring = expiring_batches(db)
    db.rollback()  # end the read transaction before the long-lived stream

    return {
        "recentTransactions": [TransactionOut.model_validate(t).model_dump() for t in txns],
        "stockAlerts": [AlertOut.model_validate(a).model_dump() for a in alerts],
        "expiringBatches": [BatchOut.model_validate(b).model_dump() for b in expiring],
    }


@router.get("/stream")
async def api_inventory_stream(
    request: Request,
    events: Optional[str] = Query(None, description="comma separated event classes"),
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
    fanout: SubscriberRegistry = Depends(get_fanout),
    readers: anyio.CapacityLimiter = Depends(get_stream_readers),
):
    require_any(me, ["pharmacy.inventory.stock.view", "pharmacy.inventory.alerts.view"])

    wanted = [e.strip() for e in events.split(",") if e.strip()] if events else None
    snapshot = await run_in_threadpool(build_snapshot, db)
    try:
        sub = fanout.subscribe(wanted)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    async def event_source():
        try:
            yield format_sse(
                {"subscriberId": sub.id, "eventClasses": sorted(sub.event_classes),
                 "timestamp": datetime.utcnow()},
                "connected",
            )
            yield format_sse(snapshot, "snapshot")
            last_sent = anyio.current_time()
            while True:
                if await request.is_disconnected():
                    break
                # short waits on the stream pool, never the request pool
                ev = await anyio.to_thread.run_sync(sub.get, settings.SSE_POLL_SECONDS, limiter=readers)
                if ev is None:
                    if sub.closed:
                        break
                    if anyio.current_time() - last_sent >= settings.SSE_KEEPALIVE_SECONDS:
                        last_sent = anyio.current_time()
                        yield ": keep-alive\n\n"
                    continue
                last_sent = anyio.current_time()
                yield format_sse(ev.to_dict(), ev.event_class)
        finally:
            fanout.unsubscribe(sub.id)

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )
