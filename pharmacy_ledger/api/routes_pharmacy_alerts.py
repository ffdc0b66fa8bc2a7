# FILE: pharmacy_ledger/api/routes_pharmacy_alerts.py
from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from pharmacy_ledger.api.deps import Actor, current_actor, get_db, get_fanout, require_any, require_perm
from pharmacy_ledger.schemas.pharmacy_alerts import (
    AlertOut,
    AlertQuery,
    AlertResolveIn,
    AlertSettingsIn,
    AlertSettingsOut,
    ExpiringBatchOut,
)
from pharmacy_ledger.services import stock_alerts
from pharmacy_ledger.services.event_fanout import SubscriberRegistry
from pharmacy_ledger.services.stock_unit import run_stock_unit
from pharmacy_ledger.utils.resp import ok
from pharmacy_ledger.utils.timezone import today_local

router = APIRouter(prefix="/pharmacy/alerts", tags=["Pharmacy Alerts"])

VIEW = "pharmacy.inventory.alerts.view"
MANAGE = "pharmacy.inventory.alerts.manage"


@router.get("")
def api_alert_list(
    q: AlertQuery = Depends(),
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
):
    require_any(me, [VIEW, MANAGE])
    rows, total = stock_alerts.list_alerts(db, q)
    return ok({
        "items": [AlertOut.model_validate(a).model_dump() for a in rows],
        "total": total,
        "limit": q.limit,
        "offset": q.offset,
    })


@router.get("/expiring")
def api_alert_expiring(
    days: Optional[int] = Query(None, ge=0, le=3650),
    as_of: Optional[date] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
):
    require_any(me, [VIEW, MANAGE])
    today = as_of or today_local()
    rows = stock_alerts.expiring_batches(db, days=days, today=today, limit=limit)
    data = []
    for b in rows:
        left = (b.expiry_date - today).days
        data.append(
            ExpiringBatchOut(
                batch_id=b.id,
                medicine_id=b.medicine_id,
                medicine_name=b.medicine.name,
                batch_number=b.batch_number,
                quantity=b.quantity,
                expiry_date=b.expiry_date,
                days_to_expiry=left,
                severity=stock_alerts.expiry_severity(left),
            ).model_dump())
    return ok(data)


@router.post("/scan")
def api_alert_scan(
    as_of: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
    fanout: SubscriberRegistry = Depends(get_fanout),
):
    require_perm(me, MANAGE)
    result = run_stock_unit(
        db,
        lambda s, ev: stock_alerts.scan_expiry_warnings(s, ev, today=as_of),
        fanout=fanout,
        label="scan_expiry_warnings",
    )
    return ok(result)


@router.get("/settings")
def api_alert_settings_get(
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
):
    require_any(me, [VIEW, MANAGE])
    row = stock_alerts.get_alert_settings(db)
    db.commit()  # persists the default row on first read
    return ok(AlertSettingsOut.model_validate(row).model_dump())


@router.put("/settings")
def api_alert_settings_update(
    payload: AlertSettingsIn,
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
):
    require_perm(me, MANAGE)
    row = run_stock_unit(
        db,
        lambda s, ev: stock_alerts.update_alert_settings(s, payload, updated_by=me.id),
        label="update_alert_settings",
    )
    return ok(AlertSettingsOut.model_validate(row).model_dump())


@router.patch("/{alert_id}/resolve")
def api_alert_resolve(
    alert_id: int,
    payload: Optional[AlertResolveIn] = Body(None),
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
    fanout: SubscriberRegistry = Depends(get_fanout),
):
    require_perm(me, MANAGE)
    alert = run_stock_unit(
        db,
        lambda s, ev: stock_alerts.resolve_alert(
            s, alert_id,
            resolved_by=me.id,
            notes=payload.notes if payload else None,
            events=ev,
        ),
        fanout=fanout,
        label="resolve_alert",
    )
    return ok(AlertOut.model_validate(alert).model_dump())
