# FILE: pharmacy_ledger/services/stock_alerts.py
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pharmacy_ledger.core.config import settings
from pharmacy_ledger.core.errors import ConflictError, NotFoundError, ValidationError
from pharmacy_ledger.models.pharmacy_alerts import (
    AlertStatus,
    AlertType,
    PharmacyAlert,
    PharmacyAlertSettings,
)
from pharmacy_ledger.models.pharmacy_inventory import (
    BatchStatus,
    Medicine,
    MedicineBatch,
    PharmacyInventory,
)
from pharmacy_ledger.schemas.pharmacy_alerts import AlertQuery, AlertSettingsIn
from pharmacy_ledger.services.event_fanout import BATCH_EXPIRY, STOCK_ALERT, EventBuffer
from pharmacy_ledger.utils.timezone import today_local

logger = logging.getLogger(__name__)

# expiry severity bands for the dashboard (days left)
EXPIRY_CRIT_DAYS = 7


# -------------------------
# Settings (single row)
# -------------------------
def get_alert_settings(db: Session) -> PharmacyAlertSettings:
    row = db.query(PharmacyAlertSettings).order_by(PharmacyAlertSettings.id.asc()).first()
    if row:
        return row
    try:
        with db.begin_nested():
            row = PharmacyAlertSettings(
                id=1,
                expiry_warning_days=settings.EXPIRY_WARNING_DAYS,
                default_min_stock_level=settings.DEFAULT_MIN_STOCK_LEVEL,
                default_max_stock_level=settings.DEFAULT_MAX_STOCK_LEVEL,
                default_reorder_level=settings.DEFAULT_REORDER_LEVEL,
            )
            db.add(row)
            db.flush()
    except IntegrityError:
        row = db.query(PharmacyAlertSettings).order_by(PharmacyAlertSettings.id.asc()).first()
    return row


def update_alert_settings(
    db: Session,
    data: AlertSettingsIn,
    *,
    updated_by: Optional[int] = None,
) -> PharmacyAlertSettings:
    row = get_alert_settings(db)
    changes = data.model_dump(exclude_unset=True, exclude_none=True)

    merged = {
        "expiry_warning_days": row.expiry_warning_days,
        "default_min_stock_level": row.default_min_stock_level,
        "default_max_stock_level": row.default_max_stock_level,
        "default_reorder_level": row.default_reorder_level,
        **changes,
    }
    if merged["expiry_warning_days"] < 0:
        raise ValidationError("expiry_warning_days must be >= 0")
    if not 0 <= merged["default_min_stock_level"] <= merged["default_max_stock_level"]:
        raise ValidationError("Default stock levels need 0 <= min <= max", details=merged)
    if merged["default_reorder_level"] < 0:
        raise ValidationError("default_reorder_level must be >= 0")

    for k, v in changes.items():
        setattr(row, k, v)
    row.updated_by = updated_by
    db.flush()
    return row


# -------------------------
# Alert lifecycle
# -------------------------
def _stock_key(alert_type: AlertType, medicine_id: int) -> str:
    return f"{alert_type.value}:{medicine_id}"


def _expiry_key(medicine_id: int, batch_id: int) -> str:
    return f"{AlertType.EXPIRY_WARNING.value}:{medicine_id}:{batch_id}"


def _event_class(alert: PharmacyAlert) -> str:
    return BATCH_EXPIRY if alert.type == AlertType.EXPIRY_WARNING else STOCK_ALERT


def _emit(events: Optional[EventBuffer], alert: PharmacyAlert, action: str) -> None:
    if events is None:
        return
    events.add(
        _event_class(alert),
        alert.medicine_id,
        {
            "action": action,
            "alertId": alert.id,
            "type": alert.type.value,
            "status": alert.status.value,
            "message": alert.message,
        },
        batch_id=alert.batch_id,
    )


def _active(db: Session, key: str) -> Optional[PharmacyAlert]:
    return db.query(PharmacyAlert).filter(PharmacyAlert.active_key == key).first()


def _raise_alert(
    db: Session,
    *,
    key: str,
    alert_type: AlertType,
    medicine_id: int,
    message: str,
    batch_id: Optional[int] = None,
    events: Optional[EventBuffer] = None,
) -> Optional[PharmacyAlert]:
    """Create the ACTIVE alert for ``key`` unless one exists. Idempotent."""
    if _active(db, key):
        return None

    alert = PharmacyAlert(
        type=alert_type,
        medicine_id=medicine_id,
        batch_id=batch_id,
        status=AlertStatus.ACTIVE,
        message=message,
        active_key=key,
    )
    try:
        with db.begin_nested():
            db.add(alert)
            db.flush()
    except IntegrityError:
        # another unit raised the same condition first
        return None

    logger.info("Alert raised: %s", message)
    _emit(events, alert, "raised")
    return alert


def _clear_alert(
    db: Session,
    key: str,
    *,
    notes: str,
    events: Optional[EventBuffer] = None,
) -> Optional[PharmacyAlert]:
    alert = _active(db, key)
    if not alert:
        return None
    alert.status = AlertStatus.RESOLVED
    alert.resolved_at = datetime.utcnow()
    alert.resolved_by = None
    alert.notes = notes
    alert.active_key = None
    db.flush()
    logger.info("Alert auto-resolved: %s (%s)", alert.message, notes)
    _emit(events, alert, "resolved")
    return alert


def _medicine_label(db: Session, medicine_id: int) -> str:
    name = db.query(Medicine.name).filter(Medicine.id == medicine_id).scalar()
    return name or f"medicine {medicine_id}"


def evaluate_stock_alerts(
    db: Session,
    inventory: PharmacyInventory,
    events: Optional[EventBuffer] = None,
) -> None:
    """
    STOCK_OUT while stock is 0, LOW_STOCK while 0 < stock <= reorder level,
    nothing above that. Safe to call any number of times.
    """
    stock = int(inventory.current_stock)
    reorder = int(inventory.reorder_level)
    mid = inventory.medicine_id
    out_key = _stock_key(AlertType.STOCK_OUT, mid)
    low_key = _stock_key(AlertType.LOW_STOCK, mid)

    if stock == 0:
        _clear_alert(db, low_key, notes="Stock ran out", events=events)
        _raise_alert(
            db,
            key=out_key,
            alert_type=AlertType.STOCK_OUT,
            medicine_id=mid,
            message=f"{_medicine_label(db, mid)} is out of stock",
            events=events,
        )
    elif stock <= reorder:
        _clear_alert(db, out_key, notes=f"Stock restored to {stock}", events=events)
        _raise_alert(
            db,
            key=low_key,
            alert_type=AlertType.LOW_STOCK,
            medicine_id=mid,
            message=f"{_medicine_label(db, mid)} is low on stock ({stock} left, reorder level {reorder})",
            events=events,
        )
    else:
        _clear_alert(db, out_key, notes=f"Stock restored to {stock}", events=events)
        _clear_alert(db, low_key, notes=f"Stock {stock} above reorder level {reorder}", events=events)


def _expiry_condition(batch: MedicineBatch, horizon: date) -> bool:
    return (
        batch.status == BatchStatus.AVAILABLE
        and int(batch.quantity) > 0
        and batch.expiry_date <= horizon
    )


def evaluate_batch_expiry(
    db: Session,
    batch: MedicineBatch,
    events: Optional[EventBuffer] = None,
    *,
    today: Optional[date] = None,
    warning_days: Optional[int] = None,
) -> None:
    today = today or today_local()
    if warning_days is None:
        warning_days = get_alert_settings(db).expiry_warning_days
    horizon = today + timedelta(days=int(warning_days))
    key = _expiry_key(batch.medicine_id, batch.id)

    if _expiry_condition(batch, horizon):
        _raise_alert(
            db,
            key=key,
            alert_type=AlertType.EXPIRY_WARNING,
            medicine_id=batch.medicine_id,
            batch_id=batch.id,
            message=(
                f"Batch {batch.batch_number} of {_medicine_label(db, batch.medicine_id)} "
                f"expires on {batch.expiry_date.isoformat()} ({batch.quantity} units)"
            ),
            events=events,
        )
        return

    if batch.status != BatchStatus.AVAILABLE:
        reason = f"Batch is {batch.status.value}"
    elif int(batch.quantity) <= 0:
        reason = "Batch emptied"
    else:
        reason = "Expiry outside warning horizon"
    _clear_alert(db, key, notes=reason, events=events)


def scan_expiry_warnings(
    db: Session,
    events: Optional[EventBuffer] = None,
    *,
    today: Optional[date] = None,
) -> Dict[str, int]:
    """
    Re-evaluate every AVAILABLE batch plus every batch holding an active
    expiry warning, so warnings follow the calendar without a stock event.
    """
    today = today or today_local()
    warning_days = get_alert_settings(db).expiry_warning_days

    flagged_ids = {
        bid for (bid,) in db.query(PharmacyAlert.batch_id).filter(
            PharmacyAlert.type == AlertType.EXPIRY_WARNING,
            PharmacyAlert.status == AlertStatus.ACTIVE,
            PharmacyAlert.batch_id.isnot(None),
        )
    }
    batches = (
        db.query(MedicineBatch)
        .filter(
            (MedicineBatch.status == BatchStatus.AVAILABLE)
            | (MedicineBatch.id.in_(sorted(flagged_ids)))
        )
        .order_by(MedicineBatch.id.asc())
        .all()
    )

    raised = resolved = 0
    for b in batches:
        had = _active(db, _expiry_key(b.medicine_id, b.id)) is not None
        evaluate_batch_expiry(db, b, events, today=today, warning_days=warning_days)
        has = _active(db, _expiry_key(b.medicine_id, b.id)) is not None
        if has and not had:
            raised += 1
        elif had and not has:
            resolved += 1

    logger.info(
        "Expiry scan as of %s: %s batches checked, %s raised, %s resolved",
        today, len(batches), raised, resolved,
    )
    return {"checked": len(batches), "raised": raised, "resolved": resolved}


def resolve_alert(
    db: Session,
    alert_id: int,
    *,
    resolved_by: Optional[int],
    notes: Optional[str] = None,
    events: Optional[EventBuffer] = None,
) -> PharmacyAlert:
    alert = (
        db.query(PharmacyAlert)
        .filter(PharmacyAlert.id == alert_id)
        .with_for_update()
        .first()
    )
    if not alert:
        raise NotFoundError("Alert", alert_id)
    if alert.status == AlertStatus.RESOLVED:
        raise ConflictError(
            f"Alert {alert_id} is already resolved.",
            details={"alert_id": alert_id, "resolved_at": alert.resolved_at},
        )

    alert.status = AlertStatus.RESOLVED
    alert.resolved_at = datetime.utcnow()
    alert.resolved_by = resolved_by
    alert.notes = notes
    alert.active_key = None
    db.flush()
    _emit(events, alert, "resolved")
    return alert


# -------------------------
# Queries
# -------------------------
def list_alerts(db: Session, q: AlertQuery) -> Tuple[List[PharmacyAlert], int]:
    query = db.query(PharmacyAlert)
    if q.type:
        query = query.filter(PharmacyAlert.type == q.type)
    if q.status:
        query = query.filter(PharmacyAlert.status == q.status)
    if q.medicine_id:
        query = query.filter(PharmacyAlert.medicine_id == q.medicine_id)

    total = query.count()
    rows = (
        query.order_by(PharmacyAlert.created_at.desc(), PharmacyAlert.id.desc())
        .offset(q.offset)
        .limit(q.limit)
        .all()
    )
    return rows, total


def expiring_batches(
    db: Session,
    *,
    days: Optional[int] = None,
    today: Optional[date] = None,
    limit: int = 100,
) -> List[MedicineBatch]:
    """
    AVAILABLE batches with units left that expire within ``days``
    (including ones already past expiry but not yet written off), soonest first.
    """
    today = today or today_local()
    if days is None:
        days = get_alert_settings(db).expiry_warning_days
    if days < 0:
        raise ValidationError("days must be >= 0", details={"days": days})
    horizon = today + timedelta(days=int(days))

    return (
        db.query(MedicineBatch)
        .filter(
            MedicineBatch.status == BatchStatus.AVAILABLE,
            MedicineBatch.quantity > 0,
            MedicineBatch.expiry_date <= horizon,
        )
        .order_by(MedicineBatch.expiry_date.asc(), MedicineBatch.id.asc())
        .limit(limit)
        .all()
    )


def expiry_severity(days_left: int) -> str:
    if days_left <= 0:
        return "EXPIRED"
    if days_left <= EXPIRY_CRIT_DAYS:
        return "CRIT"
    return "WARN"
