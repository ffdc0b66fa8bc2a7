# FILE: pharmacy_ledger/services/inventory.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pharmacy_ledger.core.errors import InvariantViolationError, NotFoundError, ValidationError
from pharmacy_ledger.models.pharmacy_inventory import PharmacyInventory
from pharmacy_ledger.schemas.pharmacy_inventory import InventoryQuery
from pharmacy_ledger.services.event_fanout import EventBuffer
from pharmacy_ledger.services.stock_alerts import evaluate_stock_alerts, get_alert_settings

logger = logging.getLogger(__name__)


def _validate_levels(min_level: int, max_level: int, reorder_level: int) -> None:
    if min_level < 0 or reorder_level < 0 or max_level < min_level:
        raise ValidationError(
            "Stock levels need 0 <= min <= max and reorder >= 0",
            details={
                "min_stock_level": min_level,
                "max_stock_level": max_level,
                "reorder_level": reorder_level,
            },
        )


def _locked_inventory(db: Session, medicine_id: int) -> Optional[PharmacyInventory]:
    return (
        db.query(PharmacyInventory)
        .filter(PharmacyInventory.medicine_id == medicine_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def ensure_inventory(
    db: Session,
    medicine_id: int,
    *,
    min_stock_level: Optional[int] = None,
    max_stock_level: Optional[int] = None,
    reorder_level: Optional[int] = None,
) -> PharmacyInventory:
    """
    Return the stock row for a medicine, creating it on first receipt.
    Level overrides apply only when the row is created here; otherwise
    the alert-settings defaults are used.
    """
    inv = _locked_inventory(db, medicine_id)
    if inv:
        return inv

    defaults = get_alert_settings(db)
    min_level = defaults.default_min_stock_level if min_stock_level is None else int(min_stock_level)
    max_level = defaults.default_max_stock_level if max_stock_level is None else int(max_stock_level)
    reorder = defaults.default_reorder_level if reorder_level is None else int(reorder_level)
    _validate_levels(min_level, max_level, reorder)

    try:
        with db.begin_nested():
            inv = PharmacyInventory(
                medicine_id=medicine_id,
                current_stock=0,
                min_stock_level=min_level,
                max_stock_level=max_level,
                reorder_level=reorder,
            )
            db.add(inv)
            db.flush()
    except IntegrityError:
        # concurrent first receipt created it
        inv = _locked_inventory(db, medicine_id)
        if not inv:
            raise
    return inv


def apply_delta(
    db: Session,
    medicine_id: int,
    delta: int,
    events: Optional[EventBuffer] = None,
) -> PharmacyInventory:
    """
    current_stock += delta in one conditional UPDATE. Batch checks run first,
    so a miss here means the projection has drifted: the unit is aborted.
    Alerts are re-evaluated against the new figure before returning.
    """
    delta = int(delta)
    db.flush()
    res = db.execute(
        update(PharmacyInventory)
        .where(
            PharmacyInventory.medicine_id == medicine_id,
            PharmacyInventory.current_stock + delta >= 0,
        )
        .values(
            current_stock=PharmacyInventory.current_stock + delta,
            last_stock_update=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        inv = db.query(PharmacyInventory).filter(PharmacyInventory.medicine_id == medicine_id).first()
        raise InvariantViolationError(
            f"Stock for medicine {medicine_id} would go negative.",
            details={
                "medicine_id": medicine_id,
                "delta": delta,
                "current_stock": int(inv.current_stock) if inv else None,
            },
        )

    inv = (
        db.query(PharmacyInventory)
        .filter(PharmacyInventory.medicine_id == medicine_id)
        .populate_existing()
        .one()
    )
    evaluate_stock_alerts(db, inv, events)
    return inv


def update_stock_levels(
    db: Session,
    medicine_id: int,
    *,
    min_stock_level: int,
    max_stock_level: int,
    reorder_level: int,
    events: Optional[EventBuffer] = None,
) -> PharmacyInventory:
    _validate_levels(int(min_stock_level), int(max_stock_level), int(reorder_level))
    inv = _locked_inventory(db, medicine_id)
    if not inv:
        raise NotFoundError("Inventory for medicine", medicine_id)

    inv.min_stock_level = int(min_stock_level)
    inv.max_stock_level = int(max_stock_level)
    inv.reorder_level = int(reorder_level)
    db.flush()

    # a new reorder level can open or close LOW_STOCK without any movement
    evaluate_stock_alerts(db, inv, events)
    logger.info(
        "Stock levels for medicine %s set to min=%s max=%s reorder=%s",
        medicine_id, min_stock_level, max_stock_level, reorder_level,
    )
    return inv


def get_inventory(db: Session, medicine_id: int) -> PharmacyInventory:
    inv = db.query(PharmacyInventory).filter(PharmacyInventory.medicine_id == medicine_id).first()
    if not inv:
        raise NotFoundError("Inventory for medicine", medicine_id)
    return inv


def list_inventory(db: Session, q: InventoryQuery) -> Tuple[List[PharmacyInventory], int]:
    query = db.query(PharmacyInventory)
    if q.out_of_stock:
        query = query.filter(PharmacyInventory.current_stock == 0)
    elif q.low_stock:
        query = query.filter(
            PharmacyInventory.current_stock > 0,
            PharmacyInventory.current_stock <= PharmacyInventory.reorder_level,
        )

    total = query.count()
    rows = (
        query.order_by(PharmacyInventory.current_stock.asc(), PharmacyInventory.medicine_id.asc())
        .offset(q.offset)
        .limit(q.limit)
        .all()
    )
    return rows, total
