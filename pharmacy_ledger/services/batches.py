# FILE: pharmacy_ledger/services/batches.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Collection, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pharmacy_ledger.core.config import settings
from pharmacy_ledger.core.errors import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    StaleStockError,
    ValidationError,
)
from pharmacy_ledger.models.pharmacy_inventory import (
    TERMINAL_BATCH_STATUSES,
    BatchStatus,
    InventoryTransaction,
    Medicine,
    MedicineBatch,
    StockDirection,
    TransactionType,
)
from pharmacy_ledger.schemas.pharmacy_inventory import BatchQuery, BatchReceiveIn
from pharmacy_ledger.services.event_fanout import INVENTORY_UPDATE, EventBuffer, SubscriberRegistry
from pharmacy_ledger.services.inventory import apply_delta, ensure_inventory
from pharmacy_ledger.services.stock_alerts import evaluate_batch_expiry
from pharmacy_ledger.services.stock_ledger import record_transaction
from pharmacy_ledger.services.stock_unit import run_stock_unit
from pharmacy_ledger.utils.timezone import today_local

logger = logging.getLogger(__name__)

SALEABLE = (BatchStatus.AVAILABLE,)
# recalled stock may still be disposed of or corrected
WRITE_OFF_SOURCES = (BatchStatus.AVAILABLE, BatchStatus.RECALLED)


@dataclass
class Movement:
    txn_type: TransactionType
    direction: StockDirection
    quantity: int
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    performed_by: Optional[int] = None
    notes: Optional[str] = None


def _d(x) -> Decimal:
    try:
        return Decimal(str(x if x is not None else 0))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Invalid amount: {x!r}")


def _positive_qty(quantity, field: str = "quantity") -> int:
    try:
        q = int(quantity)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a whole number", details={field: quantity})
    if q != quantity or q <= 0:
        raise ValidationError(f"{field} must be > 0", details={field: quantity})
    return q


def get_batch(db: Session, batch_id: int) -> MedicineBatch:
    batch = db.get(MedicineBatch, batch_id)
    if not batch:
        raise NotFoundError("Batch", batch_id)
    return batch


def _lock_batch(db: Session, batch_id: int) -> MedicineBatch:
    batch = (
        db.query(MedicineBatch)
        .filter(MedicineBatch.id == batch_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not batch:
        raise NotFoundError("Batch", batch_id)
    return batch


def lock_batches(db: Session, batch_ids: Collection[int]) -> Dict[int, MedicineBatch]:
    """Lock several batches in ascending id order (the global lock order)."""
    ids = sorted(set(batch_ids))
    rows = (
        db.query(MedicineBatch)
        .filter(MedicineBatch.id.in_(ids))
        .order_by(MedicineBatch.id.asc())
        .with_for_update()
        .populate_existing()
        .all()
    )
    return {b.id: b for b in rows}


def _medicine_name(db: Session, medicine_id: int) -> Optional[str]:
    return db.query(Medicine.name).filter(Medicine.id == medicine_id).scalar()


# -------------------------
# Compare-and-set on batch quantity
# -------------------------
def _take(
    db: Session,
    batch_id: int,
    quantity: int,
    *,
    sources: Tuple[BatchStatus, ...],
    zero_status: BatchStatus,
    final_status: Optional[BatchStatus] = None,
) -> MedicineBatch:
    """
    Remove ``quantity`` units from a batch. The row is locked first; the
    UPDATE still re-checks quantity, status and version so it is the
    authoritative check-and-act even where FOR UPDATE is a no-op.
    """
    batch = _lock_batch(db, batch_id)
    available = int(batch.quantity) if batch.status in sources else 0
    if quantity > available:
        logger.warning(
            "Insufficient stock in batch %s: requested %s, available %s (%s)",
            batch.id, quantity, available, batch.status.value,
        )
        raise InsufficientStockError(
            batch.medicine_id,
            quantity,
            available,
            batch_id=batch.id,
            medicine_name=_medicine_name(db, batch.medicine_id),
        )

    remaining = int(batch.quantity) - quantity
    if final_status is not None:
        new_status = final_status
    elif remaining == 0:
        new_status = zero_status
    else:
        new_status = batch.status

    res = db.execute(
        update(MedicineBatch)
        .where(
            MedicineBatch.id == batch.id,
            MedicineBatch.version == batch.version,
            MedicineBatch.quantity >= quantity,
            MedicineBatch.status.in_(sources),
        )
        .values(
            quantity=MedicineBatch.quantity - quantity,
            status=new_status,
            version=MedicineBatch.version + 1,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise StaleStockError(
            f"Batch {batch.id} changed while it was being updated.",
            details={"batch_id": batch.id, "version": batch.version},
        )
    db.refresh(batch)
    return batch


def _put(db: Session, batch_id: int, quantity: int) -> MedicineBatch:
    batch = _lock_batch(db, batch_id)
    if batch.status in TERMINAL_BATCH_STATUSES:
        raise ConflictError(
            f"Batch {batch.batch_number} is {batch.status.value}; stock cannot be added back.",
            details={"batch_id": batch.id, "status": batch.status.value},
        )
    res = db.execute(
        update(MedicineBatch)
        .where(
            MedicineBatch.id == batch.id,
            MedicineBatch.version == batch.version,
            MedicineBatch.status.in_(WRITE_OFF_SOURCES),
        )
        .values(
            quantity=MedicineBatch.quantity + quantity,
            version=MedicineBatch.version + 1,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise StaleStockError(
            f"Batch {batch.id} changed while it was being updated.",
            details={"batch_id": batch.id, "version": batch.version},
        )
    db.refresh(batch)
    return batch


def _post_movement(
    db: Session,
    batch: MedicineBatch,
    move: Movement,
    events: Optional[EventBuffer],
) -> InventoryTransaction:
    """Cascade a batch change into the aggregate, alerts and the ledger."""
    signed = move.quantity if move.direction == StockDirection.IN else -move.quantity
    inv = apply_delta(db, batch.medicine_id, signed, events)
    txn = record_transaction(
        db,
        inv,
        txn_type=move.txn_type,
        quantity=move.quantity,
        batch_id=batch.id,
        direction=move.direction,
        reference_id=move.reference_id,
        reference_type=move.reference_type,
        performed_by=move.performed_by,
        notes=move.notes,
    )
    evaluate_batch_expiry(db, batch, events)

    if events is not None:
        events.add(
            INVENTORY_UPDATE,
            batch.medicine_id,
            {
                "transactionId": txn.id,
                "type": txn.type.value,
                "direction": txn.direction.value,
                "quantity": txn.quantity,
                "balanceAfter": txn.balance_after,
                "batchQuantity": batch.quantity,
                "batchStatus": batch.status.value,
            },
            batch_id=batch.id,
        )
    return txn


# -------------------------
# Receipt
# -------------------------
def receive_batch(
    db: Session,
    data: BatchReceiveIn,
    *,
    received_by: Optional[int] = None,
    events: Optional[EventBuffer] = None,
) -> MedicineBatch:
    quantity = _positive_qty(data.quantity)
    if data.expiry_date <= data.manufacturing_date:
        raise ValidationError(
            "expiry_date must be after manufacturing_date",
            details={
                "manufacturing_date": data.manufacturing_date,
                "expiry_date": data.expiry_date,
            },
        )
    unit_cost = _d(data.unit_cost)
    selling_price = _d(data.selling_price)
    if unit_cost < 0 or selling_price < 0:
        raise ValidationError("unit_cost and selling_price must be >= 0")

    batch_number = (data.batch_number or "").strip()
    if not batch_number:
        raise ValidationError("batch_number is required")

    med = db.get(Medicine, data.medicine_id)
    if not med:
        raise NotFoundError("Medicine", data.medicine_id)
    if not med.is_active:
        raise ValidationError(f"Medicine {med.name} is inactive", details={"medicine_id": med.id})

    dup = (
        db.query(MedicineBatch.id)
        .filter(MedicineBatch.medicine_id == med.id, MedicineBatch.batch_number == batch_number)
        .first()
    )
    if dup:
        raise ConflictError(
            f"Batch {batch_number} already exists for {med.name}",
            details={"medicine_id": med.id, "batch_number": batch_number, "batch_id": dup[0]},
        )

    ensure_inventory(
        db,
        med.id,
        min_stock_level=data.min_stock_level,
        max_stock_level=data.max_stock_level,
        reorder_level=data.reorder_level,
    )

    batch = MedicineBatch(
        medicine_id=med.id,
        batch_number=batch_number,
        quantity=quantity,
        unit_cost=unit_cost,
        selling_price=selling_price,
        manufacturing_date=data.manufacturing_date,
        expiry_date=data.expiry_date,
        received_date=data.received_date or today_local(),
        status=BatchStatus.AVAILABLE,
        location=(data.location or "").strip() or settings.DEFAULT_BATCH_LOCATION,
        supplier=data.supplier,
        notes=data.notes,
        received_by=received_by,
        version=1,
    )
    try:
        with db.begin_nested():
            db.add(batch)
            db.flush()
    except IntegrityError:
        raise ConflictError(
            f"Batch {batch_number} already exists for {med.name}",
            details={"medicine_id": med.id, "batch_number": batch_number},
        )

    _post_movement(
        db,
        batch,
        Movement(
            txn_type=TransactionType.PURCHASE,
            direction=StockDirection.IN,
            quantity=quantity,
            reference_id=data.reference_id,
            reference_type=data.reference_type or ("PURCHASE_ORDER" if data.reference_id else None),
            performed_by=received_by,
            notes=f"Received batch {batch_number}",
        ),
        events,
    )
    logger.info("Received batch %s of %s: %s units", batch_number, med.name, quantity)
    return batch


# -------------------------
# Outbound
# -------------------------
def consume(
    db: Session,
    batch_id: int,
    quantity: int,
    *,
    performed_by: Optional[int] = None,
    reference_id: Optional[str] = None,
    reference_type: Optional[str] = None,
    notes: Optional[str] = None,
    events: Optional[EventBuffer] = None,
) -> InventoryTransaction:
    quantity = _positive_qty(quantity)
    batch = _take(db, batch_id, quantity, sources=SALEABLE, zero_status=BatchStatus.OUT_OF_STOCK)
    return _post_movement(
        db,
        batch,
        Movement(
            txn_type=TransactionType.SALE,
            direction=StockDirection.OUT,
            quantity=quantity,
            reference_id=reference_id,
            reference_type=reference_type,
            performed_by=performed_by,
            notes=notes,
        ),
        events,
    )


def write_off(
    db: Session,
    batch_id: int,
    reason: str,
    quantity: Optional[int] = None,
    *,
    performed_by: Optional[int] = None,
    notes: Optional[str] = None,
    events: Optional[EventBuffer] = None,
) -> InventoryTransaction:
    """
    EXPIRED takes the whole remaining quantity and leaves the batch EXPIRED.
    DAMAGED may be partial; the batch turns DAMAGED once it is empty.
    """
    try:
        txn_type = TransactionType(reason)
    except ValueError:
        txn_type = None
    if txn_type not in (TransactionType.EXPIRED, TransactionType.DAMAGED):
        raise ValidationError("reason must be EXPIRED or DAMAGED", details={"reason": reason})

    if txn_type == TransactionType.EXPIRED:
        current = _lock_batch(db, batch_id)
        remaining = int(current.quantity) if current.status in WRITE_OFF_SOURCES else 0
        if quantity is not None and int(quantity) != remaining:
            raise ValidationError(
                "An EXPIRED write-off covers the whole remaining quantity",
                details={"batch_id": batch_id, "quantity": quantity, "remaining": remaining},
            )
        if remaining <= 0:
            raise InsufficientStockError(
                current.medicine_id,
                0,
                0,
                batch_id=current.id,
                medicine_name=_medicine_name(db, current.medicine_id),
            )
        qty = remaining
        batch = _take(
            db, batch_id, qty,
            sources=WRITE_OFF_SOURCES,
            zero_status=BatchStatus.EXPIRED,
            final_status=BatchStatus.EXPIRED,
        )
    else:
        if quantity is None:
            raise ValidationError("quantity is required for a DAMAGED write-off")
        qty = _positive_qty(quantity)
        batch = _take(db, batch_id, qty, sources=WRITE_OFF_SOURCES, zero_status=BatchStatus.DAMAGED)

    txn = _post_movement(
        db,
        batch,
        Movement(
            txn_type=txn_type,
            direction=StockDirection.OUT,
            quantity=qty,
            reference_id=str(batch.id),
            reference_type="WRITE_OFF",
            performed_by=performed_by,
            notes=notes,
        ),
        events,
    )
    logger.info("Wrote off %s units of batch %s as %s", qty, batch.batch_number, txn_type.value)
    return txn


def adjust_stock(
    db: Session,
    *,
    medicine_id: int,
    batch_id: int,
    kind: str,
    quantity: int,
    direction: Optional[str] = None,
    performed_by: Optional[int] = None,
    notes: Optional[str] = None,
    events: Optional[EventBuffer] = None,
) -> InventoryTransaction:
    """
    Manual correction on one batch. ADJUSTMENT goes either way
    (INCREASE / DECREASE); TRANSFER is an outbound move.
    """
    qty = _positive_qty(quantity)
    batch = get_batch(db, batch_id)
    if batch.medicine_id != medicine_id:
        raise ValidationError(
            f"Batch {batch_id} does not belong to medicine {medicine_id}",
            details={"batch_id": batch_id, "medicine_id": medicine_id},
        )

    if kind == TransactionType.TRANSFER.value:
        if direction not in (None, "DECREASE", StockDirection.OUT.value):
            raise ValidationError("TRANSFER only moves stock out")
        txn_type, move_dir = TransactionType.TRANSFER, StockDirection.OUT
    elif kind == TransactionType.ADJUSTMENT.value:
        if direction in ("INCREASE", StockDirection.IN.value):
            move_dir = StockDirection.IN
        elif direction in ("DECREASE", StockDirection.OUT.value):
            move_dir = StockDirection.OUT
        else:
            raise ValidationError("ADJUSTMENT needs direction INCREASE or DECREASE")
        txn_type = TransactionType.ADJUSTMENT
    else:
        raise ValidationError("type must be ADJUSTMENT or TRANSFER", details={"type": kind})

    if move_dir == StockDirection.IN:
        batch = _put(db, batch_id, qty)
    else:
        batch = _take(db, batch_id, qty, sources=WRITE_OFF_SOURCES, zero_status=BatchStatus.OUT_OF_STOCK)

    return _post_movement(
        db,
        batch,
        Movement(
            txn_type=txn_type,
            direction=move_dir,
            quantity=qty,
            reference_type="MANUAL",
            performed_by=performed_by,
            notes=notes,
        ),
        events,
    )


# -------------------------
# FEFO
# -------------------------
def fefo_candidates(
    db: Session,
    medicine_id: int,
    *,
    today: Optional[date] = None,
) -> List[MedicineBatch]:
    today = today or today_local()
    return (
        db.query(MedicineBatch)
        .filter(
            MedicineBatch.medicine_id == medicine_id,
            MedicineBatch.status == BatchStatus.AVAILABLE,
            MedicineBatch.quantity > 0,
            MedicineBatch.expiry_date > today,
        )
        .order_by(
            MedicineBatch.expiry_date.asc(),
            MedicineBatch.received_date.asc(),
            MedicineBatch.id.asc(),
        )
        .all()
    )


def select_fefo_batch(
    db: Session,
    medicine_id: int,
    quantity: int,
    *,
    today: Optional[date] = None,
    reserved: Optional[Mapping[int, int]] = None,
) -> Optional[MedicineBatch]:
    """
    Earliest-expiring saleable batch that alone covers ``quantity``;
    ``reserved`` holds units already promised to earlier lines of a sale.
    """
    reserved = reserved or {}
    for b in fefo_candidates(db, medicine_id, today=today):
        if int(b.quantity) - reserved.get(b.id, 0) >= quantity:
            return b
    return None


# -------------------------
# Lifecycle
# -------------------------
def recall_batch(
    db: Session,
    batch_id: int,
    *,
    notes: Optional[str] = None,
    performed_by: Optional[int] = None,
    events: Optional[EventBuffer] = None,
) -> MedicineBatch:
    """Hold a batch: units stay counted but can no longer be sold or FEFO-picked."""
    batch = _lock_batch(db, batch_id)
    if batch.status != BatchStatus.AVAILABLE:
        raise ConflictError(
            f"Only AVAILABLE batches can be recalled (batch {batch.batch_number} is {batch.status.value})",
            details={"batch_id": batch.id, "status": batch.status.value},
        )

    res = db.execute(
        update(MedicineBatch)
        .where(
            MedicineBatch.id == batch.id,
            MedicineBatch.version == batch.version,
            MedicineBatch.status == BatchStatus.AVAILABLE,
        )
        .values(
            status=BatchStatus.RECALLED,
            notes=notes if notes is not None else batch.notes,
            version=MedicineBatch.version + 1,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise StaleStockError(f"Batch {batch.id} changed while it was being recalled.")
    db.refresh(batch)

    evaluate_batch_expiry(db, batch, events)
    if events is not None:
        events.add(
            INVENTORY_UPDATE,
            batch.medicine_id,
            {"action": "recalled", "batchQuantity": batch.quantity, "batchStatus": batch.status.value,
             "performedBy": performed_by},
            batch_id=batch.id,
        )
    logger.info("Batch %s recalled by %s", batch.batch_number, performed_by)
    return batch


def expire_batches(
    db: Session,
    *,
    today: Optional[date] = None,
    performed_by: Optional[int] = None,
    fanout: Optional[SubscriberRegistry] = None,
) -> List[int]:
    """
    Write off every AVAILABLE batch past its expiry date, one stock unit per
    batch so a single failure does not hold back the rest. Empty batches
    are left alone. Returns the ids that were written off.
    """
    today = today or today_local()
    ids = [
        bid for (bid,) in db.query(MedicineBatch.id)
        .filter(
            MedicineBatch.status == BatchStatus.AVAILABLE,
            MedicineBatch.quantity > 0,
            MedicineBatch.expiry_date <= today,
        )
        .order_by(MedicineBatch.id.asc())
        .all()
    ]
    db.rollback()  # release the read before per-batch units start

    expired: List[int] = []
    for bid in ids:
        def _work(s: Session, ev: EventBuffer, bid=bid):
            return write_off(
                s, bid, TransactionType.EXPIRED.value,
                performed_by=performed_by,
                notes=f"Expired on or before {today.isoformat()}",
                events=ev,
            )

        try:
            run_stock_unit(db, _work, fanout=fanout, label="expire_batch")
        except InsufficientStockError:
            # emptied or written off by someone else since the scan
            logger.info("Batch %s no longer holds stock, skipped", bid)
            continue
        expired.append(bid)

    if expired:
        logger.info("Expired %s batches as of %s", len(expired), today)
    return expired


# -------------------------
# Queries
# -------------------------
def list_batches(db: Session, q: BatchQuery) -> Tuple[List[MedicineBatch], int]:
    query = db.query(MedicineBatch)
    if q.medicine_id:
        query = query.filter(MedicineBatch.medicine_id == q.medicine_id)
    if q.status:
        query = query.filter(MedicineBatch.status == q.status)
    if q.batch_number:
        query = query.filter(MedicineBatch.batch_number.ilike(f"%{q.batch_number.strip()}%"))
    if q.expiry_before:
        query = query.filter(MedicineBatch.expiry_date <= q.expiry_before)
    if q.expiry_after:
        query = query.filter(MedicineBatch.expiry_date >= q.expiry_after)

    total = query.count()
    rows = (
        query.order_by(MedicineBatch.expiry_date.asc(), MedicineBatch.id.asc())
        .offset(q.offset)
        .limit(q.limit)
        .all()
    )
    return rows, total
