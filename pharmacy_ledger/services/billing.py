# FILE: pharmacy_ledger/services/billing.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from pharmacy_ledger.core.config import settings
from pharmacy_ledger.core.errors import (
    InsufficientStockError,
    NotFoundError,
    StaleStockError,
    ValidationError,
)
from pharmacy_ledger.models.pharmacy_billing import (
    PaymentStatus,
    PharmacyPayment,
    PharmacySale,
    PharmacySaleItem,
)
from pharmacy_ledger.models.pharmacy_inventory import BatchStatus, Medicine, MedicineBatch
from pharmacy_ledger.schemas.pharmacy_billing import SaleItemIn, SaleQuery
from pharmacy_ledger.services.batches import consume, fefo_candidates, lock_batches, select_fefo_batch
from pharmacy_ledger.services.event_fanout import EventBuffer
from pharmacy_ledger.services.number_series import next_document_number
from pharmacy_ledger.utils.timezone import today_local

logger = logging.getLogger(__name__)

MONEY = Decimal("0.01")
HUNDRED = Decimal("100")
PCT_STEP = Decimal("0.01")


def _round_money(value: Decimal) -> Decimal:
    return value.quantize(MONEY, rounding=ROUND_HALF_UP)


def _dec(value, field: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field} must be a number", details={field: value})


# ---------- Pure money helpers ----------


@dataclass(frozen=True)
class LineAmounts:
    item_subtotal: Decimal
    discount_amount: Decimal
    taxable_amount: Decimal
    tax_amount: Decimal
    total: Decimal


def compute_line(quantity: int, unit_price, discount_pct=0, tax_pct=0) -> LineAmounts:
    """
    subtotal = qty x price; discount on subtotal; tax on (subtotal - discount).
    Every figure is rounded to paise half-up, so line figures add up exactly.
    """
    subtotal = _round_money(Decimal(int(quantity)) * _dec(unit_price, "unit_price"))
    discount = _round_money(subtotal * _dec(discount_pct, "discount_pct") / HUNDRED)
    taxable = subtotal - discount
    tax = _round_money(taxable * _dec(tax_pct, "tax_pct") / HUNDRED)
    return LineAmounts(
        item_subtotal=subtotal,
        discount_amount=discount,
        taxable_amount=taxable,
        tax_amount=tax,
        total=taxable + tax,
    )


def payment_status_for(paid_amount, total_amount) -> PaymentStatus:
    paid = Decimal(str(paid_amount or 0))
    total = Decimal(str(total_amount or 0))
    if paid <= 0:
        return PaymentStatus.PENDING
    if paid < total:
        return PaymentStatus.PARTIAL
    return PaymentStatus.PAID


# ---------- Sale creation ----------


@dataclass
class _PlannedLine:
    line_no: int
    medicine: Medicine
    quantity: int
    batch_id: int
    pinned: bool
    unit_price: Optional[Decimal]
    discount_pct: Decimal
    tax_pct: Decimal


def _validate_items(items: Sequence[SaleItemIn]) -> None:
    if not items:
        raise ValidationError("A sale needs at least one item")

    for idx, it in enumerate(items, start=1):
        where = {"line": idx, "medicine_id": it.medicine_id}
        if int(it.quantity) <= 0:
            raise ValidationError(f"Line {idx}: quantity must be > 0", details={**where, "quantity": it.quantity})
        for field in ("discount_pct", "tax_pct"):
            pct = _dec(getattr(it, field) or 0, field)
            if pct < 0 or pct > HUNDRED:
                raise ValidationError(
                    f"Line {idx}: {field} must be between 0 and 100",
                    details={**where, field: str(pct)},
                )
            # stored as Numeric(5, 2)
            if pct != pct.quantize(PCT_STEP):
                raise ValidationError(
                    f"Line {idx}: {field} allows at most 2 decimal places",
                    details={**where, field: str(pct)},
                )
        if it.unit_price is not None and _dec(it.unit_price, "unit_price") < 0:
            raise ValidationError(f"Line {idx}: unit_price must be >= 0", details=where)


def _plan_lines(db: Session, items: Sequence[SaleItemIn], today: date) -> List[_PlannedLine]:
    """
    Pick one batch per line: the pinned one after checks, otherwise FEFO.
    Units promised to earlier lines are reserved so two lines never count
    the same stock twice.
    """
    reserved: Dict[int, int] = {}
    planned: List[_PlannedLine] = []

    for idx, it in enumerate(items, start=1):
        med = db.get(Medicine, it.medicine_id)
        if not med:
            raise NotFoundError("Medicine", it.medicine_id)
        qty = int(it.quantity)

        if it.batch_id is not None:
            batch = db.get(MedicineBatch, it.batch_id)
            if not batch:
                raise NotFoundError("Batch", it.batch_id)
            if batch.medicine_id != med.id:
                raise ValidationError(
                    f"Line {idx}: batch {batch.batch_number} is not a batch of {med.name}",
                    details={"line": idx, "batch_id": batch.id, "medicine_id": med.id},
                )
            if batch.expiry_date <= today:
                raise ValidationError(
                    f"Line {idx}: batch {batch.batch_number} expired on {batch.expiry_date.isoformat()}",
                    details={"line": idx, "batch_id": batch.id, "expiry_date": batch.expiry_date},
                )
            available = int(batch.quantity) - reserved.get(batch.id, 0) if batch.status == BatchStatus.AVAILABLE else 0
            if qty > available:
                raise InsufficientStockError(
                    med.id, qty, max(available, 0), batch_id=batch.id, medicine_name=med.name)
            pinned = True
        else:
            batch = select_fefo_batch(db, med.id, qty, today=today, reserved=reserved)
            if batch is None:
                best = max(
                    (int(b.quantity) - reserved.get(b.id, 0) for b in fefo_candidates(db, med.id, today=today)),
                    default=0,
                )
                logger.warning("No single batch of %s covers %s units (best %s)", med.name, qty, best)
                raise InsufficientStockError(med.id, qty, max(best, 0), medicine_name=med.name)
            pinned = False

        reserved[batch.id] = reserved.get(batch.id, 0) + qty
        planned.append(
            _PlannedLine(
                line_no=idx,
                medicine=med,
                quantity=qty,
                batch_id=batch.id,
                pinned=pinned,
                unit_price=_dec(it.unit_price, "unit_price") if it.unit_price is not None else None,
                discount_pct=_dec(it.discount_pct or 0, "discount_pct"),
                tax_pct=_dec(it.tax_pct or 0, "tax_pct"),
            ))
    return planned


def _recheck_locked(planned: List[_PlannedLine], locked: Dict[int, MedicineBatch]) -> None:
    """
    Selection ran before the locks were taken. A FEFO pick that no longer
    holds is retried with a fresh selection; a pinned batch that no longer
    holds is the caller's problem.
    """
    need: Dict[int, int] = {}
    for line in planned:
        need[line.batch_id] = need.get(line.batch_id, 0) + line.quantity

    for line in planned:
        batch = locked.get(line.batch_id)
        ok = (
            batch is not None
            and batch.status == BatchStatus.AVAILABLE
            and int(batch.quantity) >= need[line.batch_id]
        )
        if ok:
            continue
        if not line.pinned:
            raise StaleStockError(
                f"Batch {line.batch_id} changed before it could be locked.",
                details={"batch_id": line.batch_id},
            )
        available = int(batch.quantity) if batch is not None and batch.status == BatchStatus.AVAILABLE else 0
        raise InsufficientStockError(
            line.medicine.id,
            line.quantity,
            available,
            batch_id=line.batch_id,
            medicine_name=line.medicine.name,
        )


def create_sale(
    db: Session,
    *,
    patient_id: int,
    items: Sequence[SaleItemIn],
    prescription_id: Optional[int] = None,
    notes: Optional[str] = None,
    generated_by: Optional[int] = None,
    today: Optional[date] = None,
    events: Optional[EventBuffer] = None,
) -> PharmacySale:
    """
    Bill and dispense in one unit. Every line is satisfied from exactly one
    batch; if any line cannot be, nothing is consumed.
    """
    if patient_id is None or int(patient_id) <= 0:
        raise ValidationError("patient_id must be a positive id", details={"patient_id": patient_id})
    _validate_items(items)
    today = today or today_local()

    planned = _plan_lines(db, items, today)
    locked = lock_batches(db, [p.batch_id for p in planned])
    _recheck_locked(planned, locked)

    amounts: List[LineAmounts] = []
    for line in planned:
        if line.unit_price is None:
            line.unit_price = Decimal(str(locked[line.batch_id].selling_price or 0))
        amounts.append(compute_line(line.quantity, line.unit_price, line.discount_pct, line.tax_pct))

    subtotal = sum((a.item_subtotal for a in amounts), Decimal("0"))
    discount = sum((a.discount_amount for a in amounts), Decimal("0"))
    tax = sum((a.tax_amount for a in amounts), Decimal("0"))

    sale = PharmacySale(
        bill_number=next_document_number(
            db,
            key="BILL",
            prefix=settings.BILL_NUMBER_PREFIX,
            doc_date=today,
            pad=settings.BILL_NUMBER_PADDING,
        ),
        patient_id=int(patient_id),
        prescription_id=prescription_id,
        bill_date=datetime.utcnow(),
        subtotal=_round_money(subtotal),
        discount=_round_money(discount),
        tax=_round_money(tax),
        total_amount=_round_money(subtotal - discount + tax),
        paid_amount=Decimal("0.00"),
        payment_status=PaymentStatus.PENDING,
        generated_by=generated_by,
        notes=notes,
    )
    db.add(sale)
    db.flush()

    for line, amt in zip(planned, amounts):
        txn = consume(
            db,
            line.batch_id,
            line.quantity,
            performed_by=generated_by,
            reference_id=str(sale.id),
            reference_type="SALE",
            notes=f"Bill {sale.bill_number} line {line.line_no}",
            events=events,
        )
        db.add(
            PharmacySaleItem(
                sale_id=sale.id,
                line_no=line.line_no,
                medicine_id=line.medicine.id,
                batch_id=line.batch_id,
                quantity=line.quantity,
                unit_price=_round_money(line.unit_price),
                discount_pct=line.discount_pct,
                tax_pct=line.tax_pct,
                item_subtotal=amt.item_subtotal,
                discount_amount=amt.discount_amount,
                tax_amount=amt.tax_amount,
                total=amt.total,
                transaction_id=txn.id,
            ))
    db.flush()
    db.refresh(sale)

    logger.info(
        "Sale %s created for patient %s: %s lines, total %s",
        sale.bill_number, sale.patient_id, len(planned), sale.total_amount,
    )
    return sale


# ---------- Payments ----------


def apply_payment(
    db: Session,
    sale_id: int,
    *,
    amount,
    method: str,
    reference: Optional[str] = None,
    notes: Optional[str] = None,
    processed_by: Optional[int] = None,
) -> PharmacyPayment:
    amt = _round_money(_dec(amount, "amount"))
    if amt <= 0:
        raise ValidationError("Payment amount must be > 0", details={"amount": str(amount)})
    method = (method or "").strip().upper()
    if not method:
        raise ValidationError("Payment method is required")

    sale = (
        db.query(PharmacySale)
        .filter(PharmacySale.id == sale_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not sale:
        raise NotFoundError("Sale", sale_id)

    pay = PharmacyPayment(
        sale_id=sale.id,
        amount=amt,
        method=method,
        reference=reference,
        notes=notes,
        processed_by=processed_by,
    )
    db.add(pay)
    db.flush()

    total_paid = (
        db.query(func.coalesce(func.sum(PharmacyPayment.amount), 0))
        .filter(PharmacyPayment.sale_id == sale.id)
        .scalar()
    )
    sale.paid_amount = _round_money(Decimal(str(total_paid or 0)))
    sale.payment_status = payment_status_for(sale.paid_amount, sale.total_amount)
    db.flush()

    logger.info(
        "Payment %s of %s on %s; paid %s of %s (%s)",
        pay.id, amt, sale.bill_number, sale.paid_amount, sale.total_amount, sale.payment_status.value,
    )
    return pay


# ---------- Queries ----------


def get_sale(db: Session, sale_id: int) -> PharmacySale:
    sale = (
        db.query(PharmacySale)
        .options(selectinload(PharmacySale.items), selectinload(PharmacySale.payments))
        .filter(PharmacySale.id == sale_id)
        .populate_existing()
        .first()
    )
    if not sale:
        raise NotFoundError("Sale", sale_id)
    return sale


def list_sales(db: Session, q: SaleQuery) -> Tuple[List[PharmacySale], int]:
    query = db.query(PharmacySale)
    if q.payment_status:
        query = query.filter(PharmacySale.payment_status == q.payment_status)
    if q.patient_id:
        query = query.filter(PharmacySale.patient_id == q.patient_id)

    total = query.count()
    rows = (
        query.options(selectinload(PharmacySale.items), selectinload(PharmacySale.payments))
        .order_by(PharmacySale.bill_date.desc(), PharmacySale.id.desc())
        .offset(q.offset)
        .limit(q.limit)
        .all()
    )
    return rows, total
