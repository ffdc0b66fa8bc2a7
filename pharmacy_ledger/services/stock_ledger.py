# FILE: pharmacy_ledger/services/stock_ledger.py
"""
Append-only stock ledger.

The ledger is the source of truth: ``pharmacy_inventory.current_stock`` is a
projection kept in step with it inside the same unit, and ``replay`` /
``check_consistency`` rebuild the figure from scratch to prove it.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from pharmacy_ledger.core.errors import InvariantViolationError, ValidationError
from pharmacy_ledger.models.pharmacy_inventory import (
    IMPLIED_DIRECTION,
    TERMINAL_BATCH_STATUSES,
    InventoryTransaction,
    MedicineBatch,
    PharmacyInventory,
    StockDirection,
    TransactionType,
)
from pharmacy_ledger.schemas.pharmacy_inventory import TransactionQuery


def resolve_direction(txn_type: TransactionType, direction: Optional[StockDirection]) -> StockDirection:
    implied = IMPLIED_DIRECTION.get(txn_type)
    if implied is None:
        if direction is None:
            raise ValidationError(f"{txn_type.value} needs an explicit direction (IN/OUT).")
        return StockDirection(direction)
    if direction is not None and StockDirection(direction) != implied:
        raise ValidationError(
            f"{txn_type.value} is always {implied.value}.",
            details={"type": txn_type.value, "direction": StockDirection(direction).value},
        )
    return implied


def record_transaction(
    db: Session,
    inventory: PharmacyInventory,
    *,
    txn_type: TransactionType,
    quantity: int,
    batch_id: Optional[int] = None,
    direction: Optional[StockDirection] = None,
    reference_id: Optional[str] = None,
    reference_type: Optional[str] = None,
    performed_by: Optional[int] = None,
    notes: Optional[str] = None,
) -> InventoryTransaction:
    """
    Append one ledger row. ``inventory`` must already carry the stock figure
    written by this same unit; that figure is the balance after the event.
    """
    quantity = int(quantity)
    if quantity <= 0:
        raise ValidationError("Transaction quantity must be > 0", details={"quantity": quantity})

    direction = resolve_direction(txn_type, direction)
    signed = quantity if direction == StockDirection.IN else -quantity
    balance_after = int(inventory.current_stock)
    balance_before = balance_after - signed
    if balance_before < 0:
        raise InvariantViolationError(
            f"Ledger balance for medicine {inventory.medicine_id} would start below zero.",
            details={
                "medicine_id": inventory.medicine_id,
                "balance_after": balance_after,
                "signed_quantity": signed,
            },
        )

    txn = InventoryTransaction(
        inventory_id=inventory.id,
        medicine_id=inventory.medicine_id,
        batch_id=batch_id,
        type=txn_type,
        direction=direction,
        quantity=quantity,
        balance_before=balance_before,
        balance_after=balance_after,
        reference_id=str(reference_id) if reference_id is not None else None,
        reference_type=reference_type,
        performed_by=performed_by,
        notes=notes,
    )
    db.add(txn)
    db.flush()
    return txn


def _signed_sum():
    return func.coalesce(
        func.sum(
            case(
                (InventoryTransaction.direction == StockDirection.IN, InventoryTransaction.quantity),
                else_=-InventoryTransaction.quantity,
            )),
        0,
    )


def replay(db: Session, medicine_id: int) -> int:
    """Stock level rebuilt by summing the medicine's signed ledger rows from zero."""
    total = (
        db.query(_signed_sum())
        .filter(InventoryTransaction.medicine_id == medicine_id)
        .scalar()
    )
    return int(total or 0)


def batch_stock(db: Session, medicine_id: int) -> int:
    total = (
        db.query(func.coalesce(func.sum(MedicineBatch.quantity), 0))
        .filter(
            MedicineBatch.medicine_id == medicine_id,
            MedicineBatch.status.notin_(TERMINAL_BATCH_STATUSES),
        )
        .scalar()
    )
    return int(total or 0)


@dataclass(frozen=True)
class ConsistencyReport:
    medicine_id: int
    stored_stock: int
    replayed_stock: int
    batch_stock: int

    @property
    def consistent(self) -> bool:
        return self.stored_stock == self.replayed_stock == self.batch_stock

    def as_dict(self) -> dict:
        return {
            "medicine_id": self.medicine_id,
            "stored_stock": self.stored_stock,
            "replayed_stock": self.replayed_stock,
            "batch_stock": self.batch_stock,
            "consistent": self.consistent,
        }


def check_consistency(db: Session, medicine_id: int) -> ConsistencyReport:
    inv = db.query(PharmacyInventory).filter(PharmacyInventory.medicine_id == medicine_id).first()
    return ConsistencyReport(
        medicine_id=medicine_id,
        stored_stock=int(inv.current_stock) if inv else 0,
        replayed_stock=replay(db, medicine_id),
        batch_stock=batch_stock(db, medicine_id),
    )


def check_all(db: Session) -> List[ConsistencyReport]:
    ids = [
        mid for (mid,) in db.query(PharmacyInventory.medicine_id)
        .order_by(PharmacyInventory.medicine_id.asc())
        .all()
    ]
    return [check_consistency(db, mid) for mid in ids]


def list_transactions(db: Session, q: TransactionQuery) -> Tuple[List[InventoryTransaction], int]:
    query = db.query(InventoryTransaction)
    if q.medicine_id:
        query = query.filter(InventoryTransaction.medicine_id == q.medicine_id)
    if q.batch_id:
        query = query.filter(InventoryTransaction.batch_id == q.batch_id)
    if q.type:
        query = query.filter(InventoryTransaction.type == q.type)
    if q.since:
        query = query.filter(InventoryTransaction.performed_at >= q.since)

    total = query.count()
    rows = (
        query.order_by(InventoryTransaction.performed_at.desc(), InventoryTransaction.id.desc())
        .offset(q.offset)
        .limit(q.limit)
        .all()
    )
    return rows, total
