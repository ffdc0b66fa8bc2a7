# FILE: pharmacy_ledger/models/pharmacy_inventory.py
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, Boolean, Date, DateTime, Numeric,
    ForeignKey, Text, Enum, CheckConstraint, Index, UniqueConstraint, event
)
from sqlalchemy.orm import relationship

from pharmacy_ledger.core.errors import InvariantViolationError
from pharmacy_ledger.db.base import Base

Money = Numeric(14, 2)


# -------------------------
# Enums
# -------------------------
class BatchStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    EXPIRED = "EXPIRED"
    DAMAGED = "DAMAGED"
    RECALLED = "RECALLED"


# batches in these states hold no units and never change again
TERMINAL_BATCH_STATUSES = (
    BatchStatus.OUT_OF_STOCK,
    BatchStatus.EXPIRED,
    BatchStatus.DAMAGED,
)


class TransactionType(str, enum.Enum):
    PURCHASE = "PURCHASE"
    SALE = "SALE"
    ADJUSTMENT = "ADJUSTMENT"
    EXPIRED = "EXPIRED"
    DAMAGED = "DAMAGED"
    TRANSFER = "TRANSFER"


class StockDirection(str, enum.Enum):
    IN = "IN"
    OUT = "OUT"


# ADJUSTMENT carries its own direction
IMPLIED_DIRECTION = {
    TransactionType.PURCHASE: StockDirection.IN,
    TransactionType.SALE: StockDirection.OUT,
    TransactionType.EXPIRED: StockDirection.OUT,
    TransactionType.DAMAGED: StockDirection.OUT,
    TransactionType.TRANSFER: StockDirection.OUT,
}


# -------------------------
# Catalog
# -------------------------
class Medicine(Base):
    __tablename__ = "pharmacy_medicines"
    __table_args__ = (
        UniqueConstraint("name", "dosage_form", "strength", name="uq_pharmacy_medicine_identity"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False, index=True)
    generic_name = Column(String(255), default="", nullable=False)
    brand_name = Column(String(255), nullable=True)
    manufacturer = Column(String(255), default="", nullable=False)
    dosage_form = Column(String(100), nullable=False)   # TABLET / SYRUP / INJECTION ...
    strength = Column(String(100), nullable=False)      # 500mg, 5mg/ml ...
    prescription_required = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    batches = relationship("MedicineBatch", back_populates="medicine")
    inventory = relationship("PharmacyInventory", back_populates="medicine", uselist=False)


# -------------------------
# Batches (lots)
# -------------------------
class MedicineBatch(Base):
    __tablename__ = "pharmacy_batches"
    __table_args__ = (
        UniqueConstraint("medicine_id", "batch_number", name="uq_pharmacy_batch_number"),
        CheckConstraint("quantity >= 0", name="ck_pharmacy_batch_qty_nonneg"),
        Index("ix_pharmacy_batch_fefo", "medicine_id", "status", "expiry_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    medicine_id = Column(Integer, ForeignKey("pharmacy_medicines.id"), nullable=False, index=True)
    batch_number = Column(String(100), nullable=False)

    quantity = Column(Integer, nullable=False, default=0)  # remaining units
    unit_cost = Column(Money, nullable=False, default=0)
    selling_price = Column(Money, nullable=False, default=0)

    manufacturing_date = Column(Date, nullable=False)
    expiry_date = Column(Date, nullable=False, index=True)
    received_date = Column(Date, nullable=False)

    status = Column(
        Enum(BatchStatus, name="pharmacy_batch_status"),
        nullable=False,
        default=BatchStatus.AVAILABLE,
        index=True,
    )
    location = Column(String(200), nullable=False, default="Main Storage")
    supplier = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    received_by = Column(Integer, nullable=True)

    # bumped by every compare-and-set on quantity / status
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    medicine = relationship("Medicine", back_populates="batches")


# -------------------------
# Stock aggregate (one row per medicine)
# -------------------------
class PharmacyInventory(Base):
    """
    Cached per-medicine stock. Always equal to the sum of the medicine's
    non-terminal batch quantities and to the replay of its transactions.
    """
    __tablename__ = "pharmacy_inventory"
    __table_args__ = (
        CheckConstraint("current_stock >= 0", name="ck_pharmacy_inventory_stock_nonneg"),
    )

    id = Column(Integer, primary_key=True, index=True)
    medicine_id = Column(Integer, ForeignKey("pharmacy_medicines.id"), nullable=False, unique=True)

    current_stock = Column(Integer, nullable=False, default=0)
    min_stock_level = Column(Integer, nullable=False, default=10)
    max_stock_level = Column(Integer, nullable=False, default=100)
    reorder_level = Column(Integer, nullable=False, default=20)
    last_stock_update = Column(DateTime, default=datetime.utcnow, nullable=False)

    medicine = relationship("Medicine", back_populates="inventory")


# -------------------------
# Ledger (append-only)
# -------------------------
class InventoryTransaction(Base):
    __tablename__ = "pharmacy_inventory_txns"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_pharmacy_txn_qty_positive"),
        Index("ix_pharmacy_txn_medicine_time", "medicine_id", "performed_at"),
        Index("ix_pharmacy_txn_batch", "batch_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    inventory_id = Column(Integer, ForeignKey("pharmacy_inventory.id"), nullable=False, index=True)
    medicine_id = Column(Integer, ForeignKey("pharmacy_medicines.id"), nullable=False)
    batch_id = Column(Integer, ForeignKey("pharmacy_batches.id"), nullable=True)

    type = Column(Enum(TransactionType, name="pharmacy_txn_type"), nullable=False)
    direction = Column(Enum(StockDirection, name="pharmacy_txn_direction"), nullable=False)
    quantity = Column(Integer, nullable=False)  # always positive, sign from direction

    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)

    reference_id = Column(String(100), nullable=True)   # sale id / PO number
    reference_type = Column(String(50), nullable=True)  # SALE / PURCHASE_ORDER / MANUAL
    notes = Column(Text, nullable=True)
    performed_by = Column(Integer, nullable=True)
    performed_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    batch = relationship("MedicineBatch")

    @property
    def signed_quantity(self) -> int:
        return self.quantity if self.direction == StockDirection.IN else -self.quantity


def _reject_ledger_mutation(mapper, connection, target):
    raise InvariantViolationError(
        f"Inventory transaction {target.id} is append-only.",
        details={"transaction_id": target.id},
    )


event.listen(InventoryTransaction, "before_update", _reject_ledger_mutation)
event.listen(InventoryTransaction, "before_delete", _reject_ledger_mutation)


# -------------------------
# Document numbering
# -------------------------
class DocumentNumberSeries(Base):
    __tablename__ = "pharmacy_number_series"
    __table_args__ = (
        UniqueConstraint("key", "date_key", name="uq_pharmacy_number_series_key_date"),
    )

    id = Column(Integer, primary_key=True)
    key = Column(String(30), nullable=False)         # BILL
    date_key = Column(Integer, nullable=False)      # YYYYMMDD
    next_seq = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
