# FILE: pharmacy_ledger/models/pharmacy_billing.py
from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Column, Integer, String, DateTime, Numeric, ForeignKey, Text, Enum,
    CheckConstraint, Index, UniqueConstraint, event
)
from sqlalchemy.orm import relationship

from pharmacy_ledger.core.errors import InvariantViolationError
from pharmacy_ledger.db.base import Base

Money = Numeric(14, 2)
Percent = Numeric(5, 2)


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    PAID = "PAID"


class PharmacySale(Base):
    __tablename__ = "pharmacy_sales"
    __table_args__ = (
        UniqueConstraint("bill_number", name="uq_pharmacy_sales_bill_number"),
        Index("ix_pharmacy_sales_patient_date", "patient_id", "bill_date"),
        Index("ix_pharmacy_sales_status_date", "payment_status", "bill_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    bill_number = Column(String(50), nullable=False)
    patient_id = Column(Integer, nullable=False)
    prescription_id = Column(Integer, nullable=True)
    bill_date = Column(DateTime, default=datetime.utcnow, nullable=False)

    subtotal = Column(Money, nullable=False, default=0)
    discount = Column(Money, nullable=False, default=0)
    tax = Column(Money, nullable=False, default=0)
    total_amount = Column(Money, nullable=False, default=0)
    paid_amount = Column(Money, nullable=False, default=0)

    payment_status = Column(
        Enum(PaymentStatus, name="pharmacy_payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    generated_by = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    items = relationship(
        "PharmacySaleItem",
        back_populates="sale",
        cascade="all, delete-orphan",
        order_by="PharmacySaleItem.line_no",
    )
    payments = relationship(
        "PharmacyPayment",
        back_populates="sale",
        order_by="PharmacyPayment.id",
    )

    @property
    def balance_due(self) -> Decimal:
        return max(Decimal(self.total_amount or 0) - Decimal(self.paid_amount or 0), Decimal("0"))

    @property
    def credit_balance(self) -> Decimal:
        # over-payment is accepted; refunds happen outside the ledger
        return max(Decimal(self.paid_amount or 0) - Decimal(self.total_amount or 0), Decimal("0"))


class PharmacySaleItem(Base):
    __tablename__ = "pharmacy_sale_items"
    __table_args__ = (
        UniqueConstraint("transaction_id", name="uq_pharmacy_sale_items_txn"),
        CheckConstraint("quantity > 0", name="ck_pharmacy_sale_items_qty_positive"),
    )

    id = Column(Integer, primary_key=True)
    sale_id = Column(Integer, ForeignKey("pharmacy_sales.id", ondelete="CASCADE"), nullable=False, index=True)
    line_no = Column(Integer, nullable=False, default=1)

    medicine_id = Column(Integer, ForeignKey("pharmacy_medicines.id"), nullable=False)
    batch_id = Column(Integer, ForeignKey("pharmacy_batches.id"), nullable=False)
    quantity = Column(Integer, nullable=False)

    unit_price = Column(Money, nullable=False)
    discount_pct = Column(Percent, nullable=False, default=0)
    tax_pct = Column(Percent, nullable=False, default=0)

    item_subtotal = Column(Money, nullable=False, default=0)
    discount_amount = Column(Money, nullable=False, default=0)
    tax_amount = Column(Money, nullable=False, default=0)
    total = Column(Money, nullable=False, default=0)

    # the SALE ledger row that took these units out of the batch
    transaction_id = Column(Integer, ForeignKey("pharmacy_inventory_txns.id"), nullable=False)

    sale = relationship("PharmacySale", back_populates="items")
    medicine = relationship("Medicine")
    batch = relationship("MedicineBatch")


class PharmacyPayment(Base):
    __tablename__ = "pharmacy_payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_pharmacy_payments_amount_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    sale_id = Column(Integer, ForeignKey("pharmacy_sales.id"), nullable=False, index=True)
    amount = Column(Money, nullable=False)
    method = Column(String(30), nullable=False)  # CASH / CARD / UPI ...
    payment_date = Column(DateTime, default=datetime.utcnow, nullable=False)
    reference = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)
    processed_by = Column(Integer, nullable=True)

    sale = relationship("PharmacySale", back_populates="payments")


def _reject_payment_mutation(mapper, connection, target):
    raise InvariantViolationError(
        f"Payment {target.id} is append-only.",
        details={"payment_id": target.id},
    )


event.listen(PharmacyPayment, "before_update", _reject_payment_mutation)
event.listen(PharmacyPayment, "before_delete", _reject_payment_mutation)
