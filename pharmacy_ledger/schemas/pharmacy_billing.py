# FILE: pharmacy_ledger/schemas/pharmacy_billing.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from pharmacy_ledger.models.pharmacy_billing import PaymentStatus
from pharmacy_ledger.schemas.common import PageQuery


class SaleItemIn(BaseModel):
    medicine_id: int
    batch_id: Optional[int] = None  # pin a lot; FEFO when omitted
    quantity: int
    unit_price: Optional[Decimal] = None  # defaults to batch selling price
    discount_pct: Decimal = Decimal("0")
    tax_pct: Decimal = Decimal("0")


class SaleCreateIn(BaseModel):
    patient_id: int
    prescription_id: Optional[int] = None
    items: List[SaleItemIn] = Field(default_factory=list)
    notes: Optional[str] = None


class SaleItemOut(BaseModel):
    line_no: int
    medicine_id: int
    batch_id: int
    quantity: int
    unit_price: Decimal
    discount_pct: Decimal
    tax_pct: Decimal
    item_subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total: Decimal
    transaction_id: int

    model_config = ConfigDict(from_attributes=True)


class PaymentIn(BaseModel):
    amount: Decimal
    method: str
    reference: Optional[str] = None
    notes: Optional[str] = None


class PaymentOut(BaseModel):
    id: int
    sale_id: int
    amount: Decimal
    method: str
    payment_date: datetime
    reference: Optional[str] = None
    notes: Optional[str] = None
    processed_by: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class SaleOut(BaseModel):
    id: int
    bill_number: str
    patient_id: int
    prescription_id: Optional[int] = None
    bill_date: datetime
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    balance_due: Decimal
    credit_balance: Decimal
    payment_status: PaymentStatus
    generated_by: Optional[int] = None
    notes: Optional[str] = None
    items: List[SaleItemOut] = Field(default_factory=list)
    payments: List[PaymentOut] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class SaleQuery(PageQuery):
    payment_status: Optional[PaymentStatus] = None
    patient_id: Optional[int] = None
