# FILE: pharmacy_ledger/schemas/pharmacy_inventory.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Literal

from pydantic import BaseModel, ConfigDict, field_validator

from pharmacy_ledger.models.pharmacy_inventory import (
    BatchStatus,
    StockDirection,
    TransactionType,
)
from pharmacy_ledger.schemas.common import PageQuery

# ---------- Medicines ----------


class MedicineBase(BaseModel):
    name: str
    generic_name: str = ""
    brand_name: Optional[str] = None
    manufacturer: str = ""
    dosage_form: str
    strength: str
    prescription_required: bool = False
    is_active: bool = True

    @field_validator("name", "dosage_form", "strength")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class MedicineCreate(MedicineBase):
    pass


class MedicineUpdate(BaseModel):
    name: Optional[str] = None
    generic_name: Optional[str] = None
    brand_name: Optional[str] = None
    manufacturer: Optional[str] = None
    dosage_form: Optional[str] = None
    strength: Optional[str] = None
    prescription_required: Optional[bool] = None
    is_active: Optional[bool] = None


class MedicineOut(MedicineBase):
    id: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MedicineQuery(PageQuery):
    name: Optional[str] = None
    generic_name: Optional[str] = None
    manufacturer: Optional[str] = None
    prescription_required: Optional[bool] = None
    is_active: Optional[bool] = None


# ---------- Batches ----------


class BatchReceiveIn(BaseModel):
    """
    Goods receipt for one lot. Quantity / date rules are checked by the
    batch ledger so the same errors come back from every caller.
    """
    medicine_id: int
    batch_number: str
    quantity: int
    unit_cost: Decimal = Decimal("0")
    selling_price: Decimal = Decimal("0")
    manufacturing_date: date
    expiry_date: date
    received_date: Optional[date] = None
    location: Optional[str] = None
    supplier: Optional[str] = None
    notes: Optional[str] = None
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None

    # optional per-medicine levels, used only when the stock row is created
    min_stock_level: Optional[int] = None
    max_stock_level: Optional[int] = None
    reorder_level: Optional[int] = None


class BatchOut(BaseModel):
    id: int
    medicine_id: int
    batch_number: str
    quantity: int
    unit_cost: Decimal
    selling_price: Decimal
    manufacturing_date: date
    expiry_date: date
    received_date: date
    status: BatchStatus
    location: str
    supplier: Optional[str] = None
    notes: Optional[str] = None
    received_by: Optional[int] = None
    version: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BatchQuery(PageQuery):
    medicine_id: Optional[int] = None
    status: Optional[BatchStatus] = None
    batch_number: Optional[str] = None
    expiry_before: Optional[date] = None
    expiry_after: Optional[date] = None


class WriteOffIn(BaseModel):
    reason: Literal["EXPIRED", "DAMAGED"]
    quantity: Optional[int] = None
    notes: Optional[str] = None


class RecallIn(BaseModel):
    notes: Optional[str] = None


class ExpireBatchesIn(BaseModel):
    as_of: Optional[date] = None


# ---------- Inventory ----------


class InventoryOut(BaseModel):
    id: int
    medicine_id: int
    current_stock: int
    min_stock_level: int
    max_stock_level: int
    reorder_level: int
    last_stock_update: datetime

    model_config = ConfigDict(from_attributes=True)


class InventoryQuery(PageQuery):
    low_stock: bool = False
    out_of_stock: bool = False


class StockLevelsIn(BaseModel):
    min_stock_level: int
    max_stock_level: int
    reorder_level: int


class AdjustmentIn(BaseModel):
    medicine_id: int
    batch_id: int
    type: Literal["ADJUSTMENT", "TRANSFER"] = "ADJUSTMENT"
    direction: Optional[Literal["INCREASE", "DECREASE"]] = None
    quantity: int
    notes: Optional[str] = None


class TransactionOut(BaseModel):
    id: int
    inventory_id: int
    medicine_id: int
    batch_id: Optional[int] = None
    type: TransactionType
    direction: StockDirection
    quantity: int
    balance_before: int
    balance_after: int
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    notes: Optional[str] = None
    performed_by: Optional[int] = None
    performed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TransactionQuery(PageQuery):
    medicine_id: Optional[int] = None
    batch_id: Optional[int] = None
    type: Optional[TransactionType] = None
    since: Optional[datetime] = None


class ConsistencyOut(BaseModel):
    medicine_id: int
    stored_stock: int
    replayed_stock: int
    batch_stock: int
    consistent: bool
