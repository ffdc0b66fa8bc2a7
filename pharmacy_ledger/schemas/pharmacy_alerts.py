# FILE: pharmacy_ledger/schemas/pharmacy_alerts.py
from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from pharmacy_ledger.models.pharmacy_alerts import AlertStatus, AlertType
from pharmacy_ledger.schemas.common import PageQuery


class AlertOut(BaseModel):
    id: int
    type: AlertType
    medicine_id: int
    batch_id: Optional[int] = None
    status: AlertStatus
    message: str
    created_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[int] = None
    notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class AlertQuery(PageQuery):
    type: Optional[AlertType] = None
    status: Optional[AlertStatus] = AlertStatus.ACTIVE
    medicine_id: Optional[int] = None


class AlertResolveIn(BaseModel):
    notes: Optional[str] = None


class AlertSettingsIn(BaseModel):
    expiry_warning_days: Optional[int] = None
    default_min_stock_level: Optional[int] = None
    default_max_stock_level: Optional[int] = None
    default_reorder_level: Optional[int] = None


class AlertSettingsOut(BaseModel):
    expiry_warning_days: int
    default_min_stock_level: int
    default_max_stock_level: int
    default_reorder_level: int
    updated_by: Optional[int] = None
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ExpiringBatchOut(BaseModel):
    batch_id: int
    medicine_id: int
    medicine_name: str
    batch_number: str
    quantity: int
    expiry_date: date
    days_to_expiry: int
    severity: str  # EXPIRED / CRIT / WARN
