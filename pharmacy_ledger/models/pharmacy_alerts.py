# FILE: pharmacy_ledger/models/pharmacy_alerts.py
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Enum, Index
from sqlalchemy.orm import relationship

from pharmacy_ledger.db.base import Base


class AlertType(str, enum.Enum):
    LOW_STOCK = "LOW_STOCK"
    STOCK_OUT = "STOCK_OUT"
    EXPIRY_WARNING = "EXPIRY_WARNING"


class AlertStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    RESOLVED = "RESOLVED"


class PharmacyAlert(Base):
    __tablename__ = "pharmacy_alerts"
    __table_args__ = (
        Index("ix_pharmacy_alert_status_type", "status", "type"),
        Index("ix_pharmacy_alert_medicine", "medicine_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    type = Column(Enum(AlertType, name="pharmacy_alert_type"), nullable=False)
    medicine_id = Column(Integer, ForeignKey("pharmacy_medicines.id"), nullable=False)
    batch_id = Column(Integer, ForeignKey("pharmacy_batches.id"), nullable=True)

    status = Column(
        Enum(AlertStatus, name="pharmacy_alert_status"),
        nullable=False,
        default=AlertStatus.ACTIVE,
    )
    message = Column(String(500), nullable=False, default="")

    # "LOW_STOCK:12" / "EXPIRY_WARNING:12:40" while ACTIVE, NULL once resolved.
    # UNIQUE allows many NULLs, so only the active row per condition is constrained.
    active_key = Column(String(120), nullable=True, unique=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)

    medicine = relationship("Medicine")
    batch = relationship("MedicineBatch")


class PharmacyAlertSettings(Base):
    """Single-row thresholds used when evaluating and seeding stock levels."""
    __tablename__ = "pharmacy_alert_settings"

    id = Column(Integer, primary_key=True)
    expiry_warning_days = Column(Integer, nullable=False, default=30)
    default_min_stock_level = Column(Integer, nullable=False, default=10)
    default_max_stock_level = Column(Integer, nullable=False, default=100)
    default_reorder_level = Column(Integer, nullable=False, default=20)

    updated_by = Column(Integer, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
