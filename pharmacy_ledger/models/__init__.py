# pharmacy_ledger/models/__init__.py
from .pharmacy_inventory import (
    Medicine,
    MedicineBatch,
    PharmacyInventory,
    InventoryTransaction,
    DocumentNumberSeries,
)
from .pharmacy_alerts import PharmacyAlert, PharmacyAlertSettings
from .pharmacy_billing import PharmacySale, PharmacySaleItem, PharmacyPayment
from .error_log import ErrorLog

__all__ = [
    "Medicine",
    "MedicineBatch",
    "PharmacyInventory",
    "InventoryTransaction",
    "DocumentNumberSeries",
    "PharmacyAlert",
    "PharmacyAlertSettings",
    "PharmacySale",
    "PharmacySaleItem",
    "PharmacyPayment",
    "ErrorLog",
]
