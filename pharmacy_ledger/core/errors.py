# pharmacy_ledger/core/errors.py
"""
Typed errors for the pharmacy ledger.

Every error carries a machine-readable ``code`` and structured ``details`` so
the API layer can map it without parsing messages:

    PharmacyError
    +-- ValidationError          bad input, client-correctable, never retried
    +-- NotFoundError            referenced entity absent
    +-- ConflictError            duplicate / already-done state
    |   +-- StaleStockError      lost an optimistic race, safe to retry
    +-- InsufficientStockError   not enough saleable stock in one batch
    +-- InvariantViolationError  internal consistency broken (a bug)
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class PharmacyError(Exception):
    code = "PHARMACY_ERROR"
    http_status = 400

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(PharmacyError):
    code = "VALIDATION_ERROR"
    http_status = 422


class NotFoundError(PharmacyError):
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(
            f"{entity} {entity_id} not found.",
            details={"entity": entity, "id": entity_id},
        )
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(PharmacyError):
    code = "CONFLICT"
    http_status = 409


class StaleStockError(ConflictError):
    code = "STALE_STOCK"


class InsufficientStockError(PharmacyError):
    code = "INSUFFICIENT_STOCK"
    http_status = 409

    def __init__(
        self,
        medicine_id: int,
        requested: int,
        available: int,
        *,
        batch_id: Optional[int] = None,
        medicine_name: Optional[str] = None,
    ) -> None:
        label = medicine_name or f"medicine {medicine_id}"
        shortfall = max(int(requested) - int(available), 0)
        where = f" in batch {batch_id}" if batch_id else ""
        super().__init__(
            f"Insufficient stock for {label}{where}. "
            f"Requested {requested}, available {available}.",
            details={
                "medicine_id": medicine_id,
                "batch_id": batch_id,
                "requested": int(requested),
                "available": int(available),
                "shortfall": shortfall,
            },
        )
        self.medicine_id = medicine_id
        self.batch_id = batch_id
        self.requested = int(requested)
        self.available = int(available)
        self.shortfall = shortfall


class InvariantViolationError(PharmacyError):
    code = "INVARIANT_VIOLATION"
    http_status = 500
