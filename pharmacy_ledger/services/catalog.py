# FILE: pharmacy_ledger/services/catalog.py
from __future__ import annotations

import logging
from typing import List, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pharmacy_ledger.core.errors import ConflictError, NotFoundError, ValidationError
from pharmacy_ledger.models.pharmacy_inventory import Medicine, MedicineBatch
from pharmacy_ledger.schemas.pharmacy_inventory import MedicineCreate, MedicineQuery, MedicineUpdate

logger = logging.getLogger(__name__)

# fields that identify the product; frozen once a batch references it
IDENTITY_FIELDS = ("name", "dosage_form", "strength")


def _has_batches(db: Session, medicine_id: int) -> bool:
    return (
        db.query(MedicineBatch.id)
        .filter(MedicineBatch.medicine_id == medicine_id)
        .first()
        is not None
    )


def _duplicate_error(data: dict) -> ConflictError:
    return ConflictError(
        f"Medicine {data.get('name')} {data.get('strength')} ({data.get('dosage_form')}) already exists",
        details={k: data.get(k) for k in IDENTITY_FIELDS},
    )


def create_medicine(db: Session, data: MedicineCreate) -> Medicine:
    payload = data.model_dump()
    exists = (
        db.query(Medicine.id)
        .filter(
            Medicine.name == payload["name"],
            Medicine.dosage_form == payload["dosage_form"],
            Medicine.strength == payload["strength"],
        )
        .first()
    )
    if exists:
        raise _duplicate_error(payload)

    med = Medicine(**payload)
    db.add(med)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise _duplicate_error(payload)
    db.refresh(med)
    logger.info("Medicine %s created (%s)", med.id, med.name)
    return med


def get_medicine(db: Session, medicine_id: int) -> Medicine:
    med = db.get(Medicine, medicine_id)
    if not med:
        raise NotFoundError("Medicine", medicine_id)
    return med


def list_medicines(db: Session, q: MedicineQuery) -> Tuple[List[Medicine], int]:
    query = db.query(Medicine)
    if q.name:
        like = f"%{q.name.strip()}%"
        query = query.filter(Medicine.name.ilike(like) | Medicine.brand_name.ilike(like))
    if q.generic_name:
        query = query.filter(Medicine.generic_name.ilike(f"%{q.generic_name.strip()}%"))
    if q.manufacturer:
        query = query.filter(Medicine.manufacturer.ilike(f"%{q.manufacturer.strip()}%"))
    if q.prescription_required is not None:
        query = query.filter(Medicine.prescription_required.is_(q.prescription_required))
    if q.is_active is not None:
        query = query.filter(Medicine.is_active.is_(q.is_active))

    total = query.count()
    rows = query.order_by(Medicine.name.asc(), Medicine.id.asc()).offset(q.offset).limit(q.limit).all()
    return rows, total


def update_medicine(db: Session, medicine_id: int, data: MedicineUpdate) -> Medicine:
    med = get_medicine(db, medicine_id)
    changes = data.model_dump(exclude_unset=True)

    for k in IDENTITY_FIELDS:
        if k in changes:
            v = (changes[k] or "").strip()
            if not v:
                raise ValidationError(f"{k} must not be blank")
            changes[k] = v

    identity_changed = [k for k in IDENTITY_FIELDS if k in changes and changes[k] != getattr(med, k)]
    if identity_changed and _has_batches(db, med.id):
        raise ConflictError(
            f"{', '.join(identity_changed)} cannot change once batches exist for {med.name}",
            details={"medicine_id": med.id, "fields": identity_changed},
        )

    for k, v in changes.items():
        if k in ("generic_name", "manufacturer") and v is None:
            v = ""
        if k in ("prescription_required", "is_active") and v is None:
            continue
        setattr(med, k, v)

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise _duplicate_error({k: getattr(med, k) for k in IDENTITY_FIELDS})
    db.refresh(med)
    return med


def delete_medicine(db: Session, medicine_id: int) -> None:
    med = get_medicine(db, medicine_id)
    if _has_batches(db, med.id):
        raise ConflictError(
            f"{med.name} has batches and cannot be deleted; deactivate it instead",
            details={"medicine_id": med.id},
        )
    db.delete(med)
    try:
        db.commit()
    except IntegrityError:
        # a batch arrived between the check and the delete
        db.rollback()
        raise ConflictError(
            f"Medicine {medicine_id} is referenced and cannot be deleted",
            details={"medicine_id": medicine_id},
        )
    logger.info("Medicine %s deleted", medicine_id)
