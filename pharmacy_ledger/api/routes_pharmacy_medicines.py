# FILE: pharmacy_ledger/api/routes_pharmacy_medicines.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from pharmacy_ledger.api.deps import Actor, current_actor, get_db, require_any, require_perm
from pharmacy_ledger.schemas.pharmacy_inventory import (
    MedicineCreate,
    MedicineOut,
    MedicineQuery,
    MedicineUpdate,
)
from pharmacy_ledger.services import catalog
from pharmacy_ledger.utils.resp import ok

router = APIRouter(prefix="/pharmacy/medicines", tags=["Pharmacy Medicines"])

VIEW = "pharmacy.inventory.items.view"
MANAGE = "pharmacy.inventory.items.manage"


@router.get("")
def api_medicine_list(
    q: MedicineQuery = Depends(),
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
):
    require_any(me, [VIEW, MANAGE])
    rows, total = catalog.list_medicines(db, q)
    return ok({
        "items": [MedicineOut.model_validate(r).model_dump() for r in rows],
        "total": total,
        "limit": q.limit,
        "offset": q.offset,
    })


@router.post("")
def api_medicine_create(
    payload: MedicineCreate,
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
):
    require_perm(me, MANAGE)
    med = catalog.create_medicine(db, payload)
    return ok(MedicineOut.model_validate(med).model_dump(), 201)


@router.get("/{medicine_id}")
def api_medicine_get(
    medicine_id: int,
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
):
    require_any(me, [VIEW, MANAGE])
    return ok(MedicineOut.model_validate(catalog.get_medicine(db, medicine_id)).model_dump())


@router.patch("/{medicine_id}")
def api_medicine_update(
    medicine_id: int,
    payload: MedicineUpdate,
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
):
    require_perm(me, MANAGE)
    med = catalog.update_medicine(db, medicine_id, payload)
    return ok(MedicineOut.model_validate(med).model_dump())


@router.delete("/{medicine_id}")
def api_medicine_delete(
    medicine_id: int,
    db: Session = Depends(get_db),
    me: Actor = Depends(current_actor),
):
    require_perm(me, MANAGE)
    catalog.delete_medicine(db, medicine_id)
    return ok({"deleted": True})
