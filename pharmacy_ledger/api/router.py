# pharmacy_ledger/api/router.py
from fastapi import APIRouter
from pharmacy_ledger.api import (
    routes_pharmacy_medicines,
    routes_pharmacy_batches,
    # stream before inventory so /stream is not read as a medicine id
    routes_pharmacy_stream,
    routes_pharmacy_inventory,
    routes_pharmacy_alerts,
    routes_pharmacy_billing,
)

api_router = APIRouter()

api_router.include_router(routes_pharmacy_medicines.router)
api_router.include_router(routes_pharmacy_batches.router)
api_router.include_router(routes_pharmacy_stream.router)
api_router.include_router(routes_pharmacy_inventory.router)
api_router.include_router(routes_pharmacy_alerts.router)
api_router.include_router(routes_pharmacy_billing.router)
