# pharmacy_ledger/db/base.py
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """All pharmacy ledger tables inherit from this."""
    pass


# Import all models so metadata is complete for create_all()
from pharmacy_ledger.models import (  # noqa: F401,E402
    error_log,
    pharmacy_alerts,
    pharmacy_billing,
    pharmacy_inventory,
)
