# FILE: pharmacy_ledger/services/stock_unit.py
"""
One atomic unit of stock work.

Every receipt, sale, write-off, adjustment and alert re-evaluation runs
inside ``run_stock_unit``: the work function gets the session plus an
EventBuffer, the unit commits once, and buffered events reach subscribers
only after that commit. Losing an optimistic race (StaleStockError) is
retried from scratch; every other failure rolls the whole unit back.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional, TypeVar

from sqlalchemy.orm import Session

from pharmacy_ledger.core.config import settings
from pharmacy_ledger.core.errors import InvariantViolationError, StaleStockError
from pharmacy_ledger.services.error_logger import record_invariant_violation
from pharmacy_ledger.services.event_fanout import EventBuffer, SubscriberRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_stock_unit(
    db: Session,
    work: Callable[[Session, EventBuffer], T],
    *,
    fanout: Optional[SubscriberRegistry] = None,
    attempts: Optional[int] = None,
    label: Optional[str] = None,
) -> T:
    attempts = max(int(attempts or settings.STOCK_UNIT_RETRIES), 1)
    label = label or getattr(work, "__name__", "stock_unit")

    for attempt in range(1, attempts + 1):
        events = EventBuffer()
        try:
            result = work(db, events)
            db.commit()
        except StaleStockError as e:
            db.rollback()
            if attempt >= attempts:
                logger.warning("%s: giving up after %s stale attempts (%s)", label, attempt, e.message)
                raise
            logger.info("%s: stale stock on attempt %s, retrying", label, attempt)
            continue
        except InvariantViolationError as e:
            db.rollback()
            logger.critical("%s: invariant violated, unit aborted: %s %s", label, e.message, e.details)
            record_invariant_violation(db, e, module=getattr(work, "__module__", None), function=label)
            raise
        except Exception:
            db.rollback()
            raise

        if fanout is not None and len(events):
            fanout.publish_many(events.events)
        return result

    # unreachable: the last attempt either returns or raises
    raise StaleStockError(f"{label}: no attempts left")
