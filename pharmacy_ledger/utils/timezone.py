# pharmacy_ledger/utils/timezone.py
from __future__ import annotations

from datetime import date, datetime
from zoneinfo import ZoneInfo

from pharmacy_ledger.core.config import settings

LOCAL_TZ = ZoneInfo(settings.APP_TIMEZONE)


def now_local() -> datetime:
    """
    Returns a *naive* datetime in the hospital's timezone.
    DateTime columns are naive, so the tzinfo is dropped after conversion.
    """
    return datetime.now(LOCAL_TZ).replace(tzinfo=None)


def today_local() -> date:
    return now_local().date()
