# pharmacy_ledger/db/init_db.py
from __future__ import annotations

import argparse

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pharmacy_ledger.db.base import Base
from pharmacy_ledger.db.session import get_or_create_engine, make_session_factory
from pharmacy_ledger.models.pharmacy_alerts import PharmacyAlertSettings
from pharmacy_ledger.core.config import settings


def print_tables(eng) -> set:
    names = set(inspect(eng).get_table_names())
    print("Existing tables:", sorted(names))
    return names


def seed_alert_settings(db: Session) -> None:
    """
    Create the single alert-settings row from env defaults; safe to run
    multiple times.
    """
    if db.query(PharmacyAlertSettings).first():
        return
    db.add(
        PharmacyAlertSettings(
            expiry_warning_days=settings.EXPIRY_WARNING_DAYS,
            default_min_stock_level=settings.DEFAULT_MIN_STOCK_LEVEL,
            default_max_stock_level=settings.DEFAULT_MAX_STOCK_LEVEL,
            default_reorder_level=settings.DEFAULT_REORDER_LEVEL,
        ))
    db.commit()


def init_db(db_uri: str | None = None, *, fresh: bool = False) -> None:
    eng = get_or_create_engine(db_uri)
    if fresh:
        print("Dropping pharmacy tables ...")
        Base.metadata.drop_all(bind=eng)
    Base.metadata.create_all(bind=eng)
    print_tables(eng)

    db = make_session_factory(eng)()
    try:
        seed_alert_settings(db)
    finally:
        db.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Create pharmacy ledger tables")
    parser.add_argument("--fresh", action="store_true", help="drop all tables first")
    parser.add_argument("--db-url", default=None, help="override DATABASE_URL")
    args = parser.parse_args()
    try:
        init_db(args.db_url, fresh=args.fresh)
    except SQLAlchemyError as e:
        print("DB init failed:", e)
        raise SystemExit(1)
    print("Done.")


if __name__ == "__main__":
    main()
