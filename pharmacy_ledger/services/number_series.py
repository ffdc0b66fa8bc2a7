# FILE: pharmacy_ledger/services/number_series.py
from __future__ import annotations

from datetime import date
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from pharmacy_ledger.models.pharmacy_inventory import DocumentNumberSeries


def _date_key(d: date) -> int:
    return int(d.strftime("%Y%m%d"))


def _locked_series(db: Session, key: str, dk: int):
    return (
        db.query(DocumentNumberSeries)
        .filter(DocumentNumberSeries.key == key, DocumentNumberSeries.date_key == dk)
        .with_for_update()
        .first()
    )


def next_document_number(
    db: Session,
    key: str,          # e.g. "BILL"
    prefix: str,       # e.g. "PH"
    doc_date: date,
    pad: int = 4,      # 0001, 0002...
    sep: str = "-",
) -> str:
    """
    Concurrency-safe number generator using DocumentNumberSeries with
    UNIQUE(key, date_key). The row stays locked until the caller's unit
    commits, so two bills can never draw the same sequence.

    Example: PH-20251214-0001
    """
    dk = _date_key(doc_date)

    row = _locked_series(db, key, dk)

    if not row:
        # First document of the day. A concurrent creator hits IntegrityError;
        # only the savepoint is rolled back so the caller's unit survives.
        try:
            with db.begin_nested():
                row = DocumentNumberSeries(key=key, date_key=dk, next_seq=1)
                db.add(row)
                db.flush()
        except IntegrityError:
            row = _locked_series(db, key, dk)
            if not row:
                raise

    seq = int(row.next_seq or 1)
    row.next_seq = seq + 1
    db.flush()

    return f"{prefix}{sep}{doc_date.strftime('%Y%m%d')}{sep}{seq:0{pad}d}"
