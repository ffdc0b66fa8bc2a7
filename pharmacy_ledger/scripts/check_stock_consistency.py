# pharmacy_ledger/scripts/check_stock_consistency.py
"""
Replay the stock ledger for every medicine (or one) and compare it with the
stored stock figure and the batch totals. Exit code 1 when anything drifted.

    python -m pharmacy_ledger.scripts.check_stock_consistency [--medicine-id N]
"""
from __future__ import annotations

import argparse
import logging
import sys

from pharmacy_ledger.core.logging import configure_logging
from pharmacy_ledger.db.session import create_session
from pharmacy_ledger.services.stock_ledger import check_all, check_consistency

logger = logging.getLogger(__name__)


def run(db_url: str | None = None, medicine_id: int | None = None) -> int:
    db = create_session(db_url)
    try:
        reports = [check_consistency(db, medicine_id)] if medicine_id else check_all(db)
    finally:
        db.close()

    drifted = [r for r in reports if not r.consistent]
    for r in reports:
        line = (
            f"medicine={r.medicine_id} stored={r.stored_stock} "
            f"replayed={r.replayed_stock} batches={r.batch_stock}"
        )
        if r.consistent:
            print(f"OK    {line}")
        else:
            print(f"DRIFT {line}")
            logger.critical("Stock drift detected: %s", line)

    print(f"{len(reports)} checked, {len(drifted)} drifted")
    return 1 if drifted else 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Check pharmacy stock against the transaction ledger")
    parser.add_argument("--medicine-id", type=int, default=None)
    parser.add_argument("--db-url", default=None, help="override DATABASE_URL")
    args = parser.parse_args(argv)

    configure_logging()
    return run(args.db_url, args.medicine_id)


if __name__ == "__main__":
    sys.exit(main())
