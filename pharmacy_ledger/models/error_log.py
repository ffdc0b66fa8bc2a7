from datetime import datetime

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    JSON,
)

from pharmacy_ledger.db.base import Base


class ErrorLog(Base):
    """
    Operator incident log. Written when a stock unit is aborted by an
    internal consistency failure; unrelated to the pharmacy alert table.
    """
    __tablename__ = "error_logs"
    __table_args__ = {
        "mysql_engine": "InnoDB",
        "mysql_charset": "utf8mb4",
        "mysql_collate": "utf8mb4_unicode_ci",
    }

    id = Column(Integer, primary_key=True, index=True)

    error_source = Column(String(50), nullable=False, default="backend")
    error_code = Column(String(50), nullable=True)  # e.g. "INVARIANT_VIOLATION"

    # quick summary
    description = Column(String(1000), nullable=True)

    # where it happened
    module = Column(String(255), nullable=True)  # e.g. "pharmacy_ledger.services.billing"
    function = Column(String(255), nullable=True)  # e.g. "create_sale"

    details = Column(JSON, nullable=True)
    stack_trace = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
