from typing import Any, Dict, Optional
import logging
import traceback

from sqlalchemy.orm import Session

from pharmacy_ledger.models.error_log import ErrorLog

logger = logging.getLogger(__name__)


def log_error(
    db: Session,
    *,
    description: Optional[str] = None,
    error_source: str = "backend",
    error_code: Optional[str] = None,
    module: Optional[str] = None,
    function: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    stack_trace: Optional[str] = None,
) -> None:
    """
    Persist an operator incident into error_logs.
    Safe: wraps commit errors, the caller's original failure is what matters.
    """
    try:
        row = ErrorLog(
            error_source=error_source,
            error_code=error_code,
            description=(description or "")[:1000] or None,
            module=module,
            function=function,
            details=details,
            stack_trace=stack_trace,
        )
        db.add(row)
        db.commit()
    except Exception:
        # last resort – never raise from logger
        db.rollback()
        logger.exception("Failed to persist error log entry")


def record_invariant_violation(
    db: Session,
    exc: Exception,
    *,
    module: Optional[str] = None,
    function: Optional[str] = None,
) -> None:
    """
    Write the incident through a separate session bound to the same engine,
    since ``db`` has just been rolled back with the failed unit.
    """
    incident = Session(bind=db.get_bind(), autoflush=False)
    try:
        log_error(
            incident,
            description=str(exc),
            error_code=getattr(exc, "code", type(exc).__name__),
            module=module,
            function=function,
            details=getattr(exc, "details", None),
            stack_trace=format_exception(exc),
        )
    finally:
        incident.close()


def format_exception(exc: Exception) -> str:
    return "".join(
        traceback.format_exception(type(exc), exc, exc.__traceback__))
