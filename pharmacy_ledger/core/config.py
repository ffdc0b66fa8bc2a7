# pharmacy_ledger/core/config.py
import os
from typing import List
from urllib.parse import quote_plus

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


def _split_csv(value: str) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


def _mysql_uri() -> str:
    return (
        f"mysql+{os.getenv('DB_DRIVER', 'pymysql')}://"
        f"{quote_plus(os.getenv('MYSQL_USER', 'pharmacy_user'))}:"
        f"{quote_plus(os.getenv('MYSQL_PASSWORD', ''))}"
        f"@{os.getenv('MYSQL_HOST', 'localhost')}:{os.getenv('MYSQL_PORT', '3306')}"
        f"/{os.getenv('MYSQL_DB', 'pharmacy_ledger')}?charset=utf8mb4")


class Settings(BaseModel):
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "Pharmacy Stock & Billing Ledger")
    API_V1_STR: str = os.getenv("API_V1_STR", "/api")

    # CORS (env takes priority)
    BACKEND_CORS_ORIGINS: List[str] = _split_csv(
        os.getenv(
            "CORS_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ))

    # ---------- Database ----------
    # DATABASE_URL wins; otherwise built from MYSQL_* like the rest of HIMS
    DATABASE_URL: str = os.getenv("DATABASE_URL") or _mysql_uri()
    SQL_ECHO: bool = _flag("SQL_ECHO")

    # ---------- Security (tokens are issued by the identity service) ----------
    JWT_SECRET: str = os.getenv("JWT_SECRET", "change-this")
    JWT_ALG: str = os.getenv("JWT_ALG", "HS256")

    # ---------- Runtime ----------
    APP_TIMEZONE: str = os.getenv("APP_TIMEZONE", "Asia/Kolkata")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # ---------- Pharmacy stock ----------
    EXPIRY_WARNING_DAYS: int = int(os.getenv("EXPIRY_WARNING_DAYS", "30"))
    DEFAULT_MIN_STOCK_LEVEL: int = int(os.getenv("DEFAULT_MIN_STOCK_LEVEL", "10"))
    DEFAULT_MAX_STOCK_LEVEL: int = int(os.getenv("DEFAULT_MAX_STOCK_LEVEL", "100"))
    DEFAULT_REORDER_LEVEL: int = int(os.getenv("DEFAULT_REORDER_LEVEL", "20"))
    DEFAULT_BATCH_LOCATION: str = os.getenv("DEFAULT_BATCH_LOCATION", "Main Storage")
    STOCK_UNIT_RETRIES: int = int(os.getenv("STOCK_UNIT_RETRIES", "3"))

    # ---------- Billing ----------
    BILL_NUMBER_PREFIX: str = os.getenv("BILL_NUMBER_PREFIX", "PH")
    BILL_NUMBER_PADDING: int = int(os.getenv("BILL_NUMBER_PADDING", "4"))

    # ---------- Live feed ----------
    FANOUT_QUEUE_SIZE: int = int(os.getenv("FANOUT_QUEUE_SIZE", "100"))
    SSE_KEEPALIVE_SECONDS: float = float(os.getenv("SSE_KEEPALIVE_SECONDS", "15"))
    SSE_SNAPSHOT_HOURS: int = int(os.getenv("SSE_SNAPSHOT_HOURS", "24"))
    # stream reads wait on their own worker pool, never the request pool
    SSE_MAX_STREAMS: int = int(os.getenv("SSE_MAX_STREAMS", "64"))
    SSE_POLL_SECONDS: float = float(os.getenv("SSE_POLL_SECONDS", "1"))


settings = Settings()
