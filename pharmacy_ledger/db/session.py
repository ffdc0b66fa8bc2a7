# pharmacy_ledger/db/session.py
from typing import Dict, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from pharmacy_ledger.core.config import settings

# ---------- ENGINES (one per database URL) ----------

_engines: Dict[str, Engine] = {}


def _enable_sqlite_write_locking(eng: Engine) -> None:
    """
    pysqlite defers BEGIN until the first write, which lets two readers both
    pass a stock check before either writes. Take the write lock at BEGIN so
    stock units serialise the way row locks do on MySQL.
    """

    @event.listens_for(eng, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()

    @event.listens_for(eng, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(db_uri: str, *, echo: Optional[bool] = None) -> Engine:
    if db_uri.startswith("sqlite"):
        eng = create_engine(
            db_uri,
            echo=settings.SQL_ECHO if echo is None else echo,
            connect_args={"check_same_thread": False, "timeout": 30},
            future=True,
        )
        _enable_sqlite_write_locking(eng)
        return eng

    return create_engine(
        db_uri,
        echo=settings.SQL_ECHO if echo is None else echo,
        pool_pre_ping=True,
        pool_recycle=280,
        pool_size=10,
        max_overflow=20,
        future=True,
    )


def get_or_create_engine(db_uri: Optional[str] = None) -> Engine:
    db_uri = db_uri or settings.DATABASE_URL
    eng = _engines.get(db_uri)
    if eng is None:
        eng = make_engine(db_uri)
        _engines[db_uri] = eng
    return eng


def make_session_factory(eng: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=eng,
        future=True,
    )


def create_session(db_uri: Optional[str] = None) -> Session:
    """
    Return a new SQLAlchemy Session bound to the given DB URI
    (settings.DATABASE_URL when omitted).
    """
    return make_session_factory(get_or_create_engine(db_uri))()
