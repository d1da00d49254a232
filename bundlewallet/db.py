import sqlite3
from contextlib import contextmanager
from time import monotonic
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from bundlewallet.config import settings
from bundlewallet.errors import (
    DuplicateReference, LedgerError, TransactionTimeout, TransientStoreError
)
from bundlewallet.models import LEDGER_REFERENCE_INDEX


# deadlock, serialization failure, lock not available, statement timeout
TRANSIENT_SQLSTATES = {"40P01", "40001", "55P03", "57014"}
# MySQL lock wait timeout / deadlock
TRANSIENT_MYSQL_CODES = {1205, 1213}

connect_args = {}
if settings.database_url.startswith("sqlite"):
    # Requests run on a threadpool; SQLite waits this long on a locked database
    connect_args = {"check_same_thread": False, "timeout": 30}

engine = create_engine(settings.database_url, pool_pre_ping=True, connect_args=connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@event.listens_for(engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_conn, connection_record):
    if isinstance(dbapi_conn, sqlite3.Connection):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def ping_db() -> bool:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return True


def classify_store_error(exc: DBAPIError) -> Optional[LedgerError]:
    """
    Map a driver error onto the ledger taxonomy.

    Returns TransientStoreError for contention the caller may retry,
    DuplicateReference for a lost race on the idempotency index, and None
    for anything else (the original exception should propagate).
    """
    orig = getattr(exc, "orig", None)

    if isinstance(exc, IntegrityError):
        diag = getattr(orig, "diag", None)
        constraint = getattr(diag, "constraint_name", None)
        if constraint == LEDGER_REFERENCE_INDEX:
            return DuplicateReference("Ledger entry with this reference already exists")
        # sqlite reports the columns rather than the index name
        if isinstance(orig, sqlite3.IntegrityError) and "ledger_entries.reference" in str(orig):
            return DuplicateReference("Ledger entry with this reference already exists")
        return None

    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in TRANSIENT_SQLSTATES:
        return TransientStoreError(f"Store contention ({sqlstate})")

    args = getattr(orig, "args", None) or ()
    if args and args[0] in TRANSIENT_MYSQL_CODES:
        return TransientStoreError(f"Store contention ({args[0]})")

    if isinstance(exc, OperationalError) and isinstance(orig, sqlite3.OperationalError):
        message = str(orig).lower()
        if "locked" in message or "busy" in message:
            return TransientStoreError("Store contention (database is locked)")

    return None


@contextmanager
def translate_store_errors() -> Iterator[None]:
    try:
        yield
    except DBAPIError as e:
        classified = classify_store_error(e)
        if classified is None:
            raise
        raise classified from e


@contextmanager
def unit_of_work(timeout_secs: Optional[float] = None) -> Iterator[Session]:
    """
    One atomic transaction. Everything done on the yielded session commits
    together or not at all.

    The transaction is bounded by ``timeout_secs`` (default from settings):
    on PostgreSQL it is also pushed down as ``statement_timeout``; in every
    case a unit of work that overruns is rolled back with TransactionTimeout.
    """
    if timeout_secs is None:
        timeout_secs = settings.transaction_timeout_secs
    deadline = monotonic() + timeout_secs

    db = SessionLocal()
    try:
        with translate_store_errors():
            with db.begin():
                if db.get_bind().dialect.name == "postgresql":
                    db.execute(text(f"SET LOCAL statement_timeout = {int(timeout_secs * 1000)}"))
                yield db
                if monotonic() > deadline:
                    raise TransactionTimeout(f"Transaction exceeded {timeout_secs}s")
    finally:
        db.close()
