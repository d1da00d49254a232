# tests/conftest.py
import os
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Throwaway SQLite file; set DATABASE_URL yourself to run against Postgres
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite:///{Path(tempfile.gettempdir()) / 'bundlewallet_test.db'}",
)
# Reads must see writes immediately in tests
os.environ.setdefault("CACHE_TTL_SECS", "0")
os.environ.setdefault("RETRY_BASE_DELAY", "0.01")

from bundlewallet.main import app  # noqa
from bundlewallet.db import SessionLocal, engine, unit_of_work  # noqa
from bundlewallet.models import Base  # noqa
from bundlewallet.services.accounts import create_account  # noqa
from bundlewallet.services.catalog import create_product  # noqa


@pytest.fixture(autouse=True)
def create_schema_and_clean_db():
    # Fresh tables per test so ids and balances don't leak between tests
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    app.state.read_cache.clear()
    yield

@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c

@pytest.fixture
def db():
    with SessionLocal() as session:
        yield session

@pytest.fixture
def make_account():
    def _make(balance: int = 0, name: str = "agent"):
        with unit_of_work() as session:
            return create_account(session, name, opening_balance=balance).id
    return _make

@pytest.fixture
def make_product():
    def _make(price_cents: int = 30, stock=None, name: str = "1GB bundle"):
        with unit_of_work() as session:
            return create_product(session, name, price_cents, stock).id
    return _make

@pytest.fixture
def balance_of():
    from bundlewallet.models import Account

    def _balance(account_id: int) -> int:
        with SessionLocal() as session:
            return session.get(Account, account_id).loan_balance
    return _balance

@pytest.fixture
def entries_of():
    from sqlalchemy import select
    from bundlewallet.models import LedgerEntry

    def _entries(account_id: int, type=None):
        with SessionLocal() as session:
            stmt = select(LedgerEntry).where(LedgerEntry.account_id == account_id)
            if type is not None:
                stmt = stmt.where(LedgerEntry.type == type)
            return list(session.execute(stmt.order_by(LedgerEntry.id)).scalars().all())
    return _entries
