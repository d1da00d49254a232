# tests/test_ledger.py
from concurrent.futures import ThreadPoolExecutor

import pytest

from bundlewallet.db import SessionLocal, unit_of_work
from bundlewallet.errors import AccountNotFound
from bundlewallet.models import LedgerEntryType
from bundlewallet.services.ledger import apply_ledger_entry, post_ledger_entry
from bundlewallet.services.reconciliation import verify_ledger_chain


def test_entry_snapshots_previous_and_new_balance(make_account, balance_of):
    account_id = make_account(100)

    entry = post_ledger_entry(account_id, -40, LedgerEntryType.ORDER, "order")

    assert entry.previous_balance == 100
    assert entry.balance == 60
    assert entry.amount == -40
    assert balance_of(account_id) == 60


def test_unknown_account_writes_nothing(entries_of):
    with pytest.raises(AccountNotFound):
        with unit_of_work() as db:
            apply_ledger_entry(db, 999, 10, LedgerEntryType.REFUND, "nope")
    assert entries_of(999) == []


def test_mutation_rolls_back_with_caller_transaction(make_account, balance_of, entries_of):
    account_id = make_account(50)

    with pytest.raises(RuntimeError):
        with unit_of_work() as db:
            apply_ledger_entry(db, account_id, 25, LedgerEntryType.REFUND, "refund")
            raise RuntimeError("boom")

    assert balance_of(account_id) == 50
    assert len(entries_of(account_id)) == 1  # opening balance only


def test_keyed_entry_is_applied_once(make_account, balance_of, entries_of):
    account_id = make_account(0)

    first = post_ledger_entry(account_id, 30, LedgerEntryType.REFUND, "manual", reference="r-1")
    second = post_ledger_entry(account_id, 30, LedgerEntryType.REFUND, "manual", reference="r-1")

    assert first.id == second.id
    assert balance_of(account_id) == 30
    assert len(entries_of(account_id, LedgerEntryType.REFUND)) == 1


def test_concurrent_mutations_conserve_balance(make_account, balance_of, entries_of):
    account_id = make_account(1000)
    amounts = [5, -3, 7, -11, 2] * 8

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(
            lambda amount: post_ledger_entry(account_id, amount, LedgerEntryType.REFUND, "concurrent"),
            amounts,
        ))

    assert balance_of(account_id) == 1000 + sum(amounts)
    entries = entries_of(account_id)
    assert len(entries) == len(amounts) + 1
    assert sum(e.amount for e in entries) == balance_of(account_id)


def test_chain_is_consistent_after_mixed_writes(make_account):
    account_id = make_account(200)
    for amount in (-60, 30, 0, -10):
        post_ledger_entry(account_id, amount, LedgerEntryType.REFUND, "mixed")

    with SessionLocal() as db:
        report = verify_ledger_chain(db, account_id)

    assert report["consistent"] is True
    assert report["first_break"] is None
    assert report["entries"] == 5
    assert report["ledger_balance"] == report["stored_balance"] == 160
