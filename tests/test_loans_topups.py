# tests/test_loans_topups.py
import pytest

from bundlewallet.db import SessionLocal
from bundlewallet.errors import ConflictError, LoanStillOutstanding, ValidationError
from bundlewallet.models import Account, LedgerEntryType
from bundlewallet.services import loans
from bundlewallet.services.settlement import OrderLine, create_direct_order
from bundlewallet.services.topups import apply_gateway_outcome, credit_topup


def _account(account_id: int) -> Account:
    with SessionLocal() as db:
        return db.get(Account, account_id)


def test_assign_then_repay(make_account, balance_of):
    account_id = make_account(0)

    account, entry = loans.assign_loan(account_id, 100)
    assert entry.type == LedgerEntryType.LOAN_ASSIGNMENT
    assert account.admin_loan_balance == 100 and account.has_loan is True

    account, entry = loans.repay_loan(account_id, 40)
    assert entry.amount == -40
    assert account.admin_loan_balance == 60
    assert balance_of(account_id) == 60


def test_repayment_is_capped_at_balance(make_account, balance_of):
    account_id = make_account(0)
    loans.assign_loan(account_id, 100)
    loans.repay_loan(account_id, 70)

    account, entry = loans.repay_loan(account_id, 500)

    assert entry.amount == -30
    assert balance_of(account_id) == 0
    assert account.admin_loan_balance == 0
    assert account.has_loan is False

    with pytest.raises(ConflictError):
        loans.repay_loan(account_id, 1)


def test_keyed_repayment_replay_is_a_no_op(make_account, balance_of, entries_of):
    account_id = make_account(0)
    loans.assign_loan(account_id, 100)

    _, first = loans.repay_loan(account_id, 25, reference="repay-1")
    _, second = loans.repay_loan(account_id, 25, reference="repay-1")

    assert first.id == second.id
    assert balance_of(account_id) == 75
    assert len(entries_of(account_id, LedgerEntryType.LOAN_REPAYMENT)) == 1


def test_deduction_needs_enough_principal(make_account, balance_of):
    account_id = make_account(0)
    loans.assign_loan(account_id, 50)

    with pytest.raises(ConflictError):
        loans.deduct_admin_loan(account_id, 60)

    account, _ = loans.deduct_admin_loan(account_id, 50)
    assert account.admin_loan_balance == 0
    assert account.has_loan is False
    assert balance_of(account_id) == 0


def test_amounts_must_be_positive(make_account):
    account_id = make_account(0)
    for op in (loans.assign_loan, loans.repay_loan, loans.deduct_admin_loan):
        with pytest.raises(ValidationError):
            op(account_id, 0)


def test_cannot_deactivate_with_outstanding_balance(make_account, entries_of):
    account_id = make_account(0)
    loans.assign_loan(account_id, 80)

    with pytest.raises(LoanStillOutstanding):
        loans.set_loan_status(account_id, False)
    assert _account(account_id).has_loan is True

    loans.repay_loan(account_id, 80)
    account = loans.set_loan_status(account_id, False)
    assert account.has_loan is False
    assert account.admin_loan_balance == 0

    status_entries = entries_of(account_id, LedgerEntryType.LOAN_STATUS)
    assert len(status_entries) == 1 and status_entries[0].amount == 0


def test_deactivation_writes_off_negative_balance(make_account, make_product, balance_of, entries_of):
    account_id = make_account(0)
    loans.assign_loan(account_id, 50)
    create_direct_order(account_id, [OrderLine(make_product(50), 1)], 50)
    loans.deduct_admin_loan(account_id, 50)
    assert balance_of(account_id) == -50

    account = loans.set_loan_status(account_id, False)

    assert account.has_loan is False
    assert account.loan_balance == 0
    assert balance_of(account_id) == 0
    status_entries = entries_of(account_id, LedgerEntryType.LOAN_STATUS)
    assert [(e.previous_balance, e.amount, e.balance) for e in status_entries] == [(-50, 50, 0)]


def test_activation_snapshots_balance(make_account):
    account_id = make_account(120)
    account = loans.set_loan_status(account_id, True)
    assert account.has_loan is True
    assert account.admin_loan_balance == 120


def test_manual_refund_is_idempotent(make_account, balance_of):
    account_id = make_account(0)

    _, created = loans.refund_account(account_id, 15, "ticket-77")
    _, again = loans.refund_account(account_id, 15, "ticket-77")

    assert created is True and again is False
    assert balance_of(account_id) == 15


def test_topup_credited_once_per_gateway_reference(make_account, balance_of):
    account_id = make_account(0)

    entry, created = credit_topup(account_id, 500, "PSK-123")
    _, replayed = credit_topup(account_id, 500, "PSK-123")

    assert created is True and replayed is False
    assert entry.reference == "topup:PSK-123"
    assert balance_of(account_id) == 500


def test_gateway_outcomes(make_account, balance_of):
    account_id = make_account(0)

    pending = apply_gateway_outcome(account_id, 200, "PSK-9", "pending")
    failed = apply_gateway_outcome(account_id, 200, "PSK-9", "FAILED")
    assert not pending.credited and not failed.credited
    assert balance_of(account_id) == 0

    ok = apply_gateway_outcome(account_id, 200, "PSK-9", "success")
    dup = apply_gateway_outcome(account_id, 200, "PSK-9", "success")
    assert ok.credited and not ok.already_processed
    assert dup.already_processed and not dup.credited
    assert balance_of(account_id) == 200

    with pytest.raises(ValidationError):
        apply_gateway_outcome(account_id, 200, "PSK-9", "refunded")
