# bundlewallet/services/loans.py
import logging
from typing import Callable, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from bundlewallet.db import unit_of_work
from bundlewallet.errors import AccountNotFound, ConflictError, LoanStillOutstanding, ValidationError
from bundlewallet.models import Account, LedgerEntry, LedgerEntryType
from bundlewallet.retry import run_with_retry
from bundlewallet.services.ledger import KEYED_RETRY_CONFIG, apply_ledger_entry, apply_once, find_entry

logger = logging.getLogger(__name__)


def _lock_account(db: Session, account_id: int) -> Account:
    account = db.execute(
        select(Account).where(Account.id == account_id).with_for_update()
    ).scalar_one_or_none()
    if not account:
        raise AccountNotFound(account_id)
    return account


def _require_positive(amount: int) -> None:
    if amount <= 0:
        raise ValidationError("Amount must be greater than 0", {"amount": amount})


def _post(db: Session, account_id: int, amount: int, type: LedgerEntryType,
          description: str, reference: Optional[str]) -> Tuple[LedgerEntry, bool]:
    if reference is None:
        return apply_ledger_entry(db, account_id, amount, type, description), True
    return apply_once(db, account_id, amount, type, description, reference)


def _existing(db: Session, account_id: int, type: LedgerEntryType,
              reference: Optional[str]) -> Optional[LedgerEntry]:
    # a replayed keyed request returns what the first one did, before any balance checks
    if reference is None:
        return None
    return find_entry(db, account_id, type, reference)


def _run(operation: str, attempt: Callable, reference: Optional[str]):
    # Without a reference a replay could apply the amount twice, so no retry
    if reference is None:
        return attempt()
    return run_with_retry(operation, attempt, KEYED_RETRY_CONFIG)


def assign_loan(account_id: int, amount: int, reference: Optional[str] = None) -> Tuple[Account, LedgerEntry]:
    """Credit the wallet with a loan and add it to the tracked principal."""
    _require_positive(amount)

    def attempt():
        with unit_of_work() as db:
            account = _lock_account(db, account_id)
            entry, created = _post(
                db, account_id, amount, LedgerEntryType.LOAN_ASSIGNMENT,
                f"Loan amount {amount} assigned", reference,
            )
            if created:
                account.admin_loan_balance += amount
                account.has_loan = True
                db.flush()
                logger.info(f"loans: assigned {amount} to account {account_id}")
            return account, entry

    return _run("loans.assign", attempt, reference)


def repay_loan(account_id: int, amount: int, reference: Optional[str] = None) -> Tuple[Account, LedgerEntry]:
    """
    Take a repayment out of the wallet. The debit is capped at the current
    balance so a repayment never drives the wallet negative.
    """
    _require_positive(amount)

    def attempt():
        with unit_of_work() as db:
            account = _lock_account(db, account_id)
            existing = _existing(db, account_id, LedgerEntryType.LOAN_REPAYMENT, reference)
            if existing is not None:
                return account, existing
            repaid = min(amount, max(account.loan_balance, 0))
            if repaid == 0:
                raise ConflictError("No outstanding balance to repay")

            entry, created = _post(
                db, account_id, -repaid, LedgerEntryType.LOAN_REPAYMENT,
                f"Loan repayment amount of {repaid}", reference,
            )
            if created:
                account.admin_loan_balance = max(account.admin_loan_balance - repaid, 0)
                account.has_loan = account.admin_loan_balance > 0
                db.flush()
                logger.info(f"loans: account {account_id} repaid {repaid}, principal now {account.admin_loan_balance}")
            return account, entry

    return _run("loans.repay", attempt, reference)


def deduct_admin_loan(account_id: int, amount: int, reference: Optional[str] = None) -> Tuple[Account, LedgerEntry]:
    _require_positive(amount)

    def attempt():
        with unit_of_work() as db:
            account = _lock_account(db, account_id)
            existing = _existing(db, account_id, LedgerEntryType.LOAN_DEDUCTION, reference)
            if existing is not None:
                return account, existing
            if account.admin_loan_balance < amount:
                raise ConflictError(
                    "Insufficient admin loan balance for this deduction",
                    {"admin_loan_balance": account.admin_loan_balance, "amount": amount},
                )

            entry, created = _post(
                db, account_id, -amount, LedgerEntryType.LOAN_DEDUCTION,
                f"Loan deduction of {amount} from admin loan balance", reference,
            )
            if created:
                account.admin_loan_balance -= amount
                account.has_loan = account.admin_loan_balance > 0
                db.flush()
            return account, entry

    return _run("loans.deduct", attempt, reference)


def set_loan_status(account_id: int, has_loan: bool) -> Account:
    """
    Turn the loan flag on or off.

    Activating snapshots the current wallet balance as the tracked principal.
    Deactivating is refused while the wallet balance is positive. A negative
    balance is written off to zero by the status entry; the principal is reset.
    """
    def attempt():
        with unit_of_work() as db:
            account = _lock_account(db, account_id)
            if has_loan:
                account.admin_loan_balance = max(account.loan_balance, 0)
            else:
                if account.loan_balance > 0:
                    raise LoanStillOutstanding(
                        "Account still has an outstanding balance and cannot be deactivated "
                        "until it is fully repaid",
                        {"loan_balance": account.loan_balance},
                    )
                account.admin_loan_balance = 0
            account.has_loan = has_loan
            write_off = 0 if has_loan else -account.loan_balance

            apply_ledger_entry(
                db, account_id, write_off, LedgerEntryType.LOAN_STATUS,
                f"Loan status changed to {'active' if has_loan else 'inactive'} "
                f"with balance {account.loan_balance}",
            )
            db.flush()
            if write_off:
                db.refresh(account)
                logger.info(f"loans: wrote off negative balance of {-write_off} for account {account_id}")
            return account

    # the write-off is recomputed from the locked balance on every attempt
    return run_with_retry("loans.status", attempt)


def refund_account(account_id: int, amount: int, reference: str) -> Tuple[LedgerEntry, bool]:
    """Manual credit, applied at most once per reference."""
    _require_positive(amount)
    if not reference:
        raise ValidationError("A refund needs a reference")

    def attempt():
        with unit_of_work() as db:
            return apply_once(
                db, account_id, amount, LedgerEntryType.REFUND,
                f"Refund amount {amount} added to balance", reference,
            )

    return run_with_retry("loans.refund", attempt, KEYED_RETRY_CONFIG)
