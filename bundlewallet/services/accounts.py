# bundlewallet/services/accounts.py
from typing import Optional

from sqlalchemy.orm import Session

from bundlewallet.config import settings
from bundlewallet.errors import AccountNotFound, ValidationError
from bundlewallet.models import Account, LedgerEntryType
from bundlewallet.services.ledger import apply_ledger_entry


def create_account(db: Session, name: str, opening_balance: Optional[int] = None) -> Account:
    """
    Create an account at zero and, if an opening balance applies, credit it
    through the ledger so the entry chain starts from zero.
    """
    if opening_balance is None:
        opening_balance = settings.default_balance_cents
    if opening_balance < 0:
        raise ValidationError("Opening balance must be >= 0")

    account = Account(name=name, loan_balance=0, has_loan=False, admin_loan_balance=0)
    db.add(account)
    db.flush()

    if opening_balance:
        apply_ledger_entry(
            db, account.id, opening_balance, LedgerEntryType.TOPUP_APPROVED,
            f"Opening balance {opening_balance}", f"opening:{account.id}",
        )
        db.refresh(account)
    return account


def get_account(db: Session, account_id: int) -> Account:
    account = db.get(Account, account_id)
    if not account:
        raise AccountNotFound(account_id)
    return account
